"""
Parse dispatch for uploaded study files.

``dispatch`` is the single entry point called after a file is staged. It
checks preconditions, resolves bundles, and submits the job described by the
rule for the file's type in ``DISPATCH_RULES``:

    file type -> {bundle precondition, storage push, parameter builder,
                  job action, follow-on chain}

Preconditions that are not met are reported as a ``DispatchResult`` with an
HTTP-like status code rather than raised:

    204  job submitted, or nothing applicable to do (an Analysis Output file
         that is not an inferCNV ideogram is left untouched and no
         collaborators are notified)
    405  file is already parsing
    412  a bundle the file depends on is incomplete
    422  file type is not parseable

``parse_status = parsing`` is set before the job is confirmed remotely and
acts as an advisory lock against a second dispatch. Files whose job never
starts are recovered by ``maintenance.parse_sweep``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ingest_orchestrator.config import get_config
from ingest_orchestrator.constants import (
    FileType,
    ParseStatus,
    requirement_for_child,
    requirement_for_parent,
)
from ingest_orchestrator.database.models import (
    AnnDataFileInfo,
    DifferentialExpressionResult,
    Study,
    StudyFile,
    StudyFileBundle,
    User,
)
from ingest_orchestrator.ingestion.bundle_resolver import resolve_bundle
from ingest_orchestrator.ingestion.parameters import (
    AnnDataIngestParameters,
    IngestParameters,
    PrecomputedScoresParameters,
)
from ingest_orchestrator.jobs.submission import JobAction, JobSpec, JobSubmitter
from ingest_orchestrator.logging_utils import get_logger
from ingest_orchestrator.notifications.notifier import Notifier

logger = get_logger(__name__)

PUSH_NEVER = "never"
PUSH_ALWAYS = "always"
PUSH_ON_INCOMPLETE = "on_incomplete"

TARGET_SELF = "self"
TARGET_PARENT = "parent"


class DispatchResult(BaseModel):
    """Outcome of a dispatch attempt."""
    status_code: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code == 204


@dataclass
class DispatchRequest:
    """Everything a rule's hooks may need about the current dispatch."""
    db: Session
    study_file: StudyFile
    study: Study
    user: Optional[User]
    router: "DispatchRouter"
    bundle: Optional[StudyFileBundle] = None
    reparse: bool = False
    persist_on_fail: bool = False
    obsm_key: Optional[str] = None


ParamsBuilder = Callable[[DispatchRequest], Optional[IngestParameters]]
BeforeSubmit = Callable[[DispatchRequest], Optional[DispatchResult]]
ChainHook = Callable[[DispatchRequest], None]


@dataclass(frozen=True)
class DispatchRule:
    """How one file type is parsed."""
    action: JobAction
    requires_bundle: bool = False
    push_to_storage: str = PUSH_NEVER
    target: str = TARGET_SELF
    mark_bundle_parsing: bool = False
    build_params: Optional[ParamsBuilder] = None
    # may return a result to stop dispatch before anything is submitted
    before_submit: Optional[BeforeSubmit] = None
    chain: Optional[ChainHook] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def mark_parsing(study_file: StudyFile) -> None:
    study_file.parse_status = ParseStatus.PARSING.value
    study_file.parse_started_at = _now()
    study_file.remote_job_name = None
    study_file.remote_confirmed_at = None


# ---------------------------------------------------------
#  Rule hooks
# ---------------------------------------------------------


def chain_coordinate_labels(request: DispatchRequest) -> None:
    """After a cluster is submitted, submit any coordinate labels waiting on it."""
    bundle = request.study_file.bundle
    if bundle is None or bundle.parent_id != request.study_file.id or not bundle.is_completed():
        return
    for labels_file in bundle.bundled_files():
        if labels_file.file_type != FileType.COORDINATE_LABELS.value or labels_file.parsing:
            continue
        # set before submitting so a concurrent dispatch of the labels file is rejected
        mark_parsing(labels_file)
        request.router.submit(request, labels_file, JobAction.INGEST_COORDINATE_LABELS)
        logger.info("[DISPATCH] Chained coordinate labels %s after %s", labels_file.name, request.study_file.name)


def track_metadata_convention(request: DispatchRequest) -> Optional[DispatchResult]:
    study_file = request.study_file
    if not study_file.use_metadata_convention:
        request.router.notifier.track_event(
            "file-upload:metadata:non-compliant",
            {"studyAccession": request.study.accession, "studyFileName": study_file.name},
            request.user,
        )
    return None


def remove_automated_de_results(request: DispatchRequest) -> Optional[DispatchResult]:
    logger.info("[DISPATCH] Removing auto-calculated differential expression results in %s", request.study.accession)
    automated = (
        request.db.query(DifferentialExpressionResult)
        .filter(
            DifferentialExpressionResult.study_id == request.study.id,
            DifferentialExpressionResult.study_file_id.is_(None),
        )
        .all()
    )
    for result in automated:
        request.db.delete(result)
    request.db.flush()
    return None


def check_analysis_output(request: DispatchRequest) -> Optional[DispatchResult]:
    options = request.study_file.options or {}
    if options.get("analysis_name") == "infercnv" and options.get("visualization_name") == "ideogram.js":
        return None
    logger.info(
        "[DISPATCH] Aborting parse of %s as %s in study %s; not applicable",
        request.study_file.name,
        request.study_file.file_type,
        request.study.name,
    )
    return DispatchResult(status_code=204)


def anndata_params(request: DispatchRequest) -> AnnDataIngestParameters:
    """
    Parameters for an AnnData file.

    Viz AnnData files get one of three shapes: a single new clustering
    (obsm_key given), a raw-counts-only extraction, or a full extraction.
    Reference files, and all files while full AnnData ingest is disabled,
    are only registered.
    """
    study_file = request.study_file
    info = study_file.ann_data_file_info
    if info is None:
        info = AnnDataFileInfo(reference_file=True)
        study_file.ann_data_file_info = info
        request.db.flush()

    common = dict(anndata_file=study_file.remote_url, file_size=study_file.upload_file_size)
    if request.router.anndata_ingest_enabled and not study_file.is_reference_anndata:
        if request.obsm_key:
            return AnnDataIngestParameters.build(extract=["cluster"], obsm_keys=[request.obsm_key], **common)
        if study_file.needs_raw_counts_extraction:
            return AnnDataIngestParameters.build(
                extract=["raw_counts"], raw_location=info.raw_location, obsm_keys=None, **common
            )
        return AnnDataIngestParameters.build(
            obsm_keys=info.obsm_key_names,
            extract_raw_counts=bool(study_file.is_raw_counts),
            raw_location=info.raw_location,
            **common,
        )
    # blank values are left off the command line
    return AnnDataIngestParameters.build(extract=None, obsm_keys=None, **common)


def precomputed_scores_params(request: DispatchRequest) -> PrecomputedScoresParameters:
    return PrecomputedScoresParameters.build(
        gene_list_file=request.study_file.remote_url,
        name=request.study_file.name,
        study_accession=request.study.accession,
    )


DISPATCH_RULES: Dict[FileType, DispatchRule] = {
    FileType.CLUSTER: DispatchRule(
        action=JobAction.INGEST_CLUSTER,
        chain=chain_coordinate_labels,
    ),
    FileType.COORDINATE_LABELS: DispatchRule(
        action=JobAction.INGEST_COORDINATE_LABELS,
        requires_bundle=True,
    ),
    FileType.EXPRESSION_MATRIX: DispatchRule(action=JobAction.INGEST_EXPRESSION),
    FileType.MM_COORDINATE_MATRIX: DispatchRule(
        action=JobAction.INGEST_EXPRESSION,
        requires_bundle=True,
        push_to_storage=PUSH_ON_INCOMPLETE,
        mark_bundle_parsing=True,
    ),
    FileType.TENX_GENES: DispatchRule(
        action=JobAction.INGEST_EXPRESSION,
        requires_bundle=True,
        push_to_storage=PUSH_ALWAYS,
        target=TARGET_PARENT,
        mark_bundle_parsing=True,
    ),
    FileType.TENX_BARCODES: DispatchRule(
        action=JobAction.INGEST_EXPRESSION,
        requires_bundle=True,
        push_to_storage=PUSH_ALWAYS,
        target=TARGET_PARENT,
        mark_bundle_parsing=True,
    ),
    FileType.METADATA: DispatchRule(
        action=JobAction.INGEST_CELL_METADATA,
        before_submit=track_metadata_convention,
    ),
    FileType.ANNDATA: DispatchRule(
        action=JobAction.INGEST_ANNDATA,
        build_params=anndata_params,
    ),
    FileType.DIFFERENTIAL_EXPRESSION: DispatchRule(
        action=JobAction.INGEST_DIFFERENTIAL_EXPRESSION,
        before_submit=remove_automated_de_results,
    ),
    FileType.GENE_LIST: DispatchRule(
        action=JobAction.INGEST_PRECOMPUTED_SCORES,
        build_params=precomputed_scores_params,
    ),
    FileType.ANALYSIS_OUTPUT: DispatchRule(
        action=JobAction.EXTRACT_ANALYSIS_OUTPUT,
        before_submit=check_analysis_output,
    ),
}


def missing_bundle_requirements(study_file: StudyFile, bundle: Optional[StudyFileBundle]) -> List[str]:
    """File types still needed before study_file's bundle is complete."""
    if bundle is not None:
        missing = bundle.missing_requirements()
        if bundle.parent is None or bundle.parent.queued_for_deletion:
            missing.insert(0, bundle.bundle_type)
        return missing

    requirement = requirement_for_parent(study_file.file_type)
    if requirement is not None:
        return [child.value for child in requirement.child_types]
    requirement = requirement_for_child(study_file.file_type)
    if requirement is None:
        return []
    return [requirement.parent_type.value] + [
        child.value for child in requirement.child_types if child.value != study_file.file_type
    ]


def missing_bundled_file(study_file: StudyFile, bundle: Optional[StudyFileBundle]) -> DispatchResult:
    missing = missing_bundle_requirements(study_file, bundle)
    logger.info(
        "[DISPATCH] Parse for %s as %s aborted; missing required files: %s",
        study_file.name,
        study_file.file_type,
        ", ".join(missing),
    )
    return DispatchResult(
        status_code=412,
        error=(
            f"File is not parseable; missing required files for parsing {study_file.file_type} "
            f"file type: {', '.join(missing)}"
        ),
    )


class DispatchRouter:
    """Applies DISPATCH_RULES using an injected job submitter and notifier."""

    def __init__(
        self,
        submitter: JobSubmitter,
        notifier: Notifier,
        rules: Optional[Dict[FileType, DispatchRule]] = None,
        anndata_ingest_enabled: Optional[bool] = None,
    ):
        self.submitter = submitter
        self.notifier = notifier
        self.rules = rules if rules is not None else DISPATCH_RULES
        if anndata_ingest_enabled is None:
            anndata_ingest_enabled = get_config().ingest.anndata_ingest_enabled
        self.anndata_ingest_enabled = anndata_ingest_enabled

    def submit(
        self,
        request: DispatchRequest,
        target: StudyFile,
        action: JobAction,
        params: Optional[IngestParameters] = None,
    ) -> None:
        self.submitter.submit(
            JobSpec(
                study_id=request.study.id,
                study_file_id=target.id,
                user_id=request.user.id if request.user is not None else None,
                action=action,
                params=params,
                reparse=request.reparse,
                persist_on_fail=request.persist_on_fail,
            )
        )

    def dispatch(
        self,
        db: Session,
        study_file: StudyFile,
        study: Study,
        user: Optional[User],
        reparse: bool = False,
        persist_on_fail: bool = False,
        obsm_key: Optional[str] = None,
    ) -> DispatchResult:
        """
        Start parsing an uploaded file.

        Args:
            db: Database session
            study_file: File to parse
            study: Study the file belongs to
            user: User initiating the parse (notifications, quotas)
            reparse: Replace data from a previous parse
            persist_on_fail: Keep remote files if the parse fails
            obsm_key: For AnnData files, extract only this clustering

        Returns:
            DispatchResult with status 204, 405, 412 or 422
        """
        logger.info("[DISPATCH] Parsing %s as %s in study %s", study_file.name, study_file.file_type, study.name)

        if not study_file.parseable:
            return DispatchResult(
                status_code=422, error=f"Files of type {study_file.file_type} are not parseable"
            )
        if study_file.parsing:
            return DispatchResult(
                status_code=405,
                error=f"File: {study_file.upload_file_name or study_file.name} is already parsing",
            )

        rule = self.rules.get(FileType(study_file.file_type))
        if rule is None:
            return DispatchResult(
                status_code=422, error=f"Files of type {study_file.file_type} are not parseable"
            )

        bundle = resolve_bundle(db, study_file, study)
        request = DispatchRequest(
            db=db,
            study_file=study_file,
            study=study,
            user=user,
            router=self,
            bundle=bundle,
            reparse=reparse,
            persist_on_fail=persist_on_fail,
            obsm_key=obsm_key,
        )

        if rule.push_to_storage == PUSH_ALWAYS:
            self._push(study_file)

        if rule.requires_bundle and (bundle is None or not bundle.is_completed()):
            if rule.push_to_storage == PUSH_ON_INCOMPLETE:
                self._push(study_file)
            return missing_bundled_file(study_file, bundle)

        if rule.before_submit is not None:
            stop = rule.before_submit(request)
            if stop is not None:
                return stop

        params = rule.build_params(request) if rule.build_params is not None else None
        target = bundle.parent if rule.target == TARGET_PARENT else study_file

        if rule.mark_bundle_parsing:
            for member in bundle.members():
                mark_parsing(member)
        mark_parsing(study_file)
        db.flush()

        self.submit(request, target, rule.action, params)
        if rule.chain is not None:
            rule.chain(request)
        db.flush()

        if study.shares:
            changes = [f"Study file added: {study_file.upload_file_name or study_file.name}"]
            self.notifier.share_update(study, changes, user)

        return DispatchResult(status_code=204)

    def _push(self, study_file: StudyFile) -> None:
        if study_file.local_path and not study_file.remote_pushed:
            self.submitter.push_to_storage(study_file)


def dispatch_parse(
    db: Session,
    study_file: StudyFile,
    study: Study,
    user: Optional[User],
    reparse: bool = False,
    persist_on_fail: bool = False,
    obsm_key: Optional[str] = None,
) -> DispatchResult:
    """Dispatch with the Celery-backed submitter and notifier."""
    from ingest_orchestrator.jobs.submission import CeleryJobSubmitter
    from ingest_orchestrator.notifications.notifier import CeleryNotifier

    router = DispatchRouter(CeleryJobSubmitter(), CeleryNotifier())
    return router.dispatch(
        db, study_file, study, user, reparse=reparse, persist_on_fail=persist_on_fail, obsm_key=obsm_key
    )
