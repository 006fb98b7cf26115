"""
Automated differential expression (DE) for study annotations.

Finds annotations that look like cell types or clustering results, validates
each (cluster, annotation) pair, skips pairs that already have results or a
matching job running remotely, and submits the rest as
``differential_expression`` jobs.

Entry points:
    run_differential_expression_on_default(accession)   -> bool
    run_differential_expression_on_all(accession)       -> job count
    backfill_new_results(accessions=None)                -> {accession: count, "total_jobs": n}

The running-job check and the submission are not atomic: two backfills
started together against one study can both submit the same job.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from ingest_orchestrator.analysis.cluster_viz import (
    cells_by_annotation_label,
    data_fragment_url,
    raw_matrix_for_cluster_cells,
)
from ingest_orchestrator.config import get_config
from ingest_orchestrator.constants import (
    EXPRESSION_MATRIX_TYPES,
    ONTOLOGY_LABEL_SUFFIX,
    FileType,
)
from ingest_orchestrator.database.models import (
    ClusterGroup,
    DifferentialExpressionResult,
    Study,
    User,
)
from ingest_orchestrator.database.session import db_session
from ingest_orchestrator.exceptions import ArgumentError
from ingest_orchestrator.ingestion.parameters import DifferentialExpressionParameters
from ingest_orchestrator.jobs.submission import JobAction, JobSpec, JobSubmitter
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)

CELL_TYPE_MATCHER = re.compile(r"cell.*type", re.IGNORECASE)
CLUSTERING_MATCHER = re.compile(r"(clust|seurat|leiden|louvain|snn_res)", re.IGNORECASE)
CATEGORY_MATCHER = re.compile(r"(categor|labels)", re.IGNORECASE)
ALLOWED_ANNOTATIONS = (CELL_TYPE_MATCHER, CLUSTERING_MATCHER, CATEGORY_MATCHER)
EXCLUDED_ANNOTATIONS = re.compile(r"(enrichment__cell_type)", re.IGNORECASE)

CELL_TYPE = "cell_type"


@dataclass(frozen=True)
class AnnotationCandidate:
    """An annotation eligible for DE; cluster_group_id is set for cluster-scoped annotations."""
    annotation_name: str
    annotation_scope: str
    cluster_group_id: Optional[UUID] = None

    @property
    def identifier(self) -> str:
        return f"{self.annotation_name}--group--{self.annotation_scope}"


def _default_batch_client():
    from ingest_orchestrator.clients.batch_client import BatchApiClient

    return BatchApiClient()


def _default_submitter() -> JobSubmitter:
    from ingest_orchestrator.jobs.submission import CeleryJobSubmitter

    return CeleryJobSubmitter()


# ---------------------------------------------------------
#  Eligibility
# ---------------------------------------------------------


def annotation_eligible(name: Optional[str]) -> bool:
    """True if the name looks like a cell type, clustering or category and is not excluded."""
    if not name:
        return False
    allowed = any(matcher.search(name) for matcher in ALLOWED_ANNOTATIONS)
    return allowed and not EXCLUDED_ANNOTATIONS.search(name)


def _drop_superseded_cell_type(candidates: List[AnnotationCandidate]) -> List[AnnotationCandidate]:
    """Drop cell_type wherever cell_type__ontology_label is also a candidate in the same place."""
    ontology_name = CELL_TYPE + ONTOLOGY_LABEL_SUFFIX
    labeled = {
        (candidate.annotation_scope, candidate.cluster_group_id)
        for candidate in candidates
        if candidate.annotation_name == ontology_name
    }
    return [
        candidate
        for candidate in candidates
        if not (
            candidate.annotation_name == CELL_TYPE
            and (candidate.annotation_scope, candidate.cluster_group_id) in labeled
        )
    ]


def find_eligible_annotations(db: Session, study: Study, skip_existing: bool = False) -> List[AnnotationCandidate]:
    """
    List annotations in a study eligible for automated DE.

    Args:
        db: Database session
        study: Study to inspect
        skip_existing: Leave out annotations that already have results

    Returns:
        Study-scoped candidates first, then cluster-scoped candidates
    """
    candidates: List[AnnotationCandidate] = [
        AnnotationCandidate(metadatum.name, "study")
        for metadatum in study.cell_metadata
        if metadatum.annotation_type == "group"
        and annotation_eligible(metadatum.name)
        and metadatum.can_visualize()
    ]

    for cluster_group in study.cluster_groups:
        for annotation in cluster_group.cell_annotations or []:
            if (
                annotation.get("type") == "group"
                and annotation_eligible(annotation.get("name"))
                and cluster_group.can_visualize_cell_annotation(annotation)
            ):
                candidates.append(AnnotationCandidate(annotation["name"], "cluster", cluster_group.id))

    candidates = _drop_superseded_cell_type(candidates)
    if skip_existing:
        return [candidate for candidate in candidates if not results_exist(db, study, candidate)]
    return candidates


def find_existing_result(
    db: Session, study: Study, cluster_group: ClusterGroup, annotation_name: str, annotation_scope: str
) -> Optional[DifferentialExpressionResult]:
    return (
        db.query(DifferentialExpressionResult)
        .filter(
            DifferentialExpressionResult.study_id == study.id,
            DifferentialExpressionResult.cluster_group_id == cluster_group.id,
            DifferentialExpressionResult.annotation_name == annotation_name,
            DifferentialExpressionResult.annotation_scope == annotation_scope,
        )
        .first()
    )


def results_exist(db: Session, study: Study, candidate: AnnotationCandidate) -> bool:
    """True if any result exists for the candidate (on its cluster, or on any cluster for study scope)."""
    if candidate.annotation_scope == "cluster":
        cluster_ids = [candidate.cluster_group_id]
    else:
        cluster_ids = [cluster_group.id for cluster_group in study.cluster_groups]
    if not cluster_ids:
        return False
    query = db.query(DifferentialExpressionResult).filter(
        DifferentialExpressionResult.study_id == study.id,
        DifferentialExpressionResult.cluster_group_id.in_(cluster_ids),
        DifferentialExpressionResult.annotation_name == candidate.annotation_name,
        DifferentialExpressionResult.annotation_scope == candidate.annotation_scope,
    )
    return query.first() is not None


def study_has_author_de(study: Study) -> bool:
    return any(
        study_file.file_type == FileType.DIFFERENTIAL_EXPRESSION.value and not study_file.queued_for_deletion
        for study_file in study.study_files
    )


def study_has_raw_counts_matrices(study: Study) -> bool:
    return any(
        study_file.file_type in EXPRESSION_MATRIX_TYPES
        and study_file.is_raw_counts
        and not study_file.queued_for_deletion
        for study_file in study.study_files
    )


def study_eligible(db: Session, study: Optional[Study], skip_existing: bool = False) -> bool:
    try:
        validate_study(study)
    except ArgumentError:
        return False
    return (
        bool(find_eligible_annotations(db, study, skip_existing=skip_existing))
        and study_has_raw_counts_matrices(study)
        and not study_has_author_de(study)
    )


# ---------------------------------------------------------
#  Validation
# ---------------------------------------------------------


def validate_study(study: Optional[Study]) -> None:
    if study is None:
        raise ArgumentError("Requested study does not exist")
    if study.queued_for_deletion:
        raise ArgumentError(f"{study.accession} is queued for deletion")
    if not study.can_visualize_clusters:
        raise ArgumentError(f"{study.accession} cannot view cluster plots")


def validate_pairwise(group1: Optional[str], group2: Optional[str]) -> None:
    missing = [name for name, value in (("group1", group1), ("group2", group2)) if not value]
    if missing:
        raise ArgumentError(f"must provide {', '.join(missing)} for pairwise calculation")


def validate_annotation(
    db: Session,
    cluster_group: ClusterGroup,
    study: Study,
    annotation_name: str,
    annotation_scope: str,
    group1: Optional[str] = None,
    group2: Optional[str] = None,
) -> None:
    """
    Check that DE can run for this cluster and annotation.

    Raises:
        ArgumentError: If a result already exists, the annotation is missing,
            numeric or not visualizable, or too few labels/cells are represented
    """
    pairwise = bool(group1 or group2)
    if pairwise:
        validate_pairwise(group1, group2)

    result = find_existing_result(db, study, cluster_group, annotation_name, annotation_scope)
    if result is not None and not pairwise:
        raise ArgumentError(
            f"{annotation_name} already exists for {study.accession}:{cluster_group.name}, "
            f"please delete result {result.id} before retrying"
        )
    if pairwise and result is not None and result.has_pairwise_comparison(group1, group2):
        raise ArgumentError(
            f"{group1} vs. {group2} pairwise already exists for {annotation_name} on "
            f"{study.accession}:{cluster_group.name}, you must remove that entry from {result.id} before retrying"
        )

    if annotation_scope == "cluster":
        annotation = cluster_group.cell_annotation(annotation_name)
        if annotation is not None and annotation.get("type") != "group":
            annotation = None
        can_visualize = annotation is not None and cluster_group.can_visualize_cell_annotation(annotation)
        values = (annotation or {}).get("values") or []
    else:
        metadatum = next(
            (
                meta
                for meta in study.cell_metadata
                if meta.name == annotation_name and meta.annotation_type == "group"
            ),
            None,
        )
        annotation = metadatum
        can_visualize = metadatum is not None and metadatum.can_visualize()
        values = (metadatum.values if metadatum is not None else None) or []

    identifier = f"{annotation_name}--group--{annotation_scope}"
    if annotation is None:
        raise ArgumentError(f"{identifier} is not present or is numeric-based")
    if not can_visualize:
        raise ArgumentError(f"{identifier} cannot be visualized")

    cells_by_label = cells_by_annotation_label(cluster_group, annotation_name, annotation_scope)
    if not pairwise:
        if len(cells_by_label) < 2:
            raise ArgumentError(f"{identifier} does not have enough labels represented in {cluster_group.name}")
        return

    missing = [group for group in (group1, group2) if group not in values]
    if missing:
        raise ArgumentError(f"{annotation_name} does not contain '{', '.join(missing)}'")
    too_few = [group for group in (group1, group2) if len(cells_by_label.get(group, [])) < 2]
    if too_few:
        raise ArgumentError(
            f"{', '.join(too_few)} does not have enough cells represented in {identifier} for {cluster_group.name}"
        )


# ---------------------------------------------------------
#  Parameter helpers
# ---------------------------------------------------------


def encode_filename(values: List[str]) -> str:
    """Encode values for use in result filenames, e.g. ['CD4+', 'T cell'] -> 'CD4pos--T_cell'."""
    return "--".join(re.sub(r"\W", "_", value.replace("+", "pos")) for value in values)


def cluster_file_url(cluster_group: ClusterGroup) -> str:
    study_file = cluster_group.study_file
    if study_file.is_viz_anndata:
        fragment = study_file.ann_data_file_info.find_fragment("cluster", cluster_group.name) or {}
        return data_fragment_url(study_file, "cluster", file_type_detail=fragment.get("obsm_key_name", ""))
    return study_file.remote_url


def set_cluster_name(
    db: Session, study: Study, cluster_group: ClusterGroup, annotation_name: str, annotation_scope: str
) -> str:
    """Reuse the cluster name cached on an existing result, so output filenames stay stable."""
    result = find_existing_result(db, study, cluster_group, annotation_name, annotation_scope)
    if result is not None and result.cluster_name:
        return result.cluster_name
    return cluster_group.name


def build_parameters(
    db: Session,
    cluster_group: ClusterGroup,
    study: Study,
    annotation_name: str,
    annotation_scope: str,
    de_type: str = "rest",
    group1: Optional[str] = None,
    group2: Optional[str] = None,
    machine_type: Optional[str] = None,
) -> DifferentialExpressionParameters:
    """Assemble (unvalidated) job parameters for a cluster and annotation."""
    cluster_url = cluster_file_url(cluster_group)
    study_file = cluster_group.study_file
    if study_file.is_viz_anndata:
        metadata_url = data_fragment_url(study_file, "metadata")
    else:
        metadata_file = study.metadata_file()
        metadata_url = metadata_file.remote_url if metadata_file is not None else None

    de_params: Dict[str, Union[str, int, None]] = dict(
        annotation_name=annotation_name,
        annotation_scope=annotation_scope,
        de_type=de_type,
        group1=group1,
        group2=group2,
        annotation_file=cluster_url if annotation_scope == "cluster" else metadata_url,
        cluster_file=cluster_url,
        cluster_name=set_cluster_name(db, study, cluster_group, annotation_name, annotation_scope),
        cluster_group_id=str(cluster_group.id),
    )

    raw_matrix = raw_matrix_for_cluster_cells(study, cluster_group)
    de_params["matrix_file_path"] = raw_matrix.remote_url
    if raw_matrix.file_type == FileType.MM_COORDINATE_MATRIX.value:
        # raw_matrix_for_cluster_cells only returns sparse matrices with completed bundles
        bundle = raw_matrix.bundle
        de_params["matrix_file_type"] = "mtx"
        de_params["gene_file"] = bundle.bundled_file_by_type(FileType.TENX_GENES.value).remote_url
        de_params["barcode_file"] = bundle.bundled_file_by_type(FileType.TENX_BARCODES.value).remote_url
    elif raw_matrix.file_type == FileType.ANNDATA.value:
        de_params["matrix_file_type"] = "h5ad"
        de_params["file_size"] = raw_matrix.upload_file_size
        de_params["raw_location"] = raw_matrix.ann_data_file_info.raw_location
    else:
        de_params["matrix_file_type"] = "dense"

    params = DifferentialExpressionParameters.build(**de_params)
    if machine_type:
        params.machine_type = machine_type
    return params


# ---------------------------------------------------------
#  Submission
# ---------------------------------------------------------


def run_differential_expression_job(
    db: Session,
    cluster_group: ClusterGroup,
    study: Study,
    user: User,
    annotation_name: str,
    annotation_scope: str,
    de_type: str = "rest",
    group1: Optional[str] = None,
    group2: Optional[str] = None,
    machine_type: Optional[str] = None,
    dry_run: bool = False,
    batch_client=None,
    submitter: Optional[JobSubmitter] = None,
) -> bool:
    """
    Validate, de-duplicate and submit one DE job.

    Returns:
        True if the job was submitted (or would be, for a dry run);
        False if an identical job is already running remotely

    Raises:
        ArgumentError: If the annotation or the assembled parameters do not validate
    """
    validate_study(study)
    validate_annotation(db, cluster_group, study, annotation_name, annotation_scope, group1=group1, group2=group2)
    params = build_parameters(
        db,
        cluster_group,
        study,
        annotation_name,
        annotation_scope,
        de_type=de_type,
        group1=group1,
        group2=group2,
        machine_type=machine_type,
    )
    if dry_run:
        return True

    batch_client = batch_client or _default_batch_client()
    study_file = cluster_group.study_file
    job_params = batch_client.format_command_line(
        study_file, JobAction.DIFFERENTIAL_EXPRESSION, user.metrics_uuid, params
    )
    running = batch_client.find_matching_jobs(job_params)
    if running:
        logger.info(
            "[DE] Found %d running DE jobs: %s", len(running), ", ".join(job.get("name", "") for job in running)
        )
        logger.info("[DE] Matching these parameters: %s", " ".join(job_params))
        logger.info("[DE] Exiting without queuing new job")
        return False

    errors = params.validation_errors()
    if errors:
        raise ArgumentError(f"job parameters failed to validate: {', '.join(errors)}")

    submitter = submitter or _default_submitter()
    submitter.submit(
        JobSpec(
            study_id=study.id,
            study_file_id=study_file.id,
            user_id=user.id,
            action=JobAction.DIFFERENTIAL_EXPRESSION,
            params=params,
        )
    )
    return True


def _find_study(db: Session, accession: str) -> Optional[Study]:
    return db.query(Study).filter(Study.accession == accession).first()


def run_differential_expression_on_default(
    accession: str,
    user: Optional[User] = None,
    machine_type: Optional[str] = None,
    dry_run: bool = False,
    db: Optional[Session] = None,
    batch_client=None,
    submitter: Optional[JobSubmitter] = None,
) -> bool:
    """Run DE for a study's default cluster and default annotation."""
    if db is None:
        with db_session() as db:
            return run_differential_expression_on_default(
                accession, user, machine_type, dry_run, db=db, batch_client=batch_client, submitter=submitter
            )

    study = _find_study(db, accession)
    validate_study(study)
    cluster_group = study.default_cluster()
    if cluster_group is None:
        raise ArgumentError(f"{study.accession} has no default cluster")
    default_annotation = study.default_annotation()
    if not default_annotation:
        raise ArgumentError(f"{study.accession} has no default annotation")
    annotation_name, annotation_type, annotation_scope = default_annotation.split("--")
    if annotation_type != "group":
        raise ArgumentError(f"{study.accession} default annotation is not group-based")

    return run_differential_expression_job(
        db,
        cluster_group,
        study,
        user or study.user,
        annotation_name,
        annotation_scope,
        machine_type=machine_type,
        dry_run=dry_run,
        batch_client=batch_client,
        submitter=submitter,
    )


def run_differential_expression_on_all(
    accession: str,
    user: Optional[User] = None,
    machine_type: Optional[str] = None,
    dry_run: bool = False,
    skip_existing: bool = False,
    db: Optional[Session] = None,
    batch_client=None,
    submitter: Optional[JobSubmitter] = None,
) -> int:
    """
    Run DE for every eligible annotation on every cluster in a study.

    Invalid (cluster, annotation) pairs are logged and skipped.

    Returns:
        Number of jobs submitted (or found, for a dry run)
    """
    if db is None:
        with db_session() as db:
            return run_differential_expression_on_all(
                accession,
                user,
                machine_type,
                dry_run,
                skip_existing,
                db=db,
                batch_client=batch_client,
                submitter=submitter,
            )

    study = _find_study(db, accession)
    validate_study(study)
    candidates = find_eligible_annotations(db, study, skip_existing=skip_existing)
    if not candidates:
        raise ArgumentError(f"{accession} does not have any eligible annotations")
    logger.info("[DE] %s has annotations eligible for DE; validating inputs", accession)

    if not dry_run:
        batch_client = batch_client or _default_batch_client()
        submitter = submitter or _default_submitter()
    requested_user = user or study.user
    job_count = 0
    skip_count = 0
    for cluster_group in study.cluster_groups:
        for candidate in candidates:
            if candidate.annotation_scope == "cluster" and candidate.cluster_group_id != cluster_group.id:
                continue
            job_identifier = f"{accession}: {cluster_group.name} ({candidate.identifier})"
            if machine_type:
                job_identifier += f"[{machine_type}]"
            logger.info("[DE] Checking DE job for %s", job_identifier)
            try:
                submitted = run_differential_expression_job(
                    db,
                    cluster_group,
                    study,
                    requested_user,
                    candidate.annotation_name,
                    candidate.annotation_scope,
                    machine_type=machine_type,
                    dry_run=dry_run,
                    batch_client=batch_client,
                    submitter=submitter,
                )
            except ArgumentError as e:
                logger.info("[DE]   Skipping DE job for %s due to: %s", job_identifier, e)
                skip_count += 1
                continue

            if not submitted:
                skip_count += 1
            elif dry_run:
                logger.info("[DE] ==> Dry run found job %s", job_identifier)
                job_count += 1
            else:
                logger.info("[DE] ==> DE job for %s successfully launched", job_identifier)
                job_count += 1

    logger.info("[DE] %s yielded %d differential expression jobs; %d skipped", accession, job_count, skip_count)
    return job_count


def backfill_new_results(
    accessions: Optional[List[str]] = None,
    db: Optional[Session] = None,
    batch_client=None,
    submitter: Optional[JobSubmitter] = None,
) -> Dict[str, int]:
    """
    Submit DE jobs for newly eligible annotations across studies.

    Studies with author-uploaded DE results are skipped. A study that fails
    validation is logged and does not stop the run.

    Returns:
        {accession: job count, ..., "total_jobs": total}
    """
    if db is None:
        with db_session() as db:
            return backfill_new_results(accessions, db=db, batch_client=batch_client, submitter=submitter)

    if accessions is None:
        accessions = [row[0] for row in db.query(Study.accession).order_by(Study.accession).all()]

    total_jobs = 0
    study_results: Dict[str, int] = {}
    for accession in accessions:
        study = _find_study(db, accession)
        if study is None:
            continue
        if study_has_author_de(study):
            logger.info("[DE] %s has author-uploaded results, skipping", accession)
            continue
        try:
            jobs = run_differential_expression_on_all(
                accession, skip_existing=True, db=db, batch_client=batch_client, submitter=submitter
            )
        except ArgumentError as e:
            logger.info("[DE] %s", e)
            continue
        if jobs > 0:
            total_jobs += jobs
            study_results[accession] = jobs

    logger.info("[DE] Total new backfill jobs: %d across %d studies", total_jobs, len(study_results))
    study_results["total_jobs"] = total_jobs
    return study_results


# ---------------------------------------------------------
#  User quota
# ---------------------------------------------------------


def get_weekly_user_quota() -> int:
    return get_config().ingest.de_weekly_user_quota


def job_exceeds_quota(user: User) -> bool:
    return (user.weekly_de_quota or 0) >= get_weekly_user_quota()


def increment_user_quota(db: Session, user: User) -> int:
    user.weekly_de_quota = (user.weekly_de_quota or 0) + 1
    db.flush()
    return user.weekly_de_quota


def reset_all_user_quotas(db: Session) -> int:
    """Zero every user's weekly DE count. Returns the number of rows updated."""
    return db.query(User).update({User.weekly_de_quota: 0})
