"""Celery tasks that hand ingest work to the remote batch service."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from ingest_orchestrator.jobs.celery_app import celery_app
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)

# actions whose target file was set to parsing by the dispatcher
UNTRACKED_ACTIONS = ("differential_expression",)


def _tracked_files(study_file, action: str) -> List:
    """Files whose parse status follows this job."""
    if action in UNTRACKED_ACTIONS:
        return []
    bundle = study_file.owned_bundle
    if action == "ingest_expression" and bundle is not None:
        return bundle.members()
    return [study_file]


def _remove_parsed_data(db, study_file) -> None:
    """Clear rows created by a previous parse of study_file before a reparse."""
    from ingest_orchestrator.database.models import CellMetadatum, ClusterGroup, DifferentialExpressionResult

    cluster_ids = [
        row[0] for row in db.query(ClusterGroup.id).filter(ClusterGroup.study_file_id == study_file.id).all()
    ]
    if cluster_ids:
        db.query(DifferentialExpressionResult).filter(
            DifferentialExpressionResult.cluster_group_id.in_(cluster_ids)
        ).delete(synchronize_session=False)
        db.query(ClusterGroup).filter(ClusterGroup.id.in_(cluster_ids)).delete(synchronize_session=False)
    db.query(CellMetadatum).filter(CellMetadatum.study_file_id == study_file.id).delete(synchronize_session=False)
    logger.info("[INGEST] Removed previously parsed data for %s", study_file.name)


def _submit_batch_job(
    task,
    study_id: str,
    study_file_id: str,
    user_id: Optional[str],
    action: str,
    params: Optional[Dict[str, Any]],
    reparse: bool,
    persist_on_fail: bool,
) -> dict:
    from ingest_orchestrator.clients.batch_client import BatchApiClient
    from ingest_orchestrator.constants import ParseStatus
    from ingest_orchestrator.database.models import Study, StudyFile, User
    from ingest_orchestrator.database.session import db_session
    from ingest_orchestrator.exceptions import ArgumentError, BatchApiError, BatchServerError
    from ingest_orchestrator.ingestion.parameters import IngestParameters

    with db_session() as db:
        study_file = db.query(StudyFile).filter_by(id=UUID(study_file_id)).first()
        if study_file is None:
            return {"status": "failed", "error": "Study file not found", "study_file_id": study_file_id}
        study = db.query(Study).filter_by(id=UUID(study_id)).first()
        if study is None or study.queued_for_deletion or study_file.queued_for_deletion:
            logger.info("[INGEST] Skipping %s for %s; queued for deletion", action, study_file.name)
            return {"status": "skipped", "study_file_id": study_file_id}
        user = db.query(User).filter_by(id=UUID(user_id)).first() if user_id else None
        user = user or study.user

        params_object = IngestParameters.from_payload(params) if params else None
        if reparse:
            _remove_parsed_data(db, study_file)

        try:
            job = BatchApiClient().run_job(study_file, user, action, params_object)
        except BatchServerError as exc:
            if task.request.retries < task.max_retries:
                logger.warning("[INGEST] Batch service error for %s, retrying: %s", study_file.name, exc)
                raise task.retry(exc=exc, countdown=60 * (2 ** task.request.retries))
            error = str(exc)
        except (ArgumentError, BatchApiError) as exc:
            error = str(exc)
        else:
            confirmed_at = datetime.now(timezone.utc)
            for tracked in _tracked_files(study_file, action):
                tracked.remote_job_name = job.get("name")
                tracked.remote_confirmed_at = confirmed_at
            logger.info("[INGEST] %s for %s confirmed as %s", action, study_file.name, job.get("name"))
            return {"status": "submitted", "job_name": job.get("name"), "study_file_id": study_file_id}

        logger.error("[INGEST] Could not submit %s for %s: %s", action, study_file.name, error)
        for tracked in _tracked_files(study_file, action):
            tracked.parse_status = ParseStatus.FAILED.value
        if not persist_on_fail and not reparse and action not in UNTRACKED_ACTIONS:
            study_file.queued_for_deletion = True
        return {"status": "failed", "error": error, "study_file_id": study_file_id}


@celery_app.task(bind=True, max_retries=2, default_retry_delay=60, queue='ingest')
def run_ingest_job(
    self,
    study_id: str,
    study_file_id: str,
    user_id: Optional[str],
    action: str,
    params: Optional[Dict[str, Any]] = None,
    reparse: bool = False,
    persist_on_fail: bool = False,
) -> dict:
    """Submit one ingest or analysis job and record its remote confirmation."""
    return _submit_batch_job(self, study_id, study_file_id, user_id, action, params, reparse, persist_on_fail)


@celery_app.task(bind=True, max_retries=2, default_retry_delay=60, queue='ingest')
def initialize_precomputed_scores(
    self,
    study_id: str,
    study_file_id: str,
    user_id: Optional[str],
    action: str = "ingest_precomputed_scores",
    params: Optional[Dict[str, Any]] = None,
    reparse: bool = False,
    persist_on_fail: bool = False,
) -> dict:
    """Submit a gene list parse. Gene lists always carry their own parameters."""
    if not params:
        logger.error("[INGEST] Gene list %s submitted without parameters", study_file_id)
        return {"status": "failed", "error": "missing gene list parameters", "study_file_id": study_file_id}
    return _submit_batch_job(self, study_id, study_file_id, user_id, action, params, reparse, persist_on_fail)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30, queue='ingest')
def push_file_to_storage(self, study_file_id: str) -> dict:
    """Copy a locally staged upload into the study bucket."""
    from ingest_orchestrator.database.models import StudyFile
    from ingest_orchestrator.database.session import db_session
    from ingest_orchestrator.exceptions import StorageError
    from ingest_orchestrator.storage import push_study_file

    with db_session() as db:
        study_file = db.query(StudyFile).filter_by(id=UUID(study_file_id)).first()
        if study_file is None:
            return {"status": "failed", "error": "Study file not found", "study_file_id": study_file_id}
        if study_file.remote_pushed:
            return {"status": "skipped", "study_file_id": study_file_id}
        try:
            url = push_study_file(db, study_file)
        except StorageError as exc:
            logger.error("[STORAGE] Push failed for %s: %s", study_file.name, exc)
            return {"status": "failed", "error": str(exc), "study_file_id": study_file_id}
    return {"status": "pushed", "url": url, "study_file_id": study_file_id}
