"""Celery tasks for collaborator email and telemetry."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from ingest_orchestrator.jobs.celery_app import celery_app
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)


@celery_app.task(queue='low')
def send_share_update_notification(study_id: str, changes: List[str], user_id: Optional[str] = None) -> dict:
    """Email every collaborator on a study about a change."""
    from ingest_orchestrator.database.session import db_session
    from ingest_orchestrator.notifications.email_service import send_share_update

    with db_session() as db:
        sent = send_share_update(UUID(study_id), changes, UUID(user_id) if user_id else None, db)
    return {"status": "completed", "study_id": study_id, "emails_sent": sent}


@celery_app.task(queue='low')
def record_telemetry_event(name: str, props: Dict[str, Any], user_metrics_uuid: Optional[str] = None) -> dict:
    """Post one telemetry event."""
    from ingest_orchestrator.notifications.metrics import log_event

    accepted = log_event(name, props, user_metrics_uuid)
    return {"status": "completed" if accepted else "logged", "event": name}
