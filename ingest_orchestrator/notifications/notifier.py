"""
Notification sink used by dispatch.

Notifications are fire-and-forget: the Celery notifier only enqueues tasks,
and failures there never affect the dispatch result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from ingest_orchestrator.logging_utils import get_logger

if TYPE_CHECKING:
    from ingest_orchestrator.database.models import Study, User

logger = get_logger(__name__)


class Notifier(Protocol):
    def share_update(self, study: "Study", changes: List[str], user: Optional["User"]) -> None:
        ...

    def track_event(self, name: str, props: Dict[str, Any], user: Optional["User"]) -> None:
        ...


class CeleryNotifier:
    """Deliver notifications through Celery tasks."""

    def share_update(self, study: "Study", changes: List[str], user: Optional["User"]) -> None:
        from ingest_orchestrator.jobs.tasks.notifications import send_share_update_notification

        try:
            send_share_update_notification.delay(
                str(study.id), changes, str(user.id) if user is not None else None
            )
        except Exception as e:
            logger.warning("[NOTIFY] Could not enqueue share update for %s: %s", study.accession, e)

    def track_event(self, name: str, props: Dict[str, Any], user: Optional["User"]) -> None:
        from ingest_orchestrator.jobs.tasks.notifications import record_telemetry_event

        try:
            record_telemetry_event.delay(name, props, user.metrics_uuid if user is not None else None)
        except Exception as e:
            logger.warning("[NOTIFY] Could not enqueue telemetry event %s: %s", name, e)
