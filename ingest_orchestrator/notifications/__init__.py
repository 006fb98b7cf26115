"""Notification module: collaborator email and telemetry."""
from __future__ import annotations

from ingest_orchestrator.notifications.email_service import (
    is_email_configured,
    send_email,
    send_share_update,
)
from ingest_orchestrator.notifications.metrics import log_event
from ingest_orchestrator.notifications.notifier import CeleryNotifier, Notifier

__all__ = [
    "CeleryNotifier",
    "Notifier",
    "is_email_configured",
    "log_event",
    "send_email",
    "send_share_update",
]
