"""Celery task definitions for background processing."""

from .ingest import initialize_precomputed_scores, push_file_to_storage, run_ingest_job
from .notifications import record_telemetry_event, send_share_update_notification
from .scheduled import backfill_differential_expression, reconcile_stranded_parses, reset_de_user_quotas

__all__ = [
    "run_ingest_job",
    "initialize_precomputed_scores",
    "push_file_to_storage",
    "send_share_update_notification",
    "record_telemetry_event",
    "backfill_differential_expression",
    "reconcile_stranded_parses",
    "reset_de_user_quotas",
]
