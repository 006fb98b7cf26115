"""Celery tasks run from the Beat schedule."""

from typing import List, Optional

from ingest_orchestrator.jobs.celery_app import celery_app
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)


@celery_app.task(queue='scheduled')
def backfill_differential_expression(accessions: Optional[List[str]] = None) -> dict:
    """
    Submit DE jobs for studies with newly eligible annotations.

    Args:
        accessions: Optional accessions to limit the run to

    Returns:
        Dict with per-study job counts and total_jobs
    """
    from ingest_orchestrator.analysis.differential_expression import backfill_new_results

    logger.info("[SCHEDULED] Starting DE backfill")
    results = backfill_new_results(accessions)
    logger.info("[SCHEDULED] DE backfill complete: %s jobs", results.get("total_jobs", 0))
    return results


@celery_app.task(queue='scheduled')
def reconcile_stranded_parses(timeout_minutes: Optional[int] = None) -> dict:
    """Resolve files left in parsing whose job never started or already finished."""
    from ingest_orchestrator.maintenance.parse_sweep import reconcile_stranded_parses as sweep

    return sweep(timeout_minutes=timeout_minutes)


@celery_app.task(queue='scheduled')
def reset_de_user_quotas() -> dict:
    """Zero weekly DE job counts for all users."""
    from ingest_orchestrator.analysis.differential_expression import reset_all_user_quotas
    from ingest_orchestrator.database.session import db_session

    with db_session() as db:
        updated = reset_all_user_quotas(db)
    logger.info("[SCHEDULED] Reset DE quota for %d users", updated)
    return {"status": "completed", "users_reset": updated}
