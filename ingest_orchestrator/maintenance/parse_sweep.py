"""
Reconcile study files stuck in ``parsing``.

Dispatch sets ``parsing`` before the remote job exists. If the submission task
is lost, or the job finishes without anyone recording the outcome, the file
stays ``parsing`` forever and every later dispatch returns 405. The sweep
resolves both cases:

- no remote confirmation and started longer ago than the timeout -> failed
- remote-confirmed and the remote job has completed -> parsed or failed
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ingest_orchestrator.config import get_config
from ingest_orchestrator.constants import ParseStatus
from ingest_orchestrator.database.models import StudyFile
from ingest_orchestrator.database.session import db_session
from ingest_orchestrator.exceptions import BatchApiError
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)


def find_unconfirmed_parses(db: Session, cutoff: datetime) -> List[StudyFile]:
    """Files marked parsing before cutoff whose job was never confirmed."""
    return (
        db.query(StudyFile)
        .filter(
            StudyFile.parse_status == ParseStatus.PARSING.value,
            StudyFile.remote_confirmed_at.is_(None),
            StudyFile.parse_started_at < cutoff,
        )
        .all()
    )


def find_confirmed_parses(db: Session) -> List[StudyFile]:
    return (
        db.query(StudyFile)
        .filter(
            StudyFile.parse_status == ParseStatus.PARSING.value,
            StudyFile.remote_confirmed_at.isnot(None),
            StudyFile.remote_job_name.isnot(None),
        )
        .all()
    )


def reconcile_stranded_parses(
    timeout_minutes: Optional[int] = None,
    batch_client=None,
    dry_run: bool = False,
    db: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Move stranded ``parsing`` files to a terminal state.

    Args:
        timeout_minutes: Age after which an unconfirmed parse is abandoned
            (defaults to PARSE_TIMEOUT_MINUTES)
        batch_client: Client used to look up remote jobs
        dry_run: If True, only report what would change
        db: Database session

    Returns:
        Counts of files marked failed and parsed, plus lookup errors
    """
    if db is None:
        with db_session() as db:
            return reconcile_stranded_parses(timeout_minutes, batch_client, dry_run, db=db)

    if timeout_minutes is None:
        timeout_minutes = get_config().ingest.parse_timeout_minutes
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=timeout_minutes)

    results: Dict[str, Any] = {"dry_run": dry_run, "timed_out": 0, "parsed": 0, "failed": 0, "errors": []}

    for study_file in find_unconfirmed_parses(db, cutoff):
        logger.warning("[SWEEP] %s never confirmed a remote job; marking failed", study_file.name)
        results["timed_out"] += 1
        if not dry_run:
            study_file.parse_status = ParseStatus.FAILED.value

    confirmed = find_confirmed_parses(db)
    if confirmed:
        if batch_client is None:
            from ingest_orchestrator.clients.batch_client import BatchApiClient

            batch_client = BatchApiClient()

        # bundle members share one job
        files_by_job: Dict[str, List[StudyFile]] = defaultdict(list)
        for study_file in confirmed:
            files_by_job[study_file.remote_job_name].append(study_file)

        for job_name, study_files in files_by_job.items():
            try:
                job = batch_client.get_job(job_name)
            except BatchApiError as e:
                if e.status_code != 404:
                    logger.error("[SWEEP] Could not look up %s: %s", job_name, e)
                    results["errors"].append(job_name)
                    continue
                logger.warning("[SWEEP] Job %s no longer exists", job_name)
                state = "FAILED"
            else:
                if not batch_client.job_done(job):
                    continue
                state = batch_client.job_state(job)

            new_status = ParseStatus.PARSED if state == "SUCCEEDED" else ParseStatus.FAILED
            for study_file in study_files:
                logger.info("[SWEEP] %s finished as %s; marking %s", study_file.name, state, new_status.value)
                if not dry_run:
                    study_file.parse_status = new_status.value
            results["parsed" if new_status == ParseStatus.PARSED else "failed"] += len(study_files)

    if not dry_run:
        db.flush()
    logger.info(
        "[SWEEP] Stranded parse sweep: %d timed out, %d parsed, %d failed, %d lookup errors",
        results["timed_out"],
        results["parsed"],
        results["failed"],
        len(results["errors"]),
    )
    return results
