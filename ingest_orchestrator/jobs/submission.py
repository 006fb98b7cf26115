"""
Job submission port.

Orchestration code describes work as a ``JobSpec`` and hands it to a
``JobSubmitter``. The default submitter enqueues Celery tasks and returns
immediately; tests substitute a recording fake.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import TYPE_CHECKING, Optional, Protocol
from uuid import UUID

from ingest_orchestrator.logging_utils import get_logger

if TYPE_CHECKING:
    from ingest_orchestrator.database.models import StudyFile
    from ingest_orchestrator.ingestion.parameters import IngestParameters

logger = get_logger(__name__)


class JobAction(str, PyEnum):
    """Actions understood by the ingest pipeline."""
    INGEST_CLUSTER = "ingest_cluster"
    INGEST_COORDINATE_LABELS = "ingest_coordinate_labels"
    INGEST_EXPRESSION = "ingest_expression"
    INGEST_CELL_METADATA = "ingest_cell_metadata"
    INGEST_ANNDATA = "ingest_anndata"
    INGEST_DIFFERENTIAL_EXPRESSION = "ingest_differential_expression"
    DIFFERENTIAL_EXPRESSION = "differential_expression"
    INGEST_PRECOMPUTED_SCORES = "ingest_precomputed_scores"
    EXTRACT_ANALYSIS_OUTPUT = "extract_analysis_output"


@dataclass(frozen=True)
class JobSpec:
    """A single unit of remote work for one study file."""
    study_id: UUID
    study_file_id: UUID
    user_id: Optional[UUID]
    action: JobAction
    params: Optional["IngestParameters"] = None
    reparse: bool = False
    persist_on_fail: bool = False


class JobSubmitter(Protocol):
    """Port through which orchestration code hands off work."""

    def submit(self, spec: JobSpec) -> None:
        ...

    def push_to_storage(self, study_file: "StudyFile") -> None:
        ...


class CeleryJobSubmitter:
    """Enqueue jobs as Celery tasks. Never waits for completion."""

    def submit(self, spec: JobSpec) -> None:
        from ingest_orchestrator.jobs.tasks.ingest import initialize_precomputed_scores, run_ingest_job

        payload = spec.params.to_payload() if spec.params is not None else None
        args = dict(
            study_id=str(spec.study_id),
            study_file_id=str(spec.study_file_id),
            user_id=str(spec.user_id) if spec.user_id else None,
            action=spec.action.value,
            params=payload,
            reparse=spec.reparse,
            persist_on_fail=spec.persist_on_fail,
        )
        if spec.action == JobAction.INGEST_PRECOMPUTED_SCORES:
            initialize_precomputed_scores.delay(**args)
        else:
            run_ingest_job.delay(**args)
        logger.info("[SUBMIT] Enqueued %s for study file %s", spec.action.value, spec.study_file_id)

    def push_to_storage(self, study_file: "StudyFile") -> None:
        from ingest_orchestrator.jobs.tasks.ingest import push_file_to_storage

        if study_file.remote_pushed:
            return
        push_file_to_storage.delay(str(study_file.id))
        logger.info("[SUBMIT] Enqueued storage push for %s", study_file.name)
