"""Exception types raised by the ingest orchestrator."""

from __future__ import annotations

from typing import Optional


class ArgumentError(ValueError):
    """Requested parameters do not validate (annotation, cluster, job parameters, file/action)."""


class BatchApiError(RuntimeError):
    """Non-success response from the remote batch service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BatchServerError(BatchApiError):
    """5xx from the batch service; safe to retry."""


class StorageError(RuntimeError):
    """A file could not be pushed to or read from study storage."""
