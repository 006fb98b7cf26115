# ingest_orchestrator/__init__.py

"""
Ingest orchestration for single-cell study files.

This package centralizes:
- config (database, batch service, storage, feature flags)
- bundle resolution and parse dispatch for uploaded study files
- differential expression eligibility, dedup and fleet backfill
- the Celery job queue that hands work to the remote batch service
"""

__all__ = ["config"]
