"""
Database layer for the ingest orchestrator.

This package provides:
- SQLAlchemy models for studies, study files, bundles and analysis results
- Database connection and session management
- Alembic migration support
"""

from ingest_orchestrator.database.base import Base, get_db, get_engine, get_session_local, init_db

# Import models to register them with Base
from ingest_orchestrator.database import models  # noqa: F401

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_db",
    "models",
]
