"""Database session context manager."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

from ingest_orchestrator.database.base import get_db


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Commits when the block exits cleanly, rolls back and re-raises on error,
    and always returns the connection.
    """
    db_gen = get_db()
    db = next(db_gen)

    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        next(db_gen, None)
