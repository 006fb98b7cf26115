"""
Database engine and session factory.

Provides the SQLAlchemy declarative base plus lazily created engine and
session factory for the orchestration tables.
"""

from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from ingest_orchestrator.config import get_config

Base = declarative_base()

# Initialized on first use
_engine = None
_SessionLocal = None


def get_engine():
    """
    Get or create the database engine.

    Returns:
        SQLAlchemy engine instance
    """
    global _engine

    if _engine is None:
        postgres_cfg = get_config().postgres

        if postgres_cfg.url:
            db_url = postgres_cfg.url
        else:
            db_url = (
                f"postgresql://{postgres_cfg.user}:{postgres_cfg.password}"
                f"@{postgres_cfg.host}:{postgres_cfg.port}/{postgres_cfg.db}"
            )

        _engine = create_engine(db_url, poolclass=NullPool, echo=postgres_cfg.echo)

    return _engine


def get_session_local():
    """
    Get or create the session factory.

    Returns:
        Session factory class
    """
    global _SessionLocal

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())

    return _SessionLocal


def configure_engine(engine) -> None:
    """Bind the module to an existing engine (worker bootstrap and tests)."""
    global _engine, _SessionLocal
    _engine = engine
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator:
    """
    Get a database session.

    Yields:
        Database session
    """
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables. Called after the models module has been imported."""
    from ingest_orchestrator.database import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
