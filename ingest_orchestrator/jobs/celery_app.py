"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_process_init

celery_app = Celery('ingest_orchestrator')
celery_app.config_from_object('ingest_orchestrator.jobs.config')
celery_app.autodiscover_tasks(['ingest_orchestrator.jobs'])


@worker_process_init.connect
def init_worker(**kwargs):
    """Initialize worker process for SQLAlchemy fork safety."""
    from ingest_orchestrator.database.base import get_engine
    engine = get_engine()
    engine.dispose()  # Force new connections in worker
