"""Celery Beat schedule configuration."""

from celery.schedules import crontab

CELERYBEAT_SCHEDULE = {
    # Weekly DE backfill for studies with new eligible annotations (Sundays at 1:00 AM UTC)
    'weekly-de-backfill': {
        'task': 'ingest_orchestrator.jobs.tasks.scheduled.backfill_differential_expression',
        'schedule': crontab(hour=1, minute=0, day_of_week=0),
        'options': {'queue': 'scheduled'},
    },
    # Hourly recovery of files stuck in parsing
    'hourly-stranded-parse-sweep': {
        'task': 'ingest_orchestrator.jobs.tasks.scheduled.reconcile_stranded_parses',
        'schedule': crontab(minute=15),
        'options': {'queue': 'scheduled'},
    },
    # Weekly reset of per-user DE job counts (Mondays at midnight UTC)
    'weekly-de-quota-reset': {
        'task': 'ingest_orchestrator.jobs.tasks.scheduled.reset_de_user_quotas',
        'schedule': crontab(hour=0, minute=0, day_of_week=1),
        'options': {'queue': 'scheduled'},
    },
}
