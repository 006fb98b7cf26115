"""Job submission and Celery background processing."""
