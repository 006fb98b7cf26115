"""
Logger setup shared by dispatch code and Celery workers.

Worker pools run several processes against the same stream, so every line
carries the process id. The level comes from ``INGEST_LOG_LEVEL`` when set,
otherwise from the ``LOG_LEVEL`` shared with other services.
"""

import logging
import os
import sys

PACKAGE_LOGGER = "ingest_orchestrator"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [pid %(process)d] %(name)s - %(message)s"


def _level() -> int:
    level_name = os.getenv("INGEST_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")
    return getattr(logging, level_name.upper(), logging.INFO)


def get_logger(name: str = PACKAGE_LOGGER) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(_level())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    return logger
