# ingest_orchestrator/config.py

"""
Central configuration for the ingest orchestrator.

Connection settings, batch service coordinates and feature flags are loaded
from environment variables or a .env file in the working directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


# ---------------------------------------------------------
#  Postgres
# ---------------------------------------------------------

POSTGRES_URL = os.getenv("POSTGRES_URL", "")  # Full connection string (optional)
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
POSTGRES_DB = os.getenv("POSTGRES_DB", "ingest_orchestrator")
POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "")
POSTGRES_ECHO = os.getenv("POSTGRES_ECHO", "false").lower() == "true"

# ---------------------------------------------------------
#  Remote batch service
# ---------------------------------------------------------

BATCH_API_URL = os.getenv("BATCH_API_URL", "https://batch.googleapis.com/v1")
BATCH_PROJECT = os.getenv("BATCH_PROJECT", "")
BATCH_REGION = os.getenv("BATCH_REGION", "us-central1")
BATCH_API_TOKEN = os.getenv("BATCH_API_TOKEN", "")
BATCH_REQUEST_TIMEOUT = int(os.getenv("BATCH_REQUEST_TIMEOUT", "30"))
BATCH_DEFAULT_MACHINE_TYPE = os.getenv("BATCH_DEFAULT_MACHINE_TYPE", "n2d-highmem-4")
BATCH_BOOT_DISK_SIZE_GB = int(os.getenv("BATCH_BOOT_DISK_SIZE_GB", "300"))
INGEST_DOCKER_IMAGE = os.getenv("INGEST_DOCKER_IMAGE", "ingest-pipeline:latest")

# ---------------------------------------------------------
#  Storage
# ---------------------------------------------------------

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
STORAGE_LOCAL_ROOT = os.getenv("STORAGE_LOCAL_ROOT", "data/buckets")
STORAGE_S3_REGION = os.getenv("STORAGE_S3_REGION", "us-east-1")

# ---------------------------------------------------------
#  Ingest behavior
# ---------------------------------------------------------

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
ANNDATA_INGEST_ENABLED = os.getenv("ANNDATA_INGEST_ENABLED", "true").lower() == "true"
PARSE_TIMEOUT_MINUTES = int(os.getenv("PARSE_TIMEOUT_MINUTES", "60"))
DE_WEEKLY_USER_QUOTA = int(os.getenv("DE_WEEKLY_USER_QUOTA", "5"))

# ---------------------------------------------------------
#  Telemetry
# ---------------------------------------------------------

METRICS_URL = os.getenv("METRICS_URL", "")
METRICS_TIMEOUT = int(os.getenv("METRICS_TIMEOUT", "10"))


# ---------------------------------------------------------
#  CONFIG STRUCTURES
# ---------------------------------------------------------


@dataclass(frozen=True)
class PostgresConfig:
    url: str = POSTGRES_URL
    host: str = POSTGRES_HOST
    port: int = POSTGRES_PORT
    db: str = POSTGRES_DB
    user: str = POSTGRES_USER
    password: str = POSTGRES_PASSWORD
    echo: bool = POSTGRES_ECHO


@dataclass(frozen=True)
class BatchConfig:
    api_url: str = BATCH_API_URL
    project: str = BATCH_PROJECT
    region: str = BATCH_REGION
    api_token: str = BATCH_API_TOKEN
    request_timeout: int = BATCH_REQUEST_TIMEOUT
    default_machine_type: str = BATCH_DEFAULT_MACHINE_TYPE
    boot_disk_size_gb: int = BATCH_BOOT_DISK_SIZE_GB
    docker_image: str = INGEST_DOCKER_IMAGE


@dataclass(frozen=True)
class StorageConfig:
    backend: str = STORAGE_BACKEND
    local_root: str = STORAGE_LOCAL_ROOT
    s3_region: str = STORAGE_S3_REGION


@dataclass(frozen=True)
class IngestConfig:
    environment: str = ENVIRONMENT
    anndata_ingest_enabled: bool = ANNDATA_INGEST_ENABLED
    parse_timeout_minutes: int = PARSE_TIMEOUT_MINUTES
    de_weekly_user_quota: int = DE_WEEKLY_USER_QUOTA


@dataclass(frozen=True)
class MetricsConfig:
    url: str = METRICS_URL
    timeout: int = METRICS_TIMEOUT


@dataclass(frozen=True)
class AppConfig:
    postgres: PostgresConfig
    batch: BatchConfig
    storage: StorageConfig
    ingest: IngestConfig
    metrics: MetricsConfig


# ---------------------------------------------------------
#  SINGLETON ACCESSOR
# ---------------------------------------------------------

_config_singleton: AppConfig | None = None


def get_config() -> AppConfig:
    global _config_singleton
    if _config_singleton is None:
        _config_singleton = AppConfig(
            postgres=PostgresConfig(),
            batch=BatchConfig(),
            storage=StorageConfig(),
            ingest=IngestConfig(),
            metrics=MetricsConfig(),
        )
    return _config_singleton
