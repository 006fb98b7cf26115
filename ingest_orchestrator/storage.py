"""Study bucket storage backends."""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from ingest_orchestrator.config import get_config
from ingest_orchestrator.exceptions import StorageError
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)


class StorageBackend(ABC):
    """Abstract base class for study bucket storage."""

    @abstractmethod
    def upload_file(self, local_path: str, bucket: str, key: str) -> str:
        """Copy a local file into a bucket and return its URL."""
        pass

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""
        pass

    @abstractmethod
    def delete_file(self, bucket: str, key: str) -> bool:
        """Delete an object. Returns True if successful."""
        pass


class LocalStorageBackend(StorageBackend):
    """Buckets as directories under a local root."""

    def __init__(self, base_path: str = "data/buckets"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, bucket: str, key: str) -> Path:
        return self.base_path / bucket / key.lstrip("/")

    def upload_file(self, local_path: str, bucket: str, key: str) -> str:
        source = Path(local_path)
        if not source.exists():
            raise StorageError(f"File not found: {source}")
        target = self._full_path(bucket, key)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return f"s3://{bucket}/{key}"

    def exists(self, bucket: str, key: str) -> bool:
        return self._full_path(bucket, key).exists()

    def delete_file(self, bucket: str, key: str) -> bool:
        full_path = self._full_path(bucket, key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False


class S3StorageBackend(StorageBackend):
    """AWS S3 storage backend; each study bucket_id is an S3 bucket."""

    def __init__(
        self,
        region_name: str = "us-east-1",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
    ):
        session = boto3.Session(
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            region_name=region_name,
        )
        self.s3_client = session.client("s3")

    def upload_file(self, local_path: str, bucket: str, key: str) -> str:
        try:
            self.s3_client.upload_file(local_path, bucket, key)
        except (ClientError, OSError) as e:
            raise StorageError(f"Failed to upload {local_path} to s3://{bucket}/{key}: {e}")
        return f"s3://{bucket}/{key}"

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                return False
            raise StorageError(f"Failed to check S3 existence: {e}")

    def delete_file(self, bucket: str, key: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            logger.warning("[STORAGE] Failed to delete s3://%s/%s: %s", bucket, key, e)
            return False


def get_storage_backend() -> StorageBackend:
    """Build the backend selected by STORAGE_BACKEND."""
    cfg = get_config().storage
    if cfg.backend == "s3":
        return S3StorageBackend(region_name=cfg.s3_region)
    if cfg.backend == "local":
        return LocalStorageBackend(cfg.local_root)
    raise StorageError(f"Unknown storage backend: {cfg.backend}")


def push_study_file(db, study_file, backend: Optional[StorageBackend] = None) -> str:
    """
    Push a locally staged upload to its study bucket.

    Args:
        db: Database session
        study_file: StudyFile with a local_path
        backend: Storage backend (defaults to the configured one)

    Returns:
        Remote URL of the file
    """
    if study_file.remote_pushed:
        return study_file.remote_url
    if not study_file.local_path:
        raise StorageError(f"{study_file.name} has no local copy to push")

    backend = backend or get_storage_backend()
    key = study_file.remote_location
    url = backend.upload_file(study_file.local_path, study_file.study.bucket_id, key)
    study_file.bucket_location = key
    study_file.remote_pushed = True
    db.flush()
    logger.info("[STORAGE] Pushed %s to %s", study_file.name, url)
    return url
