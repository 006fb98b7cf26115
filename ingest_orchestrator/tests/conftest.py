"""
Pytest configuration and shared fixtures.

Provides:
- An in-memory SQLite database built from the models
- Factories for users, studies, files and clusterings
- Recording fakes for the job submitter, notifier and batch service
"""

import os
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "true")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("METRICS_URL", "")

from ingest_orchestrator.clients.batch_client import BatchApiClient
from ingest_orchestrator.constants import ParseStatus
from ingest_orchestrator.database.base import Base, configure_engine, get_session_local
from ingest_orchestrator.database.models import (
    CellMetadatum,
    ClusterGroup,
    Study,
    StudyFile,
    User,
)
from ingest_orchestrator.exceptions import BatchApiError


class FakeSubmitter:
    """Records job specs and storage pushes instead of enqueueing tasks."""

    def __init__(self):
        self.specs = []
        self.pushed = []

    def submit(self, spec) -> None:
        self.specs.append(spec)

    def push_to_storage(self, study_file) -> None:
        self.pushed.append(study_file)


class FakeNotifier:
    """Records share updates and telemetry events."""

    def __init__(self):
        self.share_updates = []
        self.events = []

    def share_update(self, study, changes, user) -> None:
        self.share_updates.append((study, changes, user))

    def track_event(self, name, props, user) -> None:
        self.events.append((name, props, user))


class FakeBatchClient(BatchApiClient):
    """Batch client backed by an in-memory job list."""

    def __init__(self, jobs: Optional[List[Dict[str, Any]]] = None):
        super().__init__(api_url="https://batch.test/v1", project="test-project", region="us-central1", api_token="token")
        self.jobs = list(jobs or [])
        self.submitted = []

    def list_jobs(self, page_token: Optional[str] = None) -> Dict[str, Any]:
        return {"jobs": list(self.jobs)}

    def get_job(self, name: str) -> Dict[str, Any]:
        for job in self.jobs:
            if job.get("name") == name:
                return job
        raise BatchApiError(f"GET {name} failed (404): not found", status_code=404)

    def add_job(self, name: str, state: str, commands: Optional[List[str]] = None) -> Dict[str, Any]:
        job = {
            "name": name,
            "status": {"state": state},
            "taskGroups": [{"taskSpec": {"runnables": [{"container": {"commands": list(commands or [])}}]}}],
        }
        self.jobs.append(job)
        return job


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    configure_engine(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = get_session_local()()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def batch_client():
    return FakeBatchClient()


@pytest.fixture
def user(db):
    user = User(email="owner@example.org", metrics_uuid="metrics-1234")
    db.add(user)
    db.flush()
    return user


@pytest.fixture
def study(db, user):
    study = Study(accession="SCP101", name="Test Study", user=user, bucket_id="test-bucket")
    db.add(study)
    db.flush()
    return study


@pytest.fixture
def make_file(db, study):
    """Factory for study files; files are uploaded and already pushed unless told otherwise."""

    def _make_file(name: str, file_type: str, **kwargs) -> StudyFile:
        kwargs.setdefault("parse_status", ParseStatus.UPLOADED.value)
        kwargs.setdefault("upload_file_name", name)
        kwargs.setdefault("remote_pushed", True)
        study_file = StudyFile(study=kwargs.pop("study", study), name=name, file_type=file_type, **kwargs)
        db.add(study_file)
        db.flush()
        return study_file

    return _make_file


@pytest.fixture
def make_cluster(db, study, make_file):
    """Factory for a clustering with cluster-scoped annotations."""

    def _make_cluster(name: str = "umap", cell_names=None, annotations=None, **kwargs) -> ClusterGroup:
        cluster_file = kwargs.pop("study_file", None) or make_file(f"{name}.tsv", "Cluster")
        cell_names = cell_names or ["A", "B", "C", "D"]
        annotations = annotations or {}
        cluster_group = ClusterGroup(
            study=study,
            study_file=cluster_file,
            name=name,
            cell_names=cell_names,
            cell_annotations=[
                {"name": annotation_name, "type": "group", "values": sorted(set(labels))}
                for annotation_name, labels in annotations.items()
            ],
            annotation_values=annotations,
            **kwargs,
        )
        db.add(cluster_group)
        db.flush()
        return cluster_group

    return _make_cluster


@pytest.fixture
def make_metadatum(db, study, make_file):
    """Factory for study-scoped group annotations from a metadata file."""

    def _make_metadatum(name: str, cell_values: Dict[str, str], annotation_type: str = "group") -> CellMetadatum:
        metadata_file = study.metadata_file() or make_file("metadata.tsv", "Metadata")
        metadatum = CellMetadatum(
            study=study,
            study_file_id=metadata_file.id,
            name=name,
            annotation_type=annotation_type,
            values=sorted(set(cell_values.values())),
            cell_values=cell_values,
        )
        db.add(metadatum)
        db.flush()
        return metadatum

    return _make_metadatum
