"""
SQLAlchemy models for study ingest orchestration.

Studies own uploaded files, multi-file bundles, clustering and metadata
annotations, and differential expression results. Identifiers are UUIDs and
list/dict attributes are stored as JSON so the same models run on Postgres
and on the in-memory SQLite database used by the test suite.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, relationship

from ingest_orchestrator.constants import (
    BUNDLE_REQUIREMENTS,
    GROUP_VIZ_MAX_VALUES,
    GROUP_VIZ_MIN_VALUES,
    PARSEABLE_TYPES,
    UNFINISHED_UPLOAD_STATES,
    FileType,
    ParseStatus,
)
from ingest_orchestrator.database.base import Base


def generate_uuid() -> uuid.UUID:
    """
    Generate a new UUID for use as default.

    Returns:
        A new UUID4 instance
    """
    return uuid.uuid4()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Account that uploads files and requests analyses."""

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    metrics_uuid = Column(String(64), nullable=False, default=lambda: str(uuid.uuid4()))
    weekly_de_quota = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=_utcnow, nullable=False)


class Study(Base):
    """A study: container of uploaded files, annotations and results."""

    __tablename__ = "studies"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    accession = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(500), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    bucket_id = Column(String(255), nullable=False)
    queued_for_deletion = Column(Boolean, default=False, nullable=False)
    detached = Column(Boolean, default=False, nullable=False)

    # {"cluster": name, "annotation": "name--type--scope", "override_viz_limit_annotations": [...]}
    default_options = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    user: Mapped[Optional["User"]] = relationship(foreign_keys=[user_id])
    shares: Mapped[List["StudyShare"]] = relationship(
        back_populates="study", cascade="all, delete-orphan"
    )
    study_files: Mapped[List["StudyFile"]] = relationship(
        back_populates="study", cascade="all, delete-orphan"
    )
    cluster_groups: Mapped[List["ClusterGroup"]] = relationship(
        back_populates="study", cascade="all, delete-orphan"
    )
    cell_metadata: Mapped[List["CellMetadatum"]] = relationship(
        back_populates="study", cascade="all, delete-orphan"
    )

    @property
    def override_viz_limit_annotations(self) -> List[str]:
        return list((self.default_options or {}).get("override_viz_limit_annotations") or [])

    @property
    def can_visualize_clusters(self) -> bool:
        return len(self.cluster_groups) > 0

    def metadata_file(self) -> Optional["StudyFile"]:
        """Active metadata file, if any."""
        for study_file in self.study_files:
            if study_file.file_type == FileType.METADATA.value and not study_file.queued_for_deletion:
                return study_file
        return None

    def default_cluster(self) -> Optional["ClusterGroup"]:
        """Default cluster from study options, falling back to the first cluster."""
        name = (self.default_options or {}).get("cluster")
        if name:
            for cluster in self.cluster_groups:
                if cluster.name == name:
                    return cluster
        return self.cluster_groups[0] if self.cluster_groups else None

    def default_annotation(self) -> Optional[str]:
        """Default annotation identifier as name--type--scope."""
        annotation = (self.default_options or {}).get("annotation")
        if annotation:
            return annotation
        cluster = self.default_cluster()
        if cluster and cluster.cell_annotations:
            first = cluster.cell_annotations[0]
            return f"{first['name']}--{first['type']}--cluster"
        for metadatum in self.cell_metadata:
            return f"{metadatum.name}--{metadatum.annotation_type}--study"
        return None


class StudyShare(Base):
    """Collaborator with access to a study."""

    __tablename__ = "study_shares"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    email = Column(String(255), nullable=False)

    study: Mapped["Study"] = relationship(back_populates="shares")


class StudyFile(Base):
    """An uploaded file belonging to a study."""

    __tablename__ = "study_files"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    name = Column(String(500), nullable=False)
    upload_file_name = Column(String(500), nullable=True)
    file_type = Column(String(64), nullable=False, index=True)
    parse_status = Column(String(32), nullable=False, default=ParseStatus.UPLOADED.value, index=True)
    options = Column(JSON, nullable=True)
    bundle_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("study_file_bundles.id", use_alter=True, name="fk_study_files_bundle_id"),
        nullable=True,
        index=True,
    )
    queued_for_deletion = Column(Boolean, default=False, nullable=False)

    # Storage
    upload_file_size = Column(BigInteger, nullable=True)
    local_path = Column(String(1000), nullable=True)
    bucket_location = Column(String(1000), nullable=True)
    remote_pushed = Column(Boolean, default=False, nullable=False)

    use_metadata_convention = Column(Boolean, default=False, nullable=False)
    is_raw_counts = Column(Boolean, default=False, nullable=False)
    cell_names = Column(JSON, nullable=True)  # cells covered by an expression matrix

    # In-flight markers
    parse_started_at = Column(DateTime, nullable=True)
    remote_job_name = Column(String(500), nullable=True)
    remote_confirmed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    study: Mapped["Study"] = relationship(back_populates="study_files")
    bundle: Mapped[Optional["StudyFileBundle"]] = relationship(
        back_populates="study_files", foreign_keys=[bundle_id], post_update=True
    )
    # bundle this file is the parent of, destroyed along with it
    owned_bundle: Mapped[Optional["StudyFileBundle"]] = relationship(
        back_populates="parent",
        foreign_keys="StudyFileBundle.parent_id",
        uselist=False,
        cascade="all, delete-orphan",
    )
    ann_data_file_info: Mapped[Optional["AnnDataFileInfo"]] = relationship(
        back_populates="study_file", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def parseable(self) -> bool:
        return self.file_type in {file_type.value for file_type in PARSEABLE_TYPES}

    @property
    def parsing(self) -> bool:
        return self.parse_status == ParseStatus.PARSING.value

    @property
    def upload_complete(self) -> bool:
        return self.parse_status not in UNFINISHED_UPLOAD_STATES

    @property
    def remote_location(self) -> str:
        return self.bucket_location or self.upload_file_name or self.name

    @property
    def remote_url(self) -> str:
        return f"s3://{self.study.bucket_id}/{self.remote_location}"

    @property
    def is_anndata(self) -> bool:
        return self.file_type == FileType.ANNDATA.value

    @property
    def is_reference_anndata(self) -> bool:
        return self.is_anndata and bool(self.ann_data_file_info and self.ann_data_file_info.reference_file)

    @property
    def is_viz_anndata(self) -> bool:
        return self.is_anndata and not self.is_reference_anndata

    @property
    def needs_raw_counts_extraction(self) -> bool:
        """Raw counts were declared but the expression data has already been extracted without them."""
        info = self.ann_data_file_info
        if not self.is_anndata or info is None:
            return False
        return bool(self.is_raw_counts and info.raw_location and info.has_expression and not info.has_raw_counts)

    def __repr__(self) -> str:
        return f"<StudyFile {self.name} ({self.file_type})>"


class BundleStagingEntry(Base):
    """Parent file id recorded by a bundle child that arrived before its bundle existed."""

    __tablename__ = "bundle_staging_entries"

    child_file_id = Column(Uuid(as_uuid=True), ForeignKey("study_files.id"), primary_key=True)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    parent_file_type = Column(String(64), nullable=False)
    staging_key = Column(String(32), nullable=False)
    # plain column: the parent may not have been uploaded yet
    parent_file_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)


class StudyFileBundle(Base):
    """A parent file plus the companion files it needs before it can be parsed."""

    __tablename__ = "study_file_bundles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    parent_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("study_files.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    bundle_type = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    parent: Mapped["StudyFile"] = relationship(back_populates="owned_bundle", foreign_keys=[parent_id])
    # every member, parent included
    study_files: Mapped[List["StudyFile"]] = relationship(
        back_populates="bundle", foreign_keys="StudyFile.bundle_id", post_update=True
    )

    @property
    def requirement(self):
        return BUNDLE_REQUIREMENTS.get(FileType(self.bundle_type))

    def bundled_files(self) -> List["StudyFile"]:
        """Non-parent members not queued for deletion."""
        return [
            study_file
            for study_file in self.study_files
            if study_file.id != self.parent_id and not study_file.queued_for_deletion
        ]

    def bundled_file_by_type(self, file_type: str) -> Optional["StudyFile"]:
        for study_file in self.bundled_files():
            if study_file.file_type == file_type:
                return study_file
        return None

    def missing_requirements(self) -> List[str]:
        """Required child types with no usable member."""
        requirement = self.requirement
        if requirement is None:
            return []
        missing = []
        for child_type in requirement.child_types:
            member = self.bundled_file_by_type(child_type.value)
            if member is None or not member.upload_complete:
                missing.append(child_type.value)
        return missing

    def is_completed(self) -> bool:
        """Every required child present and uploaded, and nothing queued for deletion."""
        if self.parent is None or self.parent.queued_for_deletion:
            return False
        if any(study_file.queued_for_deletion for study_file in self.study_files):
            return False
        return not self.missing_requirements()

    def members(self) -> List["StudyFile"]:
        return [self.parent] + self.bundled_files()


class AnnDataFileInfo(Base):
    """Extraction details for an AnnData upload."""

    __tablename__ = "ann_data_file_infos"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_file_id = Column(
        Uuid(as_uuid=True), ForeignKey("study_files.id"), nullable=False, unique=True
    )
    reference_file = Column(Boolean, default=True, nullable=False)
    raw_location = Column(String(255), nullable=True)
    # [{"data_type": "cluster", "name": "umap", "obsm_key_name": "X_umap"}, ...]
    data_fragments = Column(JSON, nullable=True)
    has_clusters = Column(Boolean, default=False, nullable=False)
    has_metadata = Column(Boolean, default=False, nullable=False)
    has_expression = Column(Boolean, default=False, nullable=False)
    has_raw_counts = Column(Boolean, default=False, nullable=False)

    study_file: Mapped["StudyFile"] = relationship(back_populates="ann_data_file_info")

    @property
    def obsm_key_names(self) -> List[str]:
        return [
            fragment["obsm_key_name"]
            for fragment in (self.data_fragments or [])
            if fragment.get("data_type") == "cluster" and fragment.get("obsm_key_name")
        ]

    def find_fragment(self, data_type: str, name: Optional[str] = None) -> Optional[Dict]:
        for fragment in self.data_fragments or []:
            if fragment.get("data_type") != data_type:
                continue
            if name is None or fragment.get("name") == name:
                return fragment
        return None


class ClusterGroup(Base):
    """A clustering (coordinate set) with its cluster-scoped annotations."""

    __tablename__ = "cluster_groups"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    study_file_id = Column(Uuid(as_uuid=True), ForeignKey("study_files.id"), nullable=False)
    name = Column(String(500), nullable=False)
    cell_names = Column(JSON, nullable=True)
    # [{"name": ..., "type": "group"|"numeric", "values": [...]}]
    cell_annotations = Column(JSON, nullable=True)
    # {"annotation name": [label per cell, aligned with cell_names]}
    annotation_values = Column(JSON, nullable=True)

    study: Mapped["Study"] = relationship(back_populates="cluster_groups")
    study_file: Mapped["StudyFile"] = relationship(foreign_keys=[study_file_id])

    def cell_annotation(self, name: str) -> Optional[Dict]:
        for annotation in self.cell_annotations or []:
            if annotation.get("name") == name:
                return annotation
        return None

    def can_visualize_cell_annotation(self, annotation: Dict) -> bool:
        if annotation.get("type") != "group":
            return True
        values = annotation.get("values") or []
        in_range = GROUP_VIZ_MIN_VALUES <= len(values) <= GROUP_VIZ_MAX_VALUES
        return in_range or annotation.get("name") in self.study.override_viz_limit_annotations


class CellMetadatum(Base):
    """A study-scoped cell annotation from the metadata file."""

    __tablename__ = "cell_metadata"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    study_file_id = Column(Uuid(as_uuid=True), ForeignKey("study_files.id"), nullable=False)
    name = Column(String(500), nullable=False)
    annotation_type = Column(String(32), nullable=False)
    values = Column(JSON, nullable=True)  # distinct labels
    cell_values = Column(JSON, nullable=True)  # {cell: label}

    study: Mapped["Study"] = relationship(back_populates="cell_metadata")

    def can_visualize(self) -> bool:
        if self.annotation_type != "group":
            return True
        in_range = GROUP_VIZ_MIN_VALUES <= len(self.values or []) <= GROUP_VIZ_MAX_VALUES
        return in_range or self.name in self.study.override_viz_limit_annotations


class DifferentialExpressionResult(Base):
    """Differential expression output for one cluster/annotation pair."""

    __tablename__ = "differential_expression_results"
    __table_args__ = (
        UniqueConstraint(
            "study_id",
            "cluster_group_id",
            "annotation_name",
            "annotation_scope",
            name="uq_de_result_cluster_annotation",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid)
    study_id = Column(Uuid(as_uuid=True), ForeignKey("studies.id"), nullable=False, index=True)
    cluster_group_id = Column(Uuid(as_uuid=True), ForeignKey("cluster_groups.id"), nullable=False)
    # set for author-uploaded results only
    study_file_id = Column(Uuid(as_uuid=True), ForeignKey("study_files.id"), nullable=True)
    annotation_name = Column(String(500), nullable=False)
    annotation_scope = Column(String(16), nullable=False)
    cluster_name = Column(String(500), nullable=True)
    one_vs_rest_comparisons = Column(JSON, nullable=True)
    pairwise_comparisons = Column(JSON, nullable=True)  # {group_a: [group_b, ...]}
    matrix_file_id = Column(Uuid(as_uuid=True), nullable=True)
    computational_method = Column(String(64), nullable=False, default="wilcoxon")
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    cluster_group: Mapped["ClusterGroup"] = relationship(foreign_keys=[cluster_group_id])

    @property
    def is_automated(self) -> bool:
        return self.study_file_id is None

    def has_pairwise_comparison(self, group1: str, group2: str) -> bool:
        pairwise = self.pairwise_comparisons or {}
        return group2 in (pairwise.get(group1) or []) or group1 in (pairwise.get(group2) or [])
