"""
Bundle resolution for multi-file uploads.

Some file types only make sense together (a sparse matrix with its genes and
barcodes files, a BAM with its index, a cluster with its coordinate labels).
The parts can arrive in any order: a child that arrives first records its
parent's id in a staging entry, and whichever part arrives last creates the
bundle and attaches the other members.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ingest_orchestrator.constants import requirement_for_child, requirement_for_parent
from ingest_orchestrator.database.models import (
    BundleStagingEntry,
    Study,
    StudyFile,
    StudyFileBundle,
)
from ingest_orchestrator.exceptions import ArgumentError
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)


def stage_bundle_member(db: Session, child: StudyFile, parent_file_id: UUID) -> BundleStagingEntry:
    """
    Record which parent a child file belongs to before the bundle exists.

    Args:
        db: Database session
        child: Child file (e.g. a 10X Genes File)
        parent_file_id: Id of the parent file, which may not be uploaded yet

    Returns:
        The staging entry for the child

    Raises:
        ArgumentError: If the child's file type cannot be bundled under a parent
    """
    requirement = requirement_for_child(child.file_type)
    if requirement is None:
        raise ArgumentError(f"'{child.file_type}' files cannot be added to a bundle")

    entry = db.get(BundleStagingEntry, child.id)
    if entry is None:
        entry = BundleStagingEntry(child_file_id=child.id)
        db.add(entry)
    entry.study_id = child.study_id
    entry.parent_file_type = requirement.parent_type.value
    entry.staging_key = requirement.staging_key
    entry.parent_file_id = parent_file_id
    db.flush()
    logger.debug(
        "[BUNDLE] Staged %s under %s=%s", child.name, requirement.staging_key, parent_file_id
    )
    return entry


def initialize_from_parent(db: Session, study: Study, parent: StudyFile) -> StudyFileBundle:
    """Get or create the bundle owned by parent. The parent is always a member."""
    bundle = db.query(StudyFileBundle).filter(StudyFileBundle.parent_id == parent.id).first()
    if bundle is None:
        if requirement_for_parent(parent.file_type) is None:
            raise ArgumentError(f"'{parent.file_type}' files cannot be the parent of a bundle")
        bundle = StudyFileBundle(study_id=study.id, bundle_type=parent.file_type)
        bundle.parent = parent
        db.add(bundle)
        logger.info("[BUNDLE] Created %s bundle for %s in %s", parent.file_type, parent.name, study.accession)
    parent.bundle = bundle
    db.flush()
    return bundle


def add_files(db: Session, bundle: StudyFileBundle, *study_files: StudyFile) -> StudyFileBundle:
    for study_file in study_files:
        study_file.bundle = bundle
        logger.info("[BUNDLE] Added %s to bundle for %s", study_file.name, bundle.parent.name)
    db.flush()
    return bundle


def resolve_bundle(db: Session, study_file: StudyFile, study: Study) -> Optional[StudyFileBundle]:
    """
    Attach study_file to its bundle, creating the bundle when the other part is already present.

    A no-op returning the existing bundle when the file is already bundled.
    Returns None when there is nothing to bundle yet.
    """
    if study_file.bundle is not None:
        return study_file.bundle

    parent_requirement = requirement_for_parent(study_file.file_type)
    if parent_requirement is not None:
        child_types = [child_type.value for child_type in parent_requirement.child_types]
        staged_children = (
            db.query(StudyFile)
            .join(BundleStagingEntry, BundleStagingEntry.child_file_id == StudyFile.id)
            .filter(
                BundleStagingEntry.parent_file_id == study_file.id,
                BundleStagingEntry.staging_key == parent_requirement.staging_key,
                StudyFile.file_type.in_(child_types),
                StudyFile.study_id == study.id,
                StudyFile.queued_for_deletion.is_(False),
            )
            .all()
        )
        if not staged_children:
            return None
        bundle = initialize_from_parent(db, study, study_file)
        return add_files(db, bundle, *staged_children)

    child_requirement = requirement_for_child(study_file.file_type)
    if child_requirement is None:
        return None

    entry = db.get(BundleStagingEntry, study_file.id)
    if entry is None or entry.staging_key != child_requirement.staging_key:
        return None

    # parent may not be uploaded yet, or may be queued for deletion
    parent = db.get(StudyFile, entry.parent_file_id)
    if (
        parent is None
        or parent.study_id != study.id
        or parent.file_type != child_requirement.parent_type.value
        or parent.queued_for_deletion
    ):
        return None

    bundle = initialize_from_parent(db, study, parent)
    return add_files(db, bundle, study_file)
