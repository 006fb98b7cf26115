"""Tests for bundle resolution of multi-file uploads."""

from uuid import uuid4

import pytest

from ingest_orchestrator.database.models import BundleStagingEntry, Study, StudyFileBundle
from ingest_orchestrator.exceptions import ArgumentError
from ingest_orchestrator.ingestion.bundle_resolver import (
    initialize_from_parent,
    resolve_bundle,
    stage_bundle_member,
)


class TestStageBundleMember:
    """Test staging of a child's parent id."""

    def test_stage_records_requirement_key(self, db, make_file):
        genes = make_file("genes.tsv", "10X Genes File")
        parent_id = uuid4()

        entry = stage_bundle_member(db, genes, parent_id)

        assert entry.child_file_id == genes.id
        assert entry.parent_file_id == parent_id
        assert entry.staging_key == "matrix_id"
        assert entry.parent_file_type == "MM Coordinate Matrix"

    def test_restaging_updates_existing_entry(self, db, make_file):
        index = make_file("reads.bam.bai", "BAM Index")
        stage_bundle_member(db, index, uuid4())
        new_parent = uuid4()

        stage_bundle_member(db, index, new_parent)

        entries = db.query(BundleStagingEntry).all()
        assert len(entries) == 1
        assert entries[0].parent_file_id == new_parent
        assert entries[0].staging_key == "bam_id"

    def test_non_child_type_rejected(self, db, make_file):
        metadata = make_file("metadata.tsv", "Metadata")

        with pytest.raises(ArgumentError):
            stage_bundle_member(db, metadata, uuid4())


class TestResolveBundle:
    """Test that bundles form regardless of upload order."""

    def test_parent_first(self, db, study, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix")
        assert resolve_bundle(db, matrix, study) is None

        genes = make_file("genes.tsv", "10X Genes File")
        stage_bundle_member(db, genes, matrix.id)
        bundle = resolve_bundle(db, genes, study)
        assert bundle is not None
        assert bundle.parent_id == matrix.id
        assert not bundle.is_completed()
        assert bundle.missing_requirements() == ["10X Barcodes File"]

        barcodes = make_file("barcodes.tsv", "10X Barcodes File")
        stage_bundle_member(db, barcodes, matrix.id)
        assert resolve_bundle(db, barcodes, study) is bundle

        assert bundle.is_completed()
        assert {f.id for f in bundle.members()} == {matrix.id, genes.id, barcodes.id}

    def test_children_first(self, db, study, make_file):
        matrix_id = uuid4()
        genes = make_file("genes.tsv", "10X Genes File")
        barcodes = make_file("barcodes.tsv", "10X Barcodes File")
        stage_bundle_member(db, genes, matrix_id)
        stage_bundle_member(db, barcodes, matrix_id)

        # parent has not been uploaded yet
        assert resolve_bundle(db, genes, study) is None
        assert resolve_bundle(db, barcodes, study) is None

        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", id=matrix_id)
        bundle = resolve_bundle(db, matrix, study)

        assert bundle is not None
        assert bundle.is_completed()
        assert genes.bundle is bundle
        assert barcodes.bundle is bundle
        assert matrix.bundle is bundle

    def test_mixed_order(self, db, study, make_file):
        matrix_id = uuid4()
        barcodes = make_file("barcodes.tsv", "10X Barcodes File")
        stage_bundle_member(db, barcodes, matrix_id)
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", id=matrix_id)
        bundle = resolve_bundle(db, matrix, study)
        assert bundle.missing_requirements() == ["10X Genes File"]

        genes = make_file("genes.tsv", "10X Genes File")
        stage_bundle_member(db, genes, matrix_id)
        resolve_bundle(db, genes, study)

        assert bundle.is_completed()

    def test_idempotent(self, db, study, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix")
        genes = make_file("genes.tsv", "10X Genes File")
        stage_bundle_member(db, genes, matrix.id)

        first = resolve_bundle(db, genes, study)
        second = resolve_bundle(db, genes, study)
        third = resolve_bundle(db, matrix, study)

        assert first is second is third
        assert db.query(StudyFileBundle).count() == 1
        assert len(first.study_files) == 2

    def test_unbundled_type_returns_none(self, db, study, make_file):
        metadata = make_file("metadata.tsv", "Metadata")

        assert resolve_bundle(db, metadata, study) is None

    def test_parent_in_other_study_ignored(self, db, study, user, make_file):
        other = Study(accession="SCP202", name="Other", user=user, bucket_id="other-bucket")
        db.add(other)
        db.flush()
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", study=other)
        genes = make_file("genes.tsv", "10X Genes File")
        stage_bundle_member(db, genes, matrix.id)

        assert resolve_bundle(db, genes, study) is None

    def test_parent_queued_for_deletion_ignored(self, db, study, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", queued_for_deletion=True)
        genes = make_file("genes.tsv", "10X Genes File")
        stage_bundle_member(db, genes, matrix.id)

        assert resolve_bundle(db, genes, study) is None

    def test_deleted_children_not_attached(self, db, study, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix")
        genes = make_file("genes.tsv", "10X Genes File", queued_for_deletion=True)
        stage_bundle_member(db, genes, matrix.id)

        assert resolve_bundle(db, matrix, study) is None

    def test_child_still_uploading_leaves_bundle_incomplete(self, db, study, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix")
        genes = make_file("genes.tsv", "10X Genes File")
        barcodes = make_file("barcodes.tsv", "10X Barcodes File", parse_status="uploading")
        stage_bundle_member(db, genes, matrix.id)
        stage_bundle_member(db, barcodes, matrix.id)

        bundle = resolve_bundle(db, matrix, study)

        assert not bundle.is_completed()
        assert bundle.missing_requirements() == ["10X Barcodes File"]


class TestInitializeFromParent:
    """Test bundle creation from the parent side."""

    def test_get_or_create(self, db, study, make_file):
        bam = make_file("reads.bam", "BAM")

        bundle = initialize_from_parent(db, study, bam)

        assert initialize_from_parent(db, study, bam) is bundle
        assert bundle.bundle_type == "BAM"
        assert bam.owned_bundle is bundle

    def test_non_parent_type_rejected(self, db, study, make_file):
        genes = make_file("genes.tsv", "10X Genes File")

        with pytest.raises(ArgumentError):
            initialize_from_parent(db, study, genes)
