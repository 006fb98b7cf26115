"""Tests for model helpers used by dispatch and DE."""

from uuid import uuid4

import pytest

from ingest_orchestrator.database.models import (
    AnnDataFileInfo,
    DifferentialExpressionResult,
    StudyFileBundle,
)


class TestStudyFile:
    """Test derived study file state."""

    def test_remote_url_prefers_bucket_location(self, make_file):
        study_file = make_file("umap.tsv", "Cluster", upload_file_name="umap upload.tsv")
        assert study_file.remote_url == "s3://test-bucket/umap upload.tsv"

        study_file.bucket_location = "parse_logs/umap.tsv"
        assert study_file.remote_url == "s3://test-bucket/parse_logs/umap.tsv"

    @pytest.mark.parametrize(
        "file_type, parseable",
        [("Cluster", True), ("Gene List", True), ("Analysis Output", True), ("BAM", False), ("Other", False)],
    )
    def test_parseable(self, make_file, file_type, parseable):
        assert make_file("file", file_type).parseable is parseable

    @pytest.mark.parametrize(
        "parse_status, complete",
        [("new", False), ("uploading", False), ("uploaded", True), ("parsing", True), ("failed", True)],
    )
    def test_upload_complete(self, make_file, parse_status, complete):
        assert make_file("file", "Cluster", parse_status=parse_status).upload_complete is complete

    def test_anndata_kinds(self, db, make_file):
        reference = make_file("ref.h5ad", "AnnData")
        reference.ann_data_file_info = AnnDataFileInfo(reference_file=True)
        viz = make_file("viz.h5ad", "AnnData")
        viz.ann_data_file_info = AnnDataFileInfo(reference_file=False)
        db.flush()

        assert reference.is_reference_anndata and not reference.is_viz_anndata
        assert viz.is_viz_anndata and not viz.is_reference_anndata

    def test_needs_raw_counts_extraction(self, db, make_file):
        adata = make_file("viz.h5ad", "AnnData", is_raw_counts=True)
        adata.ann_data_file_info = AnnDataFileInfo(
            reference_file=False, raw_location=".raw", has_expression=True, has_raw_counts=False
        )
        db.flush()
        assert adata.needs_raw_counts_extraction

        adata.ann_data_file_info.has_raw_counts = True
        assert not adata.needs_raw_counts_extraction


class TestStudyDefaults:
    def test_default_cluster_and_annotation(self, study, make_cluster, make_metadatum):
        make_cluster("umap")
        tsne = make_cluster("tsne", annotations={"louvain": ["1", "1", "2", "2"]})
        make_metadatum("cell_type", {"A": "T", "B": "B"})

        assert study.default_cluster().name == "umap"
        assert study.default_annotation() == "cell_type--group--study"

        study.default_options = {"cluster": "tsne"}
        assert study.default_cluster() is tsne
        assert study.default_annotation() == "louvain--group--cluster"

        study.default_options = {"cluster": "tsne", "annotation": "cell_type--group--study"}
        assert study.default_annotation() == "cell_type--group--study"

    def test_metadata_file_skips_deleted(self, study, make_file):
        make_file("old_metadata.tsv", "Metadata", queued_for_deletion=True)
        current = make_file("metadata.tsv", "Metadata")

        assert study.metadata_file() is current


class TestAnnotationVisibility:
    def test_group_value_limits(self, study, make_metadatum):
        single = make_metadatum("single", {"A": "x"})
        pair = make_metadatum("pair", {"A": "x", "B": "y"})
        numeric = make_metadatum("score", {"A": "0.5"}, annotation_type="numeric")

        assert not single.can_visualize()
        assert pair.can_visualize()
        assert numeric.can_visualize()

        study.default_options = {"override_viz_limit_annotations": ["single"]}
        assert single.can_visualize()

    def test_cluster_annotation(self, make_cluster):
        cluster = make_cluster("umap", annotations={"louvain": ["1", "1", "2", "2"], "batch": ["a"] * 4})

        assert cluster.can_visualize_cell_annotation(cluster.cell_annotation("louvain"))
        assert not cluster.can_visualize_cell_annotation(cluster.cell_annotation("batch"))
        assert cluster.cell_annotation("missing") is None


class TestAnnDataFileInfo:
    def test_fragments(self):
        info = AnnDataFileInfo(
            data_fragments=[
                {"data_type": "cluster", "name": "umap", "obsm_key_name": "X_umap"},
                {"data_type": "cluster", "name": "tsne", "obsm_key_name": "X_tsne"},
                {"data_type": "expression", "name": "matrix"},
            ]
        )

        assert info.obsm_key_names == ["X_umap", "X_tsne"]
        assert info.find_fragment("cluster", "tsne")["obsm_key_name"] == "X_tsne"
        assert info.find_fragment("expression")["name"] == "matrix"
        assert info.find_fragment("metadata") is None


class TestDifferentialExpressionResult:
    def test_pairwise_lookup_is_symmetric(self):
        result = DifferentialExpressionResult(pairwise_comparisons={"A": ["B", "C"]})

        assert result.has_pairwise_comparison("A", "B")
        assert result.has_pairwise_comparison("C", "A")
        assert not result.has_pairwise_comparison("B", "C")

    def test_automated_results_have_no_file(self):
        assert DifferentialExpressionResult().is_automated
        assert not DifferentialExpressionResult(study_file_id=uuid4()).is_automated


class TestStudyFileBundle:
    def test_members_lists_parent_first(self, db, study, make_file):
        bam = make_file("reads.bam", "BAM")
        index = make_file("reads.bam.bai", "BAM Index")
        bundle = StudyFileBundle(study_id=study.id, parent=bam, bundle_type="BAM")
        bundle.study_files.extend([bam, index])
        db.add(bundle)
        db.flush()

        assert bundle.members() == [bam, index]
        assert bundle.is_completed()
        assert bundle.bundled_file_by_type("BAM Index") is index

    def test_deleted_member_breaks_bundle(self, db, study, make_file):
        bam = make_file("reads.bam", "BAM")
        index = make_file("reads.bam.bai", "BAM Index", queued_for_deletion=True)
        bundle = StudyFileBundle(study_id=study.id, parent=bam, bundle_type="BAM")
        bundle.study_files.extend([bam, index])
        db.add(bundle)
        db.flush()

        assert not bundle.is_completed()
        assert bundle.missing_requirements() == ["BAM Index"]

    def test_bundle_and_member_keys_persist_together(self, db, study, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix")
        genes = make_file("genes.tsv", "10X Genes File")
        bundle = StudyFileBundle(study_id=study.id, parent=matrix, bundle_type="MM Coordinate Matrix")
        bundle.study_files.extend([matrix, genes])
        db.add(bundle)
        db.flush()
        db.expire_all()

        assert bundle.parent_id == matrix.id
        assert matrix.bundle_id == bundle.id
        assert genes.bundle_id == bundle.id
