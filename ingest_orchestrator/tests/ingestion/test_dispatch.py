"""Tests for parse dispatch."""

from uuid import uuid4

import pytest

from ingest_orchestrator.database.models import (
    AnnDataFileInfo,
    DifferentialExpressionResult,
    StudyShare,
)
from ingest_orchestrator.ingestion.bundle_resolver import stage_bundle_member
from ingest_orchestrator.ingestion.dispatch import (
    DISPATCH_RULES,
    DispatchRouter,
    missing_bundle_requirements,
)
from ingest_orchestrator.ingestion.parameters import (
    AnnDataIngestParameters,
    PrecomputedScoresParameters,
)
from ingest_orchestrator.jobs.submission import JobAction


@pytest.fixture
def router(submitter, notifier):
    return DispatchRouter(submitter, notifier, anndata_ingest_enabled=True)


class TestDispatchPreconditions:
    """Test status codes returned before any job is submitted."""

    def test_unparseable_type(self, db, study, user, router, submitter, make_file):
        bam = make_file("reads.bam", "BAM")

        result = router.dispatch(db, bam, study, user)

        assert result.status_code == 422
        assert result.error == "Files of type BAM are not parseable"
        assert not result.ok
        assert submitter.specs == []

    @pytest.mark.parametrize(
        "file_type",
        ["Cluster", "Metadata", "Expression Matrix", "MM Coordinate Matrix", "10X Genes File", "AnnData", "Gene List"],
    )
    def test_already_parsing(self, db, study, user, router, submitter, make_file, file_type):
        study_file = make_file("in_progress.txt", file_type, parse_status="parsing")

        result = router.dispatch(db, study_file, study, user)

        assert result.status_code == 405
        assert result.error == "File: in_progress.txt is already parsing"
        assert submitter.specs == []
        assert study_file.parse_status == "parsing"

    def test_every_parseable_type_has_a_rule(self):
        from ingest_orchestrator.constants import PARSEABLE_TYPES

        assert set(PARSEABLE_TYPES) == set(DISPATCH_RULES)


class TestSparseMatrixDispatch:
    """Test sparse matrix bundles (matrix + genes + barcodes)."""

    def test_matrix_without_bundle_is_precondition_failure(self, db, study, user, router, submitter, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", local_path="/tmp/matrix.mtx", remote_pushed=False)

        result = router.dispatch(db, matrix, study, user)

        assert result.status_code == 412
        assert "missing required files for parsing MM Coordinate Matrix file type" in result.error
        assert "10X Genes File" in result.error
        assert "10X Barcodes File" in result.error
        assert matrix.parse_status == "uploaded"
        assert submitter.specs == []
        assert submitter.pushed == [matrix]

    def test_matrix_already_in_storage_not_pushed(self, db, study, user, router, submitter, make_file):
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix")

        router.dispatch(db, matrix, study, user)

        assert submitter.pushed == []

    def test_matrix_then_genes_then_barcodes(self, db, study, user, router, submitter, make_file):
        local = dict(local_path="/tmp/upload", remote_pushed=False)
        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", **local)
        assert router.dispatch(db, matrix, study, user).status_code == 412

        genes = make_file("genes.tsv", "10X Genes File", **local)
        stage_bundle_member(db, genes, matrix.id)
        result = router.dispatch(db, genes, study, user)
        assert result.status_code == 412
        assert "10X Barcodes File" in result.error
        assert genes.parse_status == "uploaded"

        barcodes = make_file("barcodes.tsv", "10X Barcodes File", **local)
        stage_bundle_member(db, barcodes, matrix.id)
        result = router.dispatch(db, barcodes, study, user)

        assert result.status_code == 204
        assert len(submitter.specs) == 1
        spec = submitter.specs[0]
        assert spec.action == JobAction.INGEST_EXPRESSION
        assert spec.study_file_id == matrix.id
        assert spec.study_id == study.id
        assert spec.user_id == user.id
        assert matrix.parse_status == "parsing"
        assert genes.parse_status == "parsing"
        assert barcodes.parse_status == "parsing"
        assert submitter.pushed == [matrix, genes, barcodes]

        # a second dispatch of any member is rejected
        assert router.dispatch(db, matrix, study, user).status_code == 405

    def test_children_first_then_matrix(self, db, study, user, router, submitter, make_file):
        matrix_id = uuid4()
        genes = make_file("genes.tsv", "10X Genes File")
        barcodes = make_file("barcodes.tsv", "10X Barcodes File")
        stage_bundle_member(db, genes, matrix_id)
        stage_bundle_member(db, barcodes, matrix_id)

        result = router.dispatch(db, genes, study, user)
        assert result.status_code == 412
        assert "MM Coordinate Matrix" in result.error

        matrix = make_file("matrix.mtx", "MM Coordinate Matrix", id=matrix_id)
        result = router.dispatch(db, matrix, study, user)

        assert result.status_code == 204
        assert [spec.study_file_id for spec in submitter.specs] == [matrix.id]
        assert {genes.parse_status, barcodes.parse_status, matrix.parse_status} == {"parsing"}

    def test_missing_requirements_for_unbundled_child(self, make_file):
        genes = make_file("genes.tsv", "10X Genes File")

        assert missing_bundle_requirements(genes, None) == ["MM Coordinate Matrix", "10X Barcodes File"]


class TestClusterDispatch:
    """Test cluster files and their coordinate labels."""

    def test_cluster_submits_ingest_cluster(self, db, study, user, router, submitter, make_file):
        cluster = make_file("umap.tsv", "Cluster")

        result = router.dispatch(db, cluster, study, user)

        assert result.status_code == 204
        assert [spec.action for spec in submitter.specs] == [JobAction.INGEST_CLUSTER]
        assert cluster.parse_status == "parsing"
        assert cluster.parse_started_at is not None
        assert cluster.remote_confirmed_at is None

    def test_cluster_chains_bundled_coordinate_labels(self, db, study, user, router, submitter, make_file):
        cluster = make_file("umap.tsv", "Cluster")
        labels = make_file("labels.tsv", "Coordinate Labels")
        stage_bundle_member(db, labels, cluster.id)

        result = router.dispatch(db, cluster, study, user)

        assert result.status_code == 204
        assert [(spec.action, spec.study_file_id) for spec in submitter.specs] == [
            (JobAction.INGEST_CLUSTER, cluster.id),
            (JobAction.INGEST_COORDINATE_LABELS, labels.id),
        ]
        assert labels.parse_status == "parsing"

    def test_coordinate_labels_without_cluster(self, db, study, user, router, submitter, make_file):
        labels = make_file("labels.tsv", "Coordinate Labels")

        result = router.dispatch(db, labels, study, user)

        assert result.status_code == 412
        assert "Cluster" in result.error
        assert labels.parse_status == "uploaded"
        assert submitter.specs == []

    def test_coordinate_labels_after_cluster(self, db, study, user, router, submitter, make_file):
        cluster = make_file("umap.tsv", "Cluster", parse_status="parsed")
        labels = make_file("labels.tsv", "Coordinate Labels")
        stage_bundle_member(db, labels, cluster.id)

        result = router.dispatch(db, labels, study, user)

        assert result.status_code == 204
        assert [(spec.action, spec.study_file_id) for spec in submitter.specs] == [
            (JobAction.INGEST_COORDINATE_LABELS, labels.id)
        ]
        assert cluster.parse_status == "parsed"


class TestMetadataDispatch:
    """Test metadata files."""

    def test_non_convention_metadata_tracked(self, db, study, user, router, submitter, notifier, make_file):
        metadata = make_file("metadata.tsv", "Metadata", use_metadata_convention=False)

        result = router.dispatch(db, metadata, study, user)

        assert result.status_code == 204
        assert submitter.specs[0].action == JobAction.INGEST_CELL_METADATA
        assert notifier.events == [
            (
                "file-upload:metadata:non-compliant",
                {"studyAccession": "SCP101", "studyFileName": "metadata.tsv"},
                user,
            )
        ]

    def test_convention_metadata_not_tracked(self, db, study, user, router, notifier, make_file):
        metadata = make_file("metadata.tsv", "Metadata", use_metadata_convention=True)

        router.dispatch(db, metadata, study, user)

        assert notifier.events == []


class TestAnnDataDispatch:
    """Test AnnData parameter shapes."""

    def _viz_file(self, db, make_file, **info_values):
        study_file = make_file("data.h5ad", "AnnData", upload_file_size=1024)
        info_values.setdefault("reference_file", False)
        study_file.ann_data_file_info = AnnDataFileInfo(**info_values)
        db.flush()
        return study_file

    def test_full_extraction(self, db, study, user, router, submitter, make_file):
        study_file = self._viz_file(
            db,
            make_file,
            data_fragments=[
                {"data_type": "cluster", "name": "umap", "obsm_key_name": "X_umap"},
                {"data_type": "cluster", "name": "pca", "obsm_key_name": "X_pca"},
            ],
        )

        result = router.dispatch(db, study_file, study, user)

        assert result.status_code == 204
        spec = submitter.specs[0]
        assert spec.action == JobAction.INGEST_ANNDATA
        assert isinstance(spec.params, AnnDataIngestParameters)
        assert spec.params.anndata_file == "s3://test-bucket/data.h5ad"
        assert spec.params.obsm_keys == ["X_umap", "X_pca"]
        assert spec.params.extract == ["cluster", "metadata", "processed_expression"]
        assert spec.params.extract_raw_counts is False

    def test_single_clustering(self, db, study, user, router, submitter, make_file):
        study_file = self._viz_file(db, make_file)

        router.dispatch(db, study_file, study, user, obsm_key="X_tsne")

        params = submitter.specs[0].params
        assert params.extract == ["cluster"]
        assert params.obsm_keys == ["X_tsne"]

    def test_raw_counts_extraction(self, db, study, user, router, submitter, make_file):
        study_file = self._viz_file(
            db, make_file, raw_location=".raw", has_expression=True, has_raw_counts=False
        )
        study_file.is_raw_counts = True

        router.dispatch(db, study_file, study, user)

        params = submitter.specs[0].params
        assert params.extract == ["raw_counts"]
        assert params.raw_location == ".raw"
        assert params.obsm_keys is None

    def test_reference_file(self, db, study, user, router, submitter, make_file):
        study_file = make_file("reference.h5ad", "AnnData")

        router.dispatch(db, study_file, study, user)

        assert study_file.ann_data_file_info is not None
        assert study_file.ann_data_file_info.reference_file is True
        params = submitter.specs[0].params
        assert params.extract is None
        assert params.obsm_keys is None
        assert "--extract" not in params.to_options_array()

    def test_ingest_disabled(self, db, study, user, submitter, notifier, make_file):
        router = DispatchRouter(submitter, notifier, anndata_ingest_enabled=False)
        study_file = self._viz_file(db, make_file)

        router.dispatch(db, study_file, study, user)

        params = submitter.specs[0].params
        assert params.extract is None
        assert params.obsm_keys is None


class TestOtherFileTypes:
    """Test the remaining rule table entries."""

    def test_expression_matrix(self, db, study, user, router, submitter, make_file):
        matrix = make_file("expression.tsv", "Expression Matrix")

        assert router.dispatch(db, matrix, study, user).status_code == 204
        assert submitter.specs[0].action == JobAction.INGEST_EXPRESSION
        assert submitter.specs[0].params is None

    def test_gene_list(self, db, study, user, router, submitter, make_file):
        gene_list = make_file("scores.gmt", "Gene List")

        router.dispatch(db, gene_list, study, user)

        spec = submitter.specs[0]
        assert spec.action == JobAction.INGEST_PRECOMPUTED_SCORES
        assert isinstance(spec.params, PrecomputedScoresParameters)
        assert spec.params.gene_list_file == "s3://test-bucket/scores.gmt"
        assert spec.params.study_accession == "SCP101"

    def test_de_upload_removes_automated_results(self, db, study, user, router, submitter, make_file, make_cluster):
        cluster_group = make_cluster("umap", annotations={"louvain": ["1", "1", "2", "2"]})
        de_file = make_file("de.tsv", "Differential Expression")
        db.add_all(
            [
                DifferentialExpressionResult(
                    study_id=study.id, cluster_group_id=cluster_group.id,
                    annotation_name="louvain", annotation_scope="cluster",
                ),
                DifferentialExpressionResult(
                    study_id=study.id, cluster_group_id=cluster_group.id, study_file_id=de_file.id,
                    annotation_name="cell_type", annotation_scope="study",
                ),
            ]
        )
        db.flush()

        result = router.dispatch(db, de_file, study, user)

        assert result.status_code == 204
        remaining = db.query(DifferentialExpressionResult).all()
        assert [r.annotation_name for r in remaining] == ["cell_type"]
        assert submitter.specs[0].action == JobAction.INGEST_DIFFERENTIAL_EXPRESSION

    def test_analysis_output_not_applicable(self, db, study, user, router, submitter, notifier, make_file):
        db.add(StudyShare(study=study, email="collaborator@example.org"))
        db.flush()
        output = make_file("output.txt", "Analysis Output", options={"analysis_name": "other"})

        result = router.dispatch(db, output, study, user)

        assert result.status_code == 204
        assert submitter.specs == []
        assert output.parse_status == "uploaded"
        assert notifier.share_updates == []

    def test_analysis_output_ideogram(self, db, study, user, router, submitter, make_file):
        output = make_file(
            "ideogram.json",
            "Analysis Output",
            options={"analysis_name": "infercnv", "visualization_name": "ideogram.js"},
        )

        router.dispatch(db, output, study, user)

        assert submitter.specs[0].action == JobAction.EXTRACT_ANALYSIS_OUTPUT
        assert output.parse_status == "parsing"

    def test_reparse_flags_passed_through(self, db, study, user, router, submitter, make_file):
        cluster = make_file("umap.tsv", "Cluster", parse_status="parsed")

        router.dispatch(db, cluster, study, user, reparse=True, persist_on_fail=True)

        assert submitter.specs[0].reparse is True
        assert submitter.specs[0].persist_on_fail is True


class TestShareNotifications:
    """Test collaborator notifications on successful dispatch."""

    def test_shared_study_notified(self, db, study, user, router, notifier, make_file):
        db.add(StudyShare(study=study, email="collaborator@example.org"))
        db.flush()
        cluster = make_file("umap.tsv", "Cluster")

        router.dispatch(db, cluster, study, user)

        assert notifier.share_updates == [(study, ["Study file added: umap.tsv"], user)]

    def test_unshared_study_not_notified(self, db, study, user, router, notifier, make_file):
        router.dispatch(db, make_file("umap.tsv", "Cluster"), study, user)

        assert notifier.share_updates == []

    def test_failed_dispatch_not_notified(self, db, study, user, router, notifier, make_file):
        db.add(StudyShare(study=study, email="collaborator@example.org"))
        db.flush()

        router.dispatch(db, make_file("matrix.mtx", "MM Coordinate Matrix"), study, user)

        assert notifier.share_updates == []
