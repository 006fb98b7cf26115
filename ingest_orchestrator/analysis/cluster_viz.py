"""Cell and matrix lookups for clusters."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

from ingest_orchestrator.constants import EXPRESSION_MATRIX_TYPES, FileType
from ingest_orchestrator.database.models import ClusterGroup, Study, StudyFile
from ingest_orchestrator.exceptions import ArgumentError


def data_fragment_url(ann_data_file: StudyFile, fragment_type: str, file_type_detail: str = "", url: bool = True) -> str:
    """
    Location of a per-fragment file extracted from an AnnData upload.

    Example:
        data_fragment_url(adata, "cluster", file_type_detail="X_umap")
        # 's3://bucket/_internal/anndata_ingest/SCP1_<id>/h5ad_frag.cluster.X_umap.tsv.gz'
    """
    study = ann_data_file.study
    prefix = f"s3://{study.bucket_id}/" if url else ""
    ext = "mtx" if fragment_type == "matrix" else "tsv"
    path = f"{prefix}_internal/anndata_ingest/{study.accession}_{ann_data_file.id}/h5ad_frag.{fragment_type}"
    if file_type_detail:
        path += f".{file_type_detail}"
    return f"{path}.{ext}.gz"


def cells_by_annotation_label(
    cluster_group: ClusterGroup, annotation_name: str, annotation_scope: str
) -> Dict[str, List[str]]:
    """Group the cluster's cells by their label for an annotation."""
    cells: Dict[str, List[str]] = defaultdict(list)
    cell_names = cluster_group.cell_names or []

    if annotation_scope == "cluster":
        labels = (cluster_group.annotation_values or {}).get(annotation_name) or []
        for cell, label in zip(cell_names, labels):
            cells[label].append(cell)
        return dict(cells)

    metadatum = next(
        (
            meta
            for meta in cluster_group.study.cell_metadata
            if meta.name == annotation_name and meta.annotation_type == "group"
        ),
        None,
    )
    if metadatum is None:
        return {}
    cell_values = metadatum.cell_values or {}
    for cell in cell_names:
        if cell in cell_values:
            cells[cell_values[cell]].append(cell)
    return dict(cells)


def _usable_raw_matrix(matrix: StudyFile) -> bool:
    if matrix.file_type == FileType.MM_COORDINATE_MATRIX.value:
        return matrix.bundle is not None and matrix.bundle.is_completed()
    if matrix.file_type == FileType.ANNDATA.value:
        return bool(matrix.ann_data_file_info and matrix.ann_data_file_info.raw_location)
    return True


def raw_matrix_for_cluster_cells(study: Study, cluster_group: ClusterGroup) -> StudyFile:
    """
    Find the raw counts matrix that covers every cell in a cluster.

    Raises:
        ArgumentError: If no usable raw counts matrix covers the cluster's cells
    """
    cluster_cells = set(cluster_group.cell_names or [])
    for matrix in study.study_files:
        if matrix.file_type not in EXPRESSION_MATRIX_TYPES or matrix.queued_for_deletion:
            continue
        if not matrix.is_raw_counts:
            continue
        if not cluster_cells.issubset(set(matrix.cell_names or [])):
            continue
        if _usable_raw_matrix(matrix):
            return matrix
    raise ArgumentError(f"{cluster_group.name} does not have a raw counts matrix covering all of its cells")
