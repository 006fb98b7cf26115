"""
Shared constants: file types, parse states and bundle requirements.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Dict, Optional, Tuple


class FileType(str, PyEnum):
    """Closed set of study file types."""
    CLUSTER = "Cluster"
    EXPRESSION_MATRIX = "Expression Matrix"
    MM_COORDINATE_MATRIX = "MM Coordinate Matrix"
    TENX_GENES = "10X Genes File"
    TENX_BARCODES = "10X Barcodes File"
    COORDINATE_LABELS = "Coordinate Labels"
    METADATA = "Metadata"
    GENE_LIST = "Gene List"
    ANNDATA = "AnnData"
    DIFFERENTIAL_EXPRESSION = "Differential Expression"
    ANALYSIS_OUTPUT = "Analysis Output"
    BAM = "BAM"
    BAM_INDEX = "BAM Index"
    BED = "BED"
    TAB_INDEX = "Tab Index"
    SEURAT = "Seurat"
    FASTQ = "Fastq"
    DOCUMENTATION = "Documentation"
    OTHER = "Other"


class ParseStatus(str, PyEnum):
    """Upload/parse lifecycle of a study file."""
    NEW = "new"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PARSING = "parsing"
    PARSED = "parsed"
    FAILED = "failed"


# states in which the upload itself has not finished yet
UNFINISHED_UPLOAD_STATES = (ParseStatus.NEW.value, ParseStatus.UPLOADING.value)

PARSEABLE_TYPES = frozenset(
    {
        FileType.CLUSTER,
        FileType.COORDINATE_LABELS,
        FileType.EXPRESSION_MATRIX,
        FileType.MM_COORDINATE_MATRIX,
        FileType.TENX_GENES,
        FileType.TENX_BARCODES,
        FileType.GENE_LIST,
        FileType.METADATA,
        FileType.ANALYSIS_OUTPUT,
        FileType.ANNDATA,
        FileType.DIFFERENTIAL_EXPRESSION,
    }
)

# raw count matrices usable as differential expression input
EXPRESSION_MATRIX_TYPES = (
    FileType.EXPRESSION_MATRIX.value,
    FileType.MM_COORDINATE_MATRIX.value,
    FileType.ANNDATA.value,
)


@dataclass(frozen=True)
class BundleRequirement:
    """Allowed/required child types for a bundle parent and the key children stage the parent id under."""
    parent_type: FileType
    child_types: Tuple[FileType, ...]
    staging_key: str


BUNDLE_REQUIREMENTS: Dict[FileType, BundleRequirement] = {
    FileType.MM_COORDINATE_MATRIX: BundleRequirement(
        FileType.MM_COORDINATE_MATRIX, (FileType.TENX_GENES, FileType.TENX_BARCODES), "matrix_id"
    ),
    FileType.BAM: BundleRequirement(FileType.BAM, (FileType.BAM_INDEX,), "bam_id"),
    FileType.BED: BundleRequirement(FileType.BED, (FileType.TAB_INDEX,), "bed_id"),
    FileType.CLUSTER: BundleRequirement(FileType.CLUSTER, (FileType.COORDINATE_LABELS,), "cluster_file_id"),
}


def requirement_for_parent(file_type: str) -> Optional[BundleRequirement]:
    """Bundle requirement where file_type is the parent, if any."""
    for requirement in BUNDLE_REQUIREMENTS.values():
        if requirement.parent_type.value == file_type:
            return requirement
    return None


def requirement_for_child(file_type: str) -> Optional[BundleRequirement]:
    """Bundle requirement where file_type is an allowed child, if any."""
    for requirement in BUNDLE_REQUIREMENTS.values():
        if file_type in {child.value for child in requirement.child_types}:
            return requirement
    return None


# group annotations are visualizable with this many distinct values (inclusive)
GROUP_VIZ_MIN_VALUES = 2
GROUP_VIZ_MAX_VALUES = 200

# minimum number of cells per label for differential expression
MIN_OBSERVED_VALUES = 2

ONTOLOGY_LABEL_SUFFIX = "__ontology_label"
