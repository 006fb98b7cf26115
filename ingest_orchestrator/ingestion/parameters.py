"""
Parameter objects for remote ingest jobs.

Each parameter class is a pydantic model whose fields render, in declaration
order, into the flat command line tokens handed to the ingest pipeline.
Instances are created with ``build()``, which applies defaults without
validating, so callers can inspect the token list (e.g. to look for a running
duplicate) before deciding whether the object is valid.

Example:
    params = DifferentialExpressionParameters.build(
        annotation_name="louvain",
        annotation_scope="cluster",
        matrix_file_type="dense",
    )
    params.to_options_array()
    # ['--annotation-name', 'louvain', '--annotation-type', 'group', ...,
    #  '--differential-expression']
"""

from __future__ import annotations

import json
import re
from collections import OrderedDict
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

STORAGE_URL_REGEXP = re.compile(r"^(gs|s3)://")

GCE_MACHINE_TYPES: Tuple[str, ...] = tuple(
    f"{family}-{series}-{cores}"
    for family in ("n2", "n2d")
    for series in ("standard", "highmem", "highcpu")
    for cores in (2, 4, 8, 16, 32, 48, 64, 80, 96)
)

SCALING_CORES = (4, 8, 16, 32, 48, 64)
DEFAULT_GB_PER_CORE = 4
GIGABYTE = 1024 ** 3


def to_cli_opt(param_name: str) -> str:
    """Convert an attribute name into a command line option, e.g. obsm_keys -> --obsm-keys."""
    return "--" + str(param_name).replace("_", "-")


def scaled_machine_types(gb_per_core: int = DEFAULT_GB_PER_CORE) -> "OrderedDict[str, Tuple[int, int]]":
    """
    Map n2d-highmem machine types to the byte range each one handles.

    Ranges are half-open [floor, limit). The largest machine covers twice its
    nominal memory so that very large inputs still land somewhere.
    """
    ram_per_core = [cores * gb_per_core * GIGABYTE for cores in SCALING_CORES]
    machine_types: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()
    for index, cores in enumerate(SCALING_CORES):
        floor = 0 if index == 0 else ram_per_core[index - 1]
        limit = ram_per_core[index] * 2 if index == len(SCALING_CORES) - 1 else ram_per_core[index]
        machine_types[f"n2d-highmem-{cores}"] = (floor, limit)
    return machine_types


def _cores(machine_type: str) -> int:
    return int(machine_type.rsplit("-", 1)[-1])


def assign_machine_type(
    required_bytes: Optional[int],
    default: str,
    max_cores: Optional[int] = None,
    gb_per_core: int = DEFAULT_GB_PER_CORE,
) -> str:
    """
    Pick the smallest machine type whose memory range holds required_bytes.

    Args:
        required_bytes: Estimated memory needed, usually derived from file size
        default: Machine type to use when no size is known
        max_cores: Upper bound on the machine size
        gb_per_core: RAM per core for the scaled family

    Returns:
        Machine type name
    """
    if not required_bytes:
        return default

    machine_types = scaled_machine_types(gb_per_core)
    if max_cores is not None:
        machine_types = OrderedDict(
            (name, limits) for name, limits in machine_types.items() if _cores(name) <= max_cores
        )
    if not machine_types:
        return default

    largest = next(reversed(machine_types))
    if required_bytes >= machine_types[largest][1]:
        return largest

    for name, (floor, limit) in machine_types.items():
        if floor <= required_bytes < limit:
            return name
    return default


def _is_blank(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


class IngestParameters(BaseModel):
    """Base class for job parameter objects."""

    # name of the pipeline option that selects the parser, appended last
    PARAMETER_NAME: ClassVar[Optional[str]] = None
    # fields used by the orchestrator but never sent to the pipeline
    NON_ATTRIBUTE_PARAMS: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def build(cls, **values: Any) -> "IngestParameters":
        """Create an instance with defaults applied and without validation."""
        return cls.model_construct(**values)

    @classmethod
    def attribute_names(cls) -> List[str]:
        return [name for name in cls.model_fields if name not in cls.NON_ATTRIBUTE_PARAMS]

    def attributes(self) -> Dict[str, Any]:
        return {name: getattr(self, name, None) for name in self.attribute_names()}

    def to_options_array(self) -> List[str]:
        """
        Render attributes as command line tokens.

        Blank values are omitted, True renders as a bare flag, and lists are
        rendered as JSON arrays.
        """
        options: List[str] = []
        for name, value in self.attributes().items():
            if _is_blank(value):
                continue
            if value is True:
                options.append(to_cli_opt(name))
            elif isinstance(value, (list, tuple)):
                options += [to_cli_opt(name), json.dumps(list(value))]
            else:
                options += [to_cli_opt(name), str(value)]
        if self.PARAMETER_NAME:
            options.append(self.PARAMETER_NAME)
        return options

    def validation_errors(self) -> List[str]:
        """Return human-readable validation messages (empty when valid)."""
        try:
            type(self).model_validate(self.model_dump(warnings=False))
        except ValidationError as exc:
            messages = []
            for error in exc.errors():
                location = ".".join(str(part) for part in error.get("loc", ()))
                message = error.get("msg", "").replace("Value error, ", "")
                messages.append(f"{location}: {message}" if location else message)
            return messages
        return []

    def is_valid(self) -> bool:
        return not self.validation_errors()

    def to_payload(self) -> Dict[str, Any]:
        """JSON-serializable form used when handing parameters to a task queue."""
        return {"class": type(self).__name__, "values": self.model_dump(mode="json", warnings=False)}

    @staticmethod
    def from_payload(payload: Optional[Dict[str, Any]]) -> Optional["IngestParameters"]:
        if not payload:
            return None
        params_class = PARAMETER_CLASSES[payload["class"]]
        return params_class.build(**payload.get("values", {}))


def _check_storage_url(value: Optional[str]) -> Optional[str]:
    if value and not STORAGE_URL_REGEXP.match(value):
        raise ValueError("is not a valid storage url")
    return value


class DifferentialExpressionParameters(IngestParameters):
    """Parameters for a differential expression job."""

    PARAMETER_NAME: ClassVar[Optional[str]] = "--differential-expression"
    NON_ATTRIBUTE_PARAMS: ClassVar[Tuple[str, ...]] = ("machine_type", "file_size", "cluster_group_id")

    # memory estimate multiplier for h5ad inputs
    RAM_SCALING: ClassVar[float] = 3.5
    # auto-scaling never goes past n2d-highmem-16
    MAX_MACHINE_CORES: ClassVar[int] = 16
    DEFAULT_MACHINE_TYPE: ClassVar[str] = "n2d-highmem-8"

    REQUIRED: ClassVar[Tuple[str, ...]] = (
        "annotation_name",
        "annotation_scope",
        "annotation_file",
        "cluster_file",
        "cluster_name",
        "cluster_group_id",
        "matrix_file_path",
        "matrix_file_type",
    )

    annotation_name: Optional[str] = None
    annotation_type: Optional[str] = "group"
    annotation_scope: Optional[str] = None
    annotation_file: Optional[str] = None
    cluster_file: Optional[str] = None
    cluster_name: Optional[str] = None
    cluster_group_id: Optional[str] = None
    de_type: Optional[str] = "rest"
    group1: Optional[str] = None
    group2: Optional[str] = None
    matrix_file_path: Optional[str] = None
    matrix_file_type: Optional[str] = None
    gene_file: Optional[str] = None
    barcode_file: Optional[str] = None
    raw_location: Optional[str] = None
    machine_type: Optional[str] = DEFAULT_MACHINE_TYPE
    file_size: Optional[int] = 0

    @classmethod
    def build(cls, **values: Any) -> "DifferentialExpressionParameters":
        params = cls.model_construct(**values)
        if params.matrix_file_type == "h5ad" and not values.get("machine_type"):
            params.machine_type = params.scaled_machine_type()
        return params

    def scaled_machine_type(self) -> str:
        required = int((self.file_size or 0) * self.RAM_SCALING)
        return assign_machine_type(required, self.DEFAULT_MACHINE_TYPE, max_cores=self.MAX_MACHINE_CORES)

    @field_validator("annotation_file", "cluster_file", "matrix_file_path", "gene_file", "barcode_file")
    @classmethod
    def _storage_urls(cls, value: Optional[str]) -> Optional[str]:
        return _check_storage_url(value)

    @field_validator("annotation_scope")
    @classmethod
    def _annotation_scope(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ("cluster", "study"):
            raise ValueError("must be one of: cluster, study")
        return value

    @field_validator("de_type")
    @classmethod
    def _de_type(cls, value: Optional[str]) -> Optional[str]:
        if value not in ("rest", "pairwise"):
            raise ValueError("must be one of: rest, pairwise")
        return value

    @field_validator("matrix_file_type")
    @classmethod
    def _matrix_file_type(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ("dense", "mtx", "h5ad"):
            raise ValueError("must be one of: dense, mtx, h5ad")
        return value

    @field_validator("machine_type")
    @classmethod
    def _machine_type(cls, value: Optional[str]) -> Optional[str]:
        if value not in GCE_MACHINE_TYPES:
            raise ValueError(f"{value} is not a supported machine type")
        return value

    @model_validator(mode="after")
    def _check_required(self) -> "DifferentialExpressionParameters":
        missing = [name for name in self.REQUIRED if _is_blank(getattr(self, name))]
        if self.de_type == "pairwise":
            missing += [name for name in ("group1", "group2") if _is_blank(getattr(self, name))]
        if self.matrix_file_type == "mtx":
            missing += [name for name in ("gene_file", "barcode_file") if _is_blank(getattr(self, name))]
        if missing:
            raise ValueError(f"missing required values: {', '.join(missing)}")
        return self


class AnnDataIngestParameters(IngestParameters):
    """Parameters for AnnData extraction/ingest."""

    NON_ATTRIBUTE_PARAMS: ClassVar[Tuple[str, ...]] = ("file_size", "machine_type")
    DEFAULT_MACHINE_TYPE: ClassVar[str] = "n2d-highmem-4"

    ingest_anndata: Optional[bool] = True
    anndata_file: Optional[str] = None
    obsm_keys: Optional[List[str]] = Field(default_factory=lambda: ["X_umap", "X_tsne"])
    ingest_cluster: Optional[bool] = False
    cluster_file: Optional[str] = None
    name: Optional[str] = None
    domain_ranges: Optional[str] = None
    extract: Optional[List[str]] = Field(
        default_factory=lambda: ["cluster", "metadata", "processed_expression"]
    )
    cell_metadata_file: Optional[str] = None
    ingest_cell_metadata: Optional[bool] = False
    study_accession: Optional[str] = None
    ingest_expression: Optional[bool] = False
    matrix_file: Optional[str] = None
    matrix_file_type: Optional[str] = None
    gene_file: Optional[str] = None
    barcode_file: Optional[str] = None
    raw_location: Optional[str] = None
    extract_raw_counts: Optional[bool] = False
    file_size: Optional[int] = 0
    machine_type: Optional[str] = None

    @classmethod
    def build(cls, **values: Any) -> "AnnDataIngestParameters":
        params = cls.model_construct(**values)
        if not params.machine_type:
            params.machine_type = assign_machine_type(params.file_size, cls.DEFAULT_MACHINE_TYPE)
        return params

    @field_validator("anndata_file", "cluster_file", "cell_metadata_file", "matrix_file", "gene_file", "barcode_file")
    @classmethod
    def _storage_urls(cls, value: Optional[str]) -> Optional[str]:
        return _check_storage_url(value)


class PrecomputedScoresParameters(IngestParameters):
    """Parameters for a gene list (precomputed scores) job."""

    PARAMETER_NAME: ClassVar[Optional[str]] = "--precomputed-scores"

    gene_list_file: Optional[str] = None
    name: Optional[str] = None
    study_accession: Optional[str] = None

    @field_validator("gene_list_file")
    @classmethod
    def _storage_url(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            raise ValueError("is required")
        return _check_storage_url(value)


PARAMETER_CLASSES: Dict[str, Type[IngestParameters]] = {
    params_class.__name__: params_class
    for params_class in (
        DifferentialExpressionParameters,
        AnnDataIngestParameters,
        PrecomputedScoresParameters,
    )
}
