"""
Client for the remote batch compute service (Batch v1 REST API).

Every ingest job runs the ingest pipeline Docker image with a command line in
exec form:

    python ingest_pipeline.py --study-id <id> --study-file-id <id>
        --user-metrics-uuid <uuid> <action> [action options] [parameter options]

The same command line doubles as the identity of a job: two submissions with
identical token lists do the same work, which is what ``find_matching_jobs``
relies on.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ingest_orchestrator.config import get_config
from ingest_orchestrator.constants import FileType
from ingest_orchestrator.exceptions import ArgumentError, BatchApiError, BatchServerError
from ingest_orchestrator.ingestion.parameters import IngestParameters, to_cli_opt
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)

FILE_TYPES_BY_ACTION: Dict[str, List[str]] = {
    "ingest_expression": [
        FileType.EXPRESSION_MATRIX.value,
        FileType.MM_COORDINATE_MATRIX.value,
        FileType.ANNDATA.value,
    ],
    "ingest_cluster": [FileType.CLUSTER.value, FileType.ANNDATA.value],
    "ingest_coordinate_labels": [FileType.COORDINATE_LABELS.value],
    "ingest_cell_metadata": [FileType.METADATA.value, FileType.ANNDATA.value],
    "differential_expression": [FileType.CLUSTER.value, FileType.ANNDATA.value],
    "ingest_differential_expression": [FileType.DIFFERENTIAL_EXPRESSION.value],
    "ingest_anndata": [FileType.ANNDATA.value],
    "ingest_precomputed_scores": [FileType.GENE_LIST.value],
    "extract_analysis_output": [FileType.ANALYSIS_OUTPUT.value],
}

RUNNING_STATES = ("STATE_UNSPECIFIED", "QUEUED", "SCHEDULED", "RUNNING")
COMPLETED_STATES = ("SUCCEEDED", "FAILED", "DELETION_IN_PROGRESS")

LABEL_SANITIZER = re.compile(r"[^a-zA-Z\d\-_]")

# options copied from an author-uploaded differential expression file onto its command line
DE_UPLOAD_OPTIONS = (
    "annotation_name",
    "annotation_scope",
    "cluster_name",
    "gene_header",
    "group_header",
    "comparison_group_header",
    "size_metric",
    "significance_metric",
    "computational_method",
)


def action_name(action: Any) -> str:
    """Plain string for an action given as a JobAction or str."""
    return getattr(action, "value", action)


def sanitize_label(label: Any) -> str:
    """Lowercase, alphanumeric with dash & underscore only, max 63 characters."""
    return LABEL_SANITIZER.sub("_", str(label)).lower()[:63]


def label_for_action(action: str) -> str:
    """Condense actions into the pipeline that runs them."""
    action = action_name(action)
    if "ingest" in action:
        return "ingest_pipeline"
    if "differential" in action:
        return "differential_expression"
    return action


class BatchApiClient:
    """Thin wrapper around the Batch REST API with consistent auth + error handling."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        project: Optional[str] = None,
        region: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        cfg = get_config().batch
        self.api_url = (api_url or cfg.api_url).rstrip("/")
        self.project = project or cfg.project
        self.region = region or cfg.region
        self.timeout = timeout or cfg.request_timeout
        self.default_machine_type = cfg.default_machine_type
        self.boot_disk_size_gb = cfg.boot_disk_size_gb
        self.docker_image = cfg.docker_image

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        token = api_token or cfg.api_token
        if token:
            self.session.headers.setdefault("Authorization", f"Bearer {token}")

    @property
    def project_location(self) -> str:
        return f"projects/{self.project}/locations/{self.region}"

    @retry(
        wait=wait_exponential(multiplier=1, min=2, max=30),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, BatchServerError)),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_url}/{path.lstrip('/')}"
        response = self.session.request(method, url, params=params, json=json, timeout=self.timeout)
        if 200 <= response.status_code < 300:
            if not response.content:
                return {}
            return response.json()

        message = f"{method} {path} failed"
        try:
            error = response.json().get("error", {})
            message = f"{message} ({error.get('code', response.status_code)}): {error.get('message', '')}"
        except ValueError:
            message = f"{message}: {response.text}"

        if response.status_code >= 500:
            raise BatchServerError(message, status_code=response.status_code)
        raise BatchApiError(message, status_code=response.status_code)

    # ---------------------------------------------------------
    #  Reading jobs
    # ---------------------------------------------------------

    def list_jobs(self, page_token: Optional[str] = None) -> Dict[str, Any]:
        params = {"pageToken": page_token} if page_token else None
        return self._request("GET", f"{self.project_location}/jobs", params=params)

    def iter_jobs(self) -> Iterator[Dict[str, Any]]:
        """Yield every job across all result pages."""
        page_token = None
        while True:
            page = self.list_jobs(page_token=page_token)
            for job in page.get("jobs", []):
                yield job
            page_token = page.get("nextPageToken")
            if not page_token:
                break

    def get_job(self, name: str) -> Dict[str, Any]:
        return self._request("GET", name)

    @staticmethod
    def job_state(job: Dict[str, Any]) -> Optional[str]:
        return (job.get("status") or {}).get("state")

    def job_done(self, job: Dict[str, Any]) -> bool:
        return self.job_state(job) in COMPLETED_STATES

    @staticmethod
    def get_job_command_line(job: Dict[str, Any]) -> List[str]:
        try:
            return list(job["taskGroups"][0]["taskSpec"]["runnables"][0]["container"]["commands"])
        except (KeyError, IndexError, TypeError):
            return []

    def find_matching_jobs(
        self, params: Sequence[str], job_states: Sequence[str] = RUNNING_STATES
    ) -> List[Dict[str, Any]]:
        """
        Find jobs whose command line is exactly params.

        Args:
            params: Full command line token list
            job_states: Only consider jobs in these states

        Returns:
            List of matching job resources
        """
        wanted = list(params)
        return [
            job
            for job in self.iter_jobs()
            if self.job_state(job) in job_states and self.get_job_command_line(job) == wanted
        ]

    # ---------------------------------------------------------
    #  Building jobs
    # ---------------------------------------------------------

    def validate_action_by_file(self, action: str, study_file) -> None:
        if not study_file.parseable:
            raise ArgumentError(f"'{study_file.upload_file_name or study_file.name}' is not parseable")
        if study_file.file_type == FileType.MM_COORDINATE_MATRIX.value:
            bundle = study_file.bundle
            if bundle is None or not bundle.is_completed():
                raise ArgumentError(
                    f"'{study_file.upload_file_name or study_file.name}' is missing required bundled files"
                )
        allowed = FILE_TYPES_BY_ACTION.get(action_name(action))
        if allowed is None or study_file.file_type not in allowed:
            raise ArgumentError(f"'{action}' cannot be run with file type '{study_file.file_type}'")

    def format_command_line(
        self,
        study_file,
        action: str,
        user_metrics_uuid: str,
        params_object: Optional[IngestParameters] = None,
    ) -> List[str]:
        """
        Determine the command line for ingest from the file and requested action.

        Parameter objects are rendered as-is; callers validate them separately.

        Raises:
            ArgumentError: If the file and action do not correspond with each other
        """
        action = action_name(action)
        self.validate_action_by_file(action, study_file)
        study = study_file.study
        command_line = [
            "python", "ingest_pipeline.py",
            "--study-id", str(study.id),
            "--study-file-id", str(study_file.id),
            "--user-metrics-uuid", user_metrics_uuid,
            action,
        ]
        action_cli_opt = to_cli_opt(action)

        if action == "ingest_expression":
            if study_file.file_type == FileType.EXPRESSION_MATRIX.value:
                command_line += ["--matrix-file", study_file.remote_url, "--matrix-file-type", "dense"]
            elif study_file.file_type == FileType.MM_COORDINATE_MATRIX.value:
                bundle = study_file.bundle
                genes_file = bundle.bundled_file_by_type(FileType.TENX_GENES.value)
                barcodes_file = bundle.bundled_file_by_type(FileType.TENX_BARCODES.value)
                command_line += [
                    "--matrix-file", study_file.remote_url, "--matrix-file-type", "mtx",
                    "--gene-file", genes_file.remote_url, "--barcode-file", barcodes_file.remote_url,
                ]
        elif action == "ingest_cell_metadata":
            # AnnData parameters format their own command line
            if not study_file.is_anndata:
                command_line += [
                    "--cell-metadata-file", study_file.remote_url,
                    "--study-accession", study.accession,
                    action_cli_opt,
                ]
            if study_file.use_metadata_convention:
                command_line += ["--validate-convention"]
        elif action == "ingest_cluster":
            if not study_file.is_anndata:
                command_line += ["--cluster-file", study_file.remote_url, action_cli_opt]
        elif action == "ingest_coordinate_labels":
            cluster_file = study_file.bundle.parent if study_file.bundle else None
            command_line += ["--coordinate-labels-file", study_file.remote_url]
            if cluster_file is not None:
                command_line += ["--cluster-name", cluster_file.name]
            command_line += [action_cli_opt]
        elif action == "differential_expression":
            command_line += ["--study-accession", study.accession]
        elif action == "ingest_differential_expression":
            options = study_file.options or {}
            for option in DE_UPLOAD_OPTIONS:
                if options.get(option):
                    command_line += [to_cli_opt(option), str(options[option])]
            command_line += [
                "--differential-expression-file", study_file.remote_url,
                "--study-accession", study.accession,
                action_cli_opt,
            ]
        elif action == "extract_analysis_output":
            options = study_file.options or {}
            command_line += [
                "--analysis-output-file", study_file.remote_url,
                "--analysis-name", str(options.get("analysis_name", "")),
                action_cli_opt,
            ]

        if params_object is not None:
            return command_line + params_object.to_options_array()
        return command_line + self.get_command_line_options(study_file, action)

    @staticmethod
    def get_command_line_options(study_file, action: str) -> List[str]:
        """Optional arguments by file type when no parameter object is given."""
        if study_file.file_type == FileType.CLUSTER.value and action == "ingest_cluster":
            # cluster files share their name with the cluster itself
            return ["--name", study_file.name]
        return []

    def job_machine_type(self, params_object: Optional[IngestParameters] = None) -> str:
        return getattr(params_object, "machine_type", None) or self.default_machine_type

    def job_labels(self, action: str, study, study_file, user, params_object=None) -> Dict[str, str]:
        docker_image, _, docker_tag = self.docker_image.rsplit("/", 1)[-1].partition(":")
        return {
            "study_accession": sanitize_label(study.accession),
            "user_id": sanitize_label(user.id),
            "filename": sanitize_label(study_file.upload_file_name or study_file.name),
            "action": label_for_action(action_name(action)),
            "ingest_action": sanitize_label(action_name(action)),
            "docker_image": sanitize_label(docker_image),
            "docker_tag": sanitize_label(docker_tag or "latest"),
            "environment": sanitize_label(get_config().ingest.environment),
            "file_type": sanitize_label(study_file.file_type),
            "machine_type": sanitize_label(self.job_machine_type(params_object)),
            "boot_disk_size_gb": sanitize_label(self.boot_disk_size_gb),
        }

    def build_job(self, commands: List[str], machine_type: str, labels: Dict[str, str]) -> Dict[str, Any]:
        cores = int(machine_type.rsplit("-", 1)[-1])
        return {
            "taskGroups": [
                {
                    "taskCount": 1,
                    "taskSpec": {
                        "maxRetryCount": 0,
                        "runnables": [
                            {
                                "container": {"imageUri": self.docker_image, "commands": commands},
                                "environment": {
                                    "variables": {
                                        "ENVIRONMENT": get_config().ingest.environment,
                                        "BATCH_PROJECT": self.project,
                                    }
                                },
                            }
                        ],
                        "computeResource": {"cpuMilli": cores * 1000, "memoryMib": cores * 8 * 1024},
                    },
                }
            ],
            "allocationPolicy": {
                "labels": labels,
                "instances": [
                    {
                        "policy": {
                            "machineType": machine_type,
                            "bootDisk": {"sizeGb": self.boot_disk_size_gb},
                        }
                    }
                ],
                "location": {"allowedLocations": [f"regions/{self.region}"]},
            },
            "labels": labels,
            "logsPolicy": {"destination": "CLOUD_LOGGING"},
        }

    def run_job(self, study_file, user, action: str, params_object: Optional[IngestParameters] = None) -> Dict[str, Any]:
        """
        Submit an ingest job.

        Args:
            study_file: StudyFile to process
            user: User requesting the job
            action: Pipeline action
            params_object: Optional parameter object

        Returns:
            The created job resource (includes its "name")

        Raises:
            ArgumentError: If the parameters are invalid or the action does not fit the file
            BatchApiError: If the batch service rejects the request
        """
        action = action_name(action)
        if params_object is not None:
            errors = params_object.validation_errors()
            if errors:
                raise ArgumentError(f"invalid params_object for {action}: {', '.join(errors)}")

        commands = self.format_command_line(study_file, action, user.metrics_uuid, params_object)
        machine_type = self.job_machine_type(params_object)
        labels = self.job_labels(action, study_file.study, study_file, user, params_object)
        job = self.build_job(commands, machine_type, labels)
        logger.info("[BATCH] Submitting %s for %s on %s: %s", action, study_file.name, machine_type, " ".join(commands))
        return self._request(
            "POST", f"{self.project_location}/jobs", params={"quotaUser": str(user.id)}, json=job
        )
