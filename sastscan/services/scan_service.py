"""Inbound scan contracts: start a scan workflow, report its status and results, cancel it."""

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from sastscan.core.config import DEFAULT_FILE_EXTENSIONS, DEFAULT_VULNERABILITY_CATEGORIES
from sastscan.core.errors import ScanPipelineError
from sastscan.models.scan import SCAN_STATUS_CANCELED, SCAN_STATUS_FAILED, TERMINAL_STATUSES
from sastscan.schemas.findings import FindingResponse
from sastscan.schemas.pipeline import ScanWorkflowInput, StepLimits
from sastscan.schemas.scan import (
    ScanCreateRequest,
    ScanResultsResponse,
    ScanStartResponse,
    ScanStatusResponse,
)
from sastscan.services.persistence import PersistenceGateway
from sastscan.workflows.orchestrator import CANCELED_MESSAGE
from sastscan.workflows.scan_workflow import ScanWorkflow, workflow_id_for_scan

if TYPE_CHECKING:
    from sastscan.core.config import Settings

logger = logging.getLogger(__name__)

GITHUB_URL_PREFIXES: tuple[str, ...] = (
    "https://github.com/",
    "http://github.com/",
    "git@github.com:",
)

IN_PROGRESS_MESSAGE = "Scan is still in progress, results not available yet"


class InvalidRepositoryUrl(ScanPipelineError):
    """The clone URL is not a supported repository URL and owner/name were not given."""

    non_retryable = True


class WorkflowUnavailable(ScanPipelineError):
    """The workflow engine rejected or could not be reached for a start or cancel request."""


class ScanNotCancelable(ScanPipelineError):
    """The scan already reached a terminal state."""

    non_retryable = True


@dataclass
class RepositoryRef:
    owner: str
    name: str
    clone_url: str


def parse_github_url(url: str) -> tuple[str, str]:
    """
    Extract (owner, name) from a GitHub URL.

    Accepts https://github.com/owner/repo(.git), http://..., github.com/owner/repo
    and git@github.com:owner/repo.git. Raises InvalidRepositoryUrl otherwise.
    """
    normalized = url.strip().rstrip("/")
    if normalized.startswith("github.com/"):
        normalized = "https://" + normalized
    for prefix in GITHUB_URL_PREFIXES:
        if normalized.startswith(prefix):
            parts = normalized[len(prefix):].split("/")
            if len(parts) < 2 or not parts[0] or not parts[1]:
                break
            name = parts[1].removesuffix(".git")
            if not name:
                break
            return parts[0], name
    raise InvalidRepositoryUrl(
        f"unsupported GitHub URL format: {url} (expected 'https://github.com/owner/repo')"
    )


def resolve_repository(request: ScanCreateRequest) -> RepositoryRef:
    """Owner, name and a cloneable URL for the request; shorthand GitHub URLs become HTTPS."""
    clone_url = request.clone_url.strip()
    if clone_url.startswith("github.com/"):
        clone_url = "https://" + clone_url
    if request.owner and request.name:
        return RepositoryRef(owner=request.owner, name=request.name, clone_url=clone_url)
    owner, name = parse_github_url(clone_url)
    return RepositoryRef(owner=request.owner or owner, name=request.name or name, clone_url=clone_url)


def repository_id_for(owner: str, name: str) -> str:
    """Deterministic repository id for owner/name (UUID5 over the GitHub URL)."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"https://github.com/{owner}/{name}".lower()))


def step_limits(settings: "Settings") -> StepLimits:
    return StepLimits(
        fetch_timeout_minutes=settings.FETCH_TIMEOUT_MINUTES,
        fetch_max_attempts=settings.FETCH_MAX_ATTEMPTS,
        aggregate_timeout_minutes=settings.AGGREGATE_TIMEOUT_MINUTES,
        aggregate_max_attempts=settings.AGGREGATE_MAX_ATTEMPTS,
        aggregate_heartbeat_seconds=settings.AGGREGATE_HEARTBEAT_SECONDS,
    )


class ScanService:
    """Scan lifecycle as seen by API callers. The database row is the source of truth for status."""

    def __init__(
        self,
        settings: "Settings",
        gateway: PersistenceGateway,
        client: Client | None = None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._client = client

    def _workflow_client(self) -> Client:
        if self._client is None:
            raise WorkflowUnavailable("Workflow engine client is not configured")
        return self._client

    async def start_scan(self, request: ScanCreateRequest) -> ScanStartResponse:
        """
        Record a pending scan and start its workflow.

        Raises InvalidRepositoryUrl for unparseable URLs and WorkflowUnavailable when
        the workflow cannot be started (the scan is then marked failed).
        """
        repo = resolve_repository(request)
        repository_id = request.repository_id or repository_id_for(repo.owner, repo.name)

        self._gateway.upsert_repository(repository_id, repo.owner, repo.name, repo.clone_url)
        scan_id = self._gateway.create_scan(repository_id, submitted_by=request.submitted_by)

        workflow_input = ScanWorkflowInput(
            scan_id=scan_id,
            repository_id=repository_id,
            clone_url=repo.clone_url,
            owner=repo.owner,
            name=repo.name,
            vulnerability_categories=list(
                request.vulnerability_categories or DEFAULT_VULNERABILITY_CATEGORIES
            ),
            file_extensions=list(request.file_extensions or DEFAULT_FILE_EXTENSIONS),
            notify_email=request.notify_email,
            email=request.email,
            submitted_by=request.submitted_by,
            limits=step_limits(self._settings),
        )
        workflow_id = workflow_id_for_scan(scan_id)
        try:
            handle = await self._workflow_client().start_workflow(
                ScanWorkflow.run,
                workflow_input,
                id=workflow_id,
                task_queue=self._settings.TEMPORAL_TASK_QUEUE,
            )
        except (RPCError, WorkflowAlreadyStartedError) as e:
            message = f"Failed to start scan workflow: {e}"
            logger.error(message, extra={"scan_id": scan_id, "workflow_id": workflow_id})
            self._gateway.update_scan_status(scan_id, SCAN_STATUS_FAILED, message)
            raise WorkflowUnavailable(message, cause=e) from e

        run_id = handle.result_run_id or handle.first_execution_run_id or ""
        self._gateway.set_workflow_run_id(scan_id, run_id)
        logger.info(
            "Scan workflow started",
            extra={"scan_id": scan_id, "workflow_id": workflow_id, "run_id": run_id},
        )
        return ScanStartResponse(scan_id=scan_id, run_id=run_id, repository_id=repository_id)

    def get_scan_status(self, scan_id: str) -> ScanStatusResponse:
        scan = self._gateway.get_scan(scan_id)
        return ScanStatusResponse(
            scan_id=scan.id,
            repository_id=scan.repository_id,
            status=scan.status,
            started_at=scan.started_at,
            completed_at=scan.completed_at,
            error_message=scan.error_message,
            results_available=bool(scan.results_available),
            files_analyzed=scan.files_analyzed or 0,
            files_failed=scan.files_failed or 0,
        )

    def get_scan_results(self, scan_id: str) -> ScanResultsResponse:
        """Findings grouped by category once results are available; otherwise an empty report with a message."""
        scan = self._gateway.get_scan(scan_id)
        if not scan.results_available:
            if scan.status == SCAN_STATUS_FAILED:
                message = scan.error_message or "Scan failed"
            elif scan.status == SCAN_STATUS_CANCELED:
                message = scan.error_message or CANCELED_MESSAGE
            else:
                message = IN_PROGRESS_MESSAGE
            return ScanResultsResponse(
                scan_id=scan.id,
                status=scan.status,
                results_available=False,
                findings_count=0,
                message=message,
            )

        grouped = self._gateway.findings_by_category(scan_id)
        return ScanResultsResponse(
            scan_id=scan.id,
            status=scan.status,
            results_available=True,
            findings_count=sum(len(rows) for rows in grouped.values()),
            findings_by_category={
                category: [FindingResponse.model_validate(row) for row in rows]
                for category, rows in grouped.items()
            },
        )

    async def cancel_scan(self, scan_id: str) -> ScanStatusResponse:
        """
        Request cancellation of a running scan.

        The workflow records canceled once the running step stops. If the workflow
        no longer exists the scan is marked canceled directly.
        """
        scan = self._gateway.get_scan(scan_id)
        if scan.status in TERMINAL_STATUSES:
            raise ScanNotCancelable(f"Scan {scan_id} is already {scan.status}")

        handle = self._workflow_client().get_workflow_handle(workflow_id_for_scan(scan_id))
        try:
            await handle.cancel()
        except RPCError as e:
            if e.status != RPCStatusCode.NOT_FOUND:
                raise WorkflowUnavailable(f"Failed to cancel scan workflow: {e}", cause=e) from e
            logger.warning("Workflow for scan %s not found; marking scan canceled", scan_id)
            self._gateway.update_scan_status(scan_id, SCAN_STATUS_CANCELED, CANCELED_MESSAGE)
        else:
            logger.info("Cancellation requested", extra={"scan_id": scan_id})
        return self.get_scan_status(scan_id)
