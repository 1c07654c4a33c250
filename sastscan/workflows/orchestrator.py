"""
Scan orchestration: the ordered steps of one scan, their retry budgets, and the
status transitions recorded after each outcome.

ScanOrchestrator only talks to a StepRunner, so the same sequence runs inside a
Temporal workflow (TemporalStepRunner) or in-process (LocalStepRunner).
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol

from sastscan.core.errors import ScanPipelineError
from sastscan.models.scan import (
    SCAN_STATUS_CANCELED,
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
    SCAN_STATUS_IN_PROGRESS,
    SCAN_STATUS_PENDING,
)
from sastscan.schemas.pipeline import (
    AggregateInput,
    CheckoutResult,
    CleanupInput,
    FetchInput,
    NotifyInput,
    PersistInput,
    RepositoryScanUpdate,
    ScanOutcome,
    ScanSnapshot,
    ScanWorkflowInput,
    StatusUpdate,
    StepLimits,
)

# Step (activity) names.
MARK_SCAN_IN_PROGRESS = "mark_scan_in_progress"
FETCH_REPOSITORY = "fetch_repository"
AGGREGATE_SCAN = "aggregate_scan"
PERSIST_RESULTS = "persist_results"
RECORD_REPOSITORY_SCAN = "record_repository_scan"
NOTIFY_SUBMITTER = "notify_submitter"
MARK_SCAN_FAILED = "mark_scan_failed"
MARK_SCAN_CANCELED = "mark_scan_canceled"
CLEANUP_CHECKOUT = "cleanup_checkout"

STEP_NAMES: tuple[str, ...] = (
    MARK_SCAN_IN_PROGRESS,
    FETCH_REPOSITORY,
    AGGREGATE_SCAN,
    PERSIST_RESULTS,
    RECORD_REPOSITORY_SCAN,
    NOTIFY_SUBMITTER,
    MARK_SCAN_FAILED,
    MARK_SCAN_CANCELED,
    CLEANUP_CHECKOUT,
)

CANCELED_MESSAGE = "Scan was canceled"
FETCH_HEARTBEAT_TIMEOUT = timedelta(minutes=1)

# Error types a step raises after it noticed the scan was canceled.
CANCELED_ERROR_TYPES: frozenset[str] = frozenset({"ScanCanceled", "CloneCanceled"})

_default_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepPolicy:
    timeout: timedelta
    max_attempts: int
    heartbeat_timeout: timedelta | None = None
    result_type: type | None = None
    # Wait for the step to acknowledge cancellation before the scan moves on.
    wait_for_cancellation: bool = False


def build_step_policies(limits: StepLimits) -> dict[str, StepPolicy]:
    """Retry and timeout policy per step; fetch and aggregate budgets come from limits."""
    db_step = StepPolicy(timeout=timedelta(minutes=1), max_attempts=5)
    return {
        MARK_SCAN_IN_PROGRESS: StepPolicy(
            timeout=db_step.timeout, max_attempts=db_step.max_attempts, result_type=str
        ),
        FETCH_REPOSITORY: StepPolicy(
            timeout=timedelta(minutes=limits.fetch_timeout_minutes),
            max_attempts=limits.fetch_max_attempts,
            heartbeat_timeout=FETCH_HEARTBEAT_TIMEOUT,
            result_type=CheckoutResult,
            wait_for_cancellation=True,
        ),
        AGGREGATE_SCAN: StepPolicy(
            timeout=timedelta(minutes=limits.aggregate_timeout_minutes),
            max_attempts=limits.aggregate_max_attempts,
            heartbeat_timeout=timedelta(seconds=limits.aggregate_heartbeat_seconds),
            result_type=ScanOutcome,
        ),
        PERSIST_RESULTS: StepPolicy(
            timeout=timedelta(minutes=5), max_attempts=db_step.max_attempts, result_type=int
        ),
        RECORD_REPOSITORY_SCAN: db_step,
        NOTIFY_SUBMITTER: StepPolicy(timeout=timedelta(minutes=2), max_attempts=3),
        MARK_SCAN_FAILED: StepPolicy(
            timeout=db_step.timeout, max_attempts=db_step.max_attempts, result_type=str
        ),
        MARK_SCAN_CANCELED: StepPolicy(
            timeout=db_step.timeout, max_attempts=db_step.max_attempts, result_type=str
        ),
        CLEANUP_CHECKOUT: StepPolicy(
            timeout=timedelta(minutes=5), max_attempts=3, result_type=bool
        ),
    }


class StepFailed(Exception):
    """A step exhausted its attempts (or failed non-retryably); message is human readable.

    error_type names the last error (exception class or activity failure type) when known.
    """

    def __init__(self, step: str, message: str, error_type: str | None = None) -> None:
        self.step = step
        self.message = message or f"{step} failed"
        self.error_type = error_type
        super().__init__(self.message)


class StepCanceled(Exception):
    """A step stopped because the scan was canceled while the run itself kept going."""

    def __init__(self, step: str) -> None:
        self.step = step
        super().__init__(f"{step} stopped after the scan was canceled")


class StepRunner(Protocol):
    async def run(self, step: str, arg: Any, policy: StepPolicy) -> Any:
        """Run step with arg under policy; raise StepFailed when it cannot succeed."""
        ...


StepHandler = Callable[[Any], Awaitable[Any]]


class LocalStepRunner:
    """
    Runs steps in-process against handlers keyed by step name, with the same
    attempt budgets and timeouts a Temporal worker would apply.
    """

    def __init__(
        self,
        handlers: Mapping[str, StepHandler],
        retry_delay_seconds: float = 0.0,
        logger: Any = None,
    ) -> None:
        self._handlers = dict(handlers)
        self._retry_delay = retry_delay_seconds
        self._logger = logger or _default_logger

    async def run(self, step: str, arg: Any, policy: StepPolicy) -> Any:
        handler = self._handlers.get(step)
        if handler is None:
            raise StepFailed(step, f"No handler registered for step {step}")

        message = ""
        error_type: str | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await asyncio.wait_for(handler(arg), policy.timeout.total_seconds())
            except asyncio.TimeoutError:
                message = f"{step} timed out after {policy.timeout.total_seconds():.0f}s"
                error_type = None
            except ScanPipelineError as e:
                message = e.message
                error_type = type(e).__name__
                if e.non_retryable:
                    self._logger.warning("Step %s failed permanently: %s", step, message)
                    break
            except Exception as e:
                message = str(e) or type(e).__name__
                error_type = type(e).__name__
            self._logger.warning(
                "Step %s failed (attempt %s/%s): %s", step, attempt, policy.max_attempts, message
            )
            if attempt < policy.max_attempts and self._retry_delay > 0:
                await asyncio.sleep(self._retry_delay)
        raise StepFailed(step, message, error_type)


class ScanOrchestrator:
    """
    Drives one scan through mark-in-progress, fetch, aggregate, persist,
    repository update, notification and checkout cleanup.

    Any failure before results are committed ends in failed with a message
    naming the failed step. Repository update and notification are best-effort.
    Cleanup runs on every exit path. Cancellation records canceled; a cancelled
    task re-raises, while a step that reports cancellation ends the run normally.
    The class holds no I/O of its own so it is safe to run as workflow code.
    """

    def __init__(
        self,
        runner: StepRunner,
        policies: Mapping[str, StepPolicy] | None = None,
        logger: Any = None,
    ) -> None:
        self._runner = runner
        self._policies = dict(policies) if policies is not None else build_step_policies(StepLimits())
        self._logger = logger or _default_logger
        self._snapshot: ScanSnapshot | None = None

    @property
    def snapshot(self) -> ScanSnapshot | None:
        return self._snapshot

    async def run(self, request: ScanWorkflowInput) -> ScanSnapshot:
        """Run all steps for request and return the final snapshot."""
        self._snapshot = ScanSnapshot(
            scan_id=request.scan_id,
            repository_id=request.repository_id,
            status=SCAN_STATUS_PENDING,
            message="Scan queued",
        )
        self._logger.info(
            "Starting repository scan workflow: scan_id=%s repository=%s/%s",
            request.scan_id,
            request.owner,
            request.name,
        )
        try:
            await self._run_steps(request)
        except asyncio.CancelledError:
            await self._cancel(request)
            raise
        except StepCanceled as e:
            self._logger.info("Step %s reported cancellation", e.step)
            await self._cancel(request)
        finally:
            await self._cleanup(request)
        return self._snapshot

    async def _run_steps(self, request: ScanWorkflowInput) -> None:
        scan_id = request.scan_id
        try:
            await self._step(MARK_SCAN_IN_PROGRESS, StatusUpdate(scan_id=scan_id, status=SCAN_STATUS_IN_PROGRESS))
        except StepFailed as e:
            await self._fail(request, f"Failed to start scan: {e.message}")
            return
        self._update(status=SCAN_STATUS_IN_PROGRESS, message="Cloning repository")

        try:
            checkout: CheckoutResult = await self._step(
                FETCH_REPOSITORY,
                FetchInput(scan_id=scan_id, repository_id=request.repository_id, clone_url=request.clone_url),
            )
        except StepFailed as e:
            await self._fail(request, f"Failed to clone repository: {e.message}")
            return
        self._update(message="Scanning repository")

        try:
            outcome: ScanOutcome = await self._step(
                AGGREGATE_SCAN,
                AggregateInput(
                    scan_id=scan_id,
                    repository_id=request.repository_id,
                    repo_dir=checkout.repo_dir,
                    vulnerability_categories=list(request.vulnerability_categories),
                    file_extensions=list(request.file_extensions),
                ),
            )
        except StepFailed as e:
            await self._fail(request, f"Failed to scan repository: {e.message}")
            return
        self._update(
            message="Storing scan results",
            files_analyzed=outcome.files_analyzed,
            files_failed=outcome.files_failed,
        )

        try:
            stored = await self._step(PERSIST_RESULTS, PersistInput(scan_id=scan_id, outcome=outcome))
        except StepFailed as e:
            await self._fail(request, f"Failed to store scan results: {e.message}")
            return

        by_category = Counter(f.category for f in outcome.findings)
        self._update(
            status=SCAN_STATUS_COMPLETED,
            message="Scan completed successfully",
            finding_count=stored,
            findings_by_category=dict(sorted(by_category.items())),
        )
        self._logger.info(
            "Scan completed: scan_id=%s findings=%s files_analyzed=%s files_failed=%s",
            scan_id,
            stored,
            outcome.files_analyzed,
            outcome.files_failed,
        )

        await self._best_effort(
            RECORD_REPOSITORY_SCAN,
            RepositoryScanUpdate(repository_id=request.repository_id, status=SCAN_STATUS_COMPLETED),
        )
        if request.notify_email and request.email:
            await self._best_effort(
                NOTIFY_SUBMITTER,
                NotifyInput(
                    email=request.email,
                    repository_name=f"{request.owner}/{request.name}",
                    repository_id=request.repository_id,
                    finding_count=stored,
                ),
            )

    async def _step(self, step: str, arg: Any) -> Any:
        try:
            return await self._runner.run(step, arg, self._policies[step])
        except StepFailed as e:
            if e.error_type in CANCELED_ERROR_TYPES:
                raise StepCanceled(step) from e
            raise

    async def _best_effort(self, step: str, arg: Any) -> None:
        try:
            await self._step(step, arg)
        except StepFailed as e:
            self._logger.warning("Best-effort step %s failed: %s", step, e.message)

    async def _fail(self, request: ScanWorkflowInput, message: str) -> None:
        self._logger.error("Scan failed: scan_id=%s error=%s", request.scan_id, message)
        await self._record_terminal(request, MARK_SCAN_FAILED, SCAN_STATUS_FAILED, message)

    async def _cancel(self, request: ScanWorkflowInput) -> None:
        self._logger.info("Scan canceled: scan_id=%s", request.scan_id)
        await self._record_terminal(request, MARK_SCAN_CANCELED, SCAN_STATUS_CANCELED, CANCELED_MESSAGE)

    async def _record_terminal(
        self, request: ScanWorkflowInput, step: str, status: str, message: str
    ) -> None:
        self._update(status=status, message=message)
        try:
            await self._step(step, StatusUpdate(scan_id=request.scan_id, status=status, error_message=message))
        except StepFailed as e:
            self._logger.error(
                "Failed to record %s status: scan_id=%s error=%s", status, request.scan_id, e.message
            )
        await self._best_effort(
            RECORD_REPOSITORY_SCAN,
            RepositoryScanUpdate(repository_id=request.repository_id, status=status),
        )

    async def _cleanup(self, request: ScanWorkflowInput) -> None:
        await self._best_effort(CLEANUP_CHECKOUT, CleanupInput(scan_id=request.scan_id))

    def _update(self, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(self._snapshot, key, value)
