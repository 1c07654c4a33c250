"""Temporal workflow definition for repository scans."""

import asyncio
from typing import Any

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import (
    ActivityError,
    ApplicationError,
    CancelledError,
    TimeoutError as ActivityTimeoutError,
)

with workflow.unsafe.imports_passed_through():
    from sastscan.models.scan import SCAN_STATUS_FAILED, SCAN_STATUS_PENDING
    from sastscan.schemas.pipeline import ScanSnapshot, ScanWorkflowInput
    from sastscan.workflows.orchestrator import (
        ScanOrchestrator,
        StepFailed,
        StepPolicy,
        build_step_policies,
    )

SCAN_WORKFLOW_NAME = "ScanWorkflow"
SCAN_RESULT_QUERY = "scan_result"


def workflow_id_for_scan(scan_id: str) -> str:
    return f"scan-workflow-{scan_id}"


def _failure_message(step: str, error: ActivityError) -> str:
    cause = error.cause
    if isinstance(cause, ApplicationError):
        return cause.message
    if isinstance(cause, ActivityTimeoutError):
        return f"{step} timed out"
    if cause is not None:
        return str(cause) or type(cause).__name__
    return str(error) or f"{step} failed"


class TemporalStepRunner:
    """Runs each step as a Temporal activity with the step's retry policy and timeouts."""

    async def run(self, step: str, arg: Any, policy: StepPolicy) -> Any:
        try:
            return await workflow.execute_activity(
                step,
                arg,
                result_type=policy.result_type,
                start_to_close_timeout=policy.timeout,
                heartbeat_timeout=policy.heartbeat_timeout,
                retry_policy=RetryPolicy(maximum_attempts=policy.max_attempts),
                cancellation_type=(
                    workflow.ActivityCancellationType.WAIT_CANCELLATION_COMPLETED
                    if policy.wait_for_cancellation
                    else workflow.ActivityCancellationType.TRY_CANCEL
                ),
            )
        except ActivityError as e:
            if isinstance(e.cause, CancelledError):
                raise asyncio.CancelledError() from e
            error_type = e.cause.type if isinstance(e.cause, ApplicationError) else None
            raise StepFailed(step, _failure_message(step, e), error_type) from e


@workflow.defn(name=SCAN_WORKFLOW_NAME)
class ScanWorkflow:
    def __init__(self) -> None:
        self._orchestrator: ScanOrchestrator | None = None

    @workflow.run
    async def run(self, request: ScanWorkflowInput) -> ScanSnapshot:
        self._orchestrator = ScanOrchestrator(
            TemporalStepRunner(),
            build_step_policies(request.limits),
            logger=workflow.logger,
        )
        snapshot = await self._orchestrator.run(request)
        if snapshot.status == SCAN_STATUS_FAILED:
            # Fail the run so the engine's history agrees with the scan row.
            raise ApplicationError(snapshot.message, type="ScanFailed", non_retryable=True)
        return snapshot

    @workflow.query(name=SCAN_RESULT_QUERY)
    def scan_result(self) -> ScanSnapshot:
        """Current snapshot of the scan; never blocks."""
        if self._orchestrator is None or self._orchestrator.snapshot is None:
            return ScanSnapshot(scan_id="", repository_id="", status=SCAN_STATUS_PENDING)
        return self._orchestrator.snapshot
