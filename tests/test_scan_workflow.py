"""Scan workflow: ids, step policies, activity failure translation, and full runs on a Temporal worker."""

import asyncio
import tempfile
import unittest
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from temporalio import workflow
from temporalio.client import WorkflowFailureError, WorkflowHandle
from temporalio.exceptions import (
    ActivityError,
    ApplicationError,
    CancelledError,
    RetryState,
    TimeoutError as ActivityTimeoutError,
    TimeoutType,
)
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from sastscan.core.config import Settings
from sastscan.models import Base
from sastscan.models.scan import (
    SCAN_STATUS_CANCELED,
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
    SCAN_STATUS_IN_PROGRESS,
    SCAN_STATUS_PENDING,
)
from sastscan.schemas.findings import AnalyzedVulnerability
from sastscan.schemas.pipeline import CheckoutResult, ScanOutcome, ScanWorkflowInput, StepLimits
from sastscan.services.aggregator import ScanAggregator, ScanCanceled
from sastscan.services.analyzer import AnalyzerUnavailable, FileAnalysis
from sastscan.services.fetcher import AuthenticationRequired, CloneFailed, RepositoryCheckout
from sastscan.services.persistence import PersistenceGateway
from sastscan.workflows.activities import ScanActivities, to_application_error
from sastscan.workflows.orchestrator import (
    AGGREGATE_SCAN,
    CANCELED_ERROR_TYPES,
    FETCH_REPOSITORY,
    PERSIST_RESULTS,
    STEP_NAMES,
    StepFailed,
    build_step_policies,
)
from sastscan.workflows.scan_workflow import (
    ScanWorkflow,
    TemporalStepRunner,
    _failure_message,
    workflow_id_for_scan,
)


class TestWorkflowIds(unittest.TestCase):
    def test_one_workflow_per_scan(self) -> None:
        self.assertEqual(workflow_id_for_scan("abc"), "scan-workflow-abc")


class TestStepPolicies(unittest.TestCase):
    def test_every_step_has_policy(self) -> None:
        self.assertEqual(set(build_step_policies(StepLimits())), set(STEP_NAMES))

    def test_limits_applied(self) -> None:
        policies = build_step_policies(
            StepLimits(
                fetch_timeout_minutes=10,
                fetch_max_attempts=5,
                aggregate_timeout_minutes=45,
                aggregate_max_attempts=1,
                aggregate_heartbeat_seconds=60,
            )
        )
        fetch = policies[FETCH_REPOSITORY]
        aggregate = policies[AGGREGATE_SCAN]
        self.assertEqual((fetch.timeout, fetch.max_attempts), (timedelta(minutes=10), 5))
        self.assertEqual(fetch.result_type, CheckoutResult)
        self.assertEqual((aggregate.timeout, aggregate.max_attempts), (timedelta(minutes=45), 1))
        self.assertEqual(aggregate.heartbeat_timeout, timedelta(seconds=60))
        self.assertEqual(aggregate.result_type, ScanOutcome)
        self.assertEqual(policies[PERSIST_RESULTS].result_type, int)


class TestFailureTranslation(unittest.TestCase):
    def test_application_error_message(self) -> None:
        error = MagicMock(cause=ApplicationError("repository not found"))
        self.assertEqual(_failure_message(FETCH_REPOSITORY, error), "repository not found")

    def test_timeout(self) -> None:
        error = MagicMock(
            cause=ActivityTimeoutError("timeout", type=TimeoutType.START_TO_CLOSE, last_heartbeat_details=[])
        )
        self.assertEqual(_failure_message(AGGREGATE_SCAN, error), "aggregate_scan timed out")

    def test_to_application_error_keeps_retryability(self) -> None:
        retryable = to_application_error(CloneFailed("network unreachable"))
        permanent = to_application_error(AnalyzerUnavailable("Code analyzer API key is not set"))

        self.assertEqual(retryable.message, "network unreachable")
        self.assertEqual(retryable.type, "CloneFailed")
        self.assertFalse(retryable.non_retryable)
        self.assertTrue(permanent.non_retryable)
        self.assertEqual(permanent.type, "AnalyzerUnavailable")

    def test_cancellation_error_types(self) -> None:
        error = to_application_error(ScanCanceled("Scan was canceled before all files were analyzed"))

        self.assertIn(error.type, CANCELED_ERROR_TYPES)
        self.assertTrue(error.non_retryable)


def _activity_error(cause: BaseException) -> ActivityError:
    error = ActivityError(
        "Activity task failed",
        scheduled_event_id=5,
        started_event_id=6,
        identity="worker-1",
        activity_type=AGGREGATE_SCAN,
        activity_id="3",
        retry_state=RetryState.NON_RETRYABLE_FAILURE,
    )
    error.__cause__ = cause
    return error


class TestTemporalStepRunner(unittest.TestCase):
    """Activity outcomes as seen by the orchestrator."""

    def setUp(self) -> None:
        self.policies = build_step_policies(StepLimits(fetch_max_attempts=4))

    @patch("sastscan.workflows.scan_workflow.workflow.execute_activity", new_callable=AsyncMock)
    def test_step_options(self, mock_execute: AsyncMock) -> None:
        mock_execute.return_value = "in_progress"
        runner = TemporalStepRunner()

        asyncio.run(runner.run(FETCH_REPOSITORY, "arg", self.policies[FETCH_REPOSITORY]))
        fetch_kwargs = mock_execute.call_args.kwargs
        asyncio.run(runner.run(PERSIST_RESULTS, "arg", self.policies[PERSIST_RESULTS]))
        persist_kwargs = mock_execute.call_args.kwargs

        self.assertEqual(fetch_kwargs["retry_policy"].maximum_attempts, 4)
        self.assertEqual(fetch_kwargs["result_type"], CheckoutResult)
        self.assertEqual(
            fetch_kwargs["cancellation_type"],
            workflow.ActivityCancellationType.WAIT_CANCELLATION_COMPLETED,
        )
        self.assertEqual(persist_kwargs["cancellation_type"], workflow.ActivityCancellationType.TRY_CANCEL)

    @patch("sastscan.workflows.scan_workflow.workflow.execute_activity", new_callable=AsyncMock)
    def test_cancelled_activity_cancels_the_scan(self, mock_execute: AsyncMock) -> None:
        mock_execute.side_effect = _activity_error(CancelledError("Cancelled"))

        async def scenario() -> None:
            with self.assertRaises(asyncio.CancelledError):
                await TemporalStepRunner().run(AGGREGATE_SCAN, "arg", self.policies[AGGREGATE_SCAN])

        asyncio.run(scenario())

    @patch("sastscan.workflows.scan_workflow.workflow.execute_activity", new_callable=AsyncMock)
    def test_application_error_keeps_type(self, mock_execute: AsyncMock) -> None:
        mock_execute.side_effect = _activity_error(
            ApplicationError("Scan was canceled before all files were analyzed", type="ScanCanceled")
        )

        with self.assertRaises(StepFailed) as ctx:
            asyncio.run(TemporalStepRunner().run(AGGREGATE_SCAN, "arg", self.policies[AGGREGATE_SCAN]))

        self.assertEqual(ctx.exception.error_type, "ScanCanceled")
        self.assertEqual(ctx.exception.message, "Scan was canceled before all files were analyzed")

    @patch("sastscan.workflows.scan_workflow.workflow.execute_activity", new_callable=AsyncMock)
    def test_timeout_has_no_error_type(self, mock_execute: AsyncMock) -> None:
        mock_execute.side_effect = _activity_error(
            ActivityTimeoutError("timeout", type=TimeoutType.START_TO_CLOSE, last_heartbeat_details=[])
        )

        with self.assertRaises(StepFailed) as ctx:
            asyncio.run(TemporalStepRunner().run(FETCH_REPOSITORY, "arg", self.policies[FETCH_REPOSITORY]))

        self.assertIsNone(ctx.exception.error_type)
        self.assertEqual(ctx.exception.message, "fetch_repository timed out")


class TestScanResultQuery(unittest.TestCase):
    def test_placeholder_before_run_starts(self) -> None:
        snapshot = ScanWorkflow().scan_result()

        self.assertEqual(snapshot.status, SCAN_STATUS_PENDING)
        self.assertEqual((snapshot.scan_id, snapshot.repository_id), ("", ""))


class TreeFetcher:
    """Writes a small working tree instead of cloning."""

    def __init__(self, files: dict[str, str]) -> None:
        self.files = files

    def fetch(self, clone_url: str, destination: Path, cancel_requested: Any = None) -> RepositoryCheckout:
        dest = Path(destination)
        for rel, content in self.files.items():
            path = dest / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return RepositoryCheckout(path=dest, clone_url=clone_url)


class KeywordAnalyzer:
    """Reports one injection finding per file calling execute(); can be made to hang."""

    def __init__(self, hang: bool = False) -> None:
        self.hang = hang
        self.started = asyncio.Event()

    def ensure_configured(self) -> None:
        return None

    async def analyze(self, code: str, language: str, file_path: str, categories: list[str]) -> FileAnalysis:
        if self.hang:
            self.started.set()
            await asyncio.Event().wait()
        if "execute(" not in code:
            return FileAnalysis()
        return FileAnalysis(
            findings=[
                AnalyzedVulnerability(
                    vulnerability_type="Injection",
                    line_start=2,
                    line_end=2,
                    severity="Critical",
                    description="query built from request input",
                )
            ]
        )


async def _start_environment() -> WorkflowEnvironment:
    try:
        return await WorkflowEnvironment.start_local()
    except Exception as e:
        raise unittest.SkipTest(f"Temporal dev server unavailable: {e}") from e


class TestScanWorkflowOnWorker(unittest.TestCase):
    """ScanWorkflow on a local Temporal dev server with the real activities over SQLite."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.settings = Settings(CHECKOUT_ROOT=Path(self._tmp.name) / "repos", ANALYZER_API_KEY="k")
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        self.gateway = PersistenceGateway(sessionmaker(autocommit=False, autoflush=False, bind=engine))
        self.gateway.upsert_repository("repo-1", "octo", "hello", "https://github.com/octo/hello.git")
        self.scan_id = self.gateway.create_scan("repo-1")
        self.notifier = MagicMock()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _request(self) -> ScanWorkflowInput:
        return ScanWorkflowInput(
            scan_id=self.scan_id,
            repository_id="repo-1",
            clone_url="https://github.com/octo/hello.git",
            owner="octo",
            name="hello",
            vulnerability_categories=["Injection"],
            file_extensions=[".py"],
            notify_email=True,
            email="dev@example.com",
            limits=StepLimits(fetch_max_attempts=1, aggregate_max_attempts=1, aggregate_heartbeat_seconds=3),
        )

    def _activities(self, fetcher: Any, analyzer: Any) -> ScanActivities:
        return ScanActivities(self.settings, self.gateway, fetcher, ScanAggregator(analyzer), self.notifier)

    def _run(self, activities: ScanActivities, scenario: Callable[[WorkflowHandle], Awaitable[Any]]) -> Any:
        async def run() -> Any:
            env = await _start_environment()
            try:
                task_queue = f"scan-test-{uuid.uuid4()}"
                async with Worker(
                    env.client,
                    task_queue=task_queue,
                    workflows=[ScanWorkflow],
                    activities=activities.all(),
                ):
                    handle = await env.client.start_workflow(
                        ScanWorkflow.run,
                        self._request(),
                        id=workflow_id_for_scan(self.scan_id),
                        task_queue=task_queue,
                    )
                    return await scenario(handle)
            finally:
                await env.shutdown()

        return asyncio.run(run())

    def test_completed_scan(self) -> None:
        fetcher = TreeFetcher({"app.py": "import db\ndb.execute('select ' + name)\n", "util.py": "x = 1\n"})

        async def scenario(handle: WorkflowHandle) -> Any:
            return await handle.result()

        snapshot = self._run(self._activities(fetcher, KeywordAnalyzer()), scenario)

        self.assertEqual(snapshot.status, SCAN_STATUS_COMPLETED)
        self.assertEqual(snapshot.findings_by_category, {"Injection": 1})
        scan = self.gateway.get_scan(self.scan_id)
        self.assertEqual(scan.status, SCAN_STATUS_COMPLETED)
        self.assertEqual(self.gateway.count_findings(self.scan_id), 1)
        self.assertFalse(self.settings.checkout_dir(self.scan_id).exists())
        self.notifier.notify_scan_complete.assert_called_once_with("dev@example.com", "octo/hello", "repo-1", 1)

    def test_authentication_failure_fails_the_run(self) -> None:
        fetcher = MagicMock()
        fetcher.fetch.side_effect = AuthenticationRequired(
            "repository requires authentication but no access token is configured"
        )

        async def scenario(handle: WorkflowHandle) -> BaseException:
            try:
                await handle.result()
            except WorkflowFailureError as e:
                return e
            self.fail("workflow run did not fail")

        error = self._run(self._activities(fetcher, KeywordAnalyzer()), scenario)

        self.assertIsInstance(error.cause, ApplicationError)
        self.assertEqual(error.cause.type, "ScanFailed")
        scan = self.gateway.get_scan(self.scan_id)
        self.assertEqual(scan.status, SCAN_STATUS_FAILED)
        self.assertTrue(scan.error_message.startswith("Failed to clone repository: "))
        self.assertIn("authentication", scan.error_message)
        self.notifier.notify_scan_complete.assert_not_called()

    def test_cancel_during_aggregation(self) -> None:
        fetcher = TreeFetcher({"app.py": "import db\ndb.execute('select ' + name)\n"})
        analyzer = KeywordAnalyzer(hang=True)
        seen: dict[str, Any] = {}

        async def scenario(handle: WorkflowHandle) -> BaseException:
            await asyncio.wait_for(analyzer.started.wait(), 30)
            seen["snapshot"] = await handle.query(ScanWorkflow.scan_result)
            await handle.cancel()
            try:
                await handle.result()
            except WorkflowFailureError as e:
                return e
            self.fail("workflow run was not canceled")

        error = self._run(self._activities(fetcher, analyzer), scenario)

        mid_run = seen["snapshot"]
        self.assertEqual((mid_run.scan_id, mid_run.status), (self.scan_id, SCAN_STATUS_IN_PROGRESS))
        self.assertEqual(mid_run.message, "Scanning repository")
        self.assertIsInstance(error.cause, CancelledError)
        scan = self.gateway.get_scan(self.scan_id)
        self.assertEqual(scan.status, SCAN_STATUS_CANCELED)
        self.assertFalse(scan.results_available)
        self.assertFalse(self.settings.checkout_dir(self.scan_id).exists())
