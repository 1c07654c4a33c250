"""Temporal activities of the scan workflow: thin wrappers around the pipeline services."""

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from temporalio import activity
from temporalio.exceptions import ApplicationError

from sastscan.core.config import Settings
from sastscan.core.errors import ScanPipelineError
from sastscan.schemas.pipeline import (
    AggregateInput,
    CheckoutResult,
    CleanupInput,
    FetchInput,
    NotifyInput,
    PersistInput,
    RepositoryScanUpdate,
    ScanOutcome,
    StatusUpdate,
)
from sastscan.services.aggregator import ScanAggregator, ScanOptions
from sastscan.services.fetcher import RepositoryFetcher, remove_checkout
from sastscan.services.notifier import Notifier
from sastscan.services.persistence import PersistenceGateway
from sastscan.workflows.orchestrator import (
    AGGREGATE_SCAN,
    CLEANUP_CHECKOUT,
    FETCH_REPOSITORY,
    MARK_SCAN_CANCELED,
    MARK_SCAN_FAILED,
    MARK_SCAN_IN_PROGRESS,
    NOTIFY_SUBMITTER,
    PERSIST_RESULTS,
    RECORD_REPOSITORY_SCAN,
    StepHandler,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _log() -> Any:
    return activity.logger if activity.in_activity() else logger


def to_application_error(exc: ScanPipelineError) -> ApplicationError:
    """Failure the workflow sees for a pipeline error; type is the exception class name."""
    return ApplicationError(exc.message, type=type(exc).__name__, non_retryable=exc.non_retryable)


class ScanActivities:
    """
    Activity implementations bound to the worker's services.

    Blocking work (git, database, SMTP) runs in a thread. Fetches and
    aggregations are additionally bounded by per-worker semaphores.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: PersistenceGateway,
        fetcher: RepositoryFetcher,
        aggregator: ScanAggregator,
        notifier: Notifier,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._fetcher = fetcher
        self._aggregator = aggregator
        self._notifier = notifier
        self._fetch_slots = asyncio.Semaphore(settings.WORKER_FETCH_CONCURRENCY)
        self._aggregate_slots = asyncio.Semaphore(settings.WORKER_AGGREGATE_CONCURRENCY)

    def all(self) -> list[Callable[..., Any]]:
        """Activity callables to register with a Temporal worker."""
        return list(self.handlers().values())

    def handlers(self) -> dict[str, StepHandler]:
        """Activities keyed by step name, for running the workflow steps in-process."""
        return {
            MARK_SCAN_IN_PROGRESS: self.mark_scan_in_progress,
            FETCH_REPOSITORY: self.fetch_repository,
            AGGREGATE_SCAN: self.aggregate_scan,
            PERSIST_RESULTS: self.persist_results,
            RECORD_REPOSITORY_SCAN: self.record_repository_scan,
            NOTIFY_SUBMITTER: self.notify_submitter,
            MARK_SCAN_FAILED: self.mark_scan_failed,
            MARK_SCAN_CANCELED: self.mark_scan_canceled,
            CLEANUP_CHECKOUT: self.cleanup_checkout,
        }

    async def _blocking(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except ScanPipelineError as e:
            if activity.in_activity():
                raise to_application_error(e) from e
            raise

    @activity.defn(name=MARK_SCAN_IN_PROGRESS)
    async def mark_scan_in_progress(self, update: StatusUpdate) -> str:
        return await self._blocking(self._gateway.update_scan_status, update.scan_id, update.status)

    @activity.defn(name=FETCH_REPOSITORY)
    async def fetch_repository(self, request: FetchInput) -> CheckoutResult:
        destination = self._settings.checkout_dir(request.scan_id)
        in_activity = activity.in_activity()
        stop = threading.Event()
        async with self._fetch_slots:
            _log().info(
                "Cloning repository %s for scan %s", request.clone_url, request.scan_id
            )
            # Heartbeats are how a cancellation request reaches the activity.
            keepalive = asyncio.create_task(self._keepalive()) if in_activity else None
            clone = asyncio.ensure_future(
                self._blocking(self._fetcher.fetch, request.clone_url, destination, stop.is_set)
            )
            try:
                checkout = await asyncio.shield(clone)
            except asyncio.CancelledError:
                stop.set()
                # git must be gone before the checkout can be cleaned up.
                await asyncio.wait([clone])
                if not clone.cancelled() and clone.exception() is not None:
                    _log().info("Clone for scan %s stopped: %s", request.scan_id, clone.exception())
                raise
            finally:
                if keepalive is not None:
                    keepalive.cancel()
        return CheckoutResult(
            scan_id=request.scan_id,
            repo_dir=str(checkout.path),
            authenticated=checkout.authenticated,
        )

    @activity.defn(name=AGGREGATE_SCAN)
    async def aggregate_scan(self, request: AggregateInput) -> ScanOutcome:
        options = ScanOptions(
            vulnerability_categories=list(request.vulnerability_categories),
            file_extensions=list(request.file_extensions),
            max_files=self._settings.SCAN_MAX_FILES,
            allow_fallback=self._settings.SCAN_ALLOW_FALLBACK,
            max_file_bytes=self._settings.ANALYZER_MAX_FILE_BYTES,
        )
        in_activity = activity.in_activity()
        async with self._aggregate_slots:
            keepalive = asyncio.create_task(self._keepalive()) if in_activity else None
            try:
                return await self._aggregator.run(
                    request.repo_dir,
                    options,
                    request.scan_id,
                    cancel_requested=activity.is_cancelled if in_activity else None,
                    on_progress=_heartbeat_progress if in_activity else None,
                )
            except ScanPipelineError as e:
                if in_activity:
                    raise to_application_error(e) from e
                raise
            finally:
                if keepalive is not None:
                    keepalive.cancel()

    async def _keepalive(self) -> None:
        """Heartbeat while a long clone or analyzer call is in flight."""
        timeout = activity.info().heartbeat_timeout
        interval = timeout.total_seconds() / 3 if timeout else 30.0
        while True:
            await asyncio.sleep(interval)
            activity.heartbeat()

    @activity.defn(name=PERSIST_RESULTS)
    async def persist_results(self, request: PersistInput) -> int:
        return await self._blocking(self._gateway.complete_scan, request.scan_id, request.outcome)

    @activity.defn(name=RECORD_REPOSITORY_SCAN)
    async def record_repository_scan(self, update: RepositoryScanUpdate) -> None:
        await self._blocking(
            self._gateway.update_repository_last_scan, update.repository_id, update.status
        )

    @activity.defn(name=NOTIFY_SUBMITTER)
    async def notify_submitter(self, request: NotifyInput) -> None:
        await self._blocking(
            self._notifier.notify_scan_complete,
            request.email,
            request.repository_name,
            request.repository_id,
            request.finding_count,
        )

    @activity.defn(name=MARK_SCAN_FAILED)
    async def mark_scan_failed(self, update: StatusUpdate) -> str:
        return await self._blocking(
            self._gateway.update_scan_status, update.scan_id, update.status, update.error_message
        )

    @activity.defn(name=MARK_SCAN_CANCELED)
    async def mark_scan_canceled(self, update: StatusUpdate) -> str:
        return await self._blocking(
            self._gateway.update_scan_status, update.scan_id, update.status, update.error_message
        )

    @activity.defn(name=CLEANUP_CHECKOUT)
    async def cleanup_checkout(self, request: CleanupInput) -> bool:
        removed = await asyncio.to_thread(
            remove_checkout, self._settings.checkout_dir(request.scan_id)
        )
        if removed:
            _log().info("Removed checkout for scan %s", request.scan_id)
        return removed


def _heartbeat_progress(done: int, total: int) -> None:
    activity.heartbeat(done, total)
