"""
Temporal worker entrypoint: hosts the scan workflow and its activities.

  python -m sastscan.worker

Run one or more workers next to the API; each polls TEMPORAL_TASK_QUEUE.
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv
from temporalio.client import Client
from temporalio.worker import Worker

from sastscan.core.config import Settings, get_settings
from sastscan.core.database import create_session_factory
from sastscan.services.aggregator import ScanAggregator
from sastscan.services.analyzer import CodeAnalyzerClient
from sastscan.services.fetcher import RepositoryFetcher
from sastscan.services.notifier import Notifier
from sastscan.services.persistence import PersistenceGateway
from sastscan.workflows.activities import ScanActivities
from sastscan.workflows.scan_workflow import ScanWorkflow

logger = logging.getLogger(__name__)


def build_activities(settings: Settings, analyzer: CodeAnalyzerClient) -> ScanActivities:
    return ScanActivities(
        settings,
        PersistenceGateway(create_session_factory(settings)),
        RepositoryFetcher(settings),
        ScanAggregator(analyzer),
        Notifier(settings),
    )


async def run_worker(settings: Settings) -> None:
    client = await Client.connect(settings.TEMPORAL_HOST, namespace=settings.TEMPORAL_NAMESPACE)
    analyzer = CodeAnalyzerClient(settings)
    activities = build_activities(settings, analyzer)
    worker = Worker(
        client,
        task_queue=settings.TEMPORAL_TASK_QUEUE,
        workflows=[ScanWorkflow],
        activities=activities.all(),
        max_concurrent_activities=settings.WORKER_MAX_CONCURRENT_ACTIVITIES,
        max_concurrent_workflow_tasks=settings.WORKER_MAX_CONCURRENT_WORKFLOW_TASKS,
    )
    logger.info(
        "Starting worker: task_queue=%s max_concurrent_activities=%s",
        settings.TEMPORAL_TASK_QUEUE,
        settings.WORKER_MAX_CONCURRENT_ACTIVITIES,
    )
    try:
        await worker.run()
    finally:
        await analyzer.aclose()


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )
    settings = get_settings()
    try:
        asyncio.run(run_worker(settings))
        return 0
    except KeyboardInterrupt:
        logger.info("Worker stopped")
        return 0
    except RuntimeError as e:
        logger.exception("Worker failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
