"""Scan service and scan routes: starting workflows, status/results reporting, cancellation (no Temporal server)."""

import asyncio
import unittest
import uuid
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from temporalio.service import RPCError, RPCStatusCode

from sastscan.api.v1.scans import get_scan_reader, get_scan_service
from sastscan.core.config import DEFAULT_FILE_EXTENSIONS, Settings
from sastscan.main import app
from sastscan.models import Base, Scan
from sastscan.models.scan import (
    SCAN_STATUS_CANCELED,
    SCAN_STATUS_FAILED,
    SCAN_STATUS_IN_PROGRESS,
    SCAN_STATUS_PENDING,
)
from sastscan.schemas.pipeline import FindingRecord, ScanOutcome
from sastscan.schemas.scan import ScanCreateRequest
from sastscan.services.persistence import PersistenceGateway
from sastscan.services.scan_service import (
    IN_PROGRESS_MESSAGE,
    InvalidRepositoryUrl,
    ScanNotCancelable,
    ScanService,
    WorkflowUnavailable,
    parse_github_url,
    repository_id_for,
    resolve_repository,
)
from sastscan.workflows.orchestrator import CANCELED_MESSAGE


def _gateway() -> PersistenceGateway:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return PersistenceGateway(sessionmaker(autocommit=False, autoflush=False, bind=engine))


def _client(run_id: str = "run-1") -> MagicMock:
    handle = MagicMock()
    handle.result_run_id = run_id
    handle.first_execution_run_id = run_id
    handle.cancel = AsyncMock()
    client = MagicMock()
    client.start_workflow = AsyncMock(return_value=handle)
    client.get_workflow_handle.return_value = handle
    return client


def _finding(scan_id: str, category: str, file_path: str) -> FindingRecord:
    return FindingRecord(
        id=str(uuid.uuid4()),
        scan_id=scan_id,
        category=category,
        file_path=file_path,
        line_start=3,
        line_end=4,
        severity="High",
        description="desc",
    )


class TestParseGithubUrl(unittest.TestCase):
    def test_supported_forms(self) -> None:
        for url in (
            "https://github.com/octo/hello",
            "https://github.com/octo/hello.git",
            "https://github.com/octo/hello/",
            "http://github.com/octo/hello",
            "github.com/octo/hello",
            "git@github.com:octo/hello.git",
        ):
            with self.subTest(url=url):
                self.assertEqual(parse_github_url(url), ("octo", "hello"))

    def test_unsupported_forms(self) -> None:
        for url in ("https://gitlab.com/octo/hello", "https://github.com/octo", "not a url"):
            with self.subTest(url=url):
                with self.assertRaises(InvalidRepositoryUrl):
                    parse_github_url(url)

    def test_explicit_owner_and_name_skip_parsing(self) -> None:
        ref = resolve_repository(
            ScanCreateRequest(clone_url="https://git.example.com/team/app.git", owner="team", name="app")
        )
        self.assertEqual((ref.owner, ref.name), ("team", "app"))
        self.assertEqual(ref.clone_url, "https://git.example.com/team/app.git")

    def test_shorthand_becomes_https(self) -> None:
        ref = resolve_repository(ScanCreateRequest(clone_url="github.com/octo/hello"))
        self.assertEqual(ref.clone_url, "https://github.com/octo/hello")

    def test_repository_id_is_stable_and_case_insensitive(self) -> None:
        self.assertEqual(repository_id_for("Octo", "Hello"), repository_id_for("octo", "hello"))
        self.assertNotEqual(repository_id_for("octo", "hello"), repository_id_for("octo", "other"))
        uuid.UUID(repository_id_for("octo", "hello"))


class TestStartScan(unittest.TestCase):
    def setUp(self) -> None:
        self.gateway = _gateway()
        self.settings = Settings(FETCH_MAX_ATTEMPTS=4)

    def test_records_pending_scan_and_starts_workflow(self) -> None:
        client = _client("run-42")
        service = ScanService(self.settings, self.gateway, client)

        resp = asyncio.run(
            service.start_scan(ScanCreateRequest(clone_url="https://github.com/octo/hello", notify_email=True, email="dev@example.com"))
        )

        self.assertEqual(resp.run_id, "run-42")
        self.assertEqual(resp.status, SCAN_STATUS_PENDING)
        self.assertEqual(resp.repository_id, repository_id_for("octo", "hello"))
        scan = self.gateway.get_scan(resp.scan_id)
        self.assertEqual(scan.status, SCAN_STATUS_PENDING)
        self.assertEqual(scan.workflow_run_id, "run-42")

        args, kwargs = client.start_workflow.call_args
        workflow_input = args[1]
        self.assertEqual(kwargs["id"], f"scan-workflow-{resp.scan_id}")
        self.assertEqual(kwargs["task_queue"], self.settings.TEMPORAL_TASK_QUEUE)
        self.assertEqual(workflow_input.scan_id, resp.scan_id)
        self.assertEqual((workflow_input.owner, workflow_input.name), ("octo", "hello"))
        self.assertEqual(workflow_input.file_extensions, list(DEFAULT_FILE_EXTENSIONS))
        self.assertTrue(workflow_input.vulnerability_categories)
        self.assertTrue(workflow_input.notify_email)
        self.assertEqual(workflow_input.limits.fetch_max_attempts, 4)

    def test_invalid_url_creates_nothing(self) -> None:
        client = _client()
        service = ScanService(self.settings, self.gateway, client)

        with self.assertRaises(InvalidRepositoryUrl):
            asyncio.run(service.start_scan(ScanCreateRequest(clone_url="https://example.com/x")))
        client.start_workflow.assert_not_called()

    def test_engine_unavailable_marks_scan_failed(self) -> None:
        client = _client()
        client.start_workflow.side_effect = RPCError("connection refused", RPCStatusCode.UNAVAILABLE, b"")
        service = ScanService(self.settings, self.gateway, client)

        with self.assertRaises(WorkflowUnavailable):
            asyncio.run(service.start_scan(ScanCreateRequest(clone_url="https://github.com/octo/hello")))

        with self.gateway._session_factory() as session:
            scans = session.query(Scan).all()
        self.assertEqual(len(scans), 1)
        self.assertEqual(scans[0].status, SCAN_STATUS_FAILED)
        self.assertIn("Failed to start scan workflow", scans[0].error_message)

    def test_no_client_configured(self) -> None:
        service = ScanService(self.settings, self.gateway)
        with self.assertRaises(WorkflowUnavailable):
            asyncio.run(service.start_scan(ScanCreateRequest(clone_url="https://github.com/octo/hello")))


class ScanServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.gateway = _gateway()
        self.gateway.upsert_repository("repo-1", "octo", "hello", "https://github.com/octo/hello")
        self.scan_id = self.gateway.create_scan("repo-1")
        self.client = _client()
        self.service = ScanService(Settings(), self.gateway, self.client)


class TestScanResults(ScanServiceTestCase):
    def test_results_not_available_while_running(self) -> None:
        self.gateway.update_scan_status(self.scan_id, SCAN_STATUS_IN_PROGRESS)

        results = self.service.get_scan_results(self.scan_id)

        self.assertFalse(results.results_available)
        self.assertEqual(results.findings_count, 0)
        self.assertEqual(results.findings_by_category, {})
        self.assertEqual(results.message, IN_PROGRESS_MESSAGE)

    def test_failed_scan_reports_error(self) -> None:
        self.gateway.update_scan_status(self.scan_id, SCAN_STATUS_FAILED, "Failed to clone repository: not found")

        results = self.service.get_scan_results(self.scan_id)
        status = self.service.get_scan_status(self.scan_id)

        self.assertFalse(results.results_available)
        self.assertEqual(results.message, "Failed to clone repository: not found")
        self.assertEqual(status.status, SCAN_STATUS_FAILED)
        self.assertIsNotNone(status.completed_at)

    def test_completed_scan_grouped_by_category(self) -> None:
        findings = [
            _finding(self.scan_id, "Injection", "b.py"),
            _finding(self.scan_id, "Injection", "a.py"),
            _finding(self.scan_id, "Cryptographic Failures", "c.py"),
        ]
        self.gateway.complete_scan(
            self.scan_id,
            ScanOutcome(findings=findings, file_count=3, scanned_at="2026-10-19T00:00:00+00:00", files_analyzed=3),
        )

        results = self.service.get_scan_results(self.scan_id)

        self.assertTrue(results.results_available)
        self.assertEqual(results.findings_count, 3)
        self.assertEqual(sorted(results.findings_by_category), ["Cryptographic Failures", "Injection"])
        self.assertEqual([f.file_path for f in results.findings_by_category["Injection"]], ["a.py", "b.py"])
        self.assertEqual(self.service.get_scan_status(self.scan_id).files_analyzed, 3)


class TestCancelScan(ScanServiceTestCase):
    def test_running_scan_requests_workflow_cancel(self) -> None:
        self.gateway.update_scan_status(self.scan_id, SCAN_STATUS_IN_PROGRESS)

        status = asyncio.run(self.service.cancel_scan(self.scan_id))

        self.client.get_workflow_handle.assert_called_once_with(f"scan-workflow-{self.scan_id}")
        self.client.get_workflow_handle.return_value.cancel.assert_awaited_once()
        self.assertEqual(status.status, SCAN_STATUS_IN_PROGRESS)

    def test_terminal_scan_not_cancelable(self) -> None:
        self.gateway.update_scan_status(self.scan_id, SCAN_STATUS_FAILED, "boom")

        with self.assertRaises(ScanNotCancelable):
            asyncio.run(self.service.cancel_scan(self.scan_id))
        self.client.get_workflow_handle.assert_not_called()

    def test_missing_workflow_marks_scan_canceled(self) -> None:
        handle = self.client.get_workflow_handle.return_value
        handle.cancel.side_effect = RPCError("workflow not found", RPCStatusCode.NOT_FOUND, b"")

        status = asyncio.run(self.service.cancel_scan(self.scan_id))

        self.assertEqual(status.status, SCAN_STATUS_CANCELED)
        self.assertEqual(status.error_message, CANCELED_MESSAGE)

    def test_engine_error_propagates(self) -> None:
        handle = self.client.get_workflow_handle.return_value
        handle.cancel.side_effect = RPCError("unavailable", RPCStatusCode.UNAVAILABLE, b"")

        with self.assertRaises(WorkflowUnavailable):
            asyncio.run(self.service.cancel_scan(self.scan_id))
        self.assertEqual(self.gateway.get_scan(self.scan_id).status, SCAN_STATUS_PENDING)


class TestScanRoutes(ScanServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        app.dependency_overrides[get_scan_service] = lambda: self.service
        app.dependency_overrides[get_scan_reader] = lambda: self.service
        self.http = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_start_returns_202_with_ids(self) -> None:
        resp = self.http.post("/api/v1/scans", json={"clone_url": "https://github.com/octo/other"})

        self.assertEqual(resp.status_code, 202)
        body = resp.json()
        self.assertEqual(body["run_id"], "run-1")
        self.assertEqual(body["status"], "pending")
        self.assertEqual(self.gateway.get_scan(body["scan_id"]).status, SCAN_STATUS_PENDING)

    def test_start_with_invalid_url_is_422(self) -> None:
        resp = self.http.post("/api/v1/scans", json={"clone_url": "ftp://example.com/x"})
        self.assertEqual(resp.status_code, 422)

    def test_start_when_engine_unavailable_is_503(self) -> None:
        self.client.start_workflow.side_effect = RPCError("down", RPCStatusCode.UNAVAILABLE, b"")
        resp = self.http.post("/api/v1/scans", json={"clone_url": "https://github.com/octo/other"})
        self.assertEqual(resp.status_code, 503)

    def test_status_and_results(self) -> None:
        status = self.http.get(f"/api/v1/scans/{self.scan_id}")
        results = self.http.get(f"/api/v1/scans/{self.scan_id}/results")

        self.assertEqual(status.status_code, 200)
        self.assertEqual(status.json()["status"], "pending")
        self.assertEqual(results.status_code, 200)
        self.assertFalse(results.json()["results_available"])

    def test_unknown_scan_is_404(self) -> None:
        self.assertEqual(self.http.get("/api/v1/scans/missing").status_code, 404)
        self.assertEqual(self.http.get("/api/v1/scans/missing/results").status_code, 404)
        self.assertEqual(self.http.post("/api/v1/scans/missing/cancel").status_code, 404)

    def test_cancel_terminal_scan_is_409(self) -> None:
        self.gateway.update_scan_status(self.scan_id, SCAN_STATUS_FAILED, "boom")
        resp = self.http.post(f"/api/v1/scans/{self.scan_id}/cancel")
        self.assertEqual(resp.status_code, 409)

    def test_cancel_running_scan_is_202(self) -> None:
        self.gateway.update_scan_status(self.scan_id, SCAN_STATUS_IN_PROGRESS)
        resp = self.http.post(f"/api/v1/scans/{self.scan_id}/cancel")
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["status"], "in_progress")
