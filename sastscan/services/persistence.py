"""Persistence gateway: the scan, finding and repository writes the scan workflow depends on."""

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from sastscan.core.errors import ScanPipelineError
from sastscan.models import Finding, Repository, Scan
from sastscan.models.scan import (
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_IN_PROGRESS,
    SCAN_STATUS_PENDING,
    TERMINAL_STATUSES,
)
from sastscan.schemas.pipeline import FindingRecord, ScanOutcome

logger = logging.getLogger(__name__)

# Drivers raise OverflowError for integers outside the column range before SQLAlchemy sees them.
FINDING_WRITE_ERRORS = (SQLAlchemyError, OverflowError)

VALID_STATUSES: frozenset[str] = frozenset({SCAN_STATUS_PENDING, SCAN_STATUS_IN_PROGRESS}) | TERMINAL_STATUSES


class PersistenceError(ScanPipelineError):
    """Raised when a read or write against the database fails."""


class ScanNotFound(ScanPipelineError):
    """Raised when no scan row exists for the given id."""

    non_retryable = True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _finding_row(scan_id: str, record: FindingRecord) -> Finding:
    return Finding(
        id=record.id or str(uuid.uuid4()),
        scan_id=scan_id,
        category=record.category,
        file_path=record.file_path,
        line_start=record.line_start,
        line_end=record.line_end,
        severity=record.severity,
        description=record.description,
        remediation=record.remediation,
        code_snippet=record.code_snippet,
    )


class PersistenceGateway:
    """
    Scan-scoped reads and writes. Every write is keyed by scan id (or repository id)
    and runs in its own transaction.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def upsert_repository(self, repository_id: str, owner: str, name: str, clone_url: str) -> None:
        """Insert the repository row, or refresh its owner/name/clone URL if it exists."""
        try:
            with self._session_factory() as session, session.begin():
                repo = session.get(Repository, repository_id)
                if repo is None:
                    session.add(
                        Repository(id=repository_id, owner=owner, name=name, clone_url=clone_url)
                    )
                else:
                    repo.owner = owner
                    repo.name = name
                    repo.clone_url = clone_url
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store repository {repository_id}", cause=e) from e

    def create_scan(self, repository_id: str, submitted_by: str | None = None) -> str:
        """Create a pending scan for repository_id and return its id."""
        scan_id = str(uuid.uuid4())
        try:
            with self._session_factory() as session, session.begin():
                session.add(
                    Scan(
                        id=scan_id,
                        repository_id=repository_id,
                        status=SCAN_STATUS_PENDING,
                        submitted_by=submitted_by,
                        results_available=False,
                        files_analyzed=0,
                        files_failed=0,
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create scan for repository {repository_id}", cause=e) from e
        return scan_id

    def set_workflow_run_id(self, scan_id: str, run_id: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                scan = self._require_scan(session, scan_id)
                scan.workflow_run_id = run_id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record workflow run for scan {scan_id}", cause=e) from e

    def update_scan_status(
        self,
        scan_id: str,
        status: str,
        error_message: str | None = None,
    ) -> str:
        """
        Move a scan to status and return the status the scan ends up in.

        in_progress records started_at; failed and canceled record completed_at.
        A scan already in a terminal state is left unchanged (its status is
        returned). completed is only reachable through complete_scan.
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown scan status {status!r}")
        if status == SCAN_STATUS_COMPLETED:
            raise ValueError("Use complete_scan to mark a scan completed")
        try:
            with self._session_factory() as session, session.begin():
                scan = self._require_scan(session, scan_id)
                if scan.status in TERMINAL_STATUSES:
                    logger.warning(
                        "Ignoring status change on terminal scan",
                        extra={"scan_id": scan_id, "current": scan.status, "requested": status},
                    )
                    return scan.status
                scan.status = status
                now = _utcnow()
                if status == SCAN_STATUS_IN_PROGRESS and scan.started_at is None:
                    scan.started_at = now
                if status in TERMINAL_STATUSES:
                    scan.completed_at = now
                    scan.results_available = False
                    scan.error_message = error_message or f"Scan {status}"
                else:
                    scan.error_message = error_message
                return status
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update status of scan {scan_id}", cause=e) from e

    def insert_findings(self, scan_id: str, findings: Iterable[FindingRecord]) -> int:
        """Insert findings for scan_id in one transaction (all or nothing); returns the row count."""
        try:
            with self._session_factory() as session, session.begin():
                self._require_scan(session, scan_id)
                return self._insert(session, scan_id, findings)
        except FINDING_WRITE_ERRORS as e:
            raise PersistenceError(f"Failed to store findings for scan {scan_id}", cause=e) from e

    def complete_scan(self, scan_id: str, outcome: ScanOutcome) -> int:
        """
        Store all findings and mark the scan completed with results available, atomically.

        Idempotent: if the scan is already completed (an earlier attempt committed),
        the stored finding count is returned and nothing is written. Raises
        PersistenceError if the scan is in another terminal state.
        """
        try:
            with self._session_factory() as session, session.begin():
                scan = self._require_scan(session, scan_id)
                if scan.status == SCAN_STATUS_COMPLETED:
                    return self._count(session, scan_id)
                if scan.status in TERMINAL_STATUSES:
                    raise PersistenceError(
                        f"Scan {scan_id} is already {scan.status}; results were not stored"
                    )
                session.query(Finding).filter(Finding.scan_id == scan_id).delete(
                    synchronize_session=False
                )
                count = self._insert(session, scan_id, outcome.findings)
                scan.status = SCAN_STATUS_COMPLETED
                scan.completed_at = _utcnow()
                scan.error_message = None
                scan.results_available = True
                scan.files_analyzed = outcome.files_analyzed
                scan.files_failed = outcome.files_failed
        except FINDING_WRITE_ERRORS as e:
            raise PersistenceError(f"Failed to store results for scan {scan_id}", cause=e) from e
        logger.info(
            "Stored scan results",
            extra={"scan_id": scan_id, "vulnerability_count": count},
        )
        return count

    def update_repository_last_scan(
        self,
        repository_id: str,
        status: str,
        timestamp: datetime | None = None,
    ) -> None:
        try:
            with self._session_factory() as session, session.begin():
                repo = session.get(Repository, repository_id)
                if repo is None:
                    logger.warning("Repository %s not found; last scan not recorded", repository_id)
                    return
                repo.last_scan_at = timestamp or _utcnow()
                repo.last_scan_status = status
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to update last scan of repository {repository_id}", cause=e
            ) from e

    def get_scan(self, scan_id: str) -> Scan:
        """Return a detached copy of the scan row. Raises ScanNotFound."""
        try:
            with self._session_factory() as session:
                scan = self._require_scan(session, scan_id)
                session.expunge(scan)
                return scan
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load scan {scan_id}", cause=e) from e

    def count_findings(self, scan_id: str) -> int:
        try:
            with self._session_factory() as session:
                return self._count(session, scan_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to count findings of scan {scan_id}", cause=e) from e

    def list_findings(self, scan_id: str) -> list[Finding]:
        """Findings of a scan ordered by category, file and line."""
        try:
            with self._session_factory() as session:
                rows = list(
                    session.scalars(
                        select(Finding)
                        .where(Finding.scan_id == scan_id)
                        .order_by(Finding.category, Finding.file_path, Finding.line_start, Finding.id)
                    )
                )
                for row in rows:
                    session.expunge(row)
                return rows
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load findings of scan {scan_id}", cause=e) from e

    def findings_by_category(self, scan_id: str) -> dict[str, list[Finding]]:
        grouped: dict[str, list[Finding]] = {}
        for finding in self.list_findings(scan_id):
            grouped.setdefault(finding.category or "Unknown", []).append(finding)
        return grouped

    @staticmethod
    def _require_scan(session: Session, scan_id: str) -> Scan:
        scan = session.get(Scan, scan_id)
        if scan is None:
            raise ScanNotFound(f"Scan {scan_id} not found")
        return scan

    @staticmethod
    def _count(session: Session, scan_id: str) -> int:
        return session.scalar(
            select(func.count()).select_from(Finding).where(Finding.scan_id == scan_id)
        ) or 0

    @staticmethod
    def _insert(session: Session, scan_id: str, findings: Iterable[FindingRecord]) -> int:
        rows = [_finding_row(scan_id, record) for record in findings]
        session.add_all(rows)
        session.flush()
        return len(rows)
