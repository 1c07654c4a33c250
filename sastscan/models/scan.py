"""ORM model for scan records and their status lifecycle."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)

from sastscan.models.base import Base

SCAN_STATUS_PENDING = "pending"
SCAN_STATUS_IN_PROGRESS = "in_progress"
SCAN_STATUS_COMPLETED = "completed"
SCAN_STATUS_FAILED = "failed"
SCAN_STATUS_CANCELED = "canceled"

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {SCAN_STATUS_COMPLETED, SCAN_STATUS_FAILED, SCAN_STATUS_CANCELED}
)


class Scan(Base):
    """
    One scan of one repository.

    Mutated only by the scan workflow. completed_at is set iff status is terminal;
    results_available flips to true in the same transaction that inserts the findings.
    """

    __tablename__ = "scans"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed', 'canceled')",
            name="ck_scans_status",
        ),
    )

    id = Column(String(36), primary_key=True)
    repository_id = Column(
        String(36),
        ForeignKey("repositories.id"),
        nullable=False,
        index=True,
    )
    status = Column(String(32), nullable=False, default=SCAN_STATUS_PENDING)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    results_available = Column(Boolean, nullable=False, default=False)
    submitted_by = Column(String(255), nullable=True)
    workflow_run_id = Column(String(255), nullable=True)
    files_analyzed = Column(Integer, nullable=False, default=0)
    files_failed = Column(Integer, nullable=False, default=0)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
