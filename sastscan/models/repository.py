"""ORM model for repositories submitted for scanning."""

from sqlalchemy import Column, DateTime, String, func

from sastscan.models.base import Base


class Repository(Base):
    """
    Repository metadata the scan pipeline reads and updates.

    Rows are upserted when a scan is started; last_scan_at and last_scan_status
    are written by the workflow after each scan reaches a terminal state.
    """

    __tablename__ = "repositories"

    id = Column(String(36), primary_key=True)
    owner = Column(String(255), nullable=False, default="")
    name = Column(String(255), nullable=False, default="")
    clone_url = Column(String(2048), nullable=False)
    last_scan_at = Column(DateTime(timezone=True), nullable=True)
    last_scan_status = Column(String(32), nullable=True)
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
