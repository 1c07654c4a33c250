"""ORM model for persisted vulnerability findings."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, func

from sastscan.models.base import Base


class Finding(Base):
    """
    One vulnerability reported by the code analyzer for one file of one scan.

    Rows are written in a single batch per scan and never updated afterwards.
    """

    __tablename__ = "vulnerabilities"
    __table_args__ = (
        CheckConstraint("line_start >= 1 AND line_end >= line_start", name="ck_vulnerabilities_lines"),
    )

    id = Column(String(36), primary_key=True)
    scan_id = Column(
        String(36),
        ForeignKey("scans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = Column(String(100), nullable=False, index=True)
    file_path = Column(String(2048), nullable=False)
    line_start = Column(Integer, nullable=False)
    line_end = Column(Integer, nullable=False)
    severity = Column(String(20), nullable=False, index=True)
    description = Column(Text, nullable=False)
    remediation = Column(Text, nullable=True)
    code_snippet = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
