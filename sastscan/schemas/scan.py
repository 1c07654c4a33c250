"""Request/response schemas for the scan endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from sastscan.schemas.findings import FindingResponse

ScanStatus = Literal["pending", "in_progress", "completed", "failed", "canceled"]

MAX_CATEGORIES = 20
MAX_EXTENSIONS = 50


class ScanCreateRequest(BaseModel):
    """Request body for POST /api/v1/scans."""

    clone_url: str = Field(
        ...,
        min_length=1,
        max_length=2048,
        description="HTTPS clone URL (or GitHub shorthand such as github.com/owner/repo).",
    )
    repository_id: str | None = Field(
        default=None,
        max_length=36,
        description="Repository identifier; derived from owner/name when omitted.",
    )
    owner: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    vulnerability_categories: list[str] = Field(
        default_factory=list,
        max_length=MAX_CATEGORIES,
        description="OWASP categories to check; all Top 10 categories when empty.",
    )
    file_extensions: list[str] = Field(
        default_factory=list,
        max_length=MAX_EXTENSIONS,
        description="File extensions to analyze (e.g. .py, .js); defaults when empty.",
    )
    notify_email: bool = Field(
        default=False,
        description="Send a completion email to `email` when the scan completes.",
    )
    email: str | None = Field(default=None, max_length=320)
    submitted_by: str | None = Field(
        default=None,
        max_length=255,
        description="Identifier of the submitting user, recorded on the scan.",
    )

    @field_validator("file_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        normalized: list[str] = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext:
                continue
            if not ext.startswith("."):
                ext = "." + ext
            if ext not in normalized:
                normalized.append(ext)
        return normalized

    @field_validator("vulnerability_categories")
    @classmethod
    def strip_categories(cls, v: list[str]) -> list[str]:
        return [c.strip() for c in v if c and c.strip()]

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("email must be a valid address")
        return v


class ScanStartResponse(BaseModel):
    """Returned when a scan workflow has been started."""

    scan_id: str
    run_id: str
    repository_id: str
    status: ScanStatus = "pending"


class ScanStatusResponse(BaseModel):
    """Status of one scan as recorded by the workflow."""

    scan_id: str
    repository_id: str
    status: ScanStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    results_available: bool = False
    files_analyzed: int = 0
    files_failed: int = 0


class ScanResultsResponse(BaseModel):
    """Findings of a scan grouped by OWASP category; empty until results_available is true."""

    scan_id: str
    status: ScanStatus
    results_available: bool
    findings_count: int = Field(..., ge=0)
    findings_by_category: dict[str, list[FindingResponse]] = Field(default_factory=dict)
    message: str | None = None
