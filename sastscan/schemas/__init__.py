"""Pydantic request/response schemas and workflow payloads."""

from sastscan.schemas.findings import (
    AnalyzedVulnerability,
    FindingResponse,
    SeverityLevel,
    normalize_severity,
)
from sastscan.schemas.health import HealthResponse
from sastscan.schemas.scan import (
    ScanCreateRequest,
    ScanResultsResponse,
    ScanStartResponse,
    ScanStatus,
    ScanStatusResponse,
)

__all__ = [
    "AnalyzedVulnerability",
    "FindingResponse",
    "HealthResponse",
    "ScanCreateRequest",
    "ScanResultsResponse",
    "ScanStartResponse",
    "ScanStatus",
    "ScanStatusResponse",
    "SeverityLevel",
    "normalize_severity",
]
