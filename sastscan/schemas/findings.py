"""Pydantic schemas for vulnerability findings: analyzer output shape and API representation."""

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Canonical severity levels stored on findings.
SeverityLevel = Literal["Critical", "High", "Medium", "Low"]

SEVERITY_VALUES: tuple[str, ...] = ("Critical", "High", "Medium", "Low")

DEFAULT_SEVERITY: SeverityLevel = "Medium"
UNKNOWN_CATEGORY = "Unknown"

# Column limits of the vulnerabilities table.
MAX_LINE_NUMBER = 2**31 - 1
MAX_CATEGORY_LENGTH = 100

# Severity aliases (case-insensitive) -> canonical level.
_SEVERITY_ALIASES: dict[str, SeverityLevel] = {
    "critical": "Critical",
    "crit": "Critical",
    "blocker": "Critical",
    "high": "High",
    "major": "High",
    "error": "High",
    "medium": "Medium",
    "med": "Medium",
    "moderate": "Medium",
    "warning": "Medium",
    "low": "Low",
    "minor": "Low",
    "info": "Low",
    "informational": "Low",
    "note": "Low",
}


def normalize_severity(raw: object) -> SeverityLevel:
    """Map a model-supplied severity to one of Critical, High, Medium, Low (unknown -> Medium)."""
    if not isinstance(raw, str) or not raw.strip():
        return DEFAULT_SEVERITY
    return _SEVERITY_ALIASES.get(raw.strip().lower(), DEFAULT_SEVERITY)


def _coerce_line(value: object) -> int | None:
    """Return value as a line number in 1..MAX_LINE_NUMBER, or None when it is missing or unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit() and len(value.strip()) <= 10:
        value = int(value.strip())
    if isinstance(value, int) and 1 <= value <= MAX_LINE_NUMBER:
        return value
    return None


class AnalyzedVulnerability(BaseModel):
    """
    One vulnerability as reported by the code analyzer model.

    Lenient on input: severities are normalized, line numbers are made 1-based
    with line_start <= line_end, and missing text fields become empty strings.
    """

    model_config = {"extra": "ignore"}

    vulnerability_type: str = Field(
        default=UNKNOWN_CATEGORY,
        description="OWASP category reported by the model; used as the grouping key.",
    )
    line_start: int = Field(default=1, ge=1, le=MAX_LINE_NUMBER)
    line_end: int = Field(default=1, ge=1, le=MAX_LINE_NUMBER)
    severity: SeverityLevel = Field(default=DEFAULT_SEVERITY)
    description: str = Field(default="")
    remediation: str = Field(default="")
    code_snippet: str = Field(default="")

    @model_validator(mode="before")
    @classmethod
    def normalize_raw(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        start = _coerce_line(data.get("line_start"))
        end = _coerce_line(data.get("line_end"))
        if start is None:
            start = end if end is not None else 1
        if end is None or end < start:
            end = start
        data["line_start"] = start
        data["line_end"] = end
        data["severity"] = normalize_severity(data.get("severity"))
        for key in ("description", "remediation", "code_snippet"):
            value = data.get(key)
            data[key] = value if isinstance(value, str) else ""
        return data

    @field_validator("vulnerability_type", mode="before")
    @classmethod
    def validate_category(cls, v: object) -> str:
        if not isinstance(v, str) or not v.strip():
            return UNKNOWN_CATEGORY
        return v.strip()[:MAX_CATEGORY_LENGTH].rstrip()


class FindingResponse(BaseModel):
    """A persisted finding as returned by the results endpoint."""

    model_config = {"from_attributes": True}

    id: str
    category: str
    file_path: str
    line_start: int = Field(..., ge=1)
    line_end: int = Field(..., ge=1)
    severity: str
    description: str
    remediation: str | None = None
    code_snippet: str | None = None
