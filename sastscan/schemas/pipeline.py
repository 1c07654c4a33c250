"""Dataclass payloads passed between the scan workflow and its activities.

Dataclasses (not pydantic models) so the default Temporal data converter can
serialize them. Timestamps travel as ISO-8601 strings.
"""

from dataclasses import dataclass, field


@dataclass
class StepLimits:
    """Timeout and retry budgets for the long-running steps, fixed when the scan is started."""

    fetch_timeout_minutes: int = 60
    fetch_max_attempts: int = 3
    aggregate_timeout_minutes: int = 30
    aggregate_max_attempts: int = 2
    aggregate_heartbeat_seconds: int = 300


@dataclass
class ScanWorkflowInput:
    """Immutable scan request the workflow is started with."""

    scan_id: str
    repository_id: str
    clone_url: str
    owner: str
    name: str
    vulnerability_categories: list[str]
    file_extensions: list[str]
    notify_email: bool = False
    email: str | None = None
    submitted_by: str | None = None
    limits: StepLimits = field(default_factory=StepLimits)


@dataclass
class FetchInput:
    scan_id: str
    repository_id: str
    clone_url: str


@dataclass
class CheckoutResult:
    scan_id: str
    repo_dir: str
    authenticated: bool = False


@dataclass
class AggregateInput:
    scan_id: str
    repository_id: str
    repo_dir: str
    vulnerability_categories: list[str]
    file_extensions: list[str]


@dataclass
class FindingRecord:
    """One finding produced by the aggregator; file_path is relative to the repository root."""

    id: str
    scan_id: str
    category: str
    file_path: str
    line_start: int
    line_end: int
    severity: str
    description: str
    remediation: str = ""
    code_snippet: str = ""


@dataclass
class ScanOutcome:
    findings: list[FindingRecord]
    file_count: int
    scanned_at: str
    files_analyzed: int = 0
    files_failed: int = 0
    files_skipped: int = 0


@dataclass
class PersistInput:
    scan_id: str
    outcome: ScanOutcome


@dataclass
class StatusUpdate:
    scan_id: str
    status: str
    error_message: str | None = None


@dataclass
class RepositoryScanUpdate:
    repository_id: str
    status: str


@dataclass
class NotifyInput:
    email: str
    repository_name: str
    repository_id: str
    finding_count: int


@dataclass
class CleanupInput:
    scan_id: str


@dataclass
class ScanSnapshot:
    """Current view of one workflow run, returned by the scan_result query and as the workflow result."""

    scan_id: str
    repository_id: str
    status: str
    message: str = ""
    finding_count: int = 0
    findings_by_category: dict[str, int] = field(default_factory=dict)
    files_analyzed: int = 0
    files_failed: int = 0
