"""Scan aggregator: run the file selector and the code analyzer over a checkout and merge the findings."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sastscan.core.errors import ScanPipelineError
from sastscan.schemas.pipeline import FindingRecord, ScanOutcome
from sastscan.services.analyzer import (
    AnalyzerUnavailable,
    CodeAnalyzerClient,
    language_for_extension,
)
from sastscan.services.file_selector import select_files

logger = logging.getLogger(__name__)


class ScanCanceled(ScanPipelineError):
    """Raised between files when cancellation of the scan has been requested."""

    non_retryable = True


@dataclass
class ScanOptions:
    vulnerability_categories: list[str]
    file_extensions: list[str]
    max_files: int = 100
    allow_fallback: bool = True
    max_file_bytes: int = 200_000


class ScanAggregator:
    """
    Analyzes the selected files of one checkout sequentially.

    Per-file failures (read errors, oversized files, analyzer errors) are logged
    and counted but never abort the scan. The aggregator is the only place
    findings are created, so it assigns their identities.
    """

    def __init__(self, analyzer: CodeAnalyzerClient) -> None:
        self._analyzer = analyzer

    async def run(
        self,
        repo_dir: str | Path,
        options: ScanOptions,
        scan_id: str,
        *,
        cancel_requested: Callable[[], bool] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> ScanOutcome:
        """
        Select files under repo_dir, analyze each one, and return the merged outcome.

        Raises RepositoryMissing if repo_dir does not exist, AnalyzerUnavailable if the
        analyzer cannot be used at all, ScanCanceled if cancel_requested() turns true
        between files. An empty selection completes with zero findings.
        """
        root = Path(repo_dir)
        files = select_files(
            root,
            options.file_extensions,
            options.max_files,
            allow_fallback=options.allow_fallback,
        )
        if not files:
            logger.info("No files to analyze", extra={"scan_id": scan_id})
            return ScanOutcome(findings=[], file_count=0, scanned_at=_now_iso())

        self._analyzer.ensure_configured()

        findings: list[FindingRecord] = []
        analyzed = failed = skipped = transport_failures = 0
        total = len(files)

        for index, path in enumerate(files):
            if cancel_requested is not None and cancel_requested():
                logger.info(
                    "Scan canceled between files",
                    extra={"scan_id": scan_id, "files_done": index, "files_total": total},
                )
                raise ScanCanceled("Scan was canceled before all files were analyzed")
            if on_progress is not None:
                on_progress(index, total)

            rel_path = path.relative_to(root).as_posix()
            try:
                if path.stat().st_size > options.max_file_bytes:
                    logger.info("Skipping oversized file: %s", rel_path)
                    skipped += 1
                    continue
                code = path.read_bytes().decode("utf-8", errors="replace")
            except OSError as e:
                logger.warning("Failed to read file %s: %s", rel_path, e)
                skipped += 1
                continue

            analyzed += 1
            result = await self._analyzer.analyze(
                code,
                language_for_extension(path.suffix),
                rel_path,
                options.vulnerability_categories,
            )
            if result.failed:
                failed += 1
                if result.transport_error:
                    transport_failures += 1
                logger.warning("Failed to analyze file %s: %s", rel_path, result.error)
                continue

            for v in result.findings:
                findings.append(
                    FindingRecord(
                        id=str(uuid.uuid4()),
                        scan_id=scan_id,
                        category=v.vulnerability_type,
                        file_path=rel_path,
                        line_start=v.line_start,
                        line_end=v.line_end,
                        severity=v.severity,
                        description=v.description,
                        remediation=v.remediation,
                        code_snippet=v.code_snippet,
                    )
                )

        if on_progress is not None:
            on_progress(total, total)

        if analyzed > 0 and transport_failures == analyzed:
            raise AnalyzerUnavailable(
                f"Code analyzer was unreachable for all {analyzed} analyzed files"
            )

        logger.info(
            "Scan completed",
            extra={
                "scan_id": scan_id,
                "file_count": total,
                "files_analyzed": analyzed,
                "files_failed": failed,
                "files_skipped": skipped,
                "vulnerability_count": len(findings),
            },
        )
        return ScanOutcome(
            findings=findings,
            file_count=total,
            scanned_at=_now_iso(),
            files_analyzed=analyzed,
            files_failed=failed,
            files_skipped=skipped,
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
