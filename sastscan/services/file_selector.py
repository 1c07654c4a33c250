"""Select the files of a repository checkout that are worth sending to the code analyzer."""

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from sastscan.core.errors import ScanPipelineError

logger = logging.getLogger(__name__)

# Dependency, tooling and build directories skipped by exact name.
SKIP_NAMES: frozenset[str] = frozenset(
    {
        ".git",
        "node_modules",
        "vendor",
        "venv",
        "env",
        "lib",
        "bin",
        "dist",
        "build",
        "site-packages",
        ".github",
        "__pycache__",
        ".pytest_cache",
        ".cache",
        "package-lock.json",
        "yarn.lock",
    }
)

# Nested occurrences of these anywhere in the repo-relative path are skipped too.
SKIP_PATH_SUBSTRINGS: tuple[str, ...] = ("site-packages", "node_modules", "vendor", ".cache")

MINIFIED_EXTENSIONS: frozenset[str] = frozenset({".js", ".css"})
MINIFIED_MARKER = ".min."
TEST_FILE_PREFIXES: tuple[str, ...] = ("test_",)
TEST_FILE_SUFFIXES: tuple[str, ...] = ("_test.go",)
SPEC_FILE_MARKER = ".spec."

# Generic text formats tried when the requested extensions match nothing.
FALLBACK_EXTENSIONS: tuple[str, ...] = (".txt", ".md", ".json", ".yml", ".yaml", ".xml")


class RepositoryMissing(ScanPipelineError):
    """Raised when the checkout directory does not exist or is not a directory."""

    non_retryable = True


def _normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    normalized = set()
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        normalized.add(ext if ext.startswith(".") else "." + ext)
    return frozenset(normalized)


def _is_skipped_dir(name: str, rel_path: str) -> bool:
    if name in SKIP_NAMES:
        return True
    return any(marker in rel_path for marker in SKIP_PATH_SUBSTRINGS)


def _is_excluded_file(name: str, ext: str) -> bool:
    """Lock files, minified web assets and test-fixture-looking files."""
    if name in SKIP_NAMES:
        return True
    if ext in MINIFIED_EXTENSIONS and MINIFIED_MARKER in name:
        return True
    return (
        name.startswith(TEST_FILE_PREFIXES)
        or name.endswith(TEST_FILE_SUFFIXES)
        or SPEC_FILE_MARKER in name
    )


def _walk(root: Path, extensions: frozenset[str], max_files: int) -> list[Path]:
    selected: list[Path] = []

    def on_error(err: OSError) -> None:
        logger.warning("Error accessing path %s: %s", err.filename, err.strerror or err)

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error, followlinks=False):
        current = Path(dirpath)
        rel_dir = current.relative_to(root).as_posix()
        # Prune in place so os.walk never descends into skipped directories.
        dirnames[:] = sorted(
            d
            for d in dirnames
            if not _is_skipped_dir(d, d if rel_dir == "." else f"{rel_dir}/{d}")
        )
        for filename in sorted(filenames):
            ext = os.path.splitext(filename)[1].lower()
            if ext not in extensions or _is_excluded_file(filename, ext):
                continue
            path = current / filename
            if path.is_symlink() or not path.is_file():
                continue
            selected.append(path)
            if len(selected) >= max_files:
                return selected
    return selected


def select_files(
    root: str | Path,
    extensions: Iterable[str],
    max_files: int,
    *,
    allow_fallback: bool = True,
) -> list[Path]:
    """
    Return up to max_files analyzable files under root, in deterministic (sorted walk) order.

    Skips dependency/build directories and excluded file patterns. When nothing
    matches the requested extensions and allow_fallback is set, a second pass
    over generic text formats is attempted. Files beyond the cap are dropped.

    Raises RepositoryMissing if root does not exist or is not a directory.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise RepositoryMissing(f"Repository directory not found or inaccessible: {root_path}")
    if max_files <= 0:
        return []

    wanted = _normalize_extensions(extensions)
    selected = _walk(root_path, wanted, max_files)
    if not selected and allow_fallback:
        fallback = frozenset(FALLBACK_EXTENSIONS)
        logger.info(
            "No files matched requested extensions; trying fallback file types",
            extra={"extensions": sorted(wanted), "fallback_extensions": list(FALLBACK_EXTENSIONS)},
        )
        selected = _walk(root_path, fallback, max_files)

    logger.info("Found files to scan: %s", len(selected))
    return selected
