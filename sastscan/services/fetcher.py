"""Repository fetcher: materialize a repository's working tree in a scratch directory with git."""

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlsplit, urlunsplit

from sastscan.core.errors import ScanPipelineError

if TYPE_CHECKING:
    from sastscan.core.config import Settings

logger = logging.getLogger(__name__)

# Substrings of git's stderr that mean the remote wanted credentials.
AUTH_ERROR_MARKERS: tuple[str, ...] = (
    "authentication failed",
    "authentication required",
    "invalid username or password",
    "could not read username",
    "terminal prompts disabled",
    "http basic: access denied",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)

MAX_ERROR_DETAIL_LENGTH = 500

# How often a running clone checks for cancellation.
CLONE_POLL_SECONDS = 0.5


class FetchError(ScanPipelineError):
    """Base class for repository fetch failures."""


class AuthenticationRequired(FetchError):
    """The remote requires authentication and no usable token is configured."""


class CloneFailed(FetchError):
    """Any other clone failure: repository not found, network error, timeout."""


class CloneCanceled(FetchError):
    """The clone was stopped because the scan was canceled; the partial checkout is removed."""

    non_retryable = True


@dataclass
class RepositoryCheckout:
    """A cloned working tree on local disk."""

    path: Path
    clone_url: str
    authenticated: bool = False


def _is_auth_error(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in AUTH_ERROR_MARKERS)


def _redact(text: str, secret: str | None) -> str:
    if secret:
        text = text.replace(secret, "***")
    return text


def inject_token(clone_url: str, token: str, host: str) -> str | None:
    """
    Return clone_url with token embedded as HTTPS credentials, or None when the
    URL is not an HTTPS URL on host (token injection unsupported).
    """
    parts = urlsplit(clone_url)
    if parts.scheme.lower() != "https" or not parts.hostname:
        return None
    if parts.hostname.lower() != host:
        return None
    netloc = parts.hostname
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    netloc = f"x-access-token:{quote(token, safe='')}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class RepositoryFetcher:
    """Clones repositories with the git CLI; public first, then once with a token on auth failure."""

    def __init__(self, settings: "Settings", git_executable: str = "git") -> None:
        self._timeout = settings.GIT_CLONE_TIMEOUT_SEC
        self._token = (
            settings.GIT_ACCESS_TOKEN.get_secret_value().strip()
            if settings.GIT_ACCESS_TOKEN is not None
            else ""
        )
        self._token_host = settings.GIT_ACCESS_TOKEN_HOST
        self._git = git_executable

    def fetch(
        self,
        clone_url: str,
        destination: str | Path,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> RepositoryCheckout:
        """
        Clone clone_url into destination and return the checkout.

        A pre-existing destination is removed first so repeated calls yield the same tree.
        Raises AuthenticationRequired or CloneFailed; never retries beyond the single
        authenticated attempt. When cancel_requested() turns true the git process is
        killed and CloneCanceled is raised.
        """
        dest = Path(destination)
        self._reset_destination(dest)

        logger.info("Cloning repository", extra={"clone_url": clone_url, "repo_dir": str(dest)})
        returncode, stderr = self._clone(clone_url, dest, cancel_requested)
        if returncode == 0:
            logger.info("Repository cloned successfully without authentication")
            return RepositoryCheckout(path=dest, clone_url=clone_url)

        if not _is_auth_error(stderr):
            raise CloneFailed(self._summarize(stderr))

        logger.info("Authentication required, checking for access token")
        if not self._token:
            raise AuthenticationRequired(
                "repository requires authentication but no access token is configured"
            )
        authenticated_url = inject_token(clone_url, self._token, self._token_host)
        if authenticated_url is None:
            raise AuthenticationRequired(
                "repository requires authentication but the URL format is not supported for token authentication"
            )

        self._reset_destination(dest)
        logger.info("Retrying clone with authenticated URL")
        returncode, stderr = self._clone(authenticated_url, dest, cancel_requested)
        if returncode == 0:
            logger.info("Repository cloned successfully with authenticated URL")
            return RepositoryCheckout(path=dest, clone_url=clone_url, authenticated=True)

        if _is_auth_error(stderr):
            raise AuthenticationRequired(
                f"authentication failed with the configured token: {self._summarize(stderr)}"
            )
        raise CloneFailed(
            f"clone with authentication failed: {self._summarize(stderr)}"
        )

    def _clone(
        self, url: str, dest: Path, cancel_requested: Callable[[], bool] | None
    ) -> tuple[int, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GCM_INTERACTIVE"] = "never"
        cmd = [self._git, "clone", "--depth", "1", "--quiet", "--", url, str(dest)]
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise CloneFailed("git executable not found", cause=e) from e

        deadline = time.monotonic() + self._timeout
        while True:
            wait = min(CLONE_POLL_SECONDS, max(deadline - time.monotonic(), 0.0))
            try:
                _, stderr = proc.communicate(timeout=wait)
                return proc.returncode, stderr or ""
            except subprocess.TimeoutExpired as e:
                if cancel_requested is not None and cancel_requested():
                    _kill(proc)
                    logger.info("Clone stopped after cancellation", extra={"repo_dir": str(dest)})
                    shutil.rmtree(dest, ignore_errors=True)
                    raise CloneCanceled("clone stopped because the scan was canceled", cause=e) from e
                if time.monotonic() >= deadline:
                    _kill(proc)
                    raise CloneFailed(
                        f"git clone timed out after {self._timeout:.0f}s", cause=e
                    ) from e

    def _reset_destination(self, dest: Path) -> None:
        if dest.exists() or dest.is_symlink():
            logger.info("Repository directory already exists, removing it before cloning: %s", dest)
            try:
                if dest.is_dir() and not dest.is_symlink():
                    shutil.rmtree(dest)
                else:
                    dest.unlink()
            except OSError as e:
                raise CloneFailed(
                    f"could not remove existing repository directory: {e}", cause=e
                ) from e
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CloneFailed(f"could not create checkout directory: {e}", cause=e) from e

    def _summarize(self, stderr: str) -> str:
        detail = _redact(stderr.strip(), self._token) or "git exited with an error"
        return detail[-MAX_ERROR_DETAIL_LENGTH:]


def remove_checkout(path: str | Path) -> bool:
    """Delete a checkout directory; returns True if something was removed."""
    p = Path(path)
    if not p.exists():
        return False
    shutil.rmtree(p, ignore_errors=False)
    return True


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    proc.communicate()
