"""Code analyzer client: send one file to an LLM chat-completions endpoint and parse reported vulnerabilities."""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from sastscan.core.errors import ScanPipelineError
from sastscan.schemas.findings import AnalyzedVulnerability

if TYPE_CHECKING:
    from sastscan.core.config import Settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a security expert assistant that analyzes code for vulnerabilities."

# Language labels sent to the model, keyed by lower-case file extension.
LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".go": "Go",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".py": "Python",
    ".java": "Java",
    ".kt": "Kotlin",
    ".php": "PHP",
    ".rb": "Ruby",
    ".cs": "C#",
    ".c": "C",
    ".cpp": "C++",
    ".rs": "Rust",
    ".html": "HTML",
    ".css": "CSS",
}


def language_for_extension(ext: str) -> str:
    """Return the language label for a file extension, or Unknown."""
    return LANGUAGE_BY_EXTENSION.get(ext.lower(), "Unknown")


class AnalyzerUnavailable(ScanPipelineError):
    """Raised once per scan when the analyzer cannot be used at all (missing or rejected credentials)."""

    non_retryable = True


@dataclass
class FileAnalysis:
    """Outcome of analyzing one file: findings, plus the reason it produced none when the call failed."""

    findings: list[AnalyzedVulnerability] = field(default_factory=list)
    error: str | None = None
    transport_error: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


def build_prompt(code: str, language: str, file_path: str, categories: list[str]) -> str:
    """Build the user prompt: requested categories, file metadata, code, and the required JSON shape."""
    categories_text = ", ".join(categories) if categories else "all OWASP Top 10 categories"
    return f"""You are a security expert performing an automated code scan for OWASP Top 10 vulnerabilities.
Your task is to identify potential security vulnerabilities in the provided code.

Please analyze the following code for these specific vulnerabilities: {categories_text}

Code language: {language}
File path: {file_path}

CODE:
{code}

Your task:
1. Thoroughly analyze the provided code for security vulnerabilities.
2. Report only high-confidence findings in the categories listed above, using exactly those category names.
3. For each vulnerability you find, provide:
   - Vulnerability type (one of the categories above)
   - Location (1-based line numbers where the vulnerability exists)
   - Severity (Critical, High, Medium, Low)
   - Description of the vulnerability
   - A suggested remediation
   - The offending code snippet

Provide output in JSON format as follows:
{{
  "vulnerabilities": [
    {{
      "vulnerability_type": "Injection",
      "line_start": 10,
      "line_end": 15,
      "severity": "High",
      "description": "SQL injection vulnerability due to unparameterized query",
      "remediation": "Use prepared statements or an ORM",
      "code_snippet": "select * from users where name = '\" + username + \"'"
    }}
  ]
}}

If no vulnerabilities are found, return: {{"vulnerabilities": []}}
"""


def extract_json_object(content: str) -> dict[str, Any] | None:
    """
    Parse the span between the first '{' and the last '}' of content.

    Returns None when there is no such span or it is not a JSON object.
    """
    start = content.find("{")
    end = content.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(content[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_vulnerabilities(content: str) -> list[AnalyzedVulnerability] | None:
    """
    Extract the vulnerability list from model output.

    Returns None when the output holds no parseable JSON object; malformed
    individual entries are dropped.
    """
    parsed = extract_json_object(content)
    if parsed is None:
        return None
    items = parsed.get("vulnerabilities")
    if not isinstance(items, list):
        return []
    vulnerabilities: list[AnalyzedVulnerability] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            vulnerabilities.append(AnalyzedVulnerability.model_validate(item))
        except ValidationError:
            logger.debug("Dropping malformed vulnerability entry from model output")
    return vulnerabilities


class CodeAnalyzerClient:
    """
    Client for an OpenAI-compatible chat-completions endpoint.

    analyze() never raises for a single file: remote errors and unparseable
    responses become a FileAnalysis with no findings and an error message.
    Only unusable credentials raise AnalyzerUnavailable.
    """

    def __init__(self, settings: "Settings", http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._url = f"{settings.ANALYZER_BASE_URL}/chat/completions"
        self._api_key = (
            settings.ANALYZER_API_KEY.get_secret_value().strip()
            if settings.ANALYZER_API_KEY is not None
            else ""
        )
        self._client = http_client

    @property
    def model(self) -> str:
        return self._settings.ANALYZER_MODEL

    def ensure_configured(self) -> None:
        """Raise AnalyzerUnavailable if no API key is configured."""
        if not self._api_key:
            raise AnalyzerUnavailable(
                "Code analyzer API key is not set (ANALYZER_API_KEY); cannot analyze code."
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.ANALYZER_REQUEST_TIMEOUT_SEC)
            )
        return self._client

    async def analyze(
        self,
        code: str,
        language: str,
        file_path: str,
        categories: list[str],
    ) -> FileAnalysis:
        """Analyze one file and return its findings (empty with error set on any per-file failure)."""
        self.ensure_configured()
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(code, language, file_path, categories)},
            ],
            "temperature": self._settings.ANALYZER_TEMPERATURE,
            "max_tokens": self._settings.ANALYZER_MAX_TOKENS,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        start = time.perf_counter()

        try:
            response = await self._http().post(self._url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            return self._transport_failure(file_path, start, "Analyzer request timed out.", e)
        except httpx.HTTPError as e:
            return self._transport_failure(file_path, start, "Analyzer request failed.", e)
        elapsed = time.perf_counter() - start

        if response.status_code in (401, 403):
            raise AnalyzerUnavailable(
                f"Code analyzer rejected the configured credentials (status {response.status_code})."
            )
        if response.status_code != 200:
            logger.warning(
                "Analyzer returned non-200 status",
                extra={"file_path": file_path, "status_code": response.status_code},
            )
            return FileAnalysis(
                error=f"Analyzer returned status {response.status_code}.",
                transport_error=response.status_code >= 500,
            )

        try:
            body = response.json()
        except json.JSONDecodeError:
            return FileAnalysis(error="Analyzer response body is not valid JSON.")

        content = _message_content(body)
        if content is None:
            return FileAnalysis(error="Analyzer response has no message content.")

        vulnerabilities = parse_vulnerabilities(content)
        if vulnerabilities is None:
            logger.warning(
                "Failed to parse analyzer output as JSON",
                extra={"file_path": file_path, "content_length": len(content)},
            )
            return FileAnalysis(error="Analyzer output did not contain a JSON object.")

        logger.info(
            "Analyzer request completed",
            extra={
                "llm_latency_seconds": elapsed,
                "file_path": file_path,
                "language": language,
                "model": self.model,
                "vulnerabilities_found": len(vulnerabilities),
            },
        )
        return FileAnalysis(findings=vulnerabilities)

    def _transport_failure(
        self, file_path: str, start: float, message: str, exc: Exception
    ) -> FileAnalysis:
        logger.info(
            "Analyzer request failed",
            extra={
                "llm_latency_seconds": time.perf_counter() - start,
                "file_path": file_path,
                "model": self.model,
                "status": "error",
                "error": type(exc).__name__,
            },
        )
        return FileAnalysis(error=message, transport_error=True)


def _message_content(body: Any) -> str | None:
    """Return choices[0].message.content from a chat-completion body, or None."""
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
