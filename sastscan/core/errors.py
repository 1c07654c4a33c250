"""Base exception for scan pipeline failures."""


class ScanPipelineError(Exception):
    """
    Raised by pipeline services with a human-readable message.

    non_retryable marks failures that repeating the same step cannot fix; the
    workflow layer turns it into a non-retryable activity failure.
    """

    non_retryable: bool = False

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)
