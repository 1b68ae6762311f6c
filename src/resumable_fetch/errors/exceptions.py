"""
Exception types and error classification for resumable_fetch.

Provides:
- ErrorCategory enum for retry decisions
- Typed exception hierarchy for download errors
- Error classification utilities

None of these exceptions cross a session boundary: a DownloadSession
records them on ``last_error`` and reports a DownloadStatus instead.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Network-layer failures that may succeed when the same
                   request is issued again (connection reset, timeout)
        PERMANENT: Failures that won't succeed on retry
                   (404, unexpected HTTP status, local file errors)
        UNKNOWN: Unclassified errors, treated as permanent by sessions
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class DownloadError(Exception):
    """
    Base exception for all download errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error should trigger an automatic retry."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Network Errors
# =============================================================================


class TransientNetworkError(DownloadError):
    """Network-level failure (connection reset, DNS, timeout)."""

    category = ErrorCategory.TRANSIENT


class PermanentNetworkError(DownloadError):
    """Request completed with an error that a retry won't fix."""

    category = ErrorCategory.PERMANENT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.status_code = status_code


class ResourceNotFoundError(PermanentNetworkError):
    """Resource not found (404/410)."""

    pass


# =============================================================================
# Local File Errors
# =============================================================================


class OpenFileError(DownloadError):
    """Temporary file could not be opened; no request is ever issued."""

    category = ErrorCategory.PERMANENT

    def __init__(
        self,
        path: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Can't open file while downloading: {path}",
            cause,
            {"path": path},
        )
        self.path = path


class TempFileWriteError(DownloadError):
    """Temp file could not be written or flushed while streaming."""

    category = ErrorCategory.PERMANENT

    def __init__(
        self,
        path: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Can't write to temp file: {path}",
            cause,
            {"path": path},
        )
        self.path = path


class FinalizationError(DownloadError):
    """Transfer succeeded but the temp file could not replace the destination."""

    category = ErrorCategory.PERMANENT

    def __init__(
        self,
        destination: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            f"File exists and can't be replaced by downloaded one: {destination}",
            cause,
            {"destination": destination},
        )
        self.destination = destination


class ConfigurationError(DownloadError):
    """Invalid configuration."""

    category = ErrorCategory.PERMANENT


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception raised while talking to the server.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, DownloadError):
        return exc.category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    # Connection errors
    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "serverdisconnected",
        "payloaderror",
        "no route to host",
        "network unreachable",
        "name resolution",
        "dns",
        "socket",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    # Timeout errors
    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN
