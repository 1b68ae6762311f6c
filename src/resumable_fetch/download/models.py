"""
Data models for download sessions.

Contains:
- DownloadStatus: terminal status reported to the caller
- SessionState: states of the per-download state machine
- OpenMode: how the temp file is opened
- TransportOutcome: terminal notification of one transport request
- DownloadRequest: validated start contract
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field, field_validator

from resumable_fetch.errors import (
    DownloadError,
    PermanentNetworkError,
    ResourceNotFoundError,
    TransientNetworkError,
)


class DownloadStatus(Enum):
    """Status passed to the finish callback, exactly once per non-aborted session."""

    OK = "ok"
    FAILED = "failed"
    FILE_NOT_FOUND = "file_not_found"
    FILE_LOCKED = "file_locked"  # transfer succeeded, destination could not be replaced


class SessionState(Enum):
    """States of a DownloadSession."""

    INITIALIZING = "initializing"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    RETRYING = "retrying"
    REDIRECTING = "redirecting"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED, SessionState.ABORTED)


class OpenMode(Enum):
    """Temp file open mode; values are the binary mode strings."""

    APPEND = "ab"
    TRUNCATE = "wb"


class TransportErrorKind(Enum):
    """Why a transport request ended without a usable response."""

    NETWORK = "network"  # connection reset, timeout, DNS, truncated body
    NOT_FOUND = "not_found"  # 404 / 410
    HTTP = "http"  # any other error status
    CANCELLED = "cancelled"  # request cancelled through its handle
    OTHER = "other"  # unexpected failure inside the transport


@dataclass(frozen=True)
class TransportOutcome:
    """
    Terminal notification of a single transport request.

    Exactly one of three shapes:
    - success: error_kind and redirect_url are None
    - error: error_kind is set
    - redirect: redirect_url is set (already resolved against the request URL)
    """

    error_kind: Optional[TransportErrorKind] = None
    redirect_url: Optional[str] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    cause: Optional[BaseException] = None

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None

    @property
    def is_redirect(self) -> bool:
        return self.error_kind is None and self.redirect_url is not None

    @property
    def is_success(self) -> bool:
        return self.error_kind is None and self.redirect_url is None

    @classmethod
    def success(cls, status_code: Optional[int] = 200) -> "TransportOutcome":
        return cls(status_code=status_code)

    @classmethod
    def redirect(cls, target: str, status_code: Optional[int] = 302) -> "TransportOutcome":
        return cls(redirect_url=target, status_code=status_code)

    @classmethod
    def failure(
        cls,
        kind: TransportErrorKind,
        error_message: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> "TransportOutcome":
        return cls(
            error_kind=kind,
            status_code=status_code,
            error_message=error_message or kind.value,
            cause=cause,
        )

    @classmethod
    def cancelled(cls) -> "TransportOutcome":
        return cls.failure(TransportErrorKind.CANCELLED, "Request cancelled")

    def to_exception(self) -> DownloadError:
        """Typed error for an error outcome."""
        message = self.error_message or "Download failed"
        context = {"status_code": self.status_code} if self.status_code else None
        if self.error_kind == TransportErrorKind.NETWORK:
            return TransientNetworkError(message, cause=self.cause, context=context)
        if self.error_kind == TransportErrorKind.NOT_FOUND:
            return ResourceNotFoundError(
                message, status_code=self.status_code, cause=self.cause, context=context
            )
        return PermanentNetworkError(
            message, status_code=self.status_code, cause=self.cause, context=context
        )


class DownloadRequest(BaseModel):
    """Start contract of a download: what to fetch and where to put it.

    Attributes:
        url: URL requested by the caller, also the session key
        destination_path: Path the finished file is published at
        resume: Continue from an existing temp file instead of truncating it
    """

    url: str = Field(..., description="URL to download", min_length=1)
    destination_path: str = Field(
        ..., description="Final path of the downloaded file", min_length=1
    )
    resume: bool = Field(default=False, description="Append to an existing temp file")

    @field_validator("url", "destination_path")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure string fields are not empty or whitespace-only."""
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v


# Caller-supplied callbacks; either plain functions or coroutine functions
FinishCallback = Callable[[str, DownloadStatus], Union[None, Awaitable[Any]]]
ProgressCallback = Callable[[str, int, int], Union[None, Awaitable[Any]]]
