"""
Resumable HTTP download sessions.

Components:
    - DownloadSession: per-download state machine (retry, redirect, resume, publish)
    - FileSink: temp file the body streams into
    - AiohttpTransport: aiohttp-based TransportClient
    - DownloadRegistry: URL-keyed owner of concurrent sessions
"""

from resumable_fetch.download.file_sink import FileSink
from resumable_fetch.download.models import (
    DownloadRequest,
    DownloadStatus,
    OpenMode,
    SessionState,
    TransportErrorKind,
    TransportOutcome,
)
from resumable_fetch.download.registry import DownloadRegistry, download_file
from resumable_fetch.download.session import DownloadSession
from resumable_fetch.download.transport import (
    AiohttpRequestHandle,
    AiohttpTransport,
    RequestHandle,
    TransportClient,
)

__all__ = [
    "FileSink",
    "DownloadRequest",
    "DownloadStatus",
    "OpenMode",
    "SessionState",
    "TransportErrorKind",
    "TransportOutcome",
    "DownloadRegistry",
    "download_file",
    "DownloadSession",
    "AiohttpRequestHandle",
    "AiohttpTransport",
    "RequestHandle",
    "TransportClient",
]
