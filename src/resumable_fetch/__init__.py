"""
resumable_fetch: resumable HTTP(S) file downloads.

Streams a response into ``<destination>.downloading``, retries network
errors, follows redirects, resumes partial files with Range requests and
replaces the destination only when the transfer completes.
"""

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download import (
    AiohttpTransport,
    DownloadRegistry,
    DownloadSession,
    DownloadStatus,
    download_file,
)
from resumable_fetch.version import VERSION

__version__ = VERSION

__all__ = [
    "DownloadConfig",
    "AiohttpTransport",
    "DownloadRegistry",
    "DownloadSession",
    "DownloadStatus",
    "download_file",
    "__version__",
]
