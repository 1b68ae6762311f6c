"""
Registry of active download sessions keyed by URL.

The registry holds the only strong reference to each session and drops it
when the session reports its terminal event. It guarantees at most one
session per URL and per temp path.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download.models import (
    DownloadRequest,
    DownloadStatus,
    FinishCallback,
    ProgressCallback,
)
from resumable_fetch.download.session import DownloadSession
from resumable_fetch.download.transport import AiohttpTransport, TransportClient
from resumable_fetch.logging.setup import get_logger
from resumable_fetch.logging.utilities import log_with_context

logger = get_logger(__name__)


class DownloadRegistry:
    """
    Owns concurrent download sessions.

    Usage:
        async with AiohttpTransport() as transport:
            async with DownloadRegistry(transport) as registry:
                session = await registry.start_download(
                    "https://example.com/map.bin", "/data/map.bin", on_finish
                )
                ...
            # leaving the block aborts whatever is still running
    """

    def __init__(
        self,
        transport: TransportClient,
        config: Optional[DownloadConfig] = None,
        user_agent: Optional[str] = None,
    ):
        """
        Args:
            transport: Transport shared by all sessions
            config: Session configuration (default: DownloadConfig())
            user_agent: Client identity header (default: config.user_agent())
        """
        self.transport = transport
        self.config = config or DownloadConfig()
        self.user_agent = user_agent or self.config.user_agent()
        self._sessions: Dict[str, DownloadSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, url: object) -> bool:
        return url in self._sessions

    def get(self, url: str) -> Optional[DownloadSession]:
        return self._sessions.get(url)

    def active_urls(self) -> List[str]:
        return list(self._sessions)

    async def start_download(
        self,
        url: str,
        destination_path: Union[str, Path],
        on_finish: Optional[FinishCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        resume: bool = False,
    ) -> Optional[DownloadSession]:
        """
        Create and start a session.

        Args:
            url: URL to download (session key)
            destination_path: Final path of the downloaded file
            on_finish: on_finish(url, status), once per non-aborted session
            on_progress: on_progress(url, bytes_read, bytes_total)
            resume: Continue from an existing temp file

        Returns:
            The started session (possibly already terminated if the temp file
            couldn't be opened), or None if a session for this URL or temp
            path is already active.

        Raises:
            pydantic.ValidationError: If url or destination_path is empty
        """
        request = DownloadRequest(
            url=url, destination_path=str(destination_path), resume=resume
        )

        if request.url in self._sessions:
            log_with_context(
                logger,
                logging.WARNING,
                "Download already in progress",
                url=request.url,
            )
            return None

        temp_path = self.config.temp_path_for(request.destination_path)
        for active in self._sessions.values():
            if active.temp_path == temp_path:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Destination already used by another download",
                    url=request.url,
                    temp_path=temp_path,
                )
                return None

        session = DownloadSession(
            url=request.url,
            destination_path=request.destination_path,
            transport=self.transport,
            on_finish=on_finish,
            on_progress=on_progress,
            resume=request.resume,
            config=self.config,
            user_agent=self.user_agent,
            on_terminated=self._release,
        )
        self._sessions[request.url] = session
        log_with_context(
            logger,
            logging.DEBUG,
            "Starting download",
            url=request.url,
            final_path=request.destination_path,
        )
        await session.start()
        return session

    def cancel(self, url: str) -> bool:
        """Abort the session for url. Returns False if there is none."""
        session = self._sessions.get(url)
        if session is None:
            return False
        return session.abort()

    async def aclose(self) -> None:
        """Abort every active session and wait until each has released its resources."""
        sessions = list(self._sessions.values())
        if not sessions:
            return
        log_with_context(
            logger,
            logging.INFO,
            f"Aborting {len(sessions)} active download(s)",
        )
        await asyncio.gather(*(s.aclose() for s in sessions))

    async def __aenter__(self) -> "DownloadRegistry":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _release(self, session: DownloadSession) -> None:
        if self._sessions.get(session.original_url) is session:
            del self._sessions[session.original_url]


async def download_file(
    url: str,
    destination_path: Union[str, Path],
    resume: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    transport: Optional[TransportClient] = None,
    config: Optional[DownloadConfig] = None,
) -> Optional[DownloadStatus]:
    """
    Download one URL and return its terminal status.

    Creates (and closes) an AiohttpTransport when none is given. Cancelling
    this coroutine aborts the download; CancelledError propagates only after
    the temp file has been cleaned up.
    """
    config = config or DownloadConfig()
    owned_transport: Optional[AiohttpTransport] = None
    if transport is None:
        owned_transport = AiohttpTransport.from_config(config)
        transport = owned_transport

    try:
        async with DownloadRegistry(transport, config) as registry:
            session = await registry.start_download(
                url, destination_path, on_progress=on_progress, resume=resume
            )
            if session is None:
                return DownloadStatus.FAILED
            return await session.wait()
    finally:
        if owned_transport is not None:
            await owned_transport.close()
