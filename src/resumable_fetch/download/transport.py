"""
HTTP transport used by download sessions.

A transport issues one GET per start() call and reports back through
coroutine callbacks, delivered one at a time from a single task:

    on_response(status, headers)    once, before any body bytes
    on_chunk(data)                  for each body chunk
    on_progress(received, total)    after each chunk (total = -1 if unknown)
    on_finished(outcome)            exactly once, always last

Redirects are not followed: a 3xx with Location ends the request with a
redirect outcome so the session can decide what to do with its temp file.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import urljoin

import aiohttp

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download.models import TransportErrorKind, TransportOutcome
from resumable_fetch.errors import ErrorCategory, classify_exception
from resumable_fetch.logging.context import set_log_context
from resumable_fetch.logging.setup import get_logger
from resumable_fetch.logging.utilities import log_exception, log_with_context

logger = get_logger(__name__)

ResponseHandler = Callable[[int, Mapping[str, str]], Awaitable[Any]]
ChunkHandler = Callable[[bytes], Awaitable[Any]]
ProgressHandler = Callable[[int, int], Awaitable[Any]]
FinishedHandler = Callable[[TransportOutcome], Awaitable[Any]]

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
NOT_FOUND_STATUSES = (404, 410)


class RequestHandle(ABC):
    """In-flight request. Cancellation is cooperative: on_finished still fires."""

    @abstractmethod
    def cancel(self) -> None:
        pass

    @abstractmethod
    async def wait(self) -> None:
        """Wait until on_finished has been delivered and returned."""
        pass

    @property
    @abstractmethod
    def done(self) -> bool:
        pass


class TransportClient(ABC):
    """Issues GET requests and streams their notifications back."""

    @abstractmethod
    def start(
        self,
        url: str,
        headers: Mapping[str, str],
        *,
        on_response: ResponseHandler,
        on_chunk: ChunkHandler,
        on_progress: ProgressHandler,
        on_finished: FinishedHandler,
    ) -> RequestHandle:
        pass


class _RequestCancelled(Exception):
    """Raised inside a request task when cancel() arrived during a callback."""


class AiohttpRequestHandle(RequestHandle):
    """
    Handle of one aiohttp request task.

    The task is only interrupted with Task.cancel() while it waits on the
    network. A cancel that arrives while a callback is running is noted and
    honoured once the callback returns, so session code is never interrupted
    mid-write.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None
        self._finished = asyncio.Event()
        self._cancel_requested = False
        self._fetching = False
        self._in_callback = False

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> None:
        if self.done or self._cancel_requested:
            return
        self._cancel_requested = True
        if self._task is not None and self._fetching and not self._in_callback:
            self._task.cancel()

    async def wait(self) -> None:
        await self._finished.wait()

    async def dispatch(self, handler: Callable[..., Awaitable[Any]], *args: Any) -> None:
        self._in_callback = True
        try:
            await handler(*args)
        finally:
            self._in_callback = False
        if self._cancel_requested:
            raise _RequestCancelled()


class AiohttpTransport(TransportClient):
    """
    aiohttp-based transport.

    Session management:
        By default, creates its own ClientSession on first use and closes it
        in close(). Pass a shared session to reuse a connection pool:

        async with aiohttp.ClientSession() as http:
            transport = AiohttpTransport(session=http)
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        chunk_size: int = 256 * 1024,
        timeout_seconds: float = 300.0,
        connect_timeout_seconds: float = 30.0,
        max_connections: int = 100,
        max_connections_per_host: int = 10,
    ):
        """
        Initialize AiohttpTransport.

        Args:
            session: Optional aiohttp session (None = create on first request)
            chunk_size: Body read size in bytes
            timeout_seconds: Max seconds without receiving body data
            connect_timeout_seconds: Max seconds to establish a connection
            max_connections: Total connection pool size (default: 100)
            max_connections_per_host: Per-host connection limit (default: 10)
        """
        self._session = session
        self._owns_session = session is None
        self._chunk_size = chunk_size
        self._timeout = aiohttp.ClientTimeout(
            total=None,
            connect=connect_timeout_seconds,
            sock_read=timeout_seconds,
        )
        self._max_connections = max_connections
        self._max_connections_per_host = max_connections_per_host
        self._tasks: set = set()

    @classmethod
    def from_config(cls, config: DownloadConfig, **kwargs: Any) -> "AiohttpTransport":
        return cls(
            chunk_size=config.chunk_size,
            timeout_seconds=config.timeout_seconds,
            connect_timeout_seconds=config.connect_timeout_seconds,
            **kwargs,
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._max_connections,
                limit_per_host=self._max_connections_per_host,
            )
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Cancel outstanding requests and close the owned ClientSession."""
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def start(
        self,
        url: str,
        headers: Mapping[str, str],
        *,
        on_response: ResponseHandler,
        on_chunk: ChunkHandler,
        on_progress: ProgressHandler,
        on_finished: FinishedHandler,
    ) -> AiohttpRequestHandle:
        handle = AiohttpRequestHandle()
        task = asyncio.get_running_loop().create_task(
            self._run(handle, url, dict(headers), on_response, on_chunk, on_progress, on_finished)
        )
        handle._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def _run(
        self,
        handle: AiohttpRequestHandle,
        url: str,
        headers: dict,
        on_response: ResponseHandler,
        on_chunk: ChunkHandler,
        on_progress: ProgressHandler,
        on_finished: FinishedHandler,
    ) -> None:
        # Task-local: each request task runs in its own context copy
        set_log_context(session_url=url)
        if handle.cancel_requested:
            outcome = TransportOutcome.cancelled()
        else:
            handle._fetching = True
            try:
                outcome = await self._fetch(
                    handle, url, headers, on_response, on_chunk, on_progress
                )
            except (asyncio.CancelledError, _RequestCancelled):
                if not handle.cancel_requested:
                    # Cancelled from outside (transport shutdown)
                    handle._cancel_requested = True
                task = asyncio.current_task()
                if task is not None and hasattr(task, "uncancel"):
                    while task.cancelling():
                        task.uncancel()
                outcome = TransportOutcome.cancelled()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log_with_context(
                    logger,
                    logging.DEBUG,
                    "Network error",
                    url=url,
                    error_message=str(e) or type(e).__name__,
                )
                outcome = TransportOutcome.failure(
                    TransportErrorKind.NETWORK,
                    error_message=f"Network error: {str(e) or type(e).__name__}",
                    cause=e,
                )
            except Exception as e:
                # e.g. a bare ConnectionResetError from the socket layer
                if classify_exception(e) == ErrorCategory.TRANSIENT:
                    kind = TransportErrorKind.NETWORK
                    message = f"Network error: {e}"
                else:
                    kind = TransportErrorKind.OTHER
                    message = f"Unexpected error: {e}"
                    log_exception(logger, e, "Unexpected transport error", url=url)
                outcome = TransportOutcome.failure(
                    kind,
                    error_message=message,
                    cause=e,
                )
            finally:
                handle._fetching = False

        try:
            await on_finished(outcome)
        finally:
            handle._finished.set()

    async def _fetch(
        self,
        handle: AiohttpRequestHandle,
        url: str,
        headers: dict,
        on_response: ResponseHandler,
        on_chunk: ChunkHandler,
        on_progress: ProgressHandler,
    ) -> TransportOutcome:
        session = self._get_session()
        async with session.get(
            url,
            headers=headers,
            timeout=self._timeout,
            allow_redirects=False,
        ) as response:
            status = response.status
            await handle.dispatch(on_response, status, response.headers)

            if status in REDIRECT_STATUSES:
                location = response.headers.get("Location")
                if not location:
                    return TransportOutcome.failure(
                        TransportErrorKind.HTTP,
                        error_message=f"HTTP {status} without Location header",
                        status_code=status,
                    )
                return TransportOutcome.redirect(urljoin(url, location), status)

            if status in NOT_FOUND_STATUSES:
                return TransportOutcome.failure(
                    TransportErrorKind.NOT_FOUND,
                    error_message=f"HTTP {status}: not found",
                    status_code=status,
                )

            if not 200 <= status < 300:
                return TransportOutcome.failure(
                    TransportErrorKind.HTTP,
                    error_message=f"HTTP error: {status}",
                    status_code=status,
                )

            total = response.content_length if response.content_length is not None else -1
            received = 0
            async for chunk in response.content.iter_chunked(self._chunk_size):
                received += len(chunk)
                await handle.dispatch(on_chunk, chunk)
                await handle.dispatch(on_progress, received, total)

            return TransportOutcome.success(status)
