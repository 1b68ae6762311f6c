"""
Per-download state machine.

One DownloadSession fetches one URL into ``<destination><temp suffix>``,
reissues the request after network errors (up to max_retries), follows
redirects, resumes from the temp file size with a Range header, and on
success replaces the destination with the temp file.

States:
    INITIALIZING -> REQUESTING -> STREAMING -> {RETRYING | REDIRECTING | FINALIZING}
    -> {COMPLETED | FAILED | ABORTED}

Every transport notification for a session is delivered from one task and
awaited before the next, so session state needs no locking.

The finish callback fires exactly once, unless the session was aborted, in
which case no caller callback fires at all.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Set

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download.file_sink import FileSink, remove_if_exists
from resumable_fetch.download.models import (
    DownloadStatus,
    FinishCallback,
    OpenMode,
    ProgressCallback,
    SessionState,
    TransportErrorKind,
    TransportOutcome,
)
from resumable_fetch.download.transport import RequestHandle, TransportClient
from resumable_fetch.errors import (
    DownloadError,
    FinalizationError,
    OpenFileError,
    PermanentNetworkError,
    TempFileWriteError,
)
from resumable_fetch.logging.setup import get_logger
from resumable_fetch.logging.utilities import log_exception, log_with_context

logger = get_logger(__name__)

TerminatedCallback = Callable[["DownloadSession"], None]


class InvalidTransitionError(RuntimeError):
    """Internal bug: the state machine tried an edge that doesn't exist."""


class DownloadSession:
    """
    Drives a single download through its lifecycle.

    Usage:
        session = DownloadSession(
            url="https://example.com/map.bin",
            destination_path="/data/map.bin",
            transport=transport,
            on_finish=lambda url, status: print(url, status),
            resume=True,
        )
        await session.start()
        status = await session.wait()

    Owners that drop a session early must call ``await session.aclose()``,
    which aborts the in-flight request and waits for its terminal
    notification before returning.
    """

    # Legal state transitions
    TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
        SessionState.INITIALIZING: {
            SessionState.REQUESTING,
            SessionState.FAILED,
            SessionState.ABORTED,
        },
        SessionState.REQUESTING: {
            SessionState.STREAMING,
            SessionState.ABORTED,
        },
        SessionState.STREAMING: {
            SessionState.RETRYING,
            SessionState.REDIRECTING,
            SessionState.FINALIZING,
            SessionState.FAILED,
            SessionState.ABORTED,
        },
        SessionState.RETRYING: {
            SessionState.REQUESTING,
            SessionState.ABORTED,
        },
        SessionState.REDIRECTING: {
            SessionState.REQUESTING,
            SessionState.FAILED,
            SessionState.ABORTED,
        },
        SessionState.FINALIZING: {
            SessionState.COMPLETED,
            SessionState.FAILED,
        },
        SessionState.COMPLETED: set(),
        SessionState.FAILED: set(),
        SessionState.ABORTED: set(),
    }

    def __init__(
        self,
        url: str,
        destination_path: str,
        transport: TransportClient,
        on_finish: Optional[FinishCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        resume: bool = False,
        config: Optional[DownloadConfig] = None,
        user_agent: Optional[str] = None,
        on_terminated: Optional[TerminatedCallback] = None,
    ):
        """
        Args:
            url: URL to download; also the session's identity key
            destination_path: Where the finished file is published
            transport: Transport used for every request of this session
            on_finish: Called as on_finish(url, status) once, never after abort
            on_progress: Called as on_progress(url, bytes_read, bytes_total)
            resume: Open an existing temp file in append mode and continue it
            config: Retry/temp-suffix/identity settings (default: DownloadConfig())
            user_agent: Precomputed client identity (default: config.user_agent())
            on_terminated: Owner hook, called once after the terminal event
        """
        self.config = config or DownloadConfig()

        self.original_url = url
        self.current_url = url
        self.final_path = str(destination_path)
        self.temp_path = self.config.temp_path_for(self.final_path)
        self.resume = resume
        self.max_retries = self.config.max_retries
        self.max_redirects = self.config.max_redirects
        self.user_agent = user_agent or self.config.user_agent()

        self.retry_count = 0
        self.redirect_count = 0
        self.state = SessionState.INITIALIZING
        self.status: Optional[DownloadStatus] = None
        self.last_error: Optional[DownloadError] = None

        self._transport = transport
        self._on_finish = on_finish
        self._on_progress = on_progress
        self._on_terminated = on_terminated

        self._sink = FileSink(self.temp_path)
        self._handle: Optional[RequestHandle] = None
        self._aborted = False
        self._started = False
        self._terminated = False
        self._done = asyncio.Event()
        self._range_offset = 0
        self._write_error: Optional[OSError] = None
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def start(self) -> None:
        """
        Open the temp file and issue the first request.

        Returns once the request is in flight, or once the session has
        terminated because the temp file couldn't be opened.

        Raises:
            RuntimeError: If the session was already started or aborted
        """
        if self._started:
            raise RuntimeError(f"Session already started: {self.original_url}")
        # An aborted session must not touch a temp file kept for a later resume
        if self._aborted or self.state.is_terminal:
            raise RuntimeError(f"Session already aborted: {self.original_url}")
        self._started = True
        self._started_at = time.monotonic()

        mode = OpenMode.APPEND if self.resume else OpenMode.TRUNCATE
        try:
            await self._sink.open(mode)
        except OSError as e:
            self.last_error = OpenFileError(self.temp_path, cause=e)
            log_exception(
                logger,
                self.last_error,
                "Can't open file while downloading",
                level=logging.ERROR,
                include_traceback=False,
                url=self.original_url,
                temp_path=self.temp_path,
            )
            self._transition(SessionState.FAILED)
            await self._terminate(DownloadStatus.FAILED)
            return

        await self._request()

    def abort(self) -> bool:
        """
        Request cancellation.

        Suppresses all further caller callbacks and cancels the in-flight
        request; resources are released when the transport reports the
        request finished. Returns False if the session is already past the
        point where it can be aborted (finalizing or terminated).
        """
        if self.state.is_terminal or self.state == SessionState.FINALIZING:
            return False
        if self._aborted:
            return True
        self._aborted = True
        log_with_context(
            logger,
            logging.INFO,
            "Download abort requested",
            url=self.original_url,
            state=self.state.value,
        )
        if self._handle is not None:
            self._handle.cancel()
        elif not self._started:
            # Never started: nothing holds resources, terminate right away
            self._transition(SessionState.ABORTED)
            self._terminated = True
            self._done.set()
            if self._on_terminated is not None:
                self._on_terminated(self)
        return True

    async def wait(self) -> Optional[DownloadStatus]:
        """Wait for the terminal event. Returns None if the session was aborted."""
        await self._done.wait()
        return self.status

    async def aclose(self) -> None:
        """Abort (if still running) and block until resources are released."""
        self.abort()
        await self._done.wait()

    # ------------------------------------------------------------------
    # Requesting
    # ------------------------------------------------------------------

    async def _request(self) -> None:
        if self._aborted:
            await self._finish_aborted()
            return

        self._transition(SessionState.REQUESTING)

        headers = {"User-Agent": self.user_agent}
        offset = await self._sink.size()
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
        self._range_offset = offset

        log_with_context(
            logger,
            logging.DEBUG,
            "Issuing request",
            url=self.original_url,
            current_url=self.current_url,
            range_offset=offset,
            retry_count=self.retry_count,
        )

        self._handle = self._transport.start(
            self.current_url,
            headers,
            on_response=self._on_response,
            on_chunk=self._on_chunk,
            on_progress=self._on_progress_event,
            on_finished=self._on_finished,
        )
        self._transition(SessionState.STREAMING)
        if self._aborted:
            self._handle.cancel()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _on_response(self, status: int, headers: Mapping[str, str]) -> None:
        if self._aborted or self._write_error is not None:
            return
        # Server ignored the Range header and is sending the whole body
        if self._range_offset > 0 and status == 200:
            log_with_context(
                logger,
                logging.INFO,
                "Server does not support resume, restarting from zero",
                url=self.original_url,
                range_offset=self._range_offset,
                http_status=status,
            )
            try:
                await self._sink.truncate_to_zero()
            except OSError as e:
                self._record_write_error(e)
            self._range_offset = 0

    async def _on_chunk(self, data: bytes) -> None:
        if self._aborted or self._write_error is not None:
            return
        try:
            await self._sink.write(data)
        except OSError as e:
            self._record_write_error(e)

    async def _on_progress_event(self, bytes_read: int, bytes_total: int) -> None:
        if self._aborted or self._on_progress is None:
            return
        await self._invoke_callback(
            self._on_progress, self.original_url, bytes_read, bytes_total
        )

    def _record_write_error(self, exc: OSError) -> None:
        self._write_error = exc
        log_exception(
            logger,
            exc,
            "Temp file write failed, cancelling request",
            include_traceback=False,
            url=self.original_url,
            temp_path=self.temp_path,
        )
        if self._handle is not None:
            self._handle.cancel()

    # ------------------------------------------------------------------
    # Terminal transport notification
    # ------------------------------------------------------------------

    async def _on_finished(self, outcome: TransportOutcome) -> None:
        self._handle = None

        if self._aborted:
            await self._finish_aborted()
            return

        if self._write_error is not None:
            self.last_error = TempFileWriteError(self.temp_path, cause=self._write_error)
            await self._finish_failed(DownloadStatus.FAILED)
            return

        if outcome.is_error:
            await self._handle_error(outcome)
        elif outcome.is_redirect:
            await self._handle_redirect(outcome.redirect_url)
        else:
            await self._finalize()

    async def _handle_error(self, outcome: TransportOutcome) -> None:
        error = outcome.to_exception()
        self.last_error = error

        if error.is_retryable and self.retry_count < self.max_retries:
            self.retry_count += 1
            self._transition(SessionState.RETRYING)
            log_with_context(
                logger,
                logging.INFO,
                "Network error, retrying download",
                url=self.original_url,
                current_url=self.current_url,
                retry_count=self.retry_count,
                max_retries=self.max_retries,
                error_message=outcome.error_message,
            )
            await self._request()
            return

        if outcome.error_kind == TransportErrorKind.NOT_FOUND:
            await self._finish_failed(DownloadStatus.FILE_NOT_FOUND)
        else:
            await self._finish_failed(DownloadStatus.FAILED)

    async def _handle_redirect(self, target: str) -> None:
        self._transition(SessionState.REDIRECTING)
        self.redirect_count += 1
        if self.redirect_count > self.max_redirects:
            self.last_error = PermanentNetworkError(
                f"Too many redirects ({self.redirect_count})",
                context={"redirect_url": target},
            )
            await self._finish_failed(DownloadStatus.FAILED)
            return

        log_with_context(
            logger,
            logging.INFO,
            "HTTP redirect",
            url=self.original_url,
            redirect_url=target,
        )
        self.current_url = target

        # A redirect points at a different resource: partial bytes are discarded
        try:
            await self._sink.truncate_to_zero()
        except OSError as e:
            self.last_error = TempFileWriteError(self.temp_path, cause=e)
            await self._finish_failed(DownloadStatus.FAILED)
            return

        await self._request()

    # ------------------------------------------------------------------
    # Finalizing
    # ------------------------------------------------------------------

    async def _finalize(self) -> None:
        self._transition(SessionState.FINALIZING)

        try:
            await self._sink.flush()
            await self._sink.close()
        except OSError as e:
            self.last_error = TempFileWriteError(self.temp_path, cause=e)
            await self._finish_failed(DownloadStatus.FAILED)
            return

        # Delete the original file if it exists
        try:
            await remove_if_exists(self.final_path)
        except OSError as e:
            log_with_context(
                logger,
                logging.DEBUG,
                "Can't remove existing destination file",
                final_path=self.final_path,
                error_message=str(e),
            )

        status = DownloadStatus.OK
        try:
            await self._sink.rename(self.final_path)
        except OSError as e:
            self.last_error = FinalizationError(self.final_path, cause=e)
            log_exception(
                logger,
                self.last_error,
                "File exists and can't be replaced by downloaded one",
                level=logging.WARNING,
                include_traceback=False,
                url=self.original_url,
                final_path=self.final_path,
            )
            await self._safe_remove()
            status = DownloadStatus.FILE_LOCKED

        self._transition(SessionState.COMPLETED)
        log_with_context(
            logger,
            logging.INFO,
            "Download complete",
            url=self.original_url,
            final_path=self.final_path,
            status=status.value,
            retry_count=self.retry_count,
            duration_ms=self._elapsed_ms(),
        )
        await self._terminate(status)

    # ------------------------------------------------------------------
    # Failure and abort
    # ------------------------------------------------------------------

    async def _finish_failed(self, status: DownloadStatus) -> None:
        self._transition(SessionState.FAILED)

        bytes_written = 0
        try:
            bytes_written = await self._sink.size()
            await self._sink.close()
        except OSError as e:
            log_exception(
                logger,
                e,
                "Error closing temp file",
                level=logging.WARNING,
                include_traceback=False,
                temp_path=self.temp_path,
            )

        # Keep partial content so a later resumed download can continue it
        if bytes_written == 0:
            await self._safe_remove()

        error = self.last_error
        log_with_context(
            logger,
            logging.WARNING,
            "Download failed",
            url=self.original_url,
            current_url=self.current_url,
            status=status.value,
            retry_count=self.retry_count,
            bytes_written=bytes_written,
            error_category=error.category.value if error else None,
            error_message=str(error) if error else None,
            http_status=getattr(error, "status_code", None),
        )
        await self._terminate(status)

    async def _finish_aborted(self) -> None:
        await self._safe_remove()
        self._transition(SessionState.ABORTED)
        log_with_context(
            logger,
            logging.INFO,
            "Download aborted",
            url=self.original_url,
            temp_path=self.temp_path,
        )
        await self._terminate(None)

    async def _safe_remove(self) -> None:
        try:
            await self._sink.remove()
        except OSError as e:
            log_exception(
                logger,
                e,
                "Can't remove temp file",
                level=logging.WARNING,
                include_traceback=False,
                temp_path=self.temp_path,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in self.TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Invalid transition {self.state.value} -> {new_state.value}"
            )
        log_with_context(
            logger,
            logging.DEBUG,
            f"Session state {self.state.value} -> {new_state.value}",
            url=self.original_url,
            previous_state=self.state.value,
            state=new_state.value,
        )
        self.state = new_state

    async def _terminate(self, status: Optional[DownloadStatus]) -> None:
        if self._terminated:
            return
        self._terminated = True
        self.status = status

        if status is not None and not self._aborted and self._on_finish is not None:
            await self._invoke_callback(self._on_finish, self.original_url, status)

        self._done.set()
        if self._on_terminated is not None:
            self._on_terminated(self)

    async def _invoke_callback(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log_exception(
                logger,
                e,
                f"Download callback {getattr(callback, '__name__', callback)!r} raised",
                url=self.original_url,
            )

    def _elapsed_ms(self) -> Optional[float]:
        if self._started_at is None:
            return None
        return round((time.monotonic() - self._started_at) * 1000, 2)

    def __repr__(self) -> str:
        return (
            f"DownloadSession(url={self.original_url!r}, state={self.state.value}, "
            f"retry_count={self.retry_count})"
        )
