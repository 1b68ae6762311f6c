"""Tests for the DownloadSession state machine."""

import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download.file_sink import FileSink
from resumable_fetch.download.models import DownloadStatus, SessionState
from resumable_fetch.download.session import DownloadSession
from resumable_fetch.errors import (
    FinalizationError,
    OpenFileError,
    PermanentNetworkError,
    ResourceNotFoundError,
    TempFileWriteError,
    TransientNetworkError,
)

URL = "http://maps.example.com/Germany.mwm"


def make_session(transport, destination, config, **kwargs):
    on_finish = kwargs.pop("on_finish", MagicMock())
    session = DownloadSession(
        url=URL,
        destination_path=destination,
        transport=transport,
        on_finish=on_finish,
        config=config,
        **kwargs,
    )
    return session, on_finish


def read(path):
    return Path(path).read_bytes()


class TestSuccessfulDownload:
    """Happy path: stream, finalize, publish."""

    @pytest.mark.asyncio
    async def test_streams_body_into_destination(self, transport, destination, config):
        transport.script(
            transport.response(200),
            transport.chunk(b"hello "),
            transport.chunk(b"world"),
            total=11,
        )
        session, on_finish = make_session(transport, destination, config)

        await session.start()
        status = await session.wait()

        assert status == DownloadStatus.OK
        assert read(destination) == b"hello world"
        assert not os.path.exists(session.temp_path)
        on_finish.assert_called_once_with(URL, DownloadStatus.OK)
        assert session.state == SessionState.COMPLETED
        assert session.state.is_terminal

    @pytest.mark.asyncio
    async def test_temp_path_uses_suffix(self, transport, destination, config):
        session, _ = make_session(transport, destination, config)
        assert session.temp_path == destination + ".downloading"

    @pytest.mark.asyncio
    async def test_first_request_has_user_agent_and_no_range(self, transport, destination, config):
        transport.script(transport.chunk(b"data"))
        session, _ = make_session(transport, destination, config, user_agent="MWM(Linux)/1.0/abc")

        await session.start()
        await session.wait()

        headers = transport.requests[0].headers
        assert headers["User-Agent"] == "MWM(Linux)/1.0/abc"
        assert "Range" not in headers
        assert transport.requests[0].url == URL

    @pytest.mark.asyncio
    async def test_reports_progress_with_original_url(self, transport, destination, config):
        transport.script(transport.chunk(b"ab"), transport.chunk(b"cd"), total=4)
        on_progress = MagicMock()
        session, _ = make_session(transport, destination, config, on_progress=on_progress)

        await session.start()
        await session.wait()

        assert [c.args for c in on_progress.call_args_list] == [(URL, 2, 4), (URL, 4, 4)]

    @pytest.mark.asyncio
    async def test_replaces_existing_destination(self, transport, destination, config):
        Path(destination).write_bytes(b"old version of the map")
        transport.script(transport.chunk(b"new"))
        session, on_finish = make_session(transport, destination, config)

        await session.start()
        await session.wait()

        assert read(destination) == b"new"
        on_finish.assert_called_once_with(URL, DownloadStatus.OK)

    @pytest.mark.asyncio
    async def test_empty_body_publishes_empty_file(self, transport, destination, config):
        transport.script(transport.response(200))
        session, _ = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert read(destination) == b""

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, transport, destination, config):
        transport.script(transport.chunk(b"x"), total=1)
        on_finish = AsyncMock()
        on_progress = AsyncMock()
        session, _ = make_session(
            transport, destination, config, on_finish=on_finish, on_progress=on_progress
        )

        await session.start()
        await session.wait()

        on_finish.assert_awaited_once_with(URL, DownloadStatus.OK)
        on_progress.assert_awaited_once_with(URL, 1, 1)

    @pytest.mark.asyncio
    async def test_callback_exception_does_not_break_session(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"))
        on_progress = MagicMock(side_effect=ValueError("boom"))
        session, on_finish = make_session(transport, destination, config, on_progress=on_progress)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        on_finish.assert_called_once_with(URL, DownloadStatus.OK)

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"))
        session, _ = make_session(transport, destination, config)
        await session.start()

        with pytest.raises(RuntimeError):
            await session.start()
        await session.wait()


class TestRetries:
    """Network errors are retried up to max_retries times."""

    @pytest.mark.asyncio
    async def test_recovers_after_two_network_errors(self, transport, destination, config):
        transport.script(transport.chunk(b"0123"), transport.network_error())
        transport.script(transport.network_error())
        transport.script(transport.response(206), transport.chunk(b"4567"))
        session, on_finish = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert read(destination) == b"01234567"
        assert session.retry_count == 2
        assert len(transport.requests) == 3
        on_finish.assert_called_once_with(URL, DownloadStatus.OK)

    @pytest.mark.asyncio
    async def test_retry_resumes_from_bytes_on_disk(self, transport, destination, config):
        transport.script(transport.chunk(b"01234"), transport.network_error())
        transport.script(transport.response(206), transport.chunk(b"56789"))
        session, _ = make_session(transport, destination, config)

        await session.start()
        await session.wait()

        assert transport.requests[1].headers["Range"] == "bytes=5-"
        assert transport.requests[1].url == URL

    @pytest.mark.asyncio
    async def test_retry_without_bytes_sends_no_range(self, transport, destination, config):
        transport.script(transport.network_error())
        transport.script(transport.chunk(b"abc"))
        session, _ = make_session(transport, destination, config)

        await session.start()
        await session.wait()

        assert "Range" not in transport.requests[1].headers

    @pytest.mark.asyncio
    async def test_fails_after_retries_exhausted_and_deletes_empty_temp(self, transport, destination, config):
        for _ in range(3):
            transport.script(transport.network_error())
        session, on_finish = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.FAILED
        assert len(transport.requests) == 3
        assert session.retry_count == 2
        assert not os.path.exists(session.temp_path)
        assert not os.path.exists(destination)
        assert isinstance(session.last_error, TransientNetworkError)
        on_finish.assert_called_once_with(URL, DownloadStatus.FAILED)

    @pytest.mark.asyncio
    async def test_failure_keeps_partial_temp_for_later_resume(self, transport, destination, config):
        transport.script(transport.chunk(b"part"), transport.network_error())
        transport.script(transport.network_error())
        transport.script(transport.network_error())
        session, _ = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.FAILED
        assert read(session.temp_path) == b"part"
        assert not os.path.exists(destination)

    @pytest.mark.asyncio
    async def test_max_retries_from_config(self, transport, destination):
        transport.script(transport.network_error())
        session, _ = make_session(
            transport, destination, DownloadConfig(max_retries=0, client_id="x")
        )

        await session.start()

        assert await session.wait() == DownloadStatus.FAILED
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_http_error_is_not_retried(self, transport, destination, config):
        transport.script(transport.http_error(500))
        session, on_finish = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.FAILED
        assert len(transport.requests) == 1
        assert isinstance(session.last_error, PermanentNetworkError)
        assert session.last_error.status_code == 500
        on_finish.assert_called_once_with(URL, DownloadStatus.FAILED)

    @pytest.mark.asyncio
    async def test_not_found_reports_file_not_found(self, transport, destination, config):
        transport.script(transport.not_found())
        session, on_finish = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.FILE_NOT_FOUND
        assert len(transport.requests) == 1
        assert isinstance(session.last_error, ResourceNotFoundError)
        assert not os.path.exists(session.temp_path)
        on_finish.assert_called_once_with(URL, DownloadStatus.FILE_NOT_FOUND)


class TestResume:
    """Resuming from an existing temp file."""

    @pytest.mark.asyncio
    async def test_resume_sends_range_and_keeps_prefix(self, transport, destination, config):
        Path(destination + ".downloading").write_bytes(b"abcdef")
        transport.script(transport.response(206), transport.chunk(b"ghij"))
        session, _ = make_session(transport, destination, config, resume=True)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert transport.requests[0].headers["Range"] == "bytes=6-"
        assert read(destination) == b"abcdefghij"

    @pytest.mark.asyncio
    async def test_resume_without_temp_file_starts_from_zero(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"))
        session, _ = make_session(transport, destination, config, resume=True)

        await session.start()
        await session.wait()

        assert "Range" not in transport.requests[0].headers
        assert read(destination) == b"abc"

    @pytest.mark.asyncio
    async def test_no_resume_truncates_existing_temp(self, transport, destination, config):
        Path(destination + ".downloading").write_bytes(b"stale bytes")
        transport.script(transport.chunk(b"fresh"))
        session, _ = make_session(transport, destination, config, resume=False)

        await session.start()
        await session.wait()

        assert "Range" not in transport.requests[0].headers
        assert read(destination) == b"fresh"

    @pytest.mark.asyncio
    async def test_server_ignoring_range_restarts_from_zero(self, transport, destination, config):
        Path(destination + ".downloading").write_bytes(b"abc")
        transport.script(transport.response(200), transport.chunk(b"abcdef"))
        session, _ = make_session(transport, destination, config, resume=True)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert read(destination) == b"abcdef"


class TestRedirects:
    """Redirects truncate the temp file and don't use the retry budget."""

    @pytest.mark.asyncio
    async def test_redirect_discards_partial_bytes(self, transport, destination, config):
        mirror = "http://mirror.example.com/Germany.mwm"
        transport.script(transport.chunk(b"stale"), transport.redirect(mirror))
        transport.script(transport.chunk(b"fresh"))
        session, on_finish = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert read(destination) == b"fresh"
        assert transport.requests[1].url == mirror
        assert "Range" not in transport.requests[1].headers
        assert session.current_url == mirror
        assert session.retry_count == 0
        on_finish.assert_called_once_with(URL, DownloadStatus.OK)

    @pytest.mark.asyncio
    async def test_redirect_keeps_full_retry_budget(self, transport, destination, config):
        mirror = "http://mirror.example.com/Germany.mwm"
        transport.script(transport.redirect(mirror))
        transport.script(transport.network_error())
        transport.script(transport.network_error())
        transport.script(transport.chunk(b"ok"))
        session, _ = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert all(r.url == mirror for r in transport.requests[1:])

    @pytest.mark.asyncio
    async def test_retry_after_redirect_stays_on_new_url(self, transport, destination, config):
        mirror = "http://mirror.example.com/Germany.mwm"
        transport.script(transport.redirect(mirror))
        transport.script(transport.chunk(b"12"), transport.network_error())
        transport.script(transport.response(206), transport.chunk(b"34"))
        session, _ = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.OK
        assert transport.requests[2].url == mirror
        assert transport.requests[2].headers["Range"] == "bytes=2-"
        assert read(destination) == b"1234"

    @pytest.mark.asyncio
    async def test_too_many_redirects_fails(self, transport, destination):
        config = DownloadConfig(max_redirects=1, client_id="x")
        transport.script(transport.redirect("http://a.example.com/f"))
        transport.script(transport.redirect("http://b.example.com/f"))
        session, on_finish = make_session(transport, destination, config)

        await session.start()

        assert await session.wait() == DownloadStatus.FAILED
        assert len(transport.requests) == 2
        on_finish.assert_called_once_with(URL, DownloadStatus.FAILED)


class TestAbort:
    """Abort is silent and removes the temp file."""

    @pytest.mark.asyncio
    async def test_abort_mid_stream(self, transport, destination, config):
        transport.script(transport.chunk(b"partial"), transport.block())
        on_progress = MagicMock()
        session, on_finish = make_session(transport, destination, config, on_progress=on_progress)

        await session.start()
        request = await transport.wait_blocked()
        assert session.abort() is True

        assert await session.wait() is None
        assert request.cancel_called
        assert session.state == SessionState.ABORTED
        assert not os.path.exists(session.temp_path)
        assert not os.path.exists(destination)
        on_finish.assert_not_called()
        assert on_progress.call_count == 1

    @pytest.mark.asyncio
    async def test_abort_leaves_existing_destination_untouched(self, transport, destination, config):
        Path(destination).write_bytes(b"previous map")
        transport.script(transport.chunk(b"new"), transport.block())
        session, on_finish = make_session(transport, destination, config)

        await session.start()
        await transport.wait_blocked()
        session.abort()
        await session.wait()

        assert read(destination) == b"previous map"
        on_finish.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_removes_resumed_temp(self, transport, destination, config):
        Path(destination + ".downloading").write_bytes(b"earlier bytes")
        transport.script(transport.block())
        session, _ = make_session(transport, destination, config, resume=True)

        await session.start()
        await transport.wait_blocked()
        await session.aclose()

        assert not os.path.exists(session.temp_path)

    @pytest.mark.asyncio
    async def test_abort_before_start_terminates_immediately(self, transport, destination, config):
        on_terminated = MagicMock()
        session, on_finish = make_session(
            transport, destination, config, on_terminated=on_terminated
        )

        assert session.abort() is True

        assert session.done
        assert session.state == SessionState.ABORTED
        on_terminated.assert_called_once_with(session)
        on_finish.assert_not_called()
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_abort_after_completion_returns_false(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"))
        session, _ = make_session(transport, destination, config)

        await session.start()
        await session.wait()

        assert session.abort() is False
        assert read(destination) == b"abc"

    @pytest.mark.asyncio
    async def test_abort_twice_is_harmless(self, transport, destination, config):
        transport.script(transport.block())
        session, on_finish = make_session(transport, destination, config)

        await session.start()
        await transport.wait_blocked()

        assert session.abort() is True
        assert session.abort() is True
        assert await session.wait() is None
        on_finish.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_after_abort_keeps_resumable_temp(self, transport, destination, config):
        temp_path = destination + ".downloading"
        Path(temp_path).write_bytes(b"earlier partial bytes")
        session, on_finish = make_session(transport, destination, config, resume=True)
        session.abort()

        with pytest.raises(RuntimeError):
            await session.start()

        assert read(temp_path) == b"earlier partial bytes"
        assert session.state == SessionState.ABORTED
        assert transport.requests == []
        on_finish.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_from_progress_before_network_error(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"), transport.network_error())
        transport.script(transport.chunk(b"def"))
        session, on_finish = make_session(
            transport, destination, config, on_progress=lambda *_: session.abort()
        )

        await session.start()

        assert await session.wait() is None
        assert len(transport.requests) == 1
        assert session.retry_count == 0
        assert not os.path.exists(session.temp_path)
        on_finish.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_while_redirecting_issues_no_request(self, transport, destination, config):
        transport.script(transport.chunk(b"stale"), transport.redirect("http://mirror.example.com/f"))
        transport.script(transport.chunk(b"fresh"))
        session, on_finish = make_session(transport, destination, config)
        original_truncate = FileSink.truncate_to_zero

        async def truncate_then_abort(sink):
            session.abort()
            await original_truncate(sink)

        with patch.object(FileSink, "truncate_to_zero", truncate_then_abort):
            await session.start()
            status = await session.wait()

        assert status is None
        assert len(transport.requests) == 1
        assert session.state == SessionState.ABORTED
        assert not os.path.exists(session.temp_path)
        assert not os.path.exists(destination)
        on_finish.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_while_preparing_retry_cancels_new_request(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"), transport.network_error())
        transport.script(transport.chunk(b"def"))
        session, on_finish = make_session(transport, destination, config)
        original_size = FileSink.size

        async def size_then_abort(sink):
            # Abort while the retry request is being prepared
            if len(transport.requests) == 1:
                session.abort()
            return await original_size(sink)

        with patch.object(FileSink, "size", size_then_abort):
            await session.start()
            status = await session.wait()

        assert status is None
        assert len(transport.requests) == 2
        assert transport.requests[1].cancel_called
        assert session.retry_count == 1
        assert not os.path.exists(session.temp_path)
        on_finish.assert_not_called()

    @pytest.mark.asyncio
    async def test_on_terminated_fires_once_after_abort(self, transport, destination, config):
        transport.script(transport.block())
        on_terminated = MagicMock()
        session, _ = make_session(transport, destination, config, on_terminated=on_terminated)

        await session.start()
        await transport.wait_blocked()
        await session.aclose()

        on_terminated.assert_called_once_with(session)


class TestFileErrors:
    """Local filesystem failures."""

    @pytest.mark.asyncio
    async def test_open_failure_reports_failed_without_request(self, transport, tmp_path, config):
        destination = str(tmp_path / "missing_dir" / "map.bin")
        on_terminated = MagicMock()
        session, on_finish = make_session(
            transport, destination, config, on_terminated=on_terminated
        )

        await session.start()

        assert session.done
        assert session.status == DownloadStatus.FAILED
        assert isinstance(session.last_error, OpenFileError)
        assert transport.requests == []
        on_finish.assert_called_once_with(URL, DownloadStatus.FAILED)
        on_terminated.assert_called_once_with(session)

    @pytest.mark.asyncio
    async def test_locked_destination_reports_file_locked(self, transport, tmp_path, config):
        # A non-empty directory can neither be removed as a file nor replaced
        destination = tmp_path / "map.bin"
        destination.mkdir()
        (destination / "keep").write_bytes(b"x")
        transport.script(transport.chunk(b"downloaded"))
        session, on_finish = make_session(transport, str(destination), config)

        await session.start()

        assert await session.wait() == DownloadStatus.FILE_LOCKED
        assert isinstance(session.last_error, FinalizationError)
        assert not os.path.exists(session.temp_path)
        assert (destination / "keep").read_bytes() == b"x"
        on_finish.assert_called_once_with(URL, DownloadStatus.FILE_LOCKED)

    @pytest.mark.asyncio
    async def test_rename_failure_removes_temp(self, transport, destination, config):
        transport.script(transport.chunk(b"downloaded"))
        session, on_finish = make_session(transport, destination, config)

        with patch.object(
            FileSink, "rename", AsyncMock(side_effect=PermissionError("locked"))
        ):
            await session.start()
            status = await session.wait()

        assert status == DownloadStatus.FILE_LOCKED
        assert not os.path.exists(session.temp_path)
        assert not os.path.exists(destination)
        on_finish.assert_called_once_with(URL, DownloadStatus.FILE_LOCKED)

    @pytest.mark.asyncio
    async def test_write_failure_cancels_request_and_fails(self, transport, destination, config):
        transport.script(transport.chunk(b"abc"), transport.block())
        session, on_finish = make_session(transport, destination, config)

        with patch.object(FileSink, "write", AsyncMock(side_effect=OSError(28, "No space left"))):
            await session.start()
            status = await session.wait()

        assert status == DownloadStatus.FAILED
        assert transport.requests[0].cancel_called
        assert isinstance(session.last_error, TempFileWriteError)
        assert not session.last_error.is_retryable
        assert len(transport.requests) == 1
        on_finish.assert_called_once_with(URL, DownloadStatus.FAILED)
