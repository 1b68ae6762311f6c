"""
Fixtures for download session tests.

ScriptedTransport stands in for the HTTP stack: each request replays a list
of steps (response headers, body chunks, a pause until cancelled, terminal
outcome) through the same callbacks AiohttpTransport uses.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

import pytest

from resumable_fetch.config import DownloadConfig
from resumable_fetch.download.models import TransportErrorKind, TransportOutcome
from resumable_fetch.download.transport import RequestHandle, TransportClient

Step = Tuple[str, Any]


class ScriptedRequest(RequestHandle):
    """One request replaying its steps from its own task."""

    def __init__(self, url: str, headers: Mapping[str, str], steps: List[Step], total: int, handlers: Dict[str, Any]):
        self.url = url
        self.headers = dict(headers)
        self.cancel_called = False
        self.blocked = asyncio.Event()
        self._steps = steps
        self._total = total
        self._handlers = handlers
        self._cancel_event = asyncio.Event()
        self._finished = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> None:
        self.cancel_called = True
        self._cancel_event.set()

    async def wait(self) -> None:
        await self._finished.wait()

    async def run(self) -> None:
        outcome: Optional[TransportOutcome] = None
        received = 0
        for kind, value in self._steps:
            if self.cancel_called:
                break
            if kind == "response":
                await self._handlers["on_response"](value, {})
            elif kind == "chunk":
                received += len(value)
                await self._handlers["on_chunk"](value)
                await self._handlers["on_progress"](received, self._total)
            elif kind == "block":
                self.blocked.set()
                await self._cancel_event.wait()
                break
            elif kind == "outcome":
                outcome = value
                break

        if self.cancel_called:
            outcome = TransportOutcome.cancelled()
        elif outcome is None:
            outcome = TransportOutcome.success()

        try:
            await self._handlers["on_finished"](outcome)
        finally:
            self._finished.set()


class ScriptedTransport(TransportClient):
    """Transport fake; queue one script per expected request."""

    def __init__(self) -> None:
        self.requests: List[ScriptedRequest] = []
        self._scripts: Deque[Tuple[List[Step], int]] = deque()
        self._tasks: List[asyncio.Task] = []

    # Step builders

    @staticmethod
    def response(status: int = 200) -> Step:
        return ("response", status)

    @staticmethod
    def chunk(data: bytes) -> Step:
        return ("chunk", data)

    @staticmethod
    def block() -> Step:
        return ("block", None)

    @staticmethod
    def outcome(outcome: TransportOutcome) -> Step:
        return ("outcome", outcome)

    @classmethod
    def network_error(cls) -> Step:
        return cls.outcome(
            TransportOutcome.failure(TransportErrorKind.NETWORK, "Connection reset")
        )

    @classmethod
    def not_found(cls) -> Step:
        return cls.outcome(
            TransportOutcome.failure(TransportErrorKind.NOT_FOUND, status_code=404)
        )

    @classmethod
    def http_error(cls, status: int) -> Step:
        return cls.outcome(
            TransportOutcome.failure(TransportErrorKind.HTTP, status_code=status)
        )

    @classmethod
    def redirect(cls, target: str) -> Step:
        return cls.outcome(TransportOutcome.redirect(target))

    def script(self, *steps: Step, total: int = -1) -> None:
        self._scripts.append((list(steps), total))

    def start(
        self,
        url,
        headers,
        *,
        on_response,
        on_chunk,
        on_progress,
        on_finished,
    ) -> ScriptedRequest:
        if self._scripts:
            steps, total = self._scripts.popleft()
        else:
            steps, total = [self.http_error(599)], -1
        request = ScriptedRequest(
            url,
            headers,
            steps,
            total,
            {
                "on_response": on_response,
                "on_chunk": on_chunk,
                "on_progress": on_progress,
                "on_finished": on_finished,
            },
        )
        self.requests.append(request)
        self._tasks.append(asyncio.get_running_loop().create_task(request.run()))
        return request

    async def wait_blocked(self, max_spins: int = 1000) -> ScriptedRequest:
        """Let the event loop run until the latest request is parked on a block step."""
        for _ in range(max_spins):
            if self.requests and self.requests[-1].blocked.is_set():
                return self.requests[-1]
            await asyncio.sleep(0)
        raise AssertionError("request never reached a block step")


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def config():
    return DownloadConfig(client_id="1234567890")


@pytest.fixture
def destination(tmp_path):
    return str(tmp_path / "map.bin")
