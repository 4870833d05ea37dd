"""Shared fakes for relay tests."""

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from debugger_relay.debugger.config import RelayConfig
from debugger_relay.debugger.output import OutputChannel

PACKAGER_HOST = "localhost"
PACKAGER_PORT = 8081
STATUS_URL = f"http://{PACKAGER_HOST}:{PACKAGER_PORT}/status"
WORKER_URL = f"http://{PACKAGER_HOST}:{PACKAGER_PORT}/debugger-ui/debuggerWorker.js"


class MockResponse:
    """Minimal stand-in for httpx.Response."""

    def __init__(self, status_code: int = 200, json_data: Any = None, text: str | None = None):
        self.status_code = status_code
        self._json_data = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text

    def json(self) -> Any:
        return self._json_data


class MockHttpClient:
    """HTTP client answering GETs from a url -> response (or exception) table."""

    def __init__(self, routes: dict[str, Any] | None = None):
        self.routes: dict[str, Any] = dict(routes or {})
        self.get_urls: list[str] = []
        self.closed = False

    async def get(self, url: str, timeout: Any = None) -> Any:
        self.get_urls.append(url)
        result = self.routes.get(url)
        if result is None:
            return MockResponse(404, text="Not Found")
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


_CLOSED = object()


class FakeWebSocket:
    """Websocket whose inbound frames are fed by the test."""

    def __init__(self):
        self.sent: list[str] = []
        self.close_reason: str | None = None
        self.closed = False
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    @property
    def sent_json(self) -> list[Any]:
        return [json.loads(frame) for frame in self.sent]

    def feed(self, message: Any) -> None:
        if not isinstance(message, str):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def disconnect(self, reason: str = "") -> None:
        """Simulate the proxy closing the socket."""
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_CLOSED)


class FakeConnector:
    """Replacement for websockets.connect that hands out FakeWebSockets."""

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.sockets: list[FakeWebSocket] = []
        self.errors: list[BaseException] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        if self.errors:
            raise self.errors.pop(0)
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


class OutputRecorder:
    def __init__(self):
        self.lines: list[tuple[str, str]] = []

    def __call__(self, text: str, category: str) -> None:
        self.lines.append((text, category))

    def texts(self, category: str | None = None) -> list[str]:
        return [text for text, cat in self.lines if category is None or cat == category]


async def settle(rounds: int = 20) -> None:
    """Let pending tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def output_recorder() -> OutputRecorder:
    return OutputRecorder()


@pytest.fixture
def output(output_recorder: OutputRecorder) -> OutputChannel:
    return OutputChannel(sink=output_recorder)


@pytest.fixture
def relay_config(tmp_path: Path) -> RelayConfig:
    return RelayConfig(
        host=PACKAGER_HOST,
        port=PACKAGER_PORT,
        sources_storage_path=tmp_path / "sources",
        rn_version="0.60.0",
        inspect=False,
        worker_ready_timeout=10.0,
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll predicate until it holds or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
