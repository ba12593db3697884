import asyncio

import pytest

from omnichat.config import OmniChatConfig
from omnichat.diagnostics import DiagnosticsSink

_END = object()


class FakeWebSocket:
    """In-memory socket: frames are fed by the test and sends are recorded."""

    def __init__(self, fail_close=False):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False
        self.fail_close = fail_close
        self.close_code = None
        self.close_reason = None

    def feed(self, *frames):
        for frame in frames:
            self.incoming.put_nowait(frame)

    def end(self, code=1006, reason=""):
        self.close_code = code
        self.close_reason = reason
        self.incoming.put_nowait(_END)

    async def send(self, text):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(text)

    async def close(self):
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self.incoming.put_nowait(_END)
        if self.fail_close:
            raise RuntimeError("close failed")

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _END:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Stands in for ``open_websocket``; hands out ``FakeWebSocket`` objects."""

    def __init__(self, error=None, fail_close=False):
        self.error = error
        self.fail_close = fail_close
        self.calls = []
        self.sockets = []
        self._opened: asyncio.Queue = asyncio.Queue()

    async def __call__(self, url, headers):
        self.calls.append((url, headers))
        if self.error is not None:
            raise self.error
        ws = FakeWebSocket(fail_close=self.fail_close)
        self.sockets.append(ws)
        self._opened.put_nowait(ws)
        return ws

    async def next_socket(self, timeout=1.0):
        return await asyncio.wait_for(self._opened.get(), timeout)


class RecordingDiagnostics(DiagnosticsSink):
    def __init__(self):
        super().__init__(None)
        self.entries = []

    def write(self, entry):
        self.entries.append(entry)

    def kinds(self):
        return [entry["kind"] for entry in self.entries]


class RecordingSleep:
    """Records requested delays. Blocks forever once ``limit`` calls were made."""

    def __init__(self, limit=None):
        self.delays = []
        self.limit = limit

    async def __call__(self, seconds):
        self.delays.append(seconds)
        if self.limit is not None and len(self.delays) >= self.limit:
            await asyncio.Event().wait()


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


async def next_event(channel, kind=None, timeout=1.0):
    """Next event from ``channel``, skipping events that are not ``kind``."""
    while True:
        event = await asyncio.wait_for(channel.get(), timeout)
        if event is None:
            raise AssertionError("channel closed")
        if kind is None or isinstance(event, kind):
            return event


@pytest.fixture
def config():
    return OmniChatConfig(user_agent="omnichat-tests")


@pytest.fixture
def diagnostics():
    return RecordingDiagnostics()
