"""Pytest configuration and shared fixtures."""

import asyncio
import json
from typing import Any, Callable

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedOK

from relay_core import RelayCore, set_relay

_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets connection.

    Frames fed with `feed()` are yielded by async iteration; frames the relay
    sends are decoded and queued for `next_sent()`.
    """

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._outbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        message = json.loads(data)
        self.sent.append(message)
        self._outbox.put_nowait(message)

    async def close(self) -> None:
        self.drop()

    def drop(self) -> None:
        """Simulate the peer going away."""
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSE)

    def feed(self, message: Any) -> None:
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    async def next_sent(self, timeout: float = 1.0) -> dict:
        return await asyncio.wait_for(self._outbox.get(), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


async def settle() -> None:
    """Give reader tasks a few loop iterations to process fed frames."""
    await asyncio.sleep(0.02)


@pytest.fixture
def fake_ws() -> Callable[[], FakeWebSocket]:
    return FakeWebSocket


@pytest.fixture
def until():
    return wait_until


@pytest.fixture
def flush():
    return settle


@pytest_asyncio.fixture
async def relay():
    core = RelayCore(command_timeout=1.0, reconnect_interval=0.01)
    yield core
    await core.shutdown()


@pytest.fixture(autouse=True)
def _reset_global_relay():
    yield
    set_relay(None)
