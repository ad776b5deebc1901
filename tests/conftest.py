"""Shared fixtures: in-memory transports standing in for the two WebSockets."""

import asyncio
import json

import pytest

from callrelay.config import RelayConfig
from callrelay.errors import LinkClosedError
from callrelay.session import BridgeSession
from callrelay.transports.base import BaseTransport

_CLOSE = object()


class FakeTransport(BaseTransport):
    """Transport backed by an asyncio.Queue; records everything sent."""

    def __init__(
        self,
        connected: bool = True,
        fail_connect: bool = False,
        connect_gate: asyncio.Event | None = None,
    ) -> None:
        self.sent: list[str] = []
        self.disconnect_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._connected = connected
        self._fail_connect = fail_connect
        self._connect_gate = connect_gate

    async def connect(self, **kwargs) -> None:
        if self._connect_gate is not None:
            await self._connect_gate.wait()
        if self._fail_connect:
            raise OSError("connection refused")
        self._connected = True

    async def send(self, data: bytes | str) -> None:
        if not self._connected:
            raise LinkClosedError("Not connected")
        self.sent.append(data)

    async def recv(self) -> bytes | str:
        if not self._connected:
            raise LinkClosedError("Not connected")
        item = await self._incoming.get()
        if item is _CLOSE:
            self._connected = False
            raise LinkClosedError("closed by peer")
        return item

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    # Test helpers

    def feed(self, *messages: dict | str) -> None:
        for msg in messages:
            self._incoming.put_nowait(msg if isinstance(msg, str) else json.dumps(msg))

    def close_from_peer(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    @property
    def sent_json(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    def sent_of_type(self, key: str, value: str) -> list[dict]:
        return [m for m in self.sent_json if m.get(key) == value]


@pytest.fixture
def config():
    return RelayConfig.from_dict({"api_key": "sk-test"})


@pytest.fixture
def telephony():
    return FakeTransport()


@pytest.fixture
def realtime():
    return FakeTransport()


@pytest.fixture
def session(telephony, realtime, config):
    return BridgeSession(telephony=telephony, realtime=realtime, config=config)


@pytest.fixture
def fake_transport():
    """The FakeTransport class, for tests that build their own."""
    return FakeTransport
