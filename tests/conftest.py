"""Shared fixtures: a scriptable fake transport and a recording store."""

import asyncio
import base64
from typing import Any

import pytest

from wabridge.credentials import MemoryCredentialStore
from wabridge.errors import PersistenceError, TransportError
from wabridge.session import ReconnectScheduler, SessionManager
from wabridge.transport import DisconnectReason, Transport, TransportEvent

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PNG_B64 = base64.b64encode(PNG_BYTES).decode()


class FakeTransport(Transport):
    """In-process transport driven by the test."""

    def __init__(self, session_id, credentials, emit, registered=None):
        self.session_id = session_id
        self.credentials = credentials
        self._emit = emit
        self.registered: set[str] = registered if registered is not None else set()
        self.fail_start = False
        self.start_gate: asyncio.Event | None = None
        self.started = False
        self.closed = False
        self.logged_out = False
        self.exists_calls: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.exists_error: Exception | None = None
        self.send_error: Exception | None = None
        self.delay = 0.0

    def emit(self, event: TransportEvent) -> None:
        self._emit(event)

    async def start(self) -> None:
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.fail_start:
            raise TransportError("handshake failed")
        self.started = True
        self.emit(TransportEvent.connecting())

    async def close(self) -> None:
        self.closed = True

    async def exists(self, jid: str) -> bool:
        self.exists_calls.append(jid)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exists_error:
            raise self.exists_error
        return jid in self.registered

    async def send_text(self, jid: str, text: str) -> str:
        self.sent.append((jid, text))
        if self.send_error:
            raise self.send_error
        return f"MSG-{len(self.sent)}"

    async def logout(self) -> None:
        self.logged_out = True
        self.emit(TransportEvent.closed(DisconnectReason.LOGGED_OUT))


class FakeFactory:
    """TransportFactory that records every transport it builds."""

    def __init__(self):
        self.created: list[FakeTransport] = []
        self.fail_next = 0
        self.start_gate: asyncio.Event | None = None
        self.registered: set[str] = set()

    def __call__(self, session_id, credentials, emit) -> FakeTransport:
        transport = FakeTransport(session_id, credentials, emit, registered=self.registered)
        if self.fail_next > 0:
            self.fail_next -= 1
            transport.fail_start = True
        transport.start_gate = self.start_gate
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class RecordingStore(MemoryCredentialStore):
    """Memory store that counts calls and can be told to fail."""

    def __init__(self, initial: dict[str, Any] | None = None):
        super().__init__(initial)
        self.loads = 0
        self.saves: list[dict] = []
        self.deletes = 0
        self.fail_load = False
        self.fail_save = False
        self.load_gate: asyncio.Event | None = None

    async def load(self, session_id):
        self.loads += 1
        if self.load_gate is not None:
            await self.load_gate.wait()
        if self.fail_load:
            raise PersistenceError("disk on fire")
        return await super().load(session_id)

    async def save(self, session_id, blob):
        self.saves.append(blob)
        if self.fail_save:
            raise PersistenceError("disk full")
        await super().save(session_id, blob)

    async def delete(self, session_id):
        self.deletes += 1
        await super().delete(session_id)


def make_manager(store, factory, delay=60.0, error_delay=60.0, **kwargs) -> SessionManager:
    return SessionManager(
        session_id="test_session",
        store=store,
        transport_factory=factory,
        scheduler=ReconnectScheduler(delay=delay, error_delay=error_delay, max_delay=60.0),
        **kwargs,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def factory():
    return FakeFactory()
