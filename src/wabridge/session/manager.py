"""Session lifecycle manager.

Keeps exactly one logical WhatsApp session alive:

    Disconnected --start/reconnect/pairing request--> Connecting
    Connecting   --PAIRING_CHALLENGE-->               AwaitingPairing
    Connecting / AwaitingPairing --OPEN-->            Ready
    any          --CLOSED-->                          Disconnected
                   logout          -> purge credentials, stay down
                   other terminal  -> stay down, keep credentials
                   anything else   -> one reconnect via ReconnectScheduler

Transports push events through an emitter tagged with the generation
they were created in. A single consumer task drains the queue and
applies each event under the state lock; events from a transport that
has since been replaced are dropped.

Usage:
    manager = SessionManager(
        session_id="whatsapp_session",
        store=FileCredentialStore("~/.wabridge/sessions"),
        transport_factory=green_api_factory(settings.gateway),
    )
    await manager.start()
    manager.snapshot().is_ready
    await manager.stop()
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from wabridge.config import Settings
from wabridge.credentials import CredentialStore
from wabridge.pairing import ChallengePresenter, PairingChallenge
from wabridge.transport import (
    DisconnectReason,
    EventType,
    Transport,
    TransportEvent,
    TransportFactory,
)

from .policy import CloseAction, ClosePolicy, ReconnectScheduler
from .state import Readiness, SessionSnapshot, SessionState

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns SessionState and drives the gateway transport."""

    def __init__(
        self,
        session_id: str,
        store: CredentialStore,
        transport_factory: TransportFactory,
        policy: ClosePolicy | None = None,
        scheduler: ReconnectScheduler | None = None,
        presenter: ChallengePresenter | None = None,
    ):
        self.session_id = session_id
        self.store = store
        self.transport_factory = transport_factory
        self.policy = policy or ClosePolicy()
        self.scheduler = scheduler or ReconnectScheduler()
        self.presenter = presenter

        self._state = SessionState()
        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._events: asyncio.Queue[tuple[int, TransportEvent]] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._connecting = False
        self._stopped = False
        self._background: set[asyncio.Task] = set()

        self._handlers: dict[EventType, Callable[[TransportEvent], Awaitable[None]]] = {
            EventType.CONNECTING: self._on_connecting,
            EventType.PAIRING_CHALLENGE: self._on_pairing_challenge,
            EventType.OPEN: self._on_open,
            EventType.CLOSED: self._on_closed,
            EventType.CREDENTIALS_UPDATED: self._on_credentials_updated,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CredentialStore,
        transport_factory: TransportFactory,
        presenter: ChallengePresenter | None = None,
    ) -> "SessionManager":
        return cls(
            session_id=settings.session_name,
            store=store,
            transport_factory=transport_factory,
            policy=ClosePolicy.from_names(settings.reconnect.terminal_reasons),
            scheduler=ReconnectScheduler.from_config(settings.reconnect),
            presenter=presenter,
        )

    # ── Read side ──────────────────────────────────

    def snapshot(self) -> SessionSnapshot:
        """Current state. Never blocks."""
        return self._state.snapshot()

    @property
    def is_ready(self) -> bool:
        return self.snapshot().is_ready

    @property
    def is_connecting(self) -> bool:
        return self._connecting

    async def wait_for_challenge(
        self,
        timeout: float = 20.0,
        interval: float = 0.5,
    ) -> PairingChallenge | None:
        """Poll until a pairing challenge is pending, the session becomes
        ready, or ``timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            snap = self.snapshot()
            if snap.pending_challenge is not None or snap.is_ready:
                return snap.pending_challenge
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(interval, remaining))

    # ── Lifecycle ──────────────────────────────────

    async def start(self) -> None:
        """Start consuming transport events and open the first connection."""
        self._stopped = False
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
        await self.connect()

    async def stop(self) -> None:
        """Cancel reconnects, close the transport, flush persistence.

        A connection attempt already in flight sees the stop and abandons
        itself before attaching a transport.
        """
        self._stopped = True
        self.scheduler.cancel()
        async with self._lock:
            transport = self._state.detach()
            self._state.set_disconnected()
        if transport is not None:
            await self._release(transport)
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None
        await self._drain_background()
        logger.info("Session manager stopped")

    async def connect(self) -> bool:
        """Establish a new transport.

        Returns False without doing anything if an attempt is already in
        flight or the session is ready. Failures are logged and retried
        after the scheduler's error delay.
        """
        if self._connecting:
            logger.debug("Connection attempt already in progress")
            return False
        if self._state.readiness == Readiness.READY and self._state.transport is not None:
            return False

        self._connecting = True
        transport: Transport | None = None
        try:
            async with self._lock:
                previous = self._state.detach()
                self._state.readiness = Readiness.CONNECTING
            if previous is not None:
                await self._release(previous)

            logger.info(f"Connecting session '{self.session_id}'")
            credentials = await self.store.load(self.session_id)
            if credentials is None:
                logger.info("No stored credentials; a pairing challenge will be issued")

            async with self._lock:
                if self._stopped:
                    logger.info("Manager stopped; abandoning connection attempt")
                    self._state.set_disconnected()
                    return False
                generation = self._state.generation
                transport = self.transport_factory(
                    self.session_id, credentials, self._emitter(generation))
                self._state.attach(transport)

            await transport.start()
            return True

        except Exception as e:
            logger.error(f"Failed to establish session: {e}")
            async with self._lock:
                if transport is not None and self._state.transport is transport:
                    self._state.detach()
                if self._state.transport is None:
                    self._state.set_disconnected()
            if transport is not None:
                await self._release(transport)
            if not self._stopped:
                self.scheduler.schedule(self._reconnect, after_error=True)
            return False

        finally:
            self._connecting = False

    async def request_pairing(self) -> bool:
        """Restart a stopped session so a new pairing challenge is issued.

        No-op while connecting, awaiting pairing, or ready.
        """
        snap = self.snapshot()
        if self._connecting or snap.readiness in (
            Readiness.CONNECTING, Readiness.AWAITING_PAIRING, Readiness.READY,
        ):
            return False
        async with self._lock:
            self._state.terminated = False
        self.scheduler.cancel()
        self.scheduler.reset()
        return await self.connect()

    async def logout(self) -> bool:
        """Unlink the device at the gateway.

        The transport reports the logout as CLOSED(logged_out), which
        purges the stored credentials. Returns False if not connected.
        """
        snap = self.snapshot()
        if not snap.is_ready:
            return False
        await snap.transport.logout()
        return True

    async def wait_idle(self) -> None:
        """Wait until queued events and background persistence are done."""
        await self._events.join()
        await self._drain_background()

    # ── Event plumbing ─────────────────────────────

    def _emitter(self, generation: int) -> Callable[[TransportEvent], None]:
        def emit(event: TransportEvent) -> None:
            self._events.put_nowait((generation, event))
        return emit

    async def _consume(self) -> None:
        while True:
            generation, event = await self._events.get()
            try:
                await self._dispatch(generation, event)
            except Exception as e:
                logger.error(f"Failed to handle {event.type.value} event: {e}")
            finally:
                self._events.task_done()

    async def _dispatch(self, generation: int, event: TransportEvent) -> None:
        async with self._lock:
            if generation != self._state.generation or self._state.transport is None:
                logger.debug(f"Ignoring stale {event.type.value} event")
                return
            await self._handlers[event.type](event)

    # ── Handlers (called with the state lock held) ─

    async def _on_connecting(self, event: TransportEvent) -> None:
        if self._state.readiness != Readiness.AWAITING_PAIRING:
            self._state.readiness = Readiness.CONNECTING
        logger.info("Connecting to WhatsApp...")

    async def _on_pairing_challenge(self, event: TransportEvent) -> None:
        if event.challenge is None:
            return
        self._state.set_challenge(event.challenge)
        logger.info("Pairing required: scan the QR code with WhatsApp")
        if self.presenter is not None:
            self._spawn(self._present(event.challenge))

    async def _on_open(self, event: TransportEvent) -> None:
        self._state.set_ready()
        self.scheduler.cancel()
        self.scheduler.reset()
        logger.info("Connected to WhatsApp")

    async def _on_credentials_updated(self, event: TransportEvent) -> None:
        if event.credentials is not None:
            self._spawn(self._persist(event.credentials))

    async def _on_closed(self, event: TransportEvent) -> None:
        reason = event.reason or DisconnectReason.UNKNOWN
        transport = self._state.detach()
        self._state.set_disconnected(reason)
        if transport is not None:
            self._spawn(self._release(transport))

        detail = f" ({event.error})" if event.error else ""
        if self.policy.action_for(reason) == CloseAction.TERMINATE:
            self._state.terminated = True
            self.scheduler.cancel()
            if self.policy.purges_credentials(reason):
                logger.warning(f"Logged out{detail}; a new QR pairing is required")
                self._spawn(self._purge_credentials())
            else:
                logger.warning(f"Session terminated: {reason.value}{detail}")
        else:
            logger.warning(f"Connection closed: {reason.value}{detail}")
            self.scheduler.schedule(self._reconnect)

    # ── Background work ────────────────────────────

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _reconnect(self) -> None:
        if self._stopped or self._state.terminated:
            return
        await self.connect()

    async def _persist(self, credentials: dict[str, Any]) -> None:
        async with self._persist_lock:
            try:
                await self.store.save(self.session_id, credentials)
                logger.debug("Credentials saved")
            except Exception as e:
                logger.error(f"Failed to persist credentials: {e}")

    async def _purge_credentials(self) -> None:
        async with self._persist_lock:
            try:
                await self.store.delete(self.session_id)
                logger.info(f"Deleted credentials for '{self.session_id}'")
            except Exception as e:
                logger.error(f"Failed to delete credentials: {e}")

    async def _present(self, challenge: PairingChallenge) -> None:
        try:
            result = self.presenter(challenge)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Failed to present pairing challenge: {e}")

    @staticmethod
    async def _release(transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")
