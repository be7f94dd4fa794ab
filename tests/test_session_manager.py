"""Tests for the session lifecycle manager state machine."""

import asyncio

from conftest import PNG_B64, make_manager, wait_until

from wabridge.pairing import PairingChallenge
from wabridge.session import ClosePolicy, Readiness
from wabridge.transport import DisconnectReason, TransportEvent


def _challenge(payload: str = PNG_B64) -> PairingChallenge:
    return PairingChallenge(payload=payload)


# ═══════════════════════════════════════════════════════════════
# Startup
# ═══════════════════════════════════════════════════════════════

class TestStartup:
    """Connection establishment and credential restore."""

    def test_start_restores_stored_credentials(self, store, factory):
        store._records["test_session"] = '{"phone": "966500000000"}'

        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            await manager.wait_idle()
            snap = manager.snapshot()
            await manager.stop()
            return snap

        snap = asyncio.run(scenario())
        assert store.loads == 1
        assert len(factory.created) == 1
        assert factory.latest.credentials == {"phone": "966500000000"}
        assert snap.readiness == Readiness.CONNECTING

    def test_missing_credentials_start_fresh_session(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            await manager.stop()

        asyncio.run(scenario())
        assert factory.latest.credentials is None
        assert factory.latest.started

    def test_store_failure_schedules_error_retry(self, store, factory):
        store.fail_load = True

        async def scenario():
            manager = make_manager(store, factory, delay=5.0, error_delay=10.0)
            await manager.start()
            state = manager.snapshot().readiness
            pending = manager.scheduler.pending
            last_delay = manager.scheduler.last_delay
            await manager.stop()
            return state, pending, last_delay

        state, pending, last_delay = asyncio.run(scenario())
        assert factory.created == []
        assert state == Readiness.DISCONNECTED
        assert pending
        assert last_delay == 10.0

    def test_handshake_failure_retries_until_connected(self, store, factory):
        factory.fail_next = 2

        async def scenario():
            manager = make_manager(store, factory, error_delay=0.0)
            await manager.start()
            await wait_until(lambda: len(factory.created) == 3 and factory.latest.started)
            await manager.wait_idle()
            state = manager.snapshot().readiness
            await manager.stop()
            return state

        state = asyncio.run(scenario())
        assert factory.created[0].closed
        assert factory.created[1].closed
        assert state == Readiness.CONNECTING

    def test_connect_is_not_reentrant(self, store, factory):
        async def scenario():
            factory.start_gate = asyncio.Event()
            manager = make_manager(store, factory)
            first = asyncio.create_task(manager.connect())
            await wait_until(lambda: len(factory.created) == 1)
            second = await manager.connect()
            factory.start_gate.set()
            result = await first
            await manager.stop()
            return result, second

        first, second = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert len(factory.created) == 1

    def test_stop_during_reconnect_leaves_nothing_running(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory, delay=0.0)
            await manager.start()
            await manager.wait_idle()
            store.load_gate = asyncio.Event()
            factory.latest.emit(TransportEvent.closed(DisconnectReason.CONNECTION_LOST))
            await wait_until(lambda: store.loads == 2)
            await manager.stop()
            store.load_gate.set()
            await wait_until(lambda: not manager.is_connecting)
            await asyncio.sleep(0.02)
            return manager.snapshot(), manager.scheduler.pending

        snap, pending = asyncio.run(scenario())
        assert len(factory.created) == 1
        assert factory.created[0].closed
        assert snap.transport is None
        assert snap.readiness == Readiness.DISCONNECTED
        assert not pending


# ═══════════════════════════════════════════════════════════════
# Events
# ═══════════════════════════════════════════════════════════════

class TestEvents:
    """Each event type drives exactly one transition."""

    def test_pairing_challenge_awaits_pairing_and_presents(self, store, factory):
        presented = []

        async def scenario():
            manager = make_manager(store, factory, presenter=presented.append)
            await manager.start()
            factory.latest.emit(TransportEvent.pairing(_challenge()))
            await manager.wait_idle()
            snap = manager.snapshot()
            await manager.stop()
            return snap

        snap = asyncio.run(scenario())
        assert snap.readiness == Readiness.AWAITING_PAIRING
        assert snap.pending_challenge == _challenge()
        assert presented == [_challenge()]

    def test_async_presenter_failure_is_contained(self, store, factory):
        async def broken(challenge):
            raise RuntimeError("no terminal")

        async def scenario():
            manager = make_manager(store, factory, presenter=broken)
            await manager.start()
            factory.latest.emit(TransportEvent.pairing(_challenge()))
            factory.latest.emit(TransportEvent.opened())
            await manager.wait_idle()
            ready = manager.is_ready
            await manager.stop()
            return ready

        assert asyncio.run(scenario()) is True

    def test_open_marks_ready_and_clears_challenge(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.pairing(_challenge()))
            factory.latest.emit(TransportEvent.opened())
            await manager.wait_idle()
            snap = manager.snapshot()
            await manager.stop()
            return snap

        snap = asyncio.run(scenario())
        assert snap.readiness == Readiness.READY
        assert snap.is_ready
        assert snap.pending_challenge is None
        assert snap.connected_since is not None

    def test_credentials_update_is_persisted(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.credentials_updated({"phone": "1"}))
            factory.latest.emit(TransportEvent.credentials_updated({"phone": "2"}))
            await manager.wait_idle()
            saved = await store.load("test_session")
            await manager.stop()
            return saved

        saved = asyncio.run(scenario())
        assert store.saves == [{"phone": "1"}, {"phone": "2"}]
        assert saved == {"phone": "2"}

    def test_failed_credential_save_keeps_session_ready(self, store, factory):
        store.fail_save = True

        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.credentials_updated({"phone": "1"}))
            await manager.wait_idle()
            ready = manager.is_ready
            await manager.stop()
            return ready

        assert asyncio.run(scenario()) is True
        assert len(store.saves) == 1


# ═══════════════════════════════════════════════════════════════
# Close handling
# ═══════════════════════════════════════════════════════════════

class TestClose:
    """Close reasons decide between reconnect and terminate."""

    def test_logout_purges_credentials_once_and_stays_down(self, store, factory):
        store._records["test_session"] = '{"phone": "1"}'

        async def scenario():
            manager = make_manager(store, factory, delay=0.0)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.closed(DisconnectReason.LOGGED_OUT))
            await manager.wait_idle()
            await asyncio.sleep(0.02)
            snap = manager.snapshot()
            pending = manager.scheduler.pending
            await manager.stop()
            return snap, pending

        snap, pending = asyncio.run(scenario())
        assert snap.readiness == Readiness.DISCONNECTED
        assert snap.terminated
        assert snap.last_disconnect == DisconnectReason.LOGGED_OUT
        assert store.deletes == 1
        assert not pending
        assert len(factory.created) == 1
        assert "test_session" not in store._records

    def test_transient_close_schedules_one_reconnect(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.closed(DisconnectReason.CONNECTION_LOST))
            await manager.wait_idle()
            snap = manager.snapshot()
            pending = manager.scheduler.pending
            failures = manager.scheduler.failures
            delay = manager.scheduler.last_delay
            await manager.stop()
            return snap, pending, failures, delay

        snap, pending, failures, delay = asyncio.run(scenario())
        assert snap.readiness == Readiness.DISCONNECTED
        assert not snap.terminated
        assert pending
        assert failures == 1
        assert delay == 60.0
        assert store.deletes == 0
        assert factory.created[0].closed

    def test_reconnect_builds_new_transport_with_stored_credentials(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory, delay=0.0)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.credentials_updated({"phone": "9"}))
            factory.latest.emit(TransportEvent.closed(DisconnectReason.RESTART_REQUIRED))
            await wait_until(lambda: len(factory.created) == 2 and factory.latest.started)
            factory.latest.emit(TransportEvent.opened())
            await manager.wait_idle()
            ready = manager.is_ready
            failures = manager.scheduler.failures
            await manager.stop()
            return ready, failures

        ready, failures = asyncio.run(scenario())
        assert ready
        assert failures == 0
        assert factory.created[1].credentials == {"phone": "9"}
        assert store.deletes == 0

    def test_configured_terminal_reason_keeps_credentials(self, store, factory):
        store._records["test_session"] = '{"phone": "1"}'
        policy = ClosePolicy([DisconnectReason.CONNECTION_REPLACED])

        async def scenario():
            manager = make_manager(store, factory, delay=0.0, policy=policy)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.closed(DisconnectReason.CONNECTION_REPLACED))
            await manager.wait_idle()
            await asyncio.sleep(0.02)
            snap = manager.snapshot()
            await manager.stop()
            return snap

        snap = asyncio.run(scenario())
        assert snap.terminated
        assert store.deletes == 0
        assert len(factory.created) == 1
        assert "test_session" in store._records


# ═══════════════════════════════════════════════════════════════
# Stale transports
# ═══════════════════════════════════════════════════════════════

class TestStaleEvents:
    """Events from superseded transports never touch the state."""

    def test_old_transport_events_are_ignored(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory, delay=0.0)
            await manager.start()
            old = factory.latest
            old.emit(TransportEvent.opened())
            old.emit(TransportEvent.closed(DisconnectReason.CONNECTION_CLOSED))
            await wait_until(lambda: len(factory.created) == 2 and factory.latest.started)
            new = factory.latest

            old.emit(TransportEvent.opened())
            await manager.wait_idle()
            after_stale_open = manager.is_ready

            new.emit(TransportEvent.opened())
            await manager.wait_idle()
            after_new_open = manager.is_ready

            old.emit(TransportEvent.closed(DisconnectReason.CONNECTION_LOST))
            old.emit(TransportEvent.credentials_updated({"stale": True}))
            await manager.wait_idle()
            after_stale_close = manager.is_ready
            await manager.stop()
            return after_stale_open, after_new_open, after_stale_close

        stale_open, new_open, stale_close = asyncio.run(scenario())
        assert stale_open is False
        assert new_open is True
        assert stale_close is True
        assert {"stale": True} not in store.saves


# ═══════════════════════════════════════════════════════════════
# Pairing and logout
# ═══════════════════════════════════════════════════════════════

class TestPairing:

    def test_request_pairing_restarts_terminated_session(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            factory.latest.emit(TransportEvent.closed(DisconnectReason.LOGGED_OUT))
            await manager.wait_idle()
            restarted = await manager.request_pairing()
            factory.latest.emit(TransportEvent.pairing(_challenge()))
            challenge = await manager.wait_for_challenge(timeout=1.0, interval=0.01)
            snap = manager.snapshot()
            await manager.stop()
            return restarted, challenge, snap

        restarted, challenge, snap = asyncio.run(scenario())
        assert restarted is True
        assert len(factory.created) == 2
        assert factory.latest.credentials is None
        assert challenge == _challenge()
        assert not snap.terminated

    def test_request_pairing_is_noop_when_ready(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            await manager.wait_idle()
            result = await manager.request_pairing()
            await manager.stop()
            return result

        assert asyncio.run(scenario()) is False
        assert len(factory.created) == 1

    def test_wait_for_challenge_times_out(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            challenge = await manager.wait_for_challenge(timeout=0.05, interval=0.01)
            await manager.stop()
            return challenge

        assert asyncio.run(scenario()) is None

    def test_logout_unlinks_and_purges(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            await manager.wait_idle()
            result = await manager.logout()
            await manager.wait_idle()
            snap = manager.snapshot()
            await manager.stop()
            return result, snap

        result, snap = asyncio.run(scenario())
        assert result is True
        assert factory.latest.logged_out
        assert store.deletes == 1
        assert snap.readiness == Readiness.DISCONNECTED

    def test_stop_closes_transport(self, store, factory):
        async def scenario():
            manager = make_manager(store, factory)
            await manager.start()
            factory.latest.emit(TransportEvent.opened())
            await manager.wait_idle()
            await manager.stop()
            return manager.snapshot()

        snap = asyncio.run(scenario())
        assert factory.latest.closed
        assert snap.readiness == Readiness.DISCONNECTED
