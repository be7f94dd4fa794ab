"""Tests for the close-reason policy table and reconnect scheduler."""

import asyncio

import pytest

from wabridge.config import ReconnectConfig
from wabridge.errors import ConfigError
from wabridge.session import CloseAction, ClosePolicy, ReconnectScheduler
from wabridge.transport import DisconnectReason


class TestClosePolicy:

    def test_default_only_logout_is_terminal(self):
        policy = ClosePolicy()
        assert policy.action_for(DisconnectReason.LOGGED_OUT) == CloseAction.TERMINATE
        for reason in DisconnectReason:
            if reason != DisconnectReason.LOGGED_OUT:
                assert policy.action_for(reason) == CloseAction.RECONNECT
        assert policy.action_for(None) == CloseAction.RECONNECT

    def test_configured_terminal_reasons(self):
        policy = ClosePolicy.from_names(["connection_replaced", "forbidden"])
        assert policy.action_for(DisconnectReason.CONNECTION_REPLACED) == CloseAction.TERMINATE
        assert policy.action_for(DisconnectReason.FORBIDDEN) == CloseAction.TERMINATE
        assert policy.action_for(DisconnectReason.CONNECTION_LOST) == CloseAction.RECONNECT

    def test_logout_stays_terminal_even_if_not_listed(self):
        policy = ClosePolicy.from_names([])
        assert policy.action_for(DisconnectReason.LOGGED_OUT) == CloseAction.TERMINATE

    def test_only_logout_purges_credentials(self):
        policy = ClosePolicy([DisconnectReason.CONNECTION_REPLACED])
        assert policy.purges_credentials(DisconnectReason.LOGGED_OUT)
        assert not policy.purges_credentials(DisconnectReason.CONNECTION_REPLACED)

    def test_unknown_reason_name_rejected(self):
        with pytest.raises(ConfigError):
            ClosePolicy.from_names(["gremlins"])


class TestReconnectScheduler:

    def test_first_delays_match_reference(self):
        scheduler = ReconnectScheduler(delay=5, error_delay=10)
        scheduler.failures = 1
        assert scheduler.next_delay() == 5
        assert scheduler.next_delay(after_error=True) == 10

    def test_backoff_is_capped(self):
        scheduler = ReconnectScheduler(delay=5, error_delay=10, max_delay=60)
        delays = []
        for failures in range(1, 8):
            scheduler.failures = failures
            delays.append(scheduler.next_delay())
        assert delays == [5, 10, 20, 40, 60, 60, 60]

    def test_only_one_pending_attempt(self):
        calls = []

        async def callback():
            calls.append(1)

        async def scenario():
            scheduler = ReconnectScheduler(delay=0.01)
            first = scheduler.schedule(callback)
            second = scheduler.schedule(callback)
            await asyncio.sleep(0.05)
            return first, second, scheduler.pending

        first, second, pending = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert calls == [1]
        assert not pending

    def test_cancel_prevents_callback(self):
        calls = []

        async def callback():
            calls.append(1)

        async def scenario():
            scheduler = ReconnectScheduler(delay=0.01)
            scheduler.schedule(callback)
            scheduler.cancel()
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert calls == []

    def test_keeps_retrying_past_failure_cap(self):
        async def noop():
            pass

        async def scenario():
            scheduler = ReconnectScheduler(delay=0, max_consecutive_failures=2)
            results = []
            for _ in range(4):
                results.append(scheduler.schedule(noop))
                await asyncio.sleep(0.01)
            return results, scheduler.exhausted, scheduler.failures

        results, exhausted, failures = asyncio.run(scenario())
        assert results == [True, True, True, True]
        assert exhausted
        assert failures == 4

    def test_callback_errors_are_contained(self):
        async def boom():
            raise RuntimeError("nope")

        async def scenario():
            scheduler = ReconnectScheduler(delay=0)
            scheduler.schedule(boom)
            await asyncio.sleep(0.01)
            return scheduler.pending

        assert asyncio.run(scenario()) is False

    def test_from_config(self):
        scheduler = ReconnectScheduler.from_config(
            ReconnectConfig(delay=1, error_delay=2, max_delay=3, max_consecutive_failures=4))
        assert (scheduler.delay, scheduler.error_delay, scheduler.max_delay) == (1, 2, 3)
        assert scheduler.max_consecutive_failures == 4
