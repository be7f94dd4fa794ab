"""Retry policy for the session lifecycle manager.

ClosePolicy maps a close reason to what the manager does next.
ReconnectScheduler owns the single pending reconnect timer.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable

from wabridge.config import ReconnectConfig
from wabridge.errors import ConfigError
from wabridge.transport import DisconnectReason

logger = logging.getLogger(__name__)


class CloseAction(str, Enum):
    RECONNECT = "reconnect"
    TERMINATE = "terminate"


class ClosePolicy:
    """Close reason -> reconnect or terminate.

    A logout is always terminal and is the only reason that purges the
    stored credentials. Everything not listed reconnects.
    """

    def __init__(self, terminal: Iterable[DisconnectReason] = ()):
        self._table: dict[DisconnectReason, CloseAction] = {
            reason: CloseAction.RECONNECT for reason in DisconnectReason
        }
        for reason in terminal:
            self._table[reason] = CloseAction.TERMINATE
        self._table[DisconnectReason.LOGGED_OUT] = CloseAction.TERMINATE

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "ClosePolicy":
        reasons = []
        for name in names:
            try:
                reasons.append(DisconnectReason(name))
            except ValueError:
                valid = ", ".join(r.value for r in DisconnectReason)
                raise ConfigError(f"Unknown close reason {name!r}. Use: {valid}") from None
        return cls(reasons)

    def action_for(self, reason: DisconnectReason | None) -> CloseAction:
        return self._table.get(reason or DisconnectReason.UNKNOWN, CloseAction.RECONNECT)

    def purges_credentials(self, reason: DisconnectReason | None) -> bool:
        return reason == DisconnectReason.LOGGED_OUT

    @property
    def terminal_reasons(self) -> list[DisconnectReason]:
        return [r for r, a in self._table.items() if a == CloseAction.TERMINATE]


class ReconnectScheduler:
    """Schedules at most one reconnect at a time, with capped backoff.

    The first retry after a close waits ``delay`` (``error_delay`` when
    the previous attempt failed before connecting). Each further failure
    without reaching Ready doubles the wait, up to ``max_delay``. Past
    ``max_consecutive_failures`` it keeps retrying at the cap and logs
    an error on every attempt.
    """

    def __init__(
        self,
        delay: float = 5.0,
        error_delay: float = 10.0,
        max_delay: float = 60.0,
        max_consecutive_failures: int = 10,
    ):
        self.delay = delay
        self.error_delay = error_delay
        self.max_delay = max_delay
        self.max_consecutive_failures = max_consecutive_failures
        self.failures = 0
        self._task: asyncio.Task | None = None
        self.last_delay: float | None = None

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> "ReconnectScheduler":
        return cls(
            delay=config.delay,
            error_delay=config.error_delay,
            max_delay=config.max_delay,
            max_consecutive_failures=config.max_consecutive_failures,
        )

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def exhausted(self) -> bool:
        return self.failures > self.max_consecutive_failures

    def next_delay(self, after_error: bool = False) -> float:
        base = self.error_delay if after_error else self.delay
        if self.failures <= 1:
            return base
        backoff = base * (2 ** (self.failures - 1))
        return min(backoff, max(self.max_delay, base))

    def schedule(
        self,
        callback: Callable[[], Awaitable[object]],
        after_error: bool = False,
    ) -> bool:
        """Schedule ``callback``. Returns False if one is already pending."""
        if self.pending:
            return False
        self.failures += 1
        delay = self.next_delay(after_error)
        self.last_delay = delay
        if self.exhausted:
            logger.error(
                f"Session has failed {self.failures} times in a row; "
                f"still retrying every {delay:.0f}s")
        else:
            logger.info(f"Reconnecting in {delay:.0f}s (attempt {self.failures})")
        self._task = asyncio.create_task(self._run(delay, callback))
        return True

    async def _run(self, delay: float, callback: Callable[[], Awaitable[object]]) -> None:
        await asyncio.sleep(delay)
        # Clear first so the callback may schedule the next attempt
        self._task = None
        try:
            await callback()
        except Exception as e:
            logger.error(f"Reconnect attempt failed: {e}")

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def reset(self) -> None:
        self.failures = 0
        self.last_delay = None
