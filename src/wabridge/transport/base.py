"""Transport session interface and its lifecycle events.

A Transport wraps one long-lived connection to the gateway. It reports
what happens to that connection by calling the ``emit`` callback it was
constructed with, in the order things happen:

    CONNECTING -> PAIRING_CHALLENGE* -> OPEN -> CREDENTIALS_UPDATED* -> CLOSED

A transport never reconnects itself. Once it has emitted CLOSED it is
finished; the lifecycle manager decides whether to build a new one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from wabridge.pairing import PairingChallenge


class EventType(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    CREDENTIALS_UPDATED = "credentials_updated"
    PAIRING_CHALLENGE = "pairing_challenge"


class DisconnectReason(str, Enum):
    """Why a transport closed. Values mirror WhatsApp Web close codes."""
    LOGGED_OUT = "logged_out"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    BAD_SESSION = "bad_session"
    RESTART_REQUIRED = "restart_required"
    FORBIDDEN = "forbidden"
    UNAVAILABLE_SERVICE = "unavailable_service"
    UNKNOWN = "unknown"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]

    @classmethod
    def from_status_code(cls, code: int | None) -> "DisconnectReason":
        for reason, value in _STATUS_CODES.items():
            if value == code and reason != cls.TIMED_OUT:
                return reason
        return cls.UNKNOWN


_STATUS_CODES: dict[DisconnectReason, int] = {
    DisconnectReason.LOGGED_OUT: 401,
    DisconnectReason.CONNECTION_CLOSED: 428,
    DisconnectReason.CONNECTION_LOST: 408,
    DisconnectReason.CONNECTION_REPLACED: 440,
    DisconnectReason.TIMED_OUT: 408,
    DisconnectReason.BAD_SESSION: 500,
    DisconnectReason.RESTART_REQUIRED: 515,
    DisconnectReason.FORBIDDEN: 403,
    DisconnectReason.UNAVAILABLE_SERVICE: 503,
    DisconnectReason.UNKNOWN: 0,
}


@dataclass(frozen=True)
class TransportEvent:
    """A lifecycle event emitted by a transport."""
    type: EventType
    reason: DisconnectReason | None = None        # CLOSED
    challenge: PairingChallenge | None = None     # PAIRING_CHALLENGE
    credentials: dict[str, Any] | None = None     # CREDENTIALS_UPDATED
    error: str | None = None                      # CLOSED (optional detail)

    @classmethod
    def connecting(cls) -> "TransportEvent":
        return cls(EventType.CONNECTING)

    @classmethod
    def opened(cls) -> "TransportEvent":
        return cls(EventType.OPEN)

    @classmethod
    def closed(cls, reason: DisconnectReason, error: str | None = None) -> "TransportEvent":
        return cls(EventType.CLOSED, reason=reason, error=error)

    @classmethod
    def credentials_updated(cls, credentials: dict[str, Any]) -> "TransportEvent":
        return cls(EventType.CREDENTIALS_UPDATED, credentials=credentials)

    @classmethod
    def pairing(cls, challenge: PairingChallenge) -> "TransportEvent":
        return cls(EventType.PAIRING_CHALLENGE, challenge=challenge)


EventCallback = Callable[[TransportEvent], None]


class Transport(ABC):
    """One connection to the gateway."""

    @abstractmethod
    async def start(self) -> None:
        """Begin connecting. Raises TransportError if the handshake fails."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Emits nothing further."""
        ...

    @abstractmethod
    async def exists(self, jid: str) -> bool:
        """Check whether a recipient is registered on the gateway."""
        ...

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> str:
        """Send a text message. Returns the gateway message id."""
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Unlink this device at the gateway."""
        ...


# (session_id, restored credentials or None, emit) -> Transport
TransportFactory = Callable[[str, dict[str, Any] | None, EventCallback], Transport]
