"""Session state owned by the lifecycle manager.

Only the manager mutates SessionState. Everyone else (dispatch service,
HTTP routes) reads an immutable SessionSnapshot.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from wabridge.pairing import PairingChallenge
from wabridge.transport import DisconnectReason, Transport


class Readiness(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    READY = "ready"


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session at one instant."""
    readiness: Readiness
    pending_challenge: PairingChallenge | None = None
    transport: Transport | None = None
    terminated: bool = False
    last_disconnect: DisconnectReason | None = None
    connected_since: float | None = None

    @property
    def is_ready(self) -> bool:
        return self.readiness == Readiness.READY and self.transport is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.readiness.value,
            "isReady": self.is_ready,
            "terminated": self.terminated,
            "pairingPending": self.pending_challenge is not None,
            "lastDisconnect": self.last_disconnect.value if self.last_disconnect else None,
            "connectedSince": self.connected_since,
        }


@dataclass
class SessionState:
    readiness: Readiness = Readiness.DISCONNECTED
    pending_challenge: PairingChallenge | None = None
    transport: Transport | None = None
    generation: int = 0
    terminated: bool = False
    last_disconnect: DisconnectReason | None = None
    connected_since: float | None = None

    def detach(self) -> Transport | None:
        """Forget the active transport; its later events become stale."""
        previous = self.transport
        self.transport = None
        self.generation += 1
        return previous

    def attach(self, transport: Transport) -> int:
        self.transport = transport
        return self.generation

    def set_challenge(self, challenge: PairingChallenge) -> None:
        self.pending_challenge = challenge
        self.readiness = Readiness.AWAITING_PAIRING

    def set_ready(self) -> None:
        self.readiness = Readiness.READY
        self.pending_challenge = None
        self.terminated = False
        self.connected_since = time.time()

    def set_disconnected(self, reason: DisconnectReason | None = None) -> None:
        self.readiness = Readiness.DISCONNECTED
        self.pending_challenge = None
        self.connected_since = None
        if reason is not None:
            self.last_disconnect = reason

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            readiness=self.readiness,
            pending_challenge=self.pending_challenge,
            transport=self.transport,
            terminated=self.terminated,
            last_disconnect=self.last_disconnect,
            connected_since=self.connected_since,
        )
