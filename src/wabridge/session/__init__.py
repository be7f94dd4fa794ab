"""Session lifecycle management.

Exports:
    SessionManager - Owns the gateway session and its recovery
    SessionSnapshot, Readiness - Read-only view of session state
    ClosePolicy, CloseAction - Close reason -> reconnect/terminate table
    ReconnectScheduler - Single pending reconnect timer with backoff
"""

from .manager import SessionManager
from .policy import CloseAction, ClosePolicy, ReconnectScheduler
from .state import Readiness, SessionSnapshot, SessionState

__all__ = [
    "SessionManager",
    "SessionSnapshot",
    "SessionState",
    "Readiness",
    "ClosePolicy",
    "CloseAction",
    "ReconnectScheduler",
]
