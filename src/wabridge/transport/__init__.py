"""Gateway transports.

Exports:
    Transport - Interface for one gateway connection
    TransportEvent, EventType, DisconnectReason - Lifecycle event model
    GreenAPITransport - WhatsApp via Green API
"""

from .base import (
    DisconnectReason,
    EventCallback,
    EventType,
    Transport,
    TransportEvent,
    TransportFactory,
)
from .green_api import GreenAPITransport, green_api_factory

__all__ = [
    "DisconnectReason",
    "EventCallback",
    "EventType",
    "Transport",
    "TransportEvent",
    "TransportFactory",
    "GreenAPITransport",
    "green_api_factory",
]
