"""Routes package for the wabridge HTTP API."""

from wabridge.web.routes import messaging, pairing

__all__ = ["messaging", "pairing"]
