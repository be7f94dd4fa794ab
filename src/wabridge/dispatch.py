"""Message dispatch: validate, normalize, check, send.

Every call returns a SendResult; nothing is raised to the caller. The
check-then-send sequence is not atomic: a recipient that deregisters in
between surfaces as DELIVERY_FAILED from the gateway.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from wabridge.addressing import DEFAULT_COUNTRY_CODE, RecipientAddress
from wabridge.errors import TransportTimeout
from wabridge.session import SessionManager

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_RECIPIENT = "invalid_recipient"
    NOT_READY = "not_ready"
    RECIPIENT_NOT_REGISTERED = "recipient_not_registered"
    DELIVERY_FAILED = "delivery_failed"


HTTP_STATUS: dict[DeliveryStatus, int] = {
    DeliveryStatus.DELIVERED: 200,
    DeliveryStatus.INVALID_ARGUMENT: 400,
    DeliveryStatus.INVALID_RECIPIENT: 400,
    DeliveryStatus.NOT_READY: 503,
    DeliveryStatus.RECIPIENT_NOT_REGISTERED: 404,
    DeliveryStatus.DELIVERY_FAILED: 500,
}


@dataclass(frozen=True)
class SendResult:
    """Outcome of a send attempt."""
    status: DeliveryStatus
    message: str
    recipient: RecipientAddress | None = None
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.status]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.ok, "message": self.message}
        if self.message_id:
            data["messageId"] = self.message_id
        if not self.ok:
            data["code"] = self.status.value
        return data


class MessageDispatcher:
    """Sends text messages through the manager's active transport."""

    def __init__(
        self,
        manager: SessionManager,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        timeout: float = 60.0,
    ):
        self.manager = manager
        self.default_country_code = default_country_code
        self.timeout = timeout

    async def send(self, recipient_raw: str, message: str) -> SendResult:
        if not recipient_raw or not message:
            return SendResult(
                DeliveryStatus.INVALID_ARGUMENT,
                "Phone number and message are required")

        snap = self.manager.snapshot()
        if not snap.is_ready:
            return SendResult(
                DeliveryStatus.NOT_READY,
                "WhatsApp client is not connected. Please try again later")
        transport = snap.transport

        address = RecipientAddress.parse(recipient_raw, self.default_country_code)
        if address is None:
            return SendResult(
                DeliveryStatus.INVALID_RECIPIENT, "Invalid phone number")

        try:
            registered = await asyncio.wait_for(
                transport.exists(address.jid), timeout=self.timeout)
        except (asyncio.TimeoutError, TransportTimeout):
            logger.warning(f"Existence check for {address.number} timed out")
            return SendResult(
                DeliveryStatus.NOT_READY,
                "WhatsApp did not answer in time. Please try again later",
                recipient=address, error="timeout")
        except Exception as e:
            logger.error(f"Existence check for {address.number} failed: {e}")
            registered = False

        if not registered:
            return SendResult(
                DeliveryStatus.RECIPIENT_NOT_REGISTERED,
                "Phone number is not registered on WhatsApp",
                recipient=address)

        try:
            message_id = await asyncio.wait_for(
                transport.send_text(address.jid, message), timeout=self.timeout)
        except (asyncio.TimeoutError, TransportTimeout):
            logger.error(f"Send to {address.number} timed out")
            return SendResult(
                DeliveryStatus.DELIVERY_FAILED,
                "Failed to send message: gateway timed out",
                recipient=address, error="timeout")
        except Exception as e:
            logger.error(f"Send to {address.number} failed: {e}")
            return SendResult(
                DeliveryStatus.DELIVERY_FAILED,
                f"Failed to send message: {e}",
                recipient=address, error=str(e))

        logger.info(f"Message sent to {address.number}")
        return SendResult(
            DeliveryStatus.DELIVERED,
            "Message sent successfully",
            recipient=address, message_id=message_id)
