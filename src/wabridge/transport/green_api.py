"""WhatsApp transport via Green API.

Green API hosts the WhatsApp Web connection on their side; we drive it
over plain HTTPS. The instance reports a coarse state which is polled
and translated into transport events:

    starting        -> CONNECTING
    notAuthorized   -> PAIRING_CHALLENGE (QR) before open,
                       CLOSED(logged_out) after open
    authorized      -> OPEN (+ CREDENTIALS_UPDATED when account info changes)
    blocked         -> CLOSED(forbidden)
    poll failures   -> CLOSED(connection_lost) after max_poll_errors in a row

Setup:
1. Sign up at https://green-api.com and create an instance
2. Copy the Instance ID + API Token
3. export GREEN_API_INSTANCE_ID=... GREEN_API_TOKEN=...
4. Start wabridge and scan the QR it presents
"""

import asyncio
import logging
import time
from typing import Any

import httpx

from wabridge.config import GatewayConfig
from wabridge.errors import TransportError, TransportTimeout
from wabridge.pairing import ChallengeKind, PairingChallenge

from .base import (
    DisconnectReason,
    EventCallback,
    Transport,
    TransportEvent,
    TransportFactory,
)

logger = logging.getLogger(__name__)

GREEN_API_SUFFIX = "@c.us"


def to_chat_id(jid: str) -> str:
    """Green API wants 966512345678@c.us rather than @s.whatsapp.net."""
    user = jid.split("@", 1)[0]
    digits = "".join(c for c in user if c.isdigit())
    return f"{digits}{GREEN_API_SUFFIX}"


class GreenAPITransport(Transport):
    """One polled connection to a Green API instance."""

    def __init__(
        self,
        session_id: str,
        credentials: dict[str, Any] | None,
        emit: EventCallback,
        config: GatewayConfig,
        client: httpx.AsyncClient | None = None,
    ):
        self.session_id = session_id
        self.config = config
        self._emit_cb = emit
        self._credentials = dict(credentials) if credentials else None
        self._http = client
        self._owns_client = client is None
        self._poll_task: asyncio.Task | None = None
        self._open = False
        self._finished = False   # emitted CLOSED
        self._released = False   # close() called
        self._last_qr: str | None = None

    @property
    def api_url(self) -> str:
        base = self.config.api_url.rstrip("/")
        return f"{base}/waInstance{self.config.instance_id}"

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.config.query_timeout)
            self._owns_client = True
        return self._http

    async def _api_call(self, method: str, data: dict | None = None) -> dict:
        """Make a Green API call. Raises TransportError on any failure."""
        client = await self._client()
        url = f"{self.api_url}/{method}/{self.config.api_token}"
        try:
            if data is not None:
                resp = await client.post(url, json=data)
            else:
                resp = await client.get(url)
            resp.raise_for_status()
            result = resp.json()
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"Green API call timed out ({method}): {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Green API call failed ({method}): {e}") from e
        if not isinstance(result, dict):
            raise TransportError(f"Green API returned unexpected payload for {method}")
        return result

    def _emit(self, event: TransportEvent) -> None:
        if self._released or self._finished:
            return
        self._emit_cb(event)

    def _finish(self, reason: DisconnectReason, error: str | None = None) -> None:
        self._emit(TransportEvent.closed(reason, error))
        self._finished = True
        self._open = False

    # ── Lifecycle ──────────────────────────────────

    async def start(self) -> None:
        if not self.config.is_configured():
            raise TransportError(
                "Green API is not configured (set GREEN_API_INSTANCE_ID and GREEN_API_TOKEN)")
        self._emit(TransportEvent.connecting())
        state = await self._get_state()
        logger.info(f"Green API instance {self.config.instance_id} state: {state}")
        self._poll_task = asyncio.create_task(self._poll_loop(state))

    async def close(self) -> None:
        self._released = True
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        if self._http and self._owns_client:
            await self._http.aclose()

    async def _get_state(self) -> str:
        result = await self._api_call("getStateInstance")
        return str(result.get("stateInstance", ""))

    async def _poll_loop(self, state: str | None) -> None:
        consecutive_errors = 0
        while not self._released and not self._finished:
            if state is not None:
                await self._handle_state(state)
                if self._finished:
                    break
            await asyncio.sleep(self.config.poll_interval)
            try:
                state = await self._get_state()
                consecutive_errors = 0
            except TransportError as e:
                state = None
                consecutive_errors += 1
                logger.warning(
                    f"State poll failed ({consecutive_errors}/{self.config.max_poll_errors}): {e}")
                if consecutive_errors >= self.config.max_poll_errors:
                    self._finish(DisconnectReason.CONNECTION_LOST, str(e))

    async def _handle_state(self, state: str) -> None:
        if state == "authorized":
            if not self._open:
                self._open = True
                self._last_qr = None
                self._emit(TransportEvent.opened())
                await self._refresh_credentials()
        elif state == "notAuthorized":
            if self._open:
                self._finish(DisconnectReason.LOGGED_OUT, "instance is no longer authorized")
            else:
                await self._issue_challenge()
        elif state == "blocked":
            self._finish(DisconnectReason.FORBIDDEN, "instance is blocked")
        elif state == "sleepMode":
            if self._open:
                self._finish(DisconnectReason.CONNECTION_CLOSED, "phone is offline")
        elif state == "yellowCard":
            logger.warning("Green API reports yellowCard: sending is being rate limited")
        elif state != "starting":
            logger.debug(f"Ignoring Green API state: {state!r}")

    async def _issue_challenge(self) -> None:
        try:
            result = await self._api_call("qr")
        except TransportError as e:
            logger.warning(f"Could not fetch pairing QR: {e}")
            return
        kind = result.get("type")
        message = result.get("message", "")
        if kind == "qrCode" and message and message != self._last_qr:
            self._last_qr = message
            self._emit(TransportEvent.pairing(
                PairingChallenge(payload=message, kind=ChallengeKind.QR_IMAGE)))
        elif kind == "error":
            logger.warning(f"Green API refused QR: {message}")

    async def _refresh_credentials(self) -> None:
        """Report account info as the session's credential material."""
        try:
            info = await self._api_call("getWaSettings")
        except TransportError as e:
            logger.warning(f"Could not read account info: {e}")
            return
        blob = {
            "instance_id": self.config.instance_id,
            "phone": str(info.get("phone", "")),
            "device_id": str(info.get("deviceId", "")),
        }
        previous = {k: v for k, v in (self._credentials or {}).items() if k != "updated_at"}
        if blob != previous:
            self._credentials = {**blob, "updated_at": time.time()}
            self._emit(TransportEvent.credentials_updated(dict(self._credentials)))

    # ── Operations ─────────────────────────────────

    async def exists(self, jid: str) -> bool:
        digits = to_chat_id(jid).split("@", 1)[0]
        if not digits:
            return False
        result = await self._api_call("checkWhatsapp", {"phoneNumber": int(digits)})
        return bool(result.get("existsWhatsapp"))

    async def send_text(self, jid: str, text: str) -> str:
        result = await self._api_call("sendMessage", {
            "chatId": to_chat_id(jid),
            "message": text,
        })
        message_id = result.get("idMessage")
        if not message_id:
            raise TransportError(f"Gateway did not accept the message: {result}")
        return str(message_id)

    async def logout(self) -> None:
        result = await self._api_call("logout")
        if not result.get("isLogout", False):
            raise TransportError(f"Gateway refused logout: {result}")


def green_api_factory(
    config: GatewayConfig,
    client: httpx.AsyncClient | None = None,
) -> TransportFactory:
    """Factory binding gateway config for the lifecycle manager."""

    def factory(
        session_id: str,
        credentials: dict[str, Any] | None,
        emit: EventCallback,
    ) -> Transport:
        return GreenAPITransport(session_id, credentials, emit, config, client=client)

    return factory
