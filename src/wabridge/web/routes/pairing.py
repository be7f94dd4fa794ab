"""Pairing routes: expose the pending QR challenge and unlink the device.

Gated by the shared secret in PAIRING_SECRET, sent either as the
``X-Pairing-Secret`` header or the ``secret`` query parameter. With no
secret configured the endpoints do not exist.
"""

import hmac

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse, Response

from wabridge.errors import TransportError
from wabridge.pairing import ChallengeKind
from wabridge.session import Readiness

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def _check_secret(request: Request, provided: str | None) -> JSONResponse | None:
    """Error response for a disabled endpoint or a wrong secret, else None."""
    expected = request.app.state.settings.pairing.secret
    if not expected:
        return _error(404, "Pairing endpoint is disabled")
    if not hmac.compare_digest((provided or "").encode(), expected.encode()):
        return _error(401, "Invalid pairing secret")
    return None


@router.get("/pairing")
async def get_pairing_challenge(
    request: Request,
    secret: str | None = Query(None),
    x_pairing_secret: str | None = Header(None),
):
    """Return the current pairing QR (PNG) or code.

    Restarts a terminated session (e.g. after a logout) so a new
    challenge is issued, then waits up to pairing.wait_timeout for one.
    """
    settings = request.app.state.settings
    manager = request.app.state.manager

    denied = _check_secret(request, x_pairing_secret or secret)
    if denied is not None:
        return denied

    snap = manager.snapshot()
    if snap.is_ready:
        return _error(409, "WhatsApp is already connected")

    idle = snap.readiness == Readiness.DISCONNECTED and not manager.scheduler.pending
    if snap.terminated or (idle and not manager.is_connecting):
        await manager.request_pairing()

    challenge = await manager.wait_for_challenge(
        timeout=settings.pairing.wait_timeout,
        interval=settings.pairing.poll_interval,
    )
    if challenge is None:
        if manager.is_ready:
            return _error(409, "WhatsApp is already connected")
        return _error(504, "No pairing challenge was issued in time. Try again shortly")

    if challenge.kind == ChallengeKind.QR_IMAGE:
        png = challenge.image_bytes()
        if png is not None:
            return Response(
                content=png,
                media_type="image/png",
                headers={"Cache-Control": "no-store"},
            )
        return _error(502, "Gateway issued an unreadable QR code")

    return {
        "success": True,
        "message": "Enter this code in WhatsApp > Linked devices",
        "code": challenge.payload,
        **challenge.to_dict(),
    }


@router.post("/logout")
async def logout_session(
    request: Request,
    secret: str | None = Query(None),
    x_pairing_secret: str | None = Header(None),
):
    """Unlink the device at the gateway and forget the stored credentials.

    The session stays down until a new pairing is requested.
    """
    denied = _check_secret(request, x_pairing_secret or secret)
    if denied is not None:
        return denied

    manager = request.app.state.manager
    try:
        logged_out = await manager.logout()
    except TransportError as e:
        return _error(502, f"Gateway refused logout: {e}")
    if not logged_out:
        return _error(409, "WhatsApp is not connected")
    return {"success": True, "message": "Logged out. Fetch /api/pairing to link again"}
