"""Messaging API routes: session status and message sending."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

router = APIRouter()


# ── Pydantic models ────────────────────────────────────

class SendRequest(BaseModel):
    """Body of POST /api/send. Missing fields are reported as 400."""
    number: str | int | None = None
    message: str | None = None


# ── Endpoints ──────────────────────────────────────────

@router.get("/status")
async def session_status(request: Request):
    """Report whether the WhatsApp session is ready.

    Reads a snapshot only; never waits on the gateway.
    """
    snap = request.app.state.manager.snapshot()
    return {
        "success": True,
        "message": "System is ready" if snap.is_ready else "System is not connected",
        **snap.to_dict(),
    }


@router.post("/send")
async def send_message(req: SendRequest, request: Request):
    """Send a text message to a phone number."""
    dispatcher = request.app.state.dispatcher
    number = "" if req.number is None else str(req.number)
    result = await dispatcher.send(number, req.message or "")
    return JSONResponse(status_code=result.http_status, content=result.to_dict())
