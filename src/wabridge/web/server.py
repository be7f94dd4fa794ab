"""FastAPI application for wabridge.

    GET  /             service info
    GET  /api/status   session readiness
    POST /api/send     send a text message
    GET  /api/pairing  pending pairing QR (secret-gated)
    POST /api/logout   unlink the device (secret-gated)
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from wabridge import __version__
from wabridge.config import Settings
from wabridge.credentials import create_credential_store
from wabridge.dispatch import MessageDispatcher
from wabridge.pairing import TerminalPresenter
from wabridge.session import SessionManager
from wabridge.transport import TransportFactory, green_api_factory
from wabridge.web.routes import messaging, pairing

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    manager: SessionManager,
    dispatcher: MessageDispatcher | None = None,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """Wire routes to an existing manager.

    With ``manage_lifecycle`` the manager is started in the background on
    startup (the server accepts requests while the session connects) and
    stopped on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup: asyncio.Task | None = None
        if manage_lifecycle:
            startup = asyncio.create_task(manager.start())
        try:
            yield
        finally:
            if manage_lifecycle:
                if startup is not None and not startup.done():
                    startup.cancel()
                    try:
                        await startup
                    except asyncio.CancelledError:
                        pass
                await manager.stop()

    app = FastAPI(
        title="wabridge",
        description="Lightweight WhatsApp send API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = manager
    app.state.dispatcher = dispatcher or MessageDispatcher(
        manager,
        default_country_code=settings.default_country_code,
        timeout=settings.gateway.query_timeout,
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Invalid request body"},
        )

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error"},
        )

    @app.get("/")
    async def index():
        return {
            "success": True,
            "message": "WhatsApp send API",
            "version": __version__,
            "endpoints": {
                "POST /api/send": "Send a message",
                "GET /api/status": "Check session status",
                "GET /api/pairing": "Fetch the pairing QR code (requires secret)",
                "POST /api/logout": "Unlink the WhatsApp device (requires secret)",
            },
        }

    app.include_router(messaging.router, prefix="/api", tags=["messaging"])
    app.include_router(pairing.router, prefix="/api", tags=["pairing"])
    return app


def build_app(
    settings: Settings,
    transport_factory: TransportFactory | None = None,
) -> FastAPI:
    """Build the full service from settings."""
    store = create_credential_store(settings.store)
    presenter = TerminalPresenter(
        output_dir=settings.data_dir,
        pairing_url=(
            f"http://localhost:{settings.port}/api/pairing"
            if settings.pairing.secret else None
        ),
    )
    manager = SessionManager.from_settings(
        settings,
        store=store,
        transport_factory=transport_factory or green_api_factory(settings.gateway),
        presenter=presenter,
    )
    return create_app(settings, manager)
