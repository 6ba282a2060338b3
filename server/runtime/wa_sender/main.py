"""
WA Sender Runtime - Main Entry Point

FastAPI application that runs one outbound messaging session: device
pairing, a rate-limited delivery queue, and the status/start/stop API the
operator UI polls.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from wa_sender.config import Settings, settings
from wa_sender.database import get_session_factory, init_db
from wa_sender.errors import SenderError
from wa_sender.logging_setup import configure_logging
from wa_sender.routes import health, session
from wa_sender.services.bridge_transport import BridgeTransport
from wa_sender.services.credential_store import (
    CredentialStore,
    DatabaseCredentialStore,
    FileCredentialStore,
)
from wa_sender.services.session_controller import SessionController

logger = logging.getLogger(__name__)


def build_credential_store(settings: Settings) -> CredentialStore:
    if settings.CREDENTIAL_BACKEND == "database":
        init_db()
        return DatabaseCredentialStore(get_session_factory(), settings.DEVICE_ID)
    return FileCredentialStore(settings.AUTH_DIR, settings.DEVICE_ID)


def build_controller(settings: Settings) -> SessionController:
    return SessionController(
        settings,
        transport_factory=lambda: BridgeTransport(settings),
        credential_store=build_credential_store(settings),
    )


# Initialize FastAPI app
app = FastAPI(
    title="WA Sender Runtime Service",
    description="Outbound messaging session with a rate-limited delivery queue",
    version="1.0.0",
)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(session.router, prefix="/api", tags=["session"])


@app.exception_handler(SenderError)
async def sender_error_handler(request: Request, exc: SenderError):
    """Render domain errors as {error, details}"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.details})")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "details": exc.details},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal Server Error", "details": str(exc)},
    )


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    configure_logging(settings)
    if getattr(app.state, "controller", None) is None:
        app.state.controller = build_controller(settings)
    logger.info("WA Sender Runtime Service starting...")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    controller = getattr(app.state, "controller", None)
    if controller is not None:
        await controller.shutdown()
    logger.info("WA Sender Runtime Service shutting down...")


if __name__ == "__main__":
    uvicorn.run(
        "wa_sender.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
