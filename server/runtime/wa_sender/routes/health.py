"""
WA Sender Runtime - Health Check Routes

Provides health check endpoints for monitoring.
"""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone

from wa_sender.routes.session import get_controller
from wa_sender.services.session_controller import SessionController

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "ok",
        "timestamp": _now(),
        "service": "wa-sender",
    }


@router.get("/ready")
async def readiness(controller: SessionController = Depends(get_controller)):
    """Readiness check - reports the messaging session state"""
    status = controller.status()
    return {
        "status": "ready",
        "session": status.state,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """Liveness check - indicates service is running"""
    return {
        "status": "alive",
        "timestamp": _now(),
    }
