"""
WA Sender Runtime - Session Routes

Status polling, pairing, and starting/stopping the messaging session.
Domain errors are turned into {error, details} responses by the handler
registered in main.py.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from wa_sender.errors import ValidationError
from wa_sender.models.message import SendRequest, TargetKind
from wa_sender.models.schemas import (
    Ack,
    ErrorResponse,
    PairingRequest,
    PairingResponse,
    QueueStatus,
    StatusResponse,
)
from wa_sender.services.session_controller import SessionController

logger = logging.getLogger(__name__)

router = APIRouter(
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)


def get_controller(request: Request) -> SessionController:
    """Dependency for the process-wide session controller"""
    return request.app.state.controller


def _parse_int(value: Optional[str], default: int, *, zero_means_default: bool = False) -> int:
    try:
        parsed = int(value) if value is not None else None
    except (TypeError, ValueError):
        parsed = None
    if parsed is None or (zero_means_default and parsed == 0):
        return default
    return parsed


@router.get("/status", response_model=StatusResponse, response_model_by_alias=True)
async def get_status(controller: SessionController = Depends(get_controller)):
    """Current connection state and pairing code, if any"""
    return controller.status()


@router.get("/queue", response_model=QueueStatus)
async def get_queue(controller: SessionController = Depends(get_controller)):
    """Delivery queue depth and counters"""
    return controller.queue_status()


@router.post("/pairing", response_model=PairingResponse, response_model_by_alias=True)
async def request_pairing(
    body: PairingRequest,
    controller: SessionController = Depends(get_controller),
):
    if not body.phone_number:
        raise ValidationError("Phone number is required")

    logger.info(f"Generating pairing code for phone: {body.phone_number}")
    code = await controller.request_pairing(body.phone_number)
    return PairingResponse(pairing_code=code)


@router.post("/start", response_model=Ack)
async def start_session(
    user_phone: Optional[str] = Form(None, alias="userPhone"),
    target_type: str = Form("individual", alias="targetType"),
    target_phones: str = Form("", alias="targetPhones"),
    message_input_type: str = Form("text", alias="messageInputType"),
    message_text: Optional[str] = Form(None, alias="messageText"),
    message_delay: Optional[str] = Form(None, alias="messageDelay"),
    enable_retry: Optional[str] = Form(None, alias="enableRetry"),
    max_retries: Optional[str] = Form(None, alias="maxRetries"),
    message_file: Optional[UploadFile] = File(None, alias="messageFile"),
    creds_file: Optional[UploadFile] = File(None, alias="credsFile"),
    controller: SessionController = Depends(get_controller),
):
    """
    Start the messaging session and queue one message per target.

    Returns once the messages are queued; delivery continues in the
    background.
    """
    try:
        target_kind = TargetKind(target_type)
    except ValueError:
        raise ValidationError(f"Unknown target type: {target_type}")

    targets = target_phones.split(',') if target_phones else []

    # Prepare message content
    content = message_text
    if message_input_type == 'file':
        if message_file is None:
            raise ValidationError("Message file is required")
        try:
            content = (await message_file.read()).decode('utf-8')
        except UnicodeDecodeError:
            raise ValidationError("Message file must be UTF-8 text")

    creds = await creds_file.read() if creds_file is not None else None

    logger.info(
        "Starting messaging session with params: "
        f"userPhone={user_phone}, targetType={target_type}, targetCount={len(targets)}, "
        f"messageInputType={message_input_type}, hasCredsFile={creds is not None}, "
        f"messageDelay={message_delay}"
    )

    request = SendRequest(
        targets=targets,
        bodies=[content] if content else [],
        target_kind=target_kind,
        delay_after_seconds=_parse_int(message_delay, controller.settings.DEFAULT_MESSAGE_DELAY),
        retry_enabled=enable_retry == 'true',
        max_retries=_parse_int(
            max_retries, controller.settings.DEFAULT_MAX_RETRIES, zero_means_default=True
        ),
    )
    return await controller.start([request], credential_blob=creds)


@router.post("/stop", response_model=Ack)
async def stop_session(controller: SessionController = Depends(get_controller)):
    return await controller.stop()
