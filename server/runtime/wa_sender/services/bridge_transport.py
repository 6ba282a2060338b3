"""
WA Sender Runtime - Bridge Transport

TransportSession over a WebSocket to the messaging bridge, the gateway
process that speaks the multi-device protocol. Frames are JSON objects
with a "type" field; requests carry an "id" the bridge echoes back.
"""

import asyncio
import base64
import contextlib
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote
from uuid import uuid4

import websockets

from wa_sender.config import Settings
from wa_sender.errors import TransportError
from wa_sender.services.credential_store import CredentialBundle
from wa_sender.services.transport import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectReason,
    PairingChallenge,
    TransportFault,
    TransportSession,
)

logger = logging.getLogger(__name__)

# Frame types whose "id" answers a pending request
_REPLY_TYPES = {"pairing.code", "message.ack", "error"}


def _status_code(exc: Exception) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return status


class BridgeTransport(TransportSession):
    """WebSocket client for the messaging bridge"""

    def __init__(self, settings: Settings):
        super().__init__()
        self.url = settings.BRIDGE_URL
        self.api_secret = settings.API_SECRET
        self.device_id = settings.DEVICE_ID
        self.pairing_timeout = settings.PAIRING_TIMEOUT_SECONDS
        self.send_timeout = settings.SEND_TIMEOUT_SECONDS
        self.base_delay = settings.RECONNECT_BASE_DELAY_SECONDS
        self.max_delay = settings.RECONNECT_MAX_DELAY_SECONDS
        self._ws = None
        self._recv_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._registered = False
        self._failures = 0

    @property
    def has_valid_credentials(self) -> bool:
        return self._registered

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self, credentials: Optional[CredentialBundle]) -> None:
        if self._failures:
            delay = min(self.base_delay * self._failures, self.max_delay)
            logger.info(f"Waiting {delay:g}s before connecting to bridge")
            await asyncio.sleep(delay)

        # A new handshake always starts from a fresh socket
        await self.close()

        # Build WebSocket URL with authentication
        ws_url = f"{self.url}?device_id={quote(self.device_id)}&api_secret={quote(self.api_secret)}"
        logger.info(f"Connecting to messaging bridge: {self.url}")
        ws = None
        try:
            ws = await websockets.connect(ws_url)
            await ws.send(json.dumps({
                'type': 'auth',
                'deviceId': self.device_id,
                'creds': base64.b64encode(credentials.blob).decode('ascii') if credentials else None,
            }))
        except (OSError, websockets.exceptions.WebSocketException) as e:
            self._failures += 1
            if ws is not None:
                with contextlib.suppress(Exception):
                    await ws.close()
            status = _status_code(e)
            raise TransportError(
                f"Failed to connect to bridge: {e}",
                recoverable=status not in (401, 403),
                reason=str(status) if status else None,
            ) from e

        self._failures = 0
        self._registered = False
        self._ws = ws
        self._recv_task = asyncio.create_task(self._receive_loop(ws), name="bridge-recv")

    async def _receive_loop(self, ws) -> None:
        detail = None
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Received non-JSON frame: {str(raw)[:100]}")
                    continue
                try:
                    self._dispatch(frame)
                except Exception as e:
                    logger.error(f"Error processing bridge frame: {e}")
        except websockets.exceptions.ConnectionClosed as e:
            detail = str(e)
        finally:
            # Only report drops we did not cause through close()
            if self._ws is ws:
                self._ws = None
                self._fail_pending(TransportError("Bridge connection lost"))
                logger.warning("Bridge connection closed")
                self.events.publish(ConnectionClosed(DisconnectReason.CONNECTION_LOST, detail))

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get('type')

        if frame_type == 'connection.update':
            if 'registered' in frame:
                self._registered = bool(frame['registered'])
            qr = frame.get('qr')
            if qr:
                logger.info("QR challenge received")
                self.events.publish(PairingChallenge(qr.encode('utf-8')))
            connection = frame.get('connection')
            if connection == 'open':
                self._registered = True
                self.events.publish(ConnectionOpened())
            elif connection == 'close':
                reason = DisconnectReason.from_status(frame.get('statusCode'))
                self.events.publish(ConnectionClosed(reason, frame.get('error')))

        elif frame_type == 'creds.update':
            blob = base64.b64decode(frame['creds'])
            self.events.publish(CredentialsUpdated(CredentialBundle(self.device_id, blob)))

        elif frame_type == 'fault':
            self.events.publish(TransportFault(frame.get('error', 'bridge fault')))

        elif frame_type in _REPLY_TYPES:
            future = self._pending.pop(frame.get('id'), None)
            if future is None or future.done():
                logger.debug(f"Reply for unknown request: {frame.get('id')}")
                return
            if frame_type == 'error' or frame.get('ok') is False:
                future.set_exception(TransportError(frame.get('error') or 'Bridge request failed'))
            else:
                future.set_result(frame)

        else:
            logger.debug(f"Ignoring bridge frame type: {frame_type}")

    async def _request(self, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise TransportError("Bridge transport not connected")

        request_id = uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps({**payload, 'id': request_id}))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{payload['type']} timed out after {timeout:g}s") from e
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Bridge connection closed during {payload['type']}") from e
        finally:
            self._pending.pop(request_id, None)

    async def request_pairing_code(self, phone_number: str) -> str:
        reply = await self._request(
            {'type': 'pairing.request', 'phoneNumber': phone_number},
            self.pairing_timeout,
        )
        return reply['code']

    async def send_text(self, address: str, text: str) -> None:
        await self._request(
            {'type': 'message.send', 'jid': address, 'content': {'text': text}},
            self.send_timeout,
        )

    def _fail_pending(self, error: TransportError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        task, self._recv_task = self._recv_task, None
        self._fail_pending(TransportError("Bridge connection closed"))
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if ws is not None:
            logger.info("Closing bridge connection")
            try:
                await ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.error(f"Error closing bridge connection: {e}")
