"""
WebSocket bridge to the glasses.

One connection per user. The device pushes transcriptions and button presses;
the server asks for photos and speech and the device answers with the
matching ``request_id``.

Protocol (device -> server):
    {"type": "transcription", "text": "hey mentra", "is_final": true}
    {"type": "photo", "request_id": "...", "mime_type": "image/jpeg", "data": "<base64>"}
    {"type": "photo_error", "request_id": "...", "error": "camera busy"}
    {"type": "speak_result", "request_id": "...", "success": true}
    {"type": "button", "press": "long"}

Protocol (server -> device):
    {"type": "request_photo", "request_id": "..."}
    {"type": "speak", "request_id": "...", "text": "..."}
    {"type": "show_text", "text": "...", "duration_ms": 3000}
"""

import asyncio
import binascii
import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from glasses_assistant.assistant.transport import GlassesSession, PhotoData, SpeakResult
from glasses_assistant.core.aio import defer
from glasses_assistant.core.errors import CaptureFailed
from glasses_assistant.server.app import get_assistant
from glasses_assistant.server.schemas import (
    ButtonMessage,
    PhotoErrorMessage,
    PhotoMessage,
    SpeakResultMessage,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketGlassesSession(GlassesSession):
    """``GlassesSession`` over a FastAPI websocket."""

    def __init__(self, websocket: WebSocket, user_id: str, session_id: str | None = None):
        super().__init__(session_id or uuid.uuid4().hex, user_id)
        self.websocket = websocket
        self.closed = False
        self._pending: dict[str, asyncio.Future] = {}
        self._send_lock = asyncio.Lock()

    async def _send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("glasses connection closed")
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def _call(self, message: dict[str, Any]) -> Any:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({**message, "request_id": request_id})
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def request_photo(self) -> PhotoData:
        return await self._call({"type": "request_photo"})

    async def speak(self, text: str) -> SpeakResult:
        return await self._call({"type": "speak", "text": text})

    def _show_text(self, text: str, duration_ms: int) -> None:
        if self.closed:
            raise ConnectionError("glasses connection closed")
        defer(
            self._send({"type": "show_text", "text": text, "duration_ms": duration_ms}),
            name=f"show-text-{self.user_id}",
        )

    def resolve(self, request_id: str, result: Any = None, error: Exception | None = None) -> bool:
        """Complete a pending request. Returns False for unknown ids."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug("No pending request %s for user %s", request_id, self.user_id)
            return False
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
        return True

    def close(self) -> None:
        """Fail every pending request."""
        self.closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("glasses disconnected"))
        self._pending.clear()


def handle_message(session: WebSocketGlassesSession, message: Any) -> None:
    """Dispatch one device message. Malformed messages are logged and dropped."""
    assistant = get_assistant()
    user_id = session.user_id

    if not isinstance(message, dict):
        logger.warning("Non-object message from user %s ignored", user_id)
        return

    kind = message.get("type")
    try:
        if kind == "transcription":
            assistant.on_transcription(user_id, message)
        elif kind == "photo":
            photo = PhotoMessage(**message)
            session.resolve(
                photo.request_id, PhotoData.from_base64(photo.data, photo.mime_type)
            )
        elif kind == "photo_error":
            failure = PhotoErrorMessage(**message)
            session.resolve(failure.request_id, error=CaptureFailed(failure.error))
        elif kind == "speak_result":
            result = SpeakResultMessage(**message)
            session.resolve(result.request_id, SpeakResult(result.success, result.error))
        elif kind == "button":
            assistant.on_button(user_id, ButtonMessage(**message).press)
        else:
            logger.warning("Unknown message type %r from user %s", kind, user_id)
    except (ValidationError, binascii.Error) as e:
        logger.warning("Malformed %s message from user %s ignored: %s", kind, user_id, e)


@router.websocket("/glasses/{user_id}")
async def glasses_bridge(websocket: WebSocket, user_id: str):
    """
    WebSocket endpoint for one pair of glasses.

    The session starts on connect and ends on disconnect.
    """
    await websocket.accept()

    assistant = get_assistant()
    session = WebSocketGlassesSession(websocket, user_id)
    assistant.start_session(user_id, session)

    reason = "disconnected"
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError as e:
                logger.warning("Invalid JSON from user %s ignored: %s", user_id, e)
                continue
            handle_message(session, message)

    except WebSocketDisconnect:
        logger.info("Glasses disconnected for user %s", user_id)
    except Exception as e:
        reason = "transport error"
        assistant.on_session_error(user_id, e)
    finally:
        session.close()
        ctx = assistant.registry.get(user_id)
        if ctx is not None and ctx.session is session:
            assistant.end_session(user_id, reason)
