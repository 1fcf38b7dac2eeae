"""
Dashboard API: conversation snapshot, photos, steps, memory search and the
live event stream (server-sent events).

Every route is scoped to one user, identified by the ``X-User-Id`` header
or the ``user_id`` query parameter.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import Response, StreamingResponse

from glasses_assistant.server.app import get_assistant
from glasses_assistant.server.schemas import (
    ConversationsResponse,
    MemorySearchResponse,
    StepsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Seconds between SSE keepalive comments
KEEPALIVE_INTERVAL = 15.0


def require_user(
    x_user_id: Optional[str] = Header(default=None),
    user_id: Optional[str] = Query(default=None),
) -> str:
    """Resolve the dashboard user, or reject with 401."""
    resolved = (x_user_id or user_id or "").strip()
    if not resolved:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return resolved


@router.get("/conversations", response_model=ConversationsResponse)
async def list_conversations(user_id: str = Depends(require_user)) -> ConversationsResponse:
    """Sanitized conversation history plus aggregate activity counts."""
    return ConversationsResponse(**get_assistant().snapshot(user_id))


@router.get("/photo/{conversation_id}")
async def get_photo(conversation_id: str, user_id: str = Depends(require_user)) -> Response:
    """Raw photo bytes of one conversation."""
    entry = get_assistant().conversations.find(user_id, conversation_id)
    if entry is None or entry.photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    return Response(
        content=entry.photo.data,
        media_type=entry.photo.mime_type,
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/steps", response_model=StepsResponse)
async def list_steps(user_id: str = Depends(require_user)) -> StepsResponse:
    """Step tracking projects and steps."""
    return StepsResponse(**get_assistant().steps_snapshot(user_id))


@router.get("/memory/search", response_model=MemorySearchResponse)
async def search_memory(
    q: str = Query(..., min_length=1),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: str = Depends(require_user),
) -> MemorySearchResponse:
    """Search persisted conversations."""
    assistant = get_assistant()
    if assistant.memory is None:
        raise HTTPException(status_code=404, detail="Memory is not enabled")
    results = await assistant.search_memory(user_id, q, limit)
    return MemorySearchResponse(query=q, results=results)


@router.get("/events")
async def stream_events(user_id: str = Depends(require_user)) -> StreamingResponse:
    """
    Live event stream.

    Sends ``{"type": "connected"}`` first, then one ``data:`` line per event.
    Events published while disconnected are not replayed.
    """
    subscription = get_assistant().events.subscribe(user_id)

    async def generate():
        try:
            yield f"data: {json.dumps({'type': 'connected'})}\n\n"
            while not subscription.closed:
                event = await subscription.get(timeout=KEEPALIVE_INTERVAL)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            subscription.close()
            logger.debug("Event stream closed for user %s", user_id)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
