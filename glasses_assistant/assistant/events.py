"""
Live event stream for dashboard observers.

Events are delivered in publish order, at most once, to the subscribers
connected at publish time. There is no replay: a reconnecting client must
re-fetch the conversation snapshot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

TRANSCRIPTION = "transcription"
CONVERSATION_STARTED = "conversation-started"
CONVERSATION_COMPLETED = "conversation-completed"
CONVERSATION_ERROR = "conversation-error"
STEP_CREATED = "step-created"
LISTENING_STARTED = "listening-started"
LISTENING_ENDED = "listening-ended"

EVENT_TYPES = frozenset({
    TRANSCRIPTION,
    CONVERSATION_STARTED,
    CONVERSATION_COMPLETED,
    CONVERSATION_ERROR,
    STEP_CREATED,
    LISTENING_STARTED,
    LISTENING_ENDED,
})


@dataclass(frozen=True)
class Event:
    """A published event."""

    type: str
    payload: dict[str, Any]
    user_id: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": int(self.timestamp * 1000),
        }


class Subscription:
    """One observer's view of a user's event stream."""

    def __init__(self, bus: "EventBus", user_id: str, max_pending: int):
        self.bus = bus
        self.user_id = user_id
        self.queue: asyncio.Queue[Optional[Event]] = asyncio.Queue(maxsize=max_pending)
        self.dropped = 0
        self.closed = False

    def _deliver(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Event subscriber for user %s is too slow, dropped %s event", self.user_id, event.type
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Next event, or None when closed (or on timeout).
        """
        if self.closed and self.queue.empty():
            return None
        try:
            if timeout is None:
                return await self.queue.get()
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.bus._remove(self)
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Per-user publish/subscribe."""

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, user_id: str) -> Subscription:
        subscription = Subscription(self, user_id, self.max_pending)
        self._subscribers.setdefault(user_id, []).append(subscription)
        logger.debug("Event subscriber added for user %s", user_id)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.user_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.user_id, None)

    def publish(self, user_id: str, type: str, payload: Optional[dict[str, Any]] = None) -> Event:
        """
        Deliver an event to the user's current subscribers.

        Never blocks; a subscriber whose queue is full misses the event.
        """
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {type}")
        event = Event(type=type, payload=payload or {}, user_id=user_id)
        for subscription in list(self._subscribers.get(user_id, [])):
            subscription._deliver(event)
        return event

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._subscribers.get(user_id, []))
        return sum(len(s) for s in self._subscribers.values())
