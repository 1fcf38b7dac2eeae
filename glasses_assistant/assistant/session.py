"""
Per-user session registry.

All mutable per-user state lives on one ``UserContext``; components receive
the context explicitly instead of reading module-level maps.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from glasses_assistant.assistant.live import LiveSessionState
from glasses_assistant.assistant.prompts import StepLog
from glasses_assistant.assistant.transport import GlassesSession
from glasses_assistant.assistant.wakeword import ListeningState
from glasses_assistant.core.aio import TokenSlots

logger = logging.getLogger(__name__)


@dataclass
class UserContext:
    """Everything the assistant tracks for one connected user."""

    user_id: str
    session: GlassesSession
    listening: ListeningState = field(default_factory=ListeningState)
    capture_in_flight: bool = False
    last_capture_time: float = 0.0
    tokens: TokenSlots = field(init=False)
    live: Optional[LiveSessionState] = None
    steps: StepLog = field(init=False)
    last_activity: float = field(default_factory=time.time)

    def __post_init__(self):
        self.tokens = TokenSlots(self.user_id)
        self.steps = StepLog(self.user_id)
        self.listening.session = self.session

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def touch(self) -> None:
        self.last_activity = time.time()


class SessionRegistry:
    """Map from user id to ``UserContext`` for connected users."""

    def __init__(self):
        self._contexts: dict[str, UserContext] = {}
        self._last_activity: dict[str, float] = {}
        self._steps: dict[str, StepLog] = {}

    def open(self, user_id: str, session: GlassesSession) -> UserContext:
        """
        Register a session, replacing any previous one for the user.

        Step history outlives sessions and carries over to the new context.
        """
        previous = self._contexts.get(user_id)
        ctx = UserContext(user_id=user_id, session=session)
        if previous is not None:
            logger.info("Replacing session %s for user %s", previous.session_id, user_id)
            previous.tokens.cancel_all()
        ctx.steps = self._steps.setdefault(user_id, ctx.steps)
        self._contexts[user_id] = ctx
        self._last_activity[user_id] = ctx.last_activity
        return ctx

    def get(self, user_id: str) -> Optional[UserContext]:
        return self._contexts.get(user_id)

    def steps(self, user_id: str) -> Optional[StepLog]:
        return self._steps.get(user_id)

    def close(self, user_id: str) -> Optional[UserContext]:
        """Drop a user's context and cancel its outstanding operations."""
        ctx = self._contexts.pop(user_id, None)
        if ctx is not None:
            ctx.tokens.cancel_all()
            self._last_activity[user_id] = ctx.last_activity
        return ctx

    def touch(self, user_id: str) -> None:
        ctx = self._contexts.get(user_id)
        if ctx is not None:
            ctx.touch()
            self._last_activity[user_id] = ctx.last_activity

    def active_count(self) -> int:
        return len(self._contexts)

    def active_users(self) -> list[str]:
        return list(self._contexts)

    def last_activity(self, user_id: Optional[str] = None) -> Optional[float]:
        """Last activity of one user, or the most recent across all users."""
        if user_id is not None:
            return self._last_activity.get(user_id)
        return max(self._last_activity.values(), default=None)

    def __iter__(self):
        return iter(list(self._contexts.values()))

    def __len__(self) -> int:
        return len(self._contexts)
