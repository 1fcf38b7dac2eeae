"""
Wake phrase detection and the listening window.

Speech arrives as a stream of partial/final transcripts. A final transcript
containing a wake phrase opens a listening window; the next voiced final
transcript inside that window is the question. The window also closes on
silence or when the hard upper bound expires.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from glasses_assistant.assistant.transport import TranscriptionEvent
from glasses_assistant.config import DEFAULT_WAKE_PHRASES, ListeningConfig

if TYPE_CHECKING:
    from glasses_assistant.assistant.session import UserContext

logger = logging.getLogger(__name__)


class WakePhraseMatcher:
    """
    Case-insensitive substring matcher over a fixed list of phrasings.

    The list includes common speech-recognition misspellings of the wake
    phrase, so matching stays a plain substring test.
    """

    def __init__(self, phrases: Optional[list[str]] = None):
        phrases = DEFAULT_WAKE_PHRASES if phrases is None else phrases
        self.phrases = [p.lower().strip() for p in phrases if p.strip()]

    def match(self, text: str) -> Optional[str]:
        """
        Find a wake phrase in text.

        Args:
            text: Transcript text

        Returns:
            The matched phrase, or None
        """
        lowered = text.lower()
        for phrase in self.phrases:
            if phrase in lowered:
                return phrase
        return None


class EndReason(Enum):
    """Why a listening window closed."""

    QUESTION = "question"
    SILENCE = "silence"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class ListeningState:
    """Per-user listening window state. Times come from the machine's clock."""

    is_listening: bool = False
    wake_timestamp: float = 0.0
    session: Any = None
    last_voice_activity_time: float = 0.0
    silence_start_time: float = 0.0
    has_spoken_since_wake: bool = False

    def reset(self) -> None:
        """Back to idle. The session reference is kept."""
        self.is_listening = False
        self.wake_timestamp = 0.0
        self.last_voice_activity_time = 0.0
        self.silence_start_time = 0.0
        self.has_spoken_since_wake = False


def _noop(*args: Any) -> None:
    pass


class ListeningStateMachine:
    """
    Idle -> Listening -> Idle, driven by transcription events.

    Callbacks are plain functions invoked synchronously at the transition;
    anything slow (speaking a prompt, running the request) must be deferred
    by the callback itself.

    Silence is measured from the wake (or from the last voice activity) so
    that a window with no events at all still closes. The max-timeout is
    always checked before silence.
    """

    def __init__(
        self,
        config: Optional[ListeningConfig] = None,
        matcher: Optional[WakePhraseMatcher] = None,
        on_wake: Callable[["UserContext"], None] = _noop,
        on_question: Callable[["UserContext", str], None] = _noop,
        on_give_up: Callable[["UserContext"], None] = _noop,
        on_timeout: Callable[["UserContext"], None] = _noop,
        on_end: Callable[["UserContext", EndReason], None] = _noop,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ListeningConfig()
        self.matcher = matcher or WakePhraseMatcher(self.config.wake_phrases)
        self.on_wake = on_wake
        self.on_question = on_question
        self.on_give_up = on_give_up
        self.on_timeout = on_timeout
        self.on_end = on_end
        self.clock = clock
        self._watchdogs: dict[str, asyncio.Task] = {}

    def handle(self, ctx: "UserContext", event: TranscriptionEvent) -> None:
        """
        Feed one transcription event for a user.

        Must be called from the event loop thread.
        """
        state = ctx.listening
        text = event.text.strip()

        if not state.is_listening:
            # Partials never open a window
            if event.is_final and text:
                phrase = self.matcher.match(text)
                if phrase:
                    logger.info("Wake phrase %r detected for user %s", phrase, ctx.user_id)
                    self._open(ctx)
                else:
                    logger.debug("No wake phrase in %r", text)
            return

        now = self.clock()
        if self._check_timers(ctx, now):
            return

        if len(text) >= self.config.voice_activity_threshold:
            state.last_voice_activity_time = now
            state.silence_start_time = 0.0
            state.has_spoken_since_wake = True

            if event.is_final:
                logger.info("Question from user %s: %r", ctx.user_id, text)
                self._close(ctx, EndReason.QUESTION)
                self.on_question(ctx, text)
            return

        if state.has_spoken_since_wake and state.silence_start_time == 0.0:
            state.silence_start_time = now
            logger.debug("Silence started for user %s", ctx.user_id)

    def cancel(self, ctx: "UserContext") -> None:
        """Close any open window without prompts (session end or transport error)."""
        if ctx.listening.is_listening:
            self._close(ctx, EndReason.CANCELLED)
        else:
            self._stop_watchdog(ctx.user_id)

    def _open(self, ctx: "UserContext") -> None:
        state = ctx.listening
        now = self.clock()
        state.is_listening = True
        state.wake_timestamp = now
        state.last_voice_activity_time = now
        state.silence_start_time = 0.0
        state.has_spoken_since_wake = False
        state.session = ctx.session

        self._stop_watchdog(ctx.user_id)
        self._watchdogs[ctx.user_id] = asyncio.get_running_loop().create_task(
            self._watch(ctx, now), name=f"listening-watchdog-{ctx.user_id}"
        )
        self.on_wake(ctx)

    def _close(self, ctx: "UserContext", reason: EndReason) -> None:
        ctx.listening.reset()
        self._stop_watchdog(ctx.user_id)
        self.on_end(ctx, reason)

    def _stop_watchdog(self, user_id: str) -> None:
        task = self._watchdogs.pop(user_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _check_timers(self, ctx: "UserContext", now: float) -> bool:
        """Apply both timers. Returns True if the window was closed."""
        state = ctx.listening

        if now - state.wake_timestamp >= self.config.max_listening_timeout:
            logger.info("Maximum listening timeout reached for user %s", ctx.user_id)
            self._close(ctx, EndReason.TIMEOUT)
            self.on_timeout(ctx)
            return True

        silence = now - state.last_voice_activity_time
        if silence >= self.config.silence_timeout:
            spoke = state.has_spoken_since_wake
            logger.info(
                "Silence timeout (%.1fs) for user %s (spoke=%s)", silence, ctx.user_id, spoke
            )
            self._close(ctx, EndReason.SILENCE)
            if not spoke:
                self.on_give_up(ctx)
            return True

        return False

    async def _watch(self, ctx: "UserContext", window_start: float) -> None:
        state = ctx.listening
        while state.is_listening and state.wake_timestamp == window_start:
            now = self.clock()
            if self._check_timers(ctx, now):
                return
            max_deadline = state.wake_timestamp + self.config.max_listening_timeout
            silence_deadline = state.last_voice_activity_time + self.config.silence_timeout
            await asyncio.sleep(max(0.0, min(max_deadline, silence_deadline) - now))
