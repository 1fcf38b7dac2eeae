"""
Live (streaming) conversation mode.

A wake phrase while idle starts a live session. From then on every final
transcript is a question. Questions go through the same orchestrator as
standard mode (with the text tier streamed), and the finished answer is
spoken through the session's ``StreamBuffer``, so an attempt that fails part
way through is never heard. The session ends on a stop phrase, after a
period of inactivity, or on a transport error.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional

from glasses_assistant.assistant.speech import SpeechOutcome, SpeechOutput, StreamBuffer
from glasses_assistant.assistant.transport import TranscriptionEvent
from glasses_assistant.assistant.wakeword import WakePhraseMatcher
from glasses_assistant.config import Config
from glasses_assistant.core.aio import defer

if TYPE_CHECKING:
    from glasses_assistant.assistant.session import UserContext

logger = logging.getLogger(__name__)

LIVE_STARTED = "Live mode on. Ask me anything."
LIVE_ENDED = "Live mode ended. Say 'Hey Mentra' to start again."
LIVE_TIMED_OUT = "Live mode timed out. Say 'Hey Mentra' to start again."


@dataclass
class LiveSessionState:
    """State of a user's live session."""

    is_active: bool = True
    start_time: float = field(default_factory=time.time)
    last_activity_time: float = field(default_factory=time.time)
    buffer: Optional[StreamBuffer] = None
    inactivity_timer: Optional[asyncio.TimerHandle] = None

    @property
    def response_buffer(self) -> str:
        return self.buffer.text if self.buffer is not None else ""

    @property
    def is_buffering(self) -> bool:
        return self.buffer is not None and self.buffer.is_buffering

    @property
    def flush_pending(self) -> bool:
        return self.buffer is not None and self.buffer.pending_flush


class LiveController:
    """
    Drives live sessions.

    Args:
        config: Assistant configuration
        speech: Speech output shared with the rest of the assistant
        on_question: Called with (ctx, text) for each question while live
        on_end: Called with (ctx, reason) when a live session ends
    """

    def __init__(
        self,
        config: Config,
        speech: SpeechOutput,
        on_question: Callable[["UserContext", str], None],
        on_end: Optional[Callable[["UserContext", str], None]] = None,
    ):
        self.config = config
        self.speech = speech
        self.on_question = on_question
        self.on_end = on_end
        self.matcher = WakePhraseMatcher(config.listening.wake_phrases)
        self.stop_matcher = WakePhraseMatcher(config.listening.stop_phrases)

    def is_active(self, ctx: "UserContext") -> bool:
        return ctx.live is not None and ctx.live.is_active

    def handle(self, ctx: "UserContext", event: TranscriptionEvent) -> None:
        """Feed one transcription event while in live mode."""
        text = event.text.strip()

        if not self.is_active(ctx):
            if event.is_final and text and self.matcher.match(text):
                self.start(ctx)
            return

        if len(text) >= self.config.listening.voice_activity_threshold:
            self.touch(ctx)

        if not event.is_final or not text:
            return

        if self.stop_matcher.match(text):
            logger.info("Stop phrase from user %s", ctx.user_id)
            self.end(ctx, "stop phrase")
            return

        self.on_question(ctx, text)

    def start(self, ctx: "UserContext") -> LiveSessionState:
        """Start (or restart) a live session for the user."""
        if self.is_active(ctx):
            self.end(ctx, "restarted", announce=False)

        speech_cfg = self.config.speech
        state = LiveSessionState()
        state.buffer = StreamBuffer(
            self.speech, ctx, speech_cfg.stream_debounce, speech_cfg.stream_max_chars
        )
        ctx.live = state
        self.touch(ctx)
        logger.info("Live session started for user %s", ctx.user_id)
        defer(self.speech.announce(ctx, LIVE_STARTED), name=f"live-start-{ctx.user_id}")
        return state

    def end(self, ctx: "UserContext", reason: str, announce: bool = True) -> None:
        """End the user's live session, discarding any unspoken buffer."""
        state = ctx.live
        if state is None:
            return

        state.is_active = False
        if state.inactivity_timer is not None:
            state.inactivity_timer.cancel()
            state.inactivity_timer = None
        if state.buffer is not None:
            state.buffer.discard()
        ctx.live = None

        logger.info(
            "Live session ended for user %s (%s, %.0fs)",
            ctx.user_id, reason, time.time() - state.start_time,
        )
        if announce:
            message = LIVE_TIMED_OUT if reason == "inactivity" else LIVE_ENDED
            defer(self.speech.announce(ctx, message), name=f"live-end-{ctx.user_id}")
        if self.on_end is not None:
            self.on_end(ctx, reason)

    def touch(self, ctx: "UserContext") -> None:
        """Restart the inactivity timer."""
        state = ctx.live
        if state is None:
            return
        state.last_activity_time = time.time()
        if state.inactivity_timer is not None:
            state.inactivity_timer.cancel()
        state.inactivity_timer = asyncio.get_running_loop().call_later(
            self.config.live.inactivity_timeout, self._expire, ctx, state
        )

    def _expire(self, ctx: "UserContext", state: LiveSessionState) -> None:
        if ctx.live is state and state.is_active:
            logger.info("Live session for user %s inactive, ending", ctx.user_id)
            self.end(ctx, "inactivity")

    async def speak(self, ctx: "UserContext", text: str) -> Optional[SpeechOutcome]:
        """
        Speak a finished answer through the session's stream buffer.

        Falls back to plain speech when the live session ended while the
        answer was being produced.
        """
        state = ctx.live
        if state is None or state.buffer is None:
            return await self.speech.speak(ctx, text)

        self.touch(ctx)
        state.buffer.feed(text)
        outcome = await state.buffer.flush_now()
        self.touch(ctx)
        return outcome
