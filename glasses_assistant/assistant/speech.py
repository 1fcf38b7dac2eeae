"""
Cancellation-aware speech output.

Only one utterance per user is ever in flight: starting a new one cancels
the previous one, whose eventual result is ignored. Failed utterances are
retried, and shown on the display when every attempt fails.
"""

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Optional

from glasses_assistant.config import SpeechConfig
from glasses_assistant.core.aio import CancelToken, defer, race, sleep
from glasses_assistant.core.errors import OperationCancelled, SpeechFailed
from glasses_assistant.core.text import clean_text_for_speech, truncate_for_speech

if TYPE_CHECKING:
    from glasses_assistant.assistant.session import UserContext

logger = logging.getLogger(__name__)

SPEECH = "speech"


class SpeechOutcome(Enum):
    """How an utterance reached the user (or didn't)."""

    SPOKEN = "spoken"
    DISPLAYED = "displayed"
    CANCELLED = "cancelled"


class SpeechOutput:
    """Speaks text through a user's glasses."""

    def __init__(self, config: Optional[SpeechConfig] = None):
        self.config = config or SpeechConfig()

    async def speak(self, ctx: "UserContext", text: str) -> SpeechOutcome:
        """
        Speak an answer, superseding any utterance in flight for the user.

        On success the answer is mirrored on the display; when all attempts
        fail it is displayed for longer instead.
        """
        cfg = self.config
        return await self._utter(
            ctx,
            text,
            attempts=cfg.attempts,
            timeout=cfg.timeout,
            backoff=cfg.retry_backoff,
            mirror_ms=cfg.display_ms,
            fallback_ms=cfg.fallback_display_ms,
        )

    async def announce(self, ctx: "UserContext", text: str) -> SpeechOutcome:
        """Speak a short prompt or acknowledgement (no display mirror)."""
        cfg = self.config
        return await self._utter(
            ctx,
            text,
            attempts=cfg.ack_attempts,
            timeout=cfg.ack_timeout,
            backoff=cfg.ack_retry_backoff,
            mirror_ms=None,
            fallback_ms=cfg.display_ms,
        )

    async def _utter(
        self,
        ctx: "UserContext",
        text: str,
        attempts: int,
        timeout: float,
        backoff: float,
        mirror_ms: Optional[int],
        fallback_ms: int,
    ) -> SpeechOutcome:
        token, superseded = ctx.tokens.replace(SPEECH)
        try:
            if superseded:
                logger.info("Cancelling previous utterance for user %s", ctx.user_id)
                if await sleep(self.config.cancel_grace, token):
                    return self._cancelled(ctx)
            return await self._attempt(
                ctx, text, token, attempts, timeout, backoff, mirror_ms, fallback_ms
            )
        finally:
            ctx.tokens.release(SPEECH, token)

    async def _attempt(
        self,
        ctx: "UserContext",
        text: str,
        token: CancelToken,
        attempts: int,
        timeout: float,
        backoff: float,
        mirror_ms: Optional[int],
        fallback_ms: int,
    ) -> SpeechOutcome:
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            if token.cancelled:
                return self._cancelled(ctx)

            logger.info("TTS attempt %d/%d for user %s: %r", attempt, attempts, ctx.user_id, text)
            try:
                result = await race(
                    ctx.session.speak(text),
                    timeout,
                    token,
                    label=f"speech attempt {attempt}",
                    timeout_error=SpeechFailed,
                )
                if token.cancelled:
                    return self._cancelled(ctx)
                if not result.success:
                    raise SpeechFailed(result.error or "speech failed")

                logger.info("TTS succeeded for user %s on attempt %d", ctx.user_id, attempt)
                if mirror_ms is not None:
                    ctx.session.show_text(f"AI: {text}", mirror_ms)
                return SpeechOutcome.SPOKEN
            except OperationCancelled:
                return self._cancelled(ctx)
            except Exception as e:
                logger.warning("TTS attempt %d failed for user %s: %s", attempt, ctx.user_id, e)

            if attempt < attempts and await sleep(backoff, token):
                return self._cancelled(ctx)

        if token.cancelled:
            return self._cancelled(ctx)

        logger.info("All TTS attempts failed for user %s, showing text only", ctx.user_id)
        ctx.session.show_text(f"AI: {text}", fallback_ms)
        return SpeechOutcome.DISPLAYED

    @staticmethod
    def _cancelled(ctx: "UserContext") -> SpeechOutcome:
        logger.debug("Utterance cancelled for user %s", ctx.user_id)
        return SpeechOutcome.CANCELLED


class StreamBuffer:
    """
    Accumulates streamed response text and speaks it after a quiet period.

    Each ``feed`` restarts the debounce timer. A flush speaks everything
    buffered so far, truncated at a sentence (or word) boundary to keep TTS
    latency bounded. Flushes of one buffer are spoken in order.
    """

    def __init__(
        self,
        speaker: SpeechOutput,
        ctx: "UserContext",
        debounce: float = 0.5,
        max_chars: int = 300,
    ):
        self.speaker = speaker
        self.ctx = ctx
        self.debounce = debounce
        self.max_chars = max_chars
        self.text = ""
        self.spoken: list[str] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def is_buffering(self) -> bool:
        return bool(self.text)

    @property
    def pending_flush(self) -> bool:
        return self._timer is not None

    def feed(self, chunk: str) -> None:
        """Append streamed text and (re)start the debounce timer."""
        if self._closed or not chunk:
            return
        self.text += chunk
        self.cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.debounce, self._on_quiet)

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_quiet(self) -> None:
        self._timer = None
        defer(self.flush_now(), name=f"stream-flush-{self.ctx.user_id}")

    async def flush_now(self) -> Optional[SpeechOutcome]:
        """Speak whatever is buffered right away."""
        self.cancel_timer()
        text = clean_text_for_speech(self.text)
        self.text = ""
        if not text:
            return None

        text = truncate_for_speech(text, self.max_chars)
        async with self._lock:
            self.spoken.append(text)
            return await self.speaker.speak(self.ctx, text)

    async def close(self) -> Optional[SpeechOutcome]:
        """Flush the remainder and stop accepting text."""
        outcome = await self.flush_now()
        self._closed = True
        return outcome

    def discard(self) -> None:
        """Drop buffered text without speaking it."""
        self.cancel_timer()
        self.text = ""
        self._closed = True
