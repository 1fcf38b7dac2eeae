"""
Parallel capture + inference orchestration.

Resolves a question into exactly one answer. Photo capture and a text-only
inference run concurrently; the answer then falls through three tiers:

1. vision: question + photo, when the capture succeeded
2. text: the text-only result computed alongside the capture
3. default: a fixed reply when everything else failed

Live sessions ask for the text tier to be streamed; each chunk must then
arrive within the text timeout, and a stalled or broken stream is retried
like any other failed attempt. Only a finished answer leaves this module.

Nothing except cancellation escapes ``Orchestrator.answer``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional

from glasses_assistant.assistant.llm import InferenceBackend
from glasses_assistant.assistant.prompts import PromptPlan, PromptPolicy
from glasses_assistant.assistant.transport import PhotoData
from glasses_assistant.config import Config
from glasses_assistant.core.aio import CancelToken, race, settle, sleep
from glasses_assistant.core.errors import (
    CaptureFailed,
    CaptureUnavailable,
    InferenceEmpty,
    InferenceError,
    InferenceFailed,
    OperationCancelled,
)

if TYPE_CHECKING:
    from glasses_assistant.assistant.session import UserContext

logger = logging.getLogger(__name__)


class Tier(Enum):
    """Which fallback tier produced an answer."""

    VISION = "vision"
    TEXT = "text"
    DEFAULT = "default"


@dataclass
class Answer:
    """Orchestrator result."""

    text: str
    tier: Tier
    photo: Optional[PhotoData] = None
    step_mode: Optional[str] = None

    @property
    def has_photo(self) -> bool:
        return self.photo is not None


async def _next_chunk(iterator: AsyncIterator[str]) -> Optional[str]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class Orchestrator:
    """
    Turns a question into an answer using the glasses camera and the
    inference backend.

    Args:
        backend: Inference backend (text and vision)
        config: Assistant configuration
        policy: Prompt construction policy
        clock: Monotonic clock used for the capture interval guard
    """

    def __init__(
        self,
        backend: InferenceBackend,
        config: Config,
        policy: PromptPolicy,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.config = config
        self.policy = policy
        self.clock = clock

    async def capture(self, ctx: "UserContext", token: Optional[CancelToken] = None) -> PhotoData:
        """
        Take a photo, guarding the camera against request storms.

        Raises:
            CaptureUnavailable: A capture is already outstanding for this
                user, or the last one was too recent
            CaptureFailed: Camera or transport error (including timeout)
            OperationCancelled: ``token`` was cancelled
        """
        capture = self.config.capture

        if ctx.capture_in_flight:
            raise CaptureUnavailable(f"capture already in flight for user {ctx.user_id}")

        if ctx.last_capture_time:
            since = self.clock() - ctx.last_capture_time
            if since < capture.min_interval:
                raise CaptureUnavailable(
                    f"capture too soon for user {ctx.user_id} ({since:.2f}s since last photo)"
                )

        ctx.capture_in_flight = True
        try:
            if await sleep(capture.settle_delay, token):
                raise OperationCancelled("photo capture")
            logger.info("Taking photo for user %s", ctx.user_id)
            photo = await race(
                ctx.session.request_photo(),
                capture.timeout,
                token,
                label="photo capture",
                timeout_error=CaptureFailed,
            )
        except (CaptureFailed, OperationCancelled):
            raise
        except Exception as e:
            raise CaptureFailed(f"photo capture failed: {e}") from e
        finally:
            ctx.capture_in_flight = False

        ctx.last_capture_time = self.clock()
        logger.info(
            "Photo captured for user %s (%s, %d bytes)", ctx.user_id, photo.mime_type, len(photo.data)
        )
        return photo

    async def infer(
        self,
        prompt: str,
        max_tokens: int,
        timeout: float,
        token: Optional[CancelToken] = None,
        image: Optional[PhotoData] = None,
        stream: bool = False,
    ) -> str:
        """
        Run one inference with retries.

        Each attempt races the backend against ``timeout``; a timeout counts
        as a failed attempt. With ``stream`` the text is read from
        ``backend.stream`` and the timeout applies to every chunk.

        Raises:
            InferenceError: Last failure once all attempts are exhausted
            OperationCancelled: ``token`` was cancelled
        """
        inference = self.config.inference
        stream = stream and image is None
        kind = "vision" if image is not None else "streamed text" if stream else "text"
        attempts = max(1, inference.attempts)
        last_error: InferenceError = InferenceFailed(f"{kind} inference not attempted")

        for attempt in range(1, attempts + 1):
            if token is not None:
                token.raise_if_cancelled()
            logger.info("%s inference attempt %d/%d", kind.capitalize(), attempt, attempts)

            label = f"{kind} inference attempt {attempt}"
            try:
                if stream:
                    text = await self._collect_stream(prompt, max_tokens, timeout, token, label)
                else:
                    text = await race(
                        self.backend.generate(prompt, max_tokens, inference.temperature, image=image),
                        timeout,
                        token,
                        label=label,
                    )
                if not text or not text.strip():
                    raise InferenceEmpty(f"empty {kind} response")
                return text.strip()
            except OperationCancelled:
                raise
            except InferenceError as e:
                last_error = e
            except Exception as e:
                last_error = InferenceFailed(str(e))

            logger.warning("%s inference attempt %d failed: %s", kind.capitalize(), attempt, last_error)
            if attempt < attempts and await sleep(inference.retry_backoff, token):
                raise OperationCancelled(f"{kind} inference")

        raise last_error

    async def _collect_stream(
        self,
        prompt: str,
        max_tokens: int,
        timeout: float,
        token: Optional[CancelToken],
        label: str,
    ) -> str:
        chunks = self.backend.stream(prompt, max_tokens, self.config.inference.temperature)
        parts: list[str] = []
        while True:
            chunk = await race(_next_chunk(chunks), timeout, token, label=label)
            if chunk is None:
                break
            parts.append(chunk)
        return "".join(parts)

    async def answer(
        self,
        ctx: "UserContext",
        question: str,
        token: Optional[CancelToken] = None,
        stream: bool = False,
    ) -> Answer:
        """
        Resolve a question into an answer.

        Args:
            ctx: Asking user's context
            question: Question text
            token: Cancellation token for this request
            stream: Read the text tier from the backend's token stream

        Returns:
            Non-empty answer with the tier that produced it

        Raises:
            OperationCancelled: Only when ``token`` is cancelled
        """
        try:
            plan = await self.policy.plan(ctx, question)
        except Exception as e:
            logger.warning("Prompt policy failed for user %s, using defaults: %s", ctx.user_id, e)
            plan = await PromptPolicy(self.config, self.policy.conversations).plan(ctx, question)

        try:
            return await self._resolve(ctx, plan, token, stream)
        except OperationCancelled:
            logger.debug("Answer for user %s cancelled", ctx.user_id)
            raise
        except Exception as e:
            logger.error("Orchestrator failed for user %s: %s", ctx.user_id, e, exc_info=True)
            return Answer(plan.fallback_reply, Tier.DEFAULT, step_mode=plan.step_mode)

    async def _resolve(
        self,
        ctx: "UserContext",
        plan: PromptPlan,
        token: Optional[CancelToken],
        stream: bool = False,
    ) -> Answer:
        photo_outcome, text_outcome = await asyncio.gather(
            settle(self.capture(ctx, token)),
            settle(
                self.infer(
                    plan.text_prompt, plan.text_max_tokens, plan.text_timeout, token, stream=stream
                )
            ),
        )

        if token is not None:
            token.raise_if_cancelled()
        for outcome in (photo_outcome, text_outcome):
            if isinstance(outcome.error, OperationCancelled):
                raise outcome.error

        photo: Optional[PhotoData] = None
        if photo_outcome.ok:
            photo = photo_outcome.value
            if photo.encoded_size > self.config.capture.max_image_bytes:
                logger.info(
                    "Image too large for vision (%d encoded bytes), using text answer",
                    photo.encoded_size,
                )
            else:
                try:
                    text = await self.infer(
                        plan.vision_prompt,
                        plan.vision_max_tokens,
                        plan.vision_timeout,
                        token,
                        image=photo,
                    )
                    logger.info("Answered user %s from vision tier", ctx.user_id)
                    return Answer(text, Tier.VISION, photo, plan.step_mode)
                except InferenceError as e:
                    logger.warning("Vision tier failed for user %s: %s", ctx.user_id, e)
        elif isinstance(photo_outcome.error, CaptureUnavailable):
            logger.info("Capture unavailable: %s", photo_outcome.error)
        else:
            logger.warning("Capture failed for user %s: %s", ctx.user_id, photo_outcome.error)

        if text_outcome.ok:
            logger.info("Answered user %s from text tier", ctx.user_id)
            return Answer(text_outcome.value, Tier.TEXT, photo, plan.step_mode)

        logger.warning(
            "All tiers failed for user %s (text: %s), using default reply",
            ctx.user_id, text_outcome.error,
        )
        return Answer(plan.fallback_reply, Tier.DEFAULT, photo, plan.step_mode)
