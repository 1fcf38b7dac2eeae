"""
Glasses assistant core.

Wires the per-user pipeline together:
    transcription -> listening window -> request queue -> orchestrator
    -> conversation record -> speech output -> dashboard events

One ``GlassesAssistant`` serves every connected user of the process.
"""

import asyncio
import logging
import time
from typing import Any, Optional

from glasses_assistant.assistant.conversations import (
    ConversationEntry,
    ConversationStatus,
    ConversationStore,
)
from glasses_assistant.assistant.events import (
    CONVERSATION_COMPLETED,
    CONVERSATION_ERROR,
    CONVERSATION_STARTED,
    LISTENING_ENDED,
    LISTENING_STARTED,
    STEP_CREATED,
    TRANSCRIPTION,
    EventBus,
)
from glasses_assistant.assistant.live import LiveController
from glasses_assistant.assistant.llm import InferenceBackend, create_backend
from glasses_assistant.assistant.memory import MemoryStore, SQLiteMemoryStore
from glasses_assistant.assistant.orchestrator import Orchestrator
from glasses_assistant.assistant.prompts import (
    PromptPolicy,
    StepTrackingPolicy,
    categorize_question,
)
from glasses_assistant.assistant.scheduler import QueuedRequest, Scheduler
from glasses_assistant.assistant.session import SessionRegistry, UserContext
from glasses_assistant.assistant.speech import SpeechOutput
from glasses_assistant.assistant.transport import GlassesSession, TranscriptionEvent
from glasses_assistant.assistant.wakeword import EndReason, ListeningStateMachine
from glasses_assistant.config import Config, get_config
from glasses_assistant.core.aio import defer
from glasses_assistant.core.errors import OperationCancelled

logger = logging.getLogger(__name__)

WELCOME = "Hey Mentra is ready! Say 'Hey Mentra' to start."
READY_HINT = "Voice assistant is ready. Say 'Hey Mentra' to start..."
LISTENING_PROMPT = "I'm listening, how can I help?"
GIVE_UP_PROMPT = "I didn't hear anything. Say 'Hey Mentra' to try again."
TIMEOUT_PROMPT = "Listening timeout. Say 'Hey Mentra' to try again."
PROCESSING = "Processing..."
APOLOGY = "Sorry, please try again."
ERROR_RESPONSE = "Sorry, I encountered an error. Please try again."
CANCELLED_RESPONSE = "Cancelled."
TEST_QUESTION = "what do you see"

INFERENCE = "inference"


class GlassesAssistant:
    """
    Smart glasses voice assistant.

    Example:
        assistant = GlassesAssistant()
        ctx = assistant.start_session("user@example.com", session)
        assistant.on_transcription("user@example.com", {"text": "hey mentra", "is_final": True})
    """

    WELCOME_ATTEMPTS = 3
    WELCOME_RETRY_DELAY = 1.0

    def __init__(
        self,
        config: Optional[Config] = None,
        backend: Optional[InferenceBackend] = None,
        memory: Optional[MemoryStore] = None,
    ):
        self.config = config or get_config()
        self.backend = backend or create_backend(self.config.inference)

        if memory is None and self.config.memory.enabled:
            memory = SQLiteMemoryStore(self.config.memory.db_path, self.config.memory.photos_dir)
        self.memory = memory

        self.registry = SessionRegistry()
        self.conversations = ConversationStore(self.config.conversations.max_entries)
        self.events = EventBus()
        self.speech = SpeechOutput(self.config.speech)

        policy_cls = StepTrackingPolicy if self.config.step_tracking else PromptPolicy
        self.policy = policy_cls(self.config, self.conversations, self.memory)
        self.orchestrator = Orchestrator(self.backend, self.config, self.policy)

        self.listening = ListeningStateMachine(
            self.config.listening,
            on_wake=self._on_wake,
            on_question=self._on_question,
            on_give_up=self._on_give_up,
            on_timeout=self._on_listening_timeout,
            on_end=self._on_listening_end,
        )
        self.live = LiveController(self.config, self.speech, on_question=self._on_question)

        # Live sessions are serialized per user, standard requests per domain
        domain = "user" if self.is_live else self.config.scheduler.domain
        self.scheduler = Scheduler(self._handle_request, domain=domain)

        logger.info(
            "Glasses assistant ready (mode=%s, step_tracking=%s, scheduling=%s, memory=%s)",
            self.config.mode, self.config.step_tracking, domain, self.memory is not None,
        )

    @property
    def is_live(self) -> bool:
        return self.config.mode == "live"

    # Session lifecycle

    def start_session(self, user_id: str, session: GlassesSession) -> UserContext:
        """Register a connected user and show the welcome message."""
        existing = self.registry.get(user_id)
        if existing is not None:
            self._teardown(existing, "replaced")

        ctx = self.registry.open(user_id, session)
        logger.info("Session %s started for user %s", session.session_id, user_id)
        defer(self._show_welcome(ctx), name=f"welcome-{user_id}")
        return ctx

    def end_session(self, user_id: str, reason: str = "disconnected") -> None:
        """
        Drop a user's session state.

        Conversation history is kept for the dashboard.
        """
        ctx = self.registry.get(user_id)
        if ctx is None:
            return
        self._teardown(ctx, reason)
        self.registry.close(user_id)
        self.scheduler.discard(user_id)
        logger.info("Session stopped for user %s (%s)", user_id, reason)

    def on_session_error(self, user_id: str, error: Any) -> None:
        """Transport error: reset listening and end any live session."""
        logger.warning("Session error for user %s: %s", user_id, error)
        ctx = self.registry.get(user_id)
        if ctx is not None:
            self._teardown(ctx, "transport error")

    def _teardown(self, ctx: UserContext, reason: str) -> None:
        self.listening.cancel(ctx)
        self.live.end(ctx, reason, announce=False)

    async def _show_welcome(self, ctx: UserContext) -> None:
        for attempt in range(1, self.WELCOME_ATTEMPTS + 1):
            if ctx.session.show_text(WELCOME, 3000):
                logger.info("Welcome shown for user %s (attempt %d)", ctx.user_id, attempt)
                return
            if attempt < self.WELCOME_ATTEMPTS:
                await asyncio.sleep(self.WELCOME_RETRY_DELAY)
        logger.error("All welcome message attempts failed for user %s", ctx.user_id)

    async def shutdown(self) -> None:
        """Stop all sessions and drop queued requests."""
        for ctx in list(self.registry):
            self.end_session(ctx.user_id, "shutdown")
        self.scheduler.close()

    # Inputs

    def on_transcription(self, user_id: str, payload: Any) -> None:
        """
        Feed a transcription event for a user.

        Malformed payloads and unknown users are logged and ignored, so one
        user's bad input never affects other sessions.
        """
        ctx = self.registry.get(user_id)
        if ctx is None:
            logger.warning("Transcription for unknown user %s ignored", user_id)
            return

        try:
            event = (
                payload
                if isinstance(payload, TranscriptionEvent)
                else TranscriptionEvent.from_payload(payload)
            )
        except ValueError as e:
            logger.warning("Malformed transcription from user %s ignored: %s", user_id, e)
            return

        logger.debug(
            "Transcription for user %s: is_final=%s text=%r", user_id, event.is_final, event.text
        )
        self.registry.touch(user_id)
        if event.text.strip():
            self.events.publish(
                user_id, TRANSCRIPTION, {"text": event.text, "is_final": event.is_final}
            )

        try:
            if self.is_live:
                self.live.handle(ctx, event)
            else:
                self.listening.handle(ctx, event)
        except Exception as e:
            logger.error("Transcription handler failed for user %s: %s", user_id, e, exc_info=True)

    def on_button(self, user_id: str, press: str) -> None:
        """Long press asks a test question; short press shows a ready hint."""
        ctx = self.registry.get(user_id)
        if ctx is None:
            logger.warning("Button press for unknown user %s ignored", user_id)
            return

        logger.info("Button press (%s) from user %s", press, user_id)
        if press == "long":
            self.submit(user_id, TEST_QUESTION)
        else:
            ctx.session.show_text(READY_HINT, 3000)

    def submit(self, user_id: str, question: str) -> Optional[QueuedRequest]:
        """Queue a question for a connected user."""
        ctx = self.registry.get(user_id)
        if ctx is None:
            logger.warning("Question for unknown user %s dropped", user_id)
            return None
        self.registry.touch(user_id)
        return self.scheduler.submit(question, user_id, ctx.session)

    # Listening window callbacks

    def _on_wake(self, ctx: UserContext) -> None:
        self.events.publish(ctx.user_id, LISTENING_STARTED, {})
        defer(self.speech.announce(ctx, LISTENING_PROMPT), name=f"ack-{ctx.user_id}")

    def _on_question(self, ctx: UserContext, question: str) -> None:
        self.submit(ctx.user_id, question)

    def _on_give_up(self, ctx: UserContext) -> None:
        defer(self.speech.announce(ctx, GIVE_UP_PROMPT), name=f"give-up-{ctx.user_id}")

    def _on_listening_timeout(self, ctx: UserContext) -> None:
        defer(self.speech.announce(ctx, TIMEOUT_PROMPT), name=f"timeout-{ctx.user_id}")

    def _on_listening_end(self, ctx: UserContext, reason: EndReason) -> None:
        self.events.publish(ctx.user_id, LISTENING_ENDED, {"reason": reason.value})

    # Request processing

    async def _handle_request(self, request: QueuedRequest) -> None:
        ctx = self.registry.get(request.user_id)
        if ctx is None or ctx.session is not request.session:
            logger.info("Session for user %s is gone, dropping request", request.user_id)
            return

        entry = ConversationEntry(
            user_id=request.user_id,
            question=request.question,
            category=categorize_question(request.question),
        )
        self.conversations.append(entry)
        self.events.publish(ctx.user_id, CONVERSATION_STARTED, {"conversation": entry.to_public()})

        started = time.monotonic()
        token, _ = ctx.tokens.replace(INFERENCE)
        try:
            ctx.session.show_text(PROCESSING, 1000)

            streamed = self.is_live and self.live.is_active(ctx)
            if streamed:
                self.live.touch(ctx)
            answer = await self.orchestrator.answer(
                ctx, request.question, token, stream=streamed
            )

            if answer.photo is not None:
                entry.attach_photo(answer.photo)
            entry.complete(answer.text, self._elapsed_ms(started))
            logger.info(
                "Answered user %s via %s tier in %dms",
                ctx.user_id, answer.tier.value, entry.processing_time_ms,
            )

            self._record_step(ctx, entry)
            self.events.publish(
                ctx.user_id, CONVERSATION_COMPLETED, {"conversation": entry.to_public()}
            )
            if self.memory is not None:
                defer(self._remember(entry), name=f"remember-{entry.id}")

            if streamed:
                await self.live.speak(ctx, answer.text)
            else:
                await self.speech.speak(ctx, answer.text)
        except OperationCancelled:
            logger.debug("Request for user %s cancelled", ctx.user_id)
            if entry.status is ConversationStatus.PROCESSING:
                entry.fail(CANCELLED_RESPONSE, self._elapsed_ms(started))
                self.events.publish(
                    ctx.user_id, CONVERSATION_ERROR, {"conversation": entry.to_public()}
                )
        except Exception as e:
            logger.error("Request failed for user %s: %s", ctx.user_id, e, exc_info=True)
            if entry.status is ConversationStatus.PROCESSING:
                entry.fail(ERROR_RESPONSE, self._elapsed_ms(started))
                self.events.publish(
                    ctx.user_id, CONVERSATION_ERROR, {"conversation": entry.to_public()}
                )
            defer(self.speech.speak(ctx, APOLOGY), name=f"apology-{ctx.user_id}")
        finally:
            ctx.tokens.release(INFERENCE, token)

    def _record_step(self, ctx: UserContext, entry: ConversationEntry) -> None:
        try:
            recorded = self.policy.record(ctx, entry)
        except Exception as e:
            logger.error("Failed to record step for user %s: %s", ctx.user_id, e)
            return
        if recorded is not None:
            step, project = recorded
            self.events.publish(
                ctx.user_id,
                STEP_CREATED,
                {"step": step.to_public(), "project": project.to_public()},
            )

    async def _remember(self, entry: ConversationEntry) -> None:
        try:
            await self.memory.save_conversation(entry, entry.photo)
        except Exception as e:
            logger.warning("Failed to save conversation %s to memory: %s", entry.id, e)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    # Dashboard views

    def snapshot(self, user_id: str) -> dict[str, Any]:
        """Sanitized conversation list plus aggregate counts."""
        last_activity = self.registry.last_activity()
        return {
            "conversations": self.conversations.snapshot(user_id),
            "active_users": self.registry.active_count(),
            "last_activity": int(last_activity * 1000) if last_activity else None,
        }

    def steps_snapshot(self, user_id: str) -> dict[str, Any]:
        steps = self.registry.steps(user_id)
        if steps is None:
            return {"steps": [], "projects": [], "active_project": None}
        return steps.snapshot()

    async def search_memory(self, user_id: str, query: str, limit: int = 10) -> list[dict]:
        if self.memory is None:
            return []
        return await self.memory.search(user_id, query, limit)
