"""
Tests for the assistant core: session lifecycle, the request pipeline,
step tracking, memory and live mode.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

USER = "user@example.com"


def wake(text="hey mentra"):
    return {"text": text, "is_final": True}


def drain(subscription):
    events = []
    while not subscription.queue.empty():
        event = subscription.queue.get_nowait()
        if event is not None:
            events.append(event)
    return events


@pytest.fixture
def assistant(config, backend):
    from glasses_assistant.assistant.core import GlassesAssistant

    return GlassesAssistant(config, backend=backend)


async def settle_tasks(delay=0.05):
    """Let deferred tasks (prompts, welcome, memory writes) run."""
    await asyncio.sleep(delay)


class TestSessionLifecycle:
    """Test session start, replacement and end."""

    @pytest.mark.asyncio
    async def test_welcome_shown(self, assistant, session):
        """Test a new session gets the welcome message."""
        from glasses_assistant.assistant.core import WELCOME

        ctx = assistant.start_session(USER, session)
        await settle_tasks()

        assert ctx.user_id == USER
        assert assistant.registry.active_count() == 1
        assert (WELCOME, 3000) in session.displayed

    @pytest.mark.asyncio
    async def test_welcome_retried(self, assistant, session):
        """Test a failing display is retried until the welcome goes through."""
        from glasses_assistant.assistant.core import WELCOME

        assistant.WELCOME_RETRY_DELAY = 0.01
        session.display_failures = 2
        assistant.start_session(USER, session)
        await settle_tasks(0.1)

        assert session.displayed_texts == [WELCOME]

    @pytest.mark.asyncio
    async def test_end_session_keeps_history(self, assistant, session):
        """Test ending a session drops the user but keeps conversations."""
        assistant.start_session(USER, session)
        assistant.submit(USER, "what is this")
        await assistant.scheduler.join()

        assistant.end_session(USER)

        assert assistant.registry.get(USER) is None
        assert assistant.registry.active_count() == 0
        assert len(assistant.conversations.entries(USER)) == 1

    @pytest.mark.asyncio
    async def test_replacing_session_cancels_old_work(self, assistant, session_factory):
        """Test a reconnect cancels the previous session's tokens."""
        first = session_factory(USER, "s1")
        second = session_factory(USER, "s2")

        old_ctx = assistant.start_session(USER, first)
        token, _ = old_ctx.tokens.replace("speech")
        new_ctx = assistant.start_session(USER, second)

        assert token.cancelled
        assert new_ctx is assistant.registry.get(USER)
        assert new_ctx.session is second

    @pytest.mark.asyncio
    async def test_step_log_survives_reconnect(self, assistant, session_factory):
        """Test step history is kept across sessions of one user."""
        ctx = assistant.start_session(USER, session_factory(USER, "s1"))
        ctx.steps.get_or_create_project("help me build a shelf")
        assistant.end_session(USER)

        ctx = assistant.start_session(USER, session_factory(USER, "s2"))
        assert ctx.steps.active_project().name == "Shelf"

    @pytest.mark.asyncio
    async def test_session_error_resets_listening(self, assistant, session):
        """Test a transport error closes an open listening window."""
        ctx = assistant.start_session(USER, session)
        assistant.on_transcription(USER, wake())
        assert ctx.listening.is_listening

        assistant.on_session_error(USER, ConnectionError("socket closed"))
        assert not ctx.listening.is_listening


class TestTranscriptionRouting:
    """Test transcription input handling."""

    @pytest.mark.asyncio
    async def test_wake_then_question_answers(self, assistant, session):
        """Test the full voice flow from wake phrase to spoken answer."""
        from glasses_assistant.assistant.conversations import ConversationStatus
        from glasses_assistant.assistant.core import LISTENING_PROMPT

        assistant.start_session(USER, session)
        await settle_tasks()
        assistant.on_transcription(USER, wake())
        await settle_tasks()
        assistant.on_transcription(USER, {"text": "what do you see", "is_final": True})
        await assistant.scheduler.join()

        entry = assistant.conversations.entries(USER)[0]
        assert entry.question == "what do you see"
        assert entry.status is ConversationStatus.COMPLETED
        assert entry.response == "I see a desk."
        assert entry.has_photo
        assert LISTENING_PROMPT in session.spoken
        assert session.spoken[-1] == "I see a desk."
        assert "AI: I see a desk." in session.displayed_texts

    @pytest.mark.asyncio
    async def test_give_up_prompt(self, assistant, session, config):
        """Test silence after the wake phrase speaks the give-up prompt once."""
        from glasses_assistant.assistant.core import GIVE_UP_PROMPT

        assistant.start_session(USER, session)
        assistant.on_transcription(USER, wake())
        await settle_tasks(config.listening.silence_timeout * 4)

        assert session.spoken.count(GIVE_UP_PROMPT) == 1
        assert assistant.conversations.entries(USER) == []

    @pytest.mark.asyncio
    async def test_malformed_payload_ignored(self, assistant, session):
        """Test bad payloads are dropped without affecting the session."""
        ctx = assistant.start_session(USER, session)
        sub = assistant.events.subscribe(USER)

        assistant.on_transcription(USER, {"text": 42})
        assistant.on_transcription(USER, "not a dict")
        assistant.on_transcription(USER, {"text": "hey mentra", "is_final": "yes"})

        assert not ctx.listening.is_listening
        assert drain(sub) == []

    @pytest.mark.asyncio
    async def test_unknown_user_ignored(self, assistant):
        assistant.on_transcription("nobody", wake())
        assert assistant.submit("nobody", "hello") is None

    @pytest.mark.asyncio
    async def test_events_published(self, assistant, session):
        """Test the dashboard sees transcription, listening and conversation events."""
        from glasses_assistant.assistant.events import (
            CONVERSATION_COMPLETED,
            CONVERSATION_STARTED,
            LISTENING_ENDED,
            LISTENING_STARTED,
            TRANSCRIPTION,
        )

        assistant.start_session(USER, session)
        sub = assistant.events.subscribe(USER)
        assistant.on_transcription(USER, wake())
        assistant.on_transcription(USER, {"text": "what do you see", "is_final": True})
        await assistant.scheduler.join()

        events = drain(sub)
        types = [e.type for e in events]
        assert types == [
            TRANSCRIPTION,
            LISTENING_STARTED,
            TRANSCRIPTION,
            LISTENING_ENDED,
            CONVERSATION_STARTED,
            CONVERSATION_COMPLETED,
        ]
        assert events[3].payload == {"reason": "question"}
        completed = events[-1].payload["conversation"]
        assert completed["status"] == "completed"
        assert completed["photo_url"].startswith("/api/photo/")


class TestButtons:
    """Test button presses."""

    @pytest.mark.asyncio
    async def test_long_press_asks_test_question(self, assistant, session):
        from glasses_assistant.assistant.core import TEST_QUESTION

        assistant.start_session(USER, session)
        assistant.on_button(USER, "long")
        await assistant.scheduler.join()

        assert assistant.conversations.entries(USER)[0].question == TEST_QUESTION

    @pytest.mark.asyncio
    async def test_short_press_shows_hint(self, assistant, session):
        from glasses_assistant.assistant.core import READY_HINT

        assistant.start_session(USER, session)
        assistant.on_button(USER, "short")
        assert READY_HINT in session.displayed_texts


class TestRequestPipeline:
    """Test request handling outcomes."""

    @pytest.mark.asyncio
    async def test_processing_indicator(self, assistant, session):
        from glasses_assistant.assistant.core import PROCESSING

        assistant.start_session(USER, session)
        assistant.submit(USER, "what is this")
        await assistant.scheduler.join()

        assert (PROCESSING, 1000) in session.displayed

    @pytest.mark.asyncio
    async def test_failure_marks_error_and_apologizes(self, assistant, session):
        """Test an unexpected failure becomes an error entry and an apology."""
        from glasses_assistant.assistant.conversations import ConversationStatus
        from glasses_assistant.assistant.core import APOLOGY, ERROR_RESPONSE
        from glasses_assistant.assistant.events import CONVERSATION_ERROR

        assistant.orchestrator.answer = AsyncMock(side_effect=RuntimeError("boom"))
        assistant.start_session(USER, session)
        sub = assistant.events.subscribe(USER)
        assistant.submit(USER, "what is this")
        await assistant.scheduler.join()
        await settle_tasks()

        entry = assistant.conversations.entries(USER)[0]
        assert entry.status is ConversationStatus.ERROR
        assert entry.response == ERROR_RESPONSE
        assert CONVERSATION_ERROR in [e.type for e in drain(sub)]
        assert APOLOGY in session.spoken

    @pytest.mark.asyncio
    async def test_queue_survives_failure(self, assistant, session):
        """Test one failed request does not block the next one."""
        from glasses_assistant.assistant.conversations import ConversationStatus
        from glasses_assistant.assistant.orchestrator import Answer, Tier

        assistant.orchestrator.answer = AsyncMock(
            side_effect=[RuntimeError("boom"), Answer("Second answer.", Tier.TEXT)]
        )
        assistant.start_session(USER, session)
        assistant.submit(USER, "first")
        assistant.submit(USER, "second")
        await assistant.scheduler.join()

        newest, oldest = assistant.conversations.entries(USER)
        assert oldest.status is ConversationStatus.ERROR
        assert newest.status is ConversationStatus.COMPLETED
        assert newest.response == "Second answer."

    @pytest.mark.asyncio
    async def test_disconnect_cancels_request(self, assistant, session, backend):
        """Test ending a session cancels its in-flight request."""
        from glasses_assistant.assistant.conversations import ConversationStatus
        from glasses_assistant.assistant.core import CANCELLED_RESPONSE

        backend.text_delay = 0.15
        backend.vision_delay = 0.15
        assistant.start_session(USER, session)
        assistant.submit(USER, "what is this")
        await asyncio.sleep(0.03)

        assistant.end_session(USER)
        await assistant.scheduler.join()

        entry = assistant.conversations.entries(USER)[0]
        assert entry.status is ConversationStatus.ERROR
        assert entry.response == CANCELLED_RESPONSE
        assert "I see a desk." not in session.spoken

    @pytest.mark.asyncio
    async def test_request_for_closed_session_dropped(self, assistant, session):
        """Test a queued request whose session ended is not processed."""
        assistant.start_session(USER, session)
        assistant.submit(USER, "what is this")
        assistant.end_session(USER)
        await assistant.scheduler.join()

        assert assistant.conversations.entries(USER) == []

    @pytest.mark.asyncio
    async def test_snapshot(self, assistant, session):
        assistant.start_session(USER, session)
        assistant.submit(USER, "what is this")
        await assistant.scheduler.join()

        snapshot = assistant.snapshot(USER)
        assert snapshot["active_users"] == 1
        assert isinstance(snapshot["last_activity"], int)
        assert len(snapshot["conversations"]) == 1
        assert "photo" not in snapshot["conversations"][0]


class TestStepTracking:
    """Test step tracking through the pipeline."""

    @pytest.mark.asyncio
    async def test_step_created(self, config_factory, backend, session):
        from glasses_assistant.assistant.core import GlassesAssistant
        from glasses_assistant.assistant.events import STEP_CREATED

        assistant = GlassesAssistant(config_factory(step_tracking=True), backend=backend)
        assistant.start_session(USER, session)
        sub = assistant.events.subscribe(USER)

        assistant.submit(USER, "help me build a birdhouse")
        await assistant.scheduler.join()
        assistant.submit(USER, "what's next")
        await assistant.scheduler.join()

        steps = [e for e in drain(sub) if e.type == STEP_CREATED]
        assert [e.payload["step"]["step_number"] for e in steps] == [1, 2]
        snapshot = assistant.steps_snapshot(USER)
        assert snapshot["active_project"]["name"] == "Birdhouse"
        assert snapshot["active_project"]["total_steps"] == 2
        assert assistant.conversations.entries(USER)[0].is_step_entry
        assert "ONLY" in backend.prompts[-1]

    @pytest.mark.asyncio
    async def test_no_steps_for_unknown_user(self, assistant):
        assert assistant.steps_snapshot("nobody") == {
            "steps": [], "projects": [], "active_project": None
        }


class TestMemory:
    """Test persistent memory integration."""

    @pytest.mark.asyncio
    async def test_completed_exchange_saved(self, config, backend, session, tmp_path):
        from glasses_assistant.assistant.core import GlassesAssistant
        from glasses_assistant.assistant.memory import SQLiteMemoryStore

        memory = SQLiteMemoryStore(tmp_path / "memory.db")
        assistant = GlassesAssistant(config, backend=backend, memory=memory)
        assistant.start_session(USER, session)
        assistant.submit(USER, "where are my keys")
        await assistant.scheduler.join()
        await settle_tasks(0.2)

        results = await assistant.search_memory(USER, "keys")
        assert [r["question"] for r in results] == ["where are my keys"]
        assert results[0]["photo_path"]

    @pytest.mark.asyncio
    async def test_memory_failure_does_not_fail_request(self, config, backend, session):
        from glasses_assistant.assistant.conversations import ConversationStatus
        from glasses_assistant.assistant.core import GlassesAssistant
        from glasses_assistant.assistant.memory import MemoryStore

        class BrokenMemory(MemoryStore):
            async def save_conversation(self, record, photo=None):
                raise OSError("disk full")

            async def search(self, user_id, query, limit=10):
                return []

            async def recent(self, user_id, limit=5):
                return []

        assistant = GlassesAssistant(config, backend=backend, memory=BrokenMemory())
        assistant.start_session(USER, session)
        assistant.submit(USER, "what is this")
        await assistant.scheduler.join()
        await settle_tasks()

        assert assistant.conversations.entries(USER)[0].status is ConversationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_search_without_memory(self, assistant):
        assert await assistant.search_memory(USER, "anything") == []


class TestLiveMode:
    """Test the streaming live mode."""

    @pytest.fixture
    def live(self, config_factory, backend):
        from glasses_assistant.assistant.core import GlassesAssistant
        from glasses_assistant.config import LiveConfig

        config = config_factory(mode="live", live=LiveConfig(inactivity_timeout=0.3))
        return GlassesAssistant(config, backend=backend)

    @pytest.mark.asyncio
    async def test_wake_starts_live_session(self, live, session):
        from glasses_assistant.assistant.live import LIVE_STARTED

        ctx = live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()

        assert live.scheduler.domain == "user"
        assert ctx.live is not None and ctx.live.is_active
        assert LIVE_STARTED in session.spoken

    @pytest.mark.asyncio
    async def test_streamed_answer_spoken_once(self, live, session, backend):
        """Test a live question without a photo is answered from the streamed text tier."""
        from glasses_assistant.assistant.conversations import ConversationStatus

        session.photo_error = RuntimeError("camera off")
        live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()
        live.on_transcription(USER, {"text": "tell me something", "is_final": True})
        await live.scheduler.join()
        await settle_tasks()

        entry = live.conversations.entries(USER)[0]
        assert entry.status is ConversationStatus.COMPLETED
        assert entry.response == "Hello there. How can I help?"
        assert session.spoken.count("Hello there. How can I help?") == 1
        assert backend.count("stream") == 1
        assert backend.count("text") == 0

    @pytest.mark.asyncio
    async def test_live_question_uses_camera(self, live, session, backend):
        """Test live questions get the same photo and vision tier as standard mode."""
        live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()
        live.on_transcription(USER, {"text": "what am I looking at", "is_final": True})
        await live.scheduler.join()
        await settle_tasks()

        entry = live.conversations.entries(USER)[0]
        assert session.photo_requests == 1
        assert entry.has_photo
        assert entry.response == "I see a desk."
        assert session.spoken.count("I see a desk.") == 1
        assert "Hello there. How can I help?" not in session.spoken

    @pytest.mark.asyncio
    async def test_failed_stream_is_retried(self, live, session, backend):
        """Test a transient stream failure is retried instead of giving the default reply."""
        session.photo_error = RuntimeError("camera off")
        backend.stream_errors = [RuntimeError("transient 503")]
        live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()
        live.on_transcription(USER, {"text": "tell me something", "is_final": True})
        await live.scheduler.join()
        await settle_tasks()

        entry = live.conversations.entries(USER)[0]
        assert backend.count("stream") == 2
        assert entry.response == "Hello there. How can I help?"
        assert live.config.fallback_reply not in session.spoken

    @pytest.mark.asyncio
    async def test_stalled_stream_is_not_half_spoken(self, live, session, backend):
        """Test text from a stream that stalls is never heard before the default reply."""
        session.photo_error = RuntimeError("camera off")
        backend.chunks = ["The answer is", " forty-two."]
        backend.stall_after = 1
        backend.stall = 1.0
        live.config.live.inactivity_timeout = 5.0
        live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()
        live.on_transcription(USER, {"text": "what is the answer", "is_final": True})
        await live.scheduler.join()
        await settle_tasks()

        entry = live.conversations.entries(USER)[0]
        assert entry.response == live.config.fallback_reply
        assert not any("The answer is" in text for text in session.speak_calls)
        assert session.spoken[-1] == entry.response
        assert session.spoken.count(entry.response) == 1

    @pytest.mark.asyncio
    async def test_partials_do_not_ask(self, live, session):
        live.start_session(USER, session)
        live.on_transcription(USER, wake())
        live.on_transcription(USER, {"text": "tell me", "is_final": False})
        await settle_tasks()

        assert live.conversations.entries(USER) == []

    @pytest.mark.asyncio
    async def test_empty_stream_uses_fallback(self, live, session, backend, config):
        session.photo_error = RuntimeError("camera off")
        backend.chunks = []
        live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()
        live.on_transcription(USER, {"text": "say something", "is_final": True})
        await live.scheduler.join()

        entry = live.conversations.entries(USER)[0]
        assert entry.response == live.config.fallback_reply
        assert live.config.fallback_reply in session.spoken
        assert backend.count("stream") == live.config.inference.attempts

    @pytest.mark.asyncio
    async def test_stop_phrase_ends_session(self, live, session):
        from glasses_assistant.assistant.live import LIVE_ENDED

        ctx = live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks()
        live.on_transcription(USER, {"text": "stop live", "is_final": True})
        await settle_tasks()

        assert ctx.live is None
        assert LIVE_ENDED in session.spoken
        assert live.conversations.entries(USER) == []

    @pytest.mark.asyncio
    async def test_inactivity_ends_session(self, live, session):
        from glasses_assistant.assistant.live import LIVE_TIMED_OUT

        ctx = live.start_session(USER, session)
        live.on_transcription(USER, wake())
        await settle_tasks(0.5)

        assert ctx.live is None
        assert LIVE_TIMED_OUT in session.spoken

    @pytest.mark.asyncio
    async def test_transport_error_ends_session(self, live, session):
        ctx = live.start_session(USER, session)
        live.on_transcription(USER, wake())
        live.on_session_error(USER, ConnectionError("gone"))

        assert ctx.live is None
