"""
Tests for wake phrase detection and the listening window.
"""

import asyncio

import pytest

from glasses_assistant.assistant.transport import TranscriptionEvent


def final(text):
    return TranscriptionEvent(text=text, is_final=True)


def partial(text):
    return TranscriptionEvent(text=text, is_final=False)


class Recorder:
    """Collects state machine callbacks."""

    def __init__(self):
        self.wakes = 0
        self.questions = []
        self.give_ups = 0
        self.timeouts = 0
        self.ends = []

    def machine(self, config, **kwargs):
        from glasses_assistant.assistant.wakeword import ListeningStateMachine

        return ListeningStateMachine(
            config,
            on_wake=lambda ctx: setattr(self, "wakes", self.wakes + 1),
            on_question=lambda ctx, q: self.questions.append(q),
            on_give_up=lambda ctx: setattr(self, "give_ups", self.give_ups + 1),
            on_timeout=lambda ctx: setattr(self, "timeouts", self.timeouts + 1),
            on_end=lambda ctx, reason: self.ends.append(reason),
            **kwargs,
        )


@pytest.fixture
def recorder():
    return Recorder()


class TestWakePhraseMatcher:
    """Test wake phrase matching."""

    def test_matches_case_insensitive(self):
        """Test matching ignores case and surrounding words."""
        from glasses_assistant.assistant.wakeword import WakePhraseMatcher

        matcher = WakePhraseMatcher()
        assert matcher.match("Hey Mentra, what's up") == "hey mentra"

    def test_matches_misrecognition(self):
        """Test common speech-recognition variants are accepted."""
        from glasses_assistant.assistant.wakeword import WakePhraseMatcher

        assert WakePhraseMatcher().match("hey mentor") is not None

    def test_no_match(self):
        """Test unrelated speech is ignored."""
        from glasses_assistant.assistant.wakeword import WakePhraseMatcher

        assert WakePhraseMatcher().match("hello world") is None

    def test_custom_phrases(self):
        """Test a custom phrase list replaces the defaults."""
        from glasses_assistant.assistant.wakeword import WakePhraseMatcher

        matcher = WakePhraseMatcher(["ok glasses", "  "])
        assert matcher.phrases == ["ok glasses"]
        assert matcher.match("OK Glasses") == "ok glasses"
        assert matcher.match("hey mentra") is None


class TestListeningWindow:
    """Test the Idle -> Listening -> Idle transitions."""

    @pytest.mark.asyncio
    async def test_partial_never_opens_window(self, config, ctx, recorder):
        """Test a partial transcript with the wake phrase is ignored."""
        machine = recorder.machine(config.listening)
        machine.handle(ctx, partial("hey mentra"))
        assert not ctx.listening.is_listening
        assert recorder.wakes == 0

    @pytest.mark.asyncio
    async def test_question_dispatched_verbatim(self, config, ctx, recorder):
        """Test wake then final question dispatches the question text."""
        from glasses_assistant.assistant.wakeword import EndReason

        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        assert ctx.listening.is_listening
        assert ctx.listening.session is ctx.session
        assert recorder.wakes == 1

        machine.handle(ctx, partial("what do"))
        machine.handle(ctx, final("  What do you see "))

        assert recorder.questions == ["What do you see"]
        assert recorder.ends == [EndReason.QUESTION]
        assert not ctx.listening.is_listening
        assert recorder.give_ups == 0

    @pytest.mark.asyncio
    async def test_silence_without_speech_gives_up_once(self, config, ctx, recorder):
        """Test pure silence after the wake phrase prompts exactly once."""
        from glasses_assistant.assistant.wakeword import EndReason

        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))

        await asyncio.sleep(config.listening.silence_timeout * 3)

        assert not ctx.listening.is_listening
        assert recorder.give_ups == 1
        assert recorder.ends == [EndReason.SILENCE]
        assert recorder.questions == []

    @pytest.mark.asyncio
    async def test_silence_after_speech_no_prompt(self, config, ctx, recorder):
        """Test silence after partial speech closes quietly."""
        from glasses_assistant.assistant.wakeword import EndReason

        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        machine.handle(ctx, partial("what is"))

        await asyncio.sleep(config.listening.silence_timeout * 3)

        assert not ctx.listening.is_listening
        assert recorder.give_ups == 0
        assert recorder.ends == [EndReason.SILENCE]

    @pytest.mark.asyncio
    async def test_short_noise_is_not_speech(self, config, ctx, recorder):
        """Test text under the activity threshold does not count as speech."""
        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        machine.handle(ctx, partial("uh"))

        await asyncio.sleep(config.listening.silence_timeout * 3)

        assert recorder.give_ups == 1

    @pytest.mark.asyncio
    async def test_max_timeout(self, config_factory, ctx, recorder):
        """Test the hard upper bound closes a window that keeps hearing speech."""
        from glasses_assistant.assistant.wakeword import EndReason
        from glasses_assistant.config import ListeningConfig

        config = config_factory(
            listening=ListeningConfig(silence_timeout=0.1, max_listening_timeout=0.15)
        )
        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        for _ in range(10):
            await asyncio.sleep(0.02)
            machine.handle(ctx, partial("still talking"))

        assert not ctx.listening.is_listening
        assert recorder.timeouts == 1
        assert recorder.ends == [EndReason.TIMEOUT]
        assert recorder.give_ups == 0

    @pytest.mark.asyncio
    async def test_late_event_sees_expired_window(self, config, ctx, recorder):
        """Test timers are checked before a late transcript is used."""
        from glasses_assistant.assistant.wakeword import EndReason

        now = [100.0]
        machine = recorder.machine(config.listening, clock=lambda: now[0])
        machine.handle(ctx, final("hey mentra"))

        now[0] += config.listening.silence_timeout + 1.0
        machine.handle(ctx, final("what time is it"))

        assert recorder.questions == []
        assert recorder.ends == [EndReason.SILENCE]
        assert recorder.give_ups == 1

    @pytest.mark.asyncio
    async def test_max_timeout_wins_over_silence(self, config, ctx, recorder):
        """Test a window past both bounds closes as a timeout, without the give-up prompt."""
        from glasses_assistant.assistant.wakeword import EndReason

        now = [100.0]
        machine = recorder.machine(config.listening, clock=lambda: now[0])
        machine.handle(ctx, final("hey mentra"))

        now[0] += config.listening.max_listening_timeout + config.listening.silence_timeout + 1.0
        machine.handle(ctx, partial(""))

        assert not ctx.listening.is_listening
        assert recorder.ends == [EndReason.TIMEOUT]
        assert recorder.timeouts == 1
        assert recorder.give_ups == 0

    @pytest.mark.asyncio
    async def test_wake_phrase_while_listening_is_a_question(self, config, ctx, recorder):
        """Test repeating the wake phrase in an open window is asked, not a second wake."""
        from glasses_assistant.assistant.wakeword import EndReason

        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        machine.handle(ctx, final("hey mentra"))

        assert recorder.wakes == 1
        assert recorder.questions == ["hey mentra"]
        assert recorder.ends == [EndReason.QUESTION]

    @pytest.mark.asyncio
    async def test_cancel_closes_quietly(self, config, ctx, recorder):
        """Test cancel resets the window without prompts."""
        from glasses_assistant.assistant.wakeword import EndReason

        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        machine.cancel(ctx)

        await asyncio.sleep(config.listening.silence_timeout * 3)

        assert not ctx.listening.is_listening
        assert recorder.ends == [EndReason.CANCELLED]
        assert recorder.give_ups == 0
        assert ctx.user_id not in machine._watchdogs

    @pytest.mark.asyncio
    async def test_rewake_after_close(self, config, ctx, recorder):
        """Test a new wake phrase opens a fresh window."""
        machine = recorder.machine(config.listening)
        machine.handle(ctx, final("hey mentra"))
        machine.handle(ctx, final("first question"))
        machine.handle(ctx, final("no wake here"))
        machine.handle(ctx, final("hey mentra"))
        machine.handle(ctx, final("second question"))

        assert recorder.wakes == 2
        assert recorder.questions == ["first question", "second question"]
