"""
Shared fixtures: a scripted glasses session, a scripted inference backend
and a configuration with millisecond-scale timers.
"""

import asyncio
from typing import Optional

import pytest

from glasses_assistant.assistant.llm import InferenceBackend
from glasses_assistant.assistant.transport import GlassesSession, PhotoData, SpeakResult
from glasses_assistant.config import (
    CaptureConfig,
    Config,
    InferenceConfig,
    ListeningConfig,
    MemoryConfig,
    SpeechConfig,
)

JPEG = PhotoData(mime_type="image/jpeg", data=b"\xff\xd8\xff\xe0fake-jpeg-bytes")


class FakeGlassesSession(GlassesSession):
    """Records everything sent to the glasses."""

    def __init__(self, user_id: str = "user@example.com", session_id: Optional[str] = None):
        super().__init__(session_id or f"session-{user_id}", user_id)
        self.photo: PhotoData = JPEG
        self.photo_error: Optional[Exception] = None
        self.photo_delay = 0.0
        self.photo_requests = 0

        self.speak_delay = 0.0
        self.speak_results: list[SpeakResult] = []
        self.speak_calls: list[str] = []
        self.spoken: list[str] = []

        self.display_failures = 0
        self.displayed: list[tuple[str, int]] = []

    async def request_photo(self) -> PhotoData:
        self.photo_requests += 1
        if self.photo_delay:
            await asyncio.sleep(self.photo_delay)
        if self.photo_error is not None:
            raise self.photo_error
        return self.photo

    async def speak(self, text: str) -> SpeakResult:
        self.speak_calls.append(text)
        if self.speak_delay:
            await asyncio.sleep(self.speak_delay)
        result = self.speak_results.pop(0) if self.speak_results else SpeakResult(True)
        if result.success:
            self.spoken.append(text)
        return result

    def _show_text(self, text: str, duration_ms: int) -> None:
        if self.display_failures:
            self.display_failures -= 1
            raise RuntimeError("display unavailable")
        self.displayed.append((text, duration_ms))

    @property
    def displayed_texts(self) -> list[str]:
        return [text for text, _ in self.displayed]


class FakeBackend(InferenceBackend):
    """Inference backend with scripted replies, errors and delays."""

    def __init__(self):
        self.text_reply = "Here is a text answer."
        self.vision_reply = "I see a desk."
        self.text_error: Optional[Exception] = None
        self.vision_error: Optional[Exception] = None
        self.text_delay = 0.0
        self.vision_delay = 0.0
        self.chunks: list[str] = ["Hello ", "there. ", "How can I help?"]
        self.chunk_delay = 0.0
        self.stream_errors: list[Exception] = []  # Raised by successive stream calls
        self.stall_after: Optional[int] = None  # Chunk index the stream hangs before
        self.stall = 0.0
        self.calls: list[str] = []
        self.prompts: list[str] = []

    async def generate(self, prompt, max_tokens, temperature, image=None) -> str:
        kind = "vision" if image is not None else "text"
        self.calls.append(kind)
        self.prompts.append(prompt)

        delay = self.vision_delay if image is not None else self.text_delay
        if delay:
            await asyncio.sleep(delay)

        error = self.vision_error if image is not None else self.text_error
        if error is not None:
            raise error
        return self.vision_reply if image is not None else self.text_reply

    async def stream(self, prompt, max_tokens, temperature):
        self.calls.append("stream")
        self.prompts.append(prompt)
        if self.stream_errors:
            raise self.stream_errors.pop(0)
        for i, chunk in enumerate(self.chunks):
            if i == self.stall_after:
                await asyncio.sleep(self.stall)
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            yield chunk

    def count(self, kind: str) -> int:
        return self.calls.count(kind)


def make_config(**overrides) -> Config:
    """Config with fast timers and no persistent memory."""
    values = dict(
        mode="standard",
        step_tracking=False,
        listening=ListeningConfig(silence_timeout=0.1, max_listening_timeout=1.0),
        capture=CaptureConfig(min_interval=0.0, settle_delay=0.0, timeout=0.2),
        inference=InferenceConfig(
            api_key="test-key",
            text_timeout=0.2,
            vision_timeout=0.2,
            step_timeout=0.2,
            step_vision_timeout=0.2,
            retry_backoff=0.0,
        ),
        speech=SpeechConfig(
            timeout=0.3,
            retry_backoff=0.0,
            cancel_grace=0.0,
            ack_timeout=0.3,
            ack_retry_backoff=0.0,
            stream_debounce=0.02,
        ),
        memory=MemoryConfig(db_path=None),
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def session():
    return FakeGlassesSession()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def ctx(session):
    from glasses_assistant.assistant.session import UserContext

    return UserContext(user_id=session.user_id, session=session)


@pytest.fixture
def config_factory():
    """Build a fast config with overrides."""
    return make_config


@pytest.fixture
def session_factory():
    """Build extra glasses sessions (e.g. for a second user)."""
    return FakeGlassesSession
