"""
Glasses transport boundary.

The assistant never talks to the device directly; it goes through a
``GlassesSession`` that exposes the camera, speaker and display of one
connected user. Concrete sessions live in ``glasses_assistant.server``.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhotoData:
    """A captured photo."""

    mime_type: str
    data: bytes

    @property
    def encoded_size(self) -> int:
        """Length of the base64 payload sent to the vision model."""
        return 4 * ((len(self.data) + 2) // 3)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @classmethod
    def from_base64(cls, payload: str, mime_type: str = "image/jpeg") -> "PhotoData":
        return cls(mime_type=mime_type, data=base64.b64decode(payload))


@dataclass
class SpeakResult:
    """Result of a text-to-speech request."""

    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionEvent:
    """A partial or final speech-to-text result."""

    text: str
    is_final: bool

    @classmethod
    def from_payload(cls, payload: Any) -> "TranscriptionEvent":
        """
        Parse a transcription payload.

        Accepts ``is_final`` or ``isFinal`` keys.

        Raises:
            ValueError: If the payload is malformed
        """
        if not isinstance(payload, dict):
            raise ValueError(f"transcription payload must be an object, got {type(payload).__name__}")

        text = payload.get("text")
        if not isinstance(text, str):
            raise ValueError("transcription payload has no text")

        is_final = payload.get("is_final", payload.get("isFinal", False))
        if not isinstance(is_final, bool):
            raise ValueError("transcription is_final must be a boolean")

        return cls(text=text, is_final=is_final)


class GlassesSession(ABC):
    """Abstract connection to one user's glasses."""

    def __init__(self, session_id: str, user_id: str):
        self.session_id = session_id
        self.user_id = user_id

    @abstractmethod
    async def request_photo(self) -> PhotoData:
        """
        Take a photo with the glasses camera.

        Raises:
            Exception: On camera or transport failure
        """
        pass

    @abstractmethod
    async def speak(self, text: str) -> SpeakResult:
        """Speak text through the glasses speaker."""
        pass

    @abstractmethod
    def _show_text(self, text: str, duration_ms: int) -> None:
        """Device-specific display call (may raise)."""
        pass

    def show_text(self, text: str, duration_ms: int = 3000) -> bool:
        """
        Show text on the display. Fire-and-forget: failures are logged.

        Returns:
            True if the display call went through
        """
        try:
            self._show_text(text, duration_ms)
        except Exception as e:
            logger.warning("Failed to show text for user %s: %s", self.user_id, e)
            return False
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(user={self.user_id!r}, session={self.session_id!r})"
