"""
Per-user conversation history.

Used both for the dashboard (via a sanitized snapshot that never carries
photo bytes) and as context fed back into follow-up prompts.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from glasses_assistant.assistant.transport import PhotoData
from glasses_assistant.core.text import time_ago

logger = logging.getLogger(__name__)

NO_HISTORY = "This is the start of our conversation."


class ConversationStatus(Enum):
    """Conversation entry lifecycle."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


def new_id(prefix: str) -> str:
    """Unique id such as ``conv_1718000000000_k3j9x2a1q``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


@dataclass
class ConversationEntry:
    """One question/answer exchange."""

    user_id: str
    question: str
    id: str = field(default_factory=lambda: new_id("conv"))
    timestamp: float = field(default_factory=time.time)
    response: str = ""
    has_photo: bool = False
    photo: Optional[PhotoData] = None
    processing_time_ms: int = 0
    status: ConversationStatus = ConversationStatus.PROCESSING
    category: Optional[str] = None
    location: Optional[dict[str, Any]] = None

    # Step tracking linkage
    step_number: Optional[int] = None
    project_id: Optional[str] = None
    is_step_entry: bool = False

    def attach_photo(self, photo: PhotoData) -> None:
        self.photo = photo
        self.has_photo = True

    def complete(self, response: str, elapsed_ms: int) -> None:
        self._finish(ConversationStatus.COMPLETED, response, elapsed_ms)

    def fail(self, response: str, elapsed_ms: int) -> None:
        self._finish(ConversationStatus.ERROR, response, elapsed_ms)

    def _finish(self, status: ConversationStatus, response: str, elapsed_ms: int) -> None:
        if self.status is not ConversationStatus.PROCESSING:
            raise ValueError(
                f"Conversation {self.id} already {self.status.value}, cannot become {status.value}"
            )
        self.status = status
        self.response = response
        self.processing_time_ms = elapsed_ms

    def to_public(self) -> dict[str, Any]:
        """Sanitized projection for the dashboard (no photo bytes)."""
        return {
            "id": self.id,
            "timestamp": int(self.timestamp * 1000),
            "question": self.question,
            "response": self.response,
            "has_photo": self.has_photo,
            "photo_url": f"/api/photo/{self.id}" if self.has_photo else None,
            "processing_time_ms": self.processing_time_ms,
            "status": self.status.value,
            "category": self.category,
            "location": self.location,
            "step_number": self.step_number,
            "project_id": self.project_id,
            "is_step_entry": self.is_step_entry,
        }


class ConversationStore:
    """Bounded, most-recent-first conversation history per user."""

    def __init__(self, max_entries: int = 50):
        self.max_entries = max_entries
        self._entries: dict[str, list[ConversationEntry]] = {}

    def append(self, entry: ConversationEntry) -> None:
        """Insert at the head; evict the oldest entries beyond the cap."""
        entries = self._entries.setdefault(entry.user_id, [])
        entries.insert(0, entry)
        if len(entries) > self.max_entries:
            del entries[self.max_entries:]

    def entries(self, user_id: str) -> list[ConversationEntry]:
        return list(self._entries.get(user_id, []))

    def find(self, user_id: str, conversation_id: str) -> Optional[ConversationEntry]:
        for entry in self._entries.get(user_id, []):
            if entry.id == conversation_id:
                return entry
        return None

    def users(self) -> list[str]:
        return list(self._entries)

    def recent_completed(
        self,
        user_id: str,
        limit: int = 5,
        exclude_question: Optional[str] = None,
    ) -> list[ConversationEntry]:
        """Most recent completed entries, newest first."""
        completed = [
            e for e in self._entries.get(user_id, [])
            if e.status is ConversationStatus.COMPLETED
        ][:limit]
        if exclude_question is not None:
            completed = [e for e in completed if e.question != exclude_question]
        return completed

    def build_context(
        self,
        user_id: str,
        exclude_question: Optional[str] = None,
        limit: int = 5,
        now: Optional[float] = None,
    ) -> str:
        """
        Format recent completed exchanges for a follow-up prompt.

        Entries still processing or in error are never included.

        Args:
            user_id: User whose history to use
            exclude_question: Drop entries asking exactly this (the current question)
            limit: Number of recent entries to consider
            now: Reference time for the "time ago" labels

        Returns:
            Context block, oldest exchange first
        """
        recent = self.recent_completed(user_id, limit, exclude_question)
        if not recent:
            return NO_HISTORY

        lines = [
            f'[{time_ago(e.timestamp, now)}] User: "{e.question}" -> AI: "{e.response}"'
            for e in reversed(recent)
        ]
        return (
            "Recent conversation history:\n"
            + "\n".join(lines)
            + "\n\nUse this context to provide relevant, personalized responses."
        )

    def snapshot(self, user_id: str) -> list[dict[str, Any]]:
        return [e.to_public() for e in self._entries.get(user_id, [])]
