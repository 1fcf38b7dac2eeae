"""
Core utilities for text cleanup, async cancellation and errors.
"""

from glasses_assistant.core.aio import CancelToken, TokenSlots
from glasses_assistant.core.errors import AssistantError, OperationCancelled
from glasses_assistant.core.text import clean_text_for_speech, truncate_for_speech

__all__ = [
    "AssistantError",
    "CancelToken",
    "OperationCancelled",
    "TokenSlots",
    "clean_text_for_speech",
    "truncate_for_speech",
]
