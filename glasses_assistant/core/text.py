"""
Text processing utilities for spoken replies.

Keeps TTS output short and speakable: markdown is stripped, long replies
are cut at a sentence (or word) boundary, and timestamps are rendered as
relative "time ago" labels for prompt context.
"""

import re
import time
from typing import Optional


def split_into_sentences(text: str) -> list[str]:
    """
    Split text into sentences.

    Args:
        text: Text to split

    Returns:
        List of non-empty sentences
    """
    # Normalize: add space after sentence-ending punctuation if missing
    text = re.sub(r"([.!?])([A-Z])", r"\1 \2", text)

    sentences = re.split(r"(?<=[.!?])\s+", text.strip())
    return [s.strip() for s in sentences if s.strip()]


def truncate_for_speech(text: str, max_chars: int = 300, min_sentence_ratio: float = 0.3) -> str:
    """
    Truncate text so it can be spoken with bounded latency.

    The cut is made at the last sentence boundary inside the limit. If no
    sentence ends within a reasonable prefix (``min_sentence_ratio`` of the
    limit), the cut falls back to the last word boundary, and as a last
    resort to a hard cut.

    Args:
        text: Text to truncate
        max_chars: Length ceiling
        min_sentence_ratio: Minimum fraction of ``max_chars`` a sentence
            prefix must cover to be used

    Returns:
        Text no longer than ``max_chars``
    """
    text = text.strip()
    if len(text) <= max_chars:
        return text

    prefix = ""
    for sentence in split_into_sentences(text):
        candidate = f"{prefix} {sentence}" if prefix else sentence
        if len(candidate) > max_chars:
            break
        prefix = candidate

    if prefix and len(prefix) >= int(max_chars * min_sentence_ratio):
        return prefix

    window = text[:max_chars]
    space = window.rfind(" ")
    if space > 0:
        return window[:space].rstrip(" ,;:-")

    return window


def clean_text_for_speech(text: str) -> str:
    """
    Clean model output for better TTS.

    Args:
        text: Raw text (may contain markdown)

    Returns:
        Cleaned text suitable for speech synthesis
    """
    # Remove code blocks
    text = re.sub(r"```[\s\S]*?```", "", text)

    # Remove headers
    text = re.sub(r"#{1,6}\s*", "", text)

    # Remove bold / italic
    text = re.sub(r"\*\*(.+?)\*\*", r"\1", text)
    text = re.sub(r"\*(.+?)\*", r"\1", text)

    # Remove inline code
    text = re.sub(r"`(.+?)`", r"\1", text)

    # Remove links, keep text
    text = re.sub(r"\[(.+?)\]\(.+?\)", r"\1", text)

    # Remove list bullets
    text = re.sub(r"^\s*[-*]\s+", "", text, flags=re.MULTILINE)

    # Normalize whitespace
    text = re.sub(r"\s+", " ", text)

    return text.strip()


def time_ago(timestamp: float, now: Optional[float] = None) -> str:
    """
    Human-readable relative time label.

    Args:
        timestamp: Unix time in seconds
        now: Reference time (defaults to the current time)

    Returns:
        Label such as "just now", "5m ago", "yesterday"
    """
    if now is None:
        now = time.time()

    diff = max(0.0, now - timestamp)
    minutes = int(diff // 60)
    hours = int(diff // 3600)
    days = int(diff // 86400)

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days}d ago"
    return "over a week ago"
