"""
Voice assistant pipeline: listening, scheduling, inference and speech.
"""

from glasses_assistant.assistant.core import GlassesAssistant
from glasses_assistant.assistant.transport import GlassesSession, PhotoData, SpeakResult

__all__ = ["GlassesAssistant", "GlassesSession", "PhotoData", "SpeakResult"]
