"""
Error taxonomy for the assistant pipeline.

None of these escape the orchestrator or the request scheduler: they are
raised by the remote-call wrappers and absorbed into fallback tiers.
"""


class AssistantError(Exception):
    """Base class for assistant pipeline errors."""


class CaptureUnavailable(AssistantError):
    """Capture skipped: one already in flight, or requested too soon."""


class CaptureFailed(AssistantError):
    """Camera or transport error while taking a photo."""


class InferenceError(AssistantError):
    """Base class for remote inference failures (retryable)."""


class InferenceTimeout(InferenceError):
    """Remote call lost the race against its timer."""


class InferenceEmpty(InferenceError):
    """Remote call returned blank text."""


class InferenceFailed(InferenceError):
    """Transport or auth error from the inference service."""


class SpeechFailed(AssistantError):
    """Text-to-speech attempt failed or timed out."""


class OperationCancelled(AssistantError):
    """Superseded by a newer operation of the same kind for the same user."""
