"""
Configuration and settings for Glasses Assistant.
"""

import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

DEFAULT_WAKE_PHRASES = [
    # Core variants
    "hey mentra", "heyy mentra", "hey mentraaa", "hey mentra buddy", "hey there mentra",
    "hey mentra please", "hey mentra now",
    # Phonetic variants / common mishearings
    "he mentra", "hementra", "hamentra", "hem entra", "hai mentra", "hay mentra",
    "heymantra", "hey mantra", "hey mantraa", "aye mentra", "hi mentra",
    "hemantra", "huh mentra", "hae mentra", "hae mantra", "hee mentra",
    # Likely ASR misinterpretations
    "hey mentor", "hey manta", "hey mental", "a man try", "hey mancha",
    "hey mendra", "a mentor", "hey matra", "hey mentee", "aye mantra",
    # Slurred or accented variants
    "h'mentra", "aymentra", "aymenta", "hemtra", "hementa", "ammentra",
    "yamentra", "aymentrah", "haimen",
]

DEFAULT_STOP_PHRASES = [
    "stop live", "end live", "stop listening", "goodbye mentra", "bye mentra", "that's all",
]


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


class ServerConfig(BaseModel):
    """Dashboard / glasses bridge server configuration."""

    host: str = Field(
        default_factory=lambda: os.environ.get("GLASSES_ASSISTANT_HOST", "0.0.0.0")
    )
    port: int = Field(
        default_factory=lambda: int(
            os.environ.get("GLASSES_ASSISTANT_PORT", os.environ.get("PORT", "3000"))
        )
    )
    cors_origins: list[str] = Field(default=["*"])


class ListeningConfig(BaseModel):
    """Wake phrase and listening window configuration."""

    wake_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_WAKE_PHRASES))
    stop_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_STOP_PHRASES))
    silence_timeout: float = Field(
        default_factory=lambda: _env_float("GLASSES_ASSISTANT_SILENCE_TIMEOUT", 2.5)
    )
    max_listening_timeout: float = Field(default=45.0)
    voice_activity_threshold: int = Field(default=3)  # Min characters counted as speech


class SchedulerConfig(BaseModel):
    """Request scheduling configuration."""

    # "process": one request in flight across all users; "user": one per user
    domain: Literal["process", "user"] = Field(default="process")


class CaptureConfig(BaseModel):
    """Photo capture guards and timeouts."""

    min_interval: float = Field(default=2.0)  # Seconds between captures per user
    settle_delay: float = Field(default=0.1)  # Camera settle before requesting
    timeout: float = Field(default=5.0)
    max_image_bytes: int = Field(default=1_000_000)  # Encoded (base64) payload ceiling


class InferenceConfig(BaseModel):
    """Cloud inference configuration."""

    api_key: Optional[str] = Field(default_factory=lambda: os.environ.get("GEMINI_API_KEY"))
    text_model: str = Field(
        default_factory=lambda: os.environ.get("GLASSES_ASSISTANT_TEXT_MODEL", "gemini-2.5-flash-lite")
    )
    vision_model: str = Field(
        default_factory=lambda: os.environ.get("GLASSES_ASSISTANT_VISION_MODEL", "gemini-2.5-flash-lite")
    )
    text_max_tokens: int = Field(default=500)
    vision_max_tokens: int = Field(default=150)
    step_max_tokens: int = Field(default=300)
    temperature: float = Field(default=0.7)
    text_timeout: float = Field(default=6.0)
    vision_timeout: float = Field(default=8.0)
    step_timeout: float = Field(default=8.0)
    step_vision_timeout: float = Field(default=10.0)
    attempts: int = Field(default=2)
    retry_backoff: float = Field(default=0.5)


class SpeechConfig(BaseModel):
    """Text-to-speech retry and streaming configuration."""

    attempts: int = Field(default=2)
    timeout: float = Field(default=10.0)
    retry_backoff: float = Field(default=0.3)
    cancel_grace: float = Field(default=0.05)  # Wait after cancelling a prior utterance
    ack_attempts: int = Field(default=3)
    ack_timeout: float = Field(default=8.0)
    ack_retry_backoff: float = Field(default=0.5)
    display_ms: int = Field(default=4000)
    fallback_display_ms: int = Field(default=6000)
    stream_debounce: float = Field(default=0.5)
    stream_max_chars: int = Field(default=300)


class ConversationConfig(BaseModel):
    """Conversation history configuration."""

    max_entries: int = Field(default=50)  # Per user
    context_entries: int = Field(default=5)  # Entries fed back into prompts


class LiveConfig(BaseModel):
    """Live (streaming) mode configuration."""

    inactivity_timeout: float = Field(default=120.0)


class MemoryConfig(BaseModel):
    """Persistent memory configuration (disabled when db_path is unset)."""

    db_path: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.environ["GLASSES_ASSISTANT_MEMORY_DB"])
            if os.environ.get("GLASSES_ASSISTANT_MEMORY_DB")
            else None
        )
    )
    photos_dir: Optional[Path] = Field(default=None)  # Defaults to <db dir>/photos

    @property
    def enabled(self) -> bool:
        return self.db_path is not None


class Config(BaseModel):
    """Main configuration."""

    mode: Literal["standard", "live"] = Field(
        default_factory=lambda: os.environ.get("GLASSES_ASSISTANT_MODE", "standard")
    )
    step_tracking: bool = Field(
        default_factory=lambda: os.environ.get("GLASSES_ASSISTANT_STEP_TRACKING") == "1"
    )
    fallback_reply: str = Field(default="I'm ready to help! Could you try asking your question again?")

    server: ServerConfig = Field(default_factory=ServerConfig)
    listening: ListeningConfig = Field(default_factory=ListeningConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    conversations: ConversationConfig = Field(default_factory=ConversationConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)


def load_config(path: str | Path, **overrides: Any) -> Config:
    """
    Load configuration from a YAML preset.

    Unknown top-level keys are ignored; nested sections are validated by
    pydantic. Keyword overrides win over the file.

    Args:
        path: YAML file path
        **overrides: Top-level values applied on top of the file

    Returns:
        Config instance
    """
    import yaml

    yaml_path = Path(path).expanduser()
    with open(yaml_path) as f:
        raw = yaml.safe_load(f) or {}

    valid_keys = set(Config.model_fields)
    data = {k: v for k, v in raw.items() if k in valid_keys}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return Config(**data)


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def set_config(config: Config | None) -> None:
    """Replace the global configuration (used by the CLI and tests)."""
    global _config
    _config = config
