"""
Cloud inference backends for the assistant.

Supports:
- Google Gemini (text and vision, via google-genai)

Backends are plain async callables from the orchestrator's point of view:
timeouts, retries and fallbacks are applied by the caller.
"""

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from glasses_assistant.assistant.transport import PhotoData
from glasses_assistant.config import InferenceConfig
from glasses_assistant.core.errors import InferenceEmpty, InferenceError, InferenceFailed

logger = logging.getLogger(__name__)


class InferenceBackend(ABC):
    """Abstract base class for inference backends."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        image: Optional[PhotoData] = None,
    ) -> str:
        """
        Generate a reply.

        Args:
            prompt: Full prompt text
            max_tokens: Output token ceiling
            temperature: Sampling temperature
            image: Optional photo for vision models

        Returns:
            Non-empty reply text

        Raises:
            InferenceEmpty: If the model returned blank text
            InferenceFailed: On transport or auth errors
        """
        pass

    async def stream(self, prompt: str, max_tokens: int, temperature: float) -> AsyncIterator[str]:
        """
        Stream a reply as text chunks.

        Default implementation yields the whole ``generate`` result once.
        """
        yield await self.generate(prompt, max_tokens, temperature)


class GeminiBackend(InferenceBackend):
    """
    Google Gemini via the google-genai SDK.

    Requires GEMINI_API_KEY (or ``InferenceConfig.api_key``).
    """

    def __init__(self, config: InferenceConfig):
        try:
            from google import genai
            from google.genai import types
        except ImportError as e:
            raise ImportError(
                "google-genai not installed. Install with: pip install google-genai"
            ) from e

        if not config.api_key:
            raise ValueError("GEMINI_API_KEY is not set")

        self.config = config
        self._types = types
        self.client = genai.Client(api_key=config.api_key)
        logger.info(
            "Gemini backend ready (text=%s, vision=%s)", config.text_model, config.vision_model
        )

    def _generation_config(self, max_tokens: int, temperature: float):
        return self._types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
        )

    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        temperature: float,
        image: Optional[PhotoData] = None,
    ) -> str:
        contents: list = [prompt]
        model = self.config.text_model
        if image is not None:
            contents.append(self._types.Part.from_bytes(data=image.data, mime_type=image.mime_type))
            model = self.config.vision_model

        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=self._generation_config(max_tokens, temperature),
            )
        except Exception as e:
            raise InferenceFailed(f"Gemini request failed: {e}") from e

        text = (response.text or "").strip()
        if not text:
            raise InferenceEmpty("Empty response from Gemini")
        return text

    async def stream(self, prompt: str, max_tokens: int, temperature: float) -> AsyncIterator[str]:
        try:
            response_stream = await self.client.aio.models.generate_content_stream(
                model=self.config.text_model,
                contents=[prompt],
                config=self._generation_config(max_tokens, temperature),
            )
            async for chunk in response_stream:
                if chunk.text:
                    yield chunk.text
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceFailed(f"Gemini stream failed: {e}") from e


def create_backend(config: InferenceConfig, backend: str = "gemini") -> InferenceBackend:
    """
    Factory function to create an inference backend.

    Args:
        config: Inference configuration
        backend: Backend name ("gemini")

    Returns:
        InferenceBackend instance
    """
    if backend == "gemini":
        return GeminiBackend(config)
    raise ValueError(f"Unknown inference backend: {backend}")
