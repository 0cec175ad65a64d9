"""Streaming text-to-speech for the assistant voice."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from agents.errors import ConfigurationError, SynthesisError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


class BaseSynthesizer(ABC):
    """Interface for all text-to-speech synthesizers."""

    output_format: str

    @abstractmethod
    def stream_synthesize(self, text: str) -> AsyncIterator[bytes]:
        """Yield encoded audio bytes for ``text`` as they arrive."""


class ElevenLabsSynthesizer(BaseSynthesizer):
    """ElevenLabs streaming text-to-speech over HTTP."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        if not settings.elevenlabs_api_key:
            raise ConfigurationError("ELEVENLABS_API_KEY must be configured for synthesis.")

        self._api_key = settings.elevenlabs_api_key
        self._base_url = settings.elevenlabs_base_url.rstrip("/")
        self._voice_id = settings.elevenlabs_voice_id
        self._model = settings.elevenlabs_model
        self.output_format = settings.elevenlabs_output_format
        self._client = http_client

    def _request_kwargs(self, text: str) -> dict:
        return {
            "params": {
                "output_format": self.output_format,
                "optimize_streaming_latency": "3",
            },
            "headers": {
                "xi-api-key": self._api_key,
                "Accept": "audio/mpeg" if self.output_format.startswith("mp3_") else "application/octet-stream",
            },
            "json": {
                "text": text,
                "model_id": self._model,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            },
        }

    async def stream_synthesize(self, text: str) -> AsyncIterator[bytes]:
        url = f"{self._base_url}/v1/text-to-speech/{self._voice_id}/stream"
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=60.0))
        try:
            async with client.stream("POST", url, **self._request_kwargs(text)) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    raise SynthesisError(f"ElevenLabs returned {response.status_code}: {body[:200]}")
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            LOGGER.error("ElevenLabs request failed: %s", exc)
            raise SynthesisError(f"ElevenLabs request failed: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()


def build_synthesizer() -> BaseSynthesizer:
    """Factory returning the configured synthesizer."""

    return ElevenLabsSynthesizer()
