"""OpenAI (or OpenAI-compatible) chat client wrapper."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable

from openai import AsyncOpenAI, OpenAIError

from agents.errors import ConfigurationError, GenerationError
from config.settings import get_settings
from llm.base import BaseLLMClient

LOGGER = logging.getLogger(__name__)

# Spoken replies are short; classification output is a label or a small JSON object.
CHAT_MAX_TOKENS = 512
STREAM_MAX_TOKENS = 256


class OpenAIClient(BaseLLMClient):
    """Chat Completions through ``AsyncOpenAI``; ``LLM_ENDPOINT`` points it at a compatible server."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.llm_api_key:
            raise ConfigurationError("LLM_API_KEY must be configured for the OpenAI client.")

        self._client = AsyncOpenAI(
            api_key=settings.llm_api_key,
            base_url=settings.llm_endpoint or None,
            timeout=30.0,
        )
        self._model = settings.llm_model

    async def chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=list(messages),
                temperature=temperature,
                max_tokens=CHAT_MAX_TOKENS,
            )
        except OpenAIError as exc:
            raise GenerationError(f"OpenAI chat request failed: {exc}") from exc
        if not response.choices:
            raise GenerationError("OpenAI response contains no choices.")
        return response.choices[0].message.content or ""

    async def stream_chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> AsyncIterator[str]:
        try:
            stream = await self._client.chat.completions.create(
                model=self._model,
                messages=list(messages),
                temperature=temperature,
                max_tokens=STREAM_MAX_TOKENS,
                stream=True,
            )
            async for event in stream:
                if not event.choices:
                    continue
                token = event.choices[0].delta.content
                if token:
                    yield token
        except OpenAIError as exc:
            LOGGER.error("OpenAI token stream broke off: %s", exc)
            raise GenerationError(f"OpenAI stream failed: {exc}") from exc
