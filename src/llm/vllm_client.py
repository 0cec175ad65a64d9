"""Client for self-hosted vLLM or TGI compatible inference endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable

import httpx

from agents.errors import ConfigurationError, GenerationError
from config.settings import get_settings
from llm.base import BaseLLMClient

LOGGER = logging.getLogger(__name__)


class VLLMClient(BaseLLMClient):
    """Minimal client for a self-hosted inference server."""

    def __init__(self) -> None:
        settings = get_settings()
        if not settings.llm_endpoint:
            raise ConfigurationError("LLM_ENDPOINT must be configured for the self-hosted LLM.")

        self._endpoint = settings.llm_endpoint.rstrip("/")
        self._model = settings.llm_model
        self._api_key = settings.llm_api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(self, messages: Iterable[dict[str, str]], temperature: float, **extra) -> dict:
        return {
            "model": self._model,
            "messages": list(messages),
            "temperature": temperature,
            "max_tokens": 512,
            **extra,
        }

    async def chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> str:
        try:
            async with httpx.AsyncClient(timeout=90) as client:
                response = await client.post(
                    f"{self._endpoint}/v1/chat/completions",
                    json=self._payload(messages, temperature),
                    headers=self._headers(),
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GenerationError(f"Self-hosted LLM request failed: {exc}") from exc

        choices: list[dict] = response.json().get("choices", [])
        if not choices:
            raise GenerationError("LLM response contains no choices.")
        return choices[0]["message"]["content"]

    async def stream_chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> AsyncIterator[str]:
        payload = self._payload(messages, temperature, stream=True)
        try:
            async with httpx.AsyncClient(timeout=90) as client:
                async with client.stream(
                    "POST",
                    f"{self._endpoint}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        # Server-sent events: "data: {...}" lines, terminated by "data: [DONE]".
                        if not line.startswith("data:"):
                            continue
                        data = line.removeprefix("data:").strip()
                        if data == "[DONE]":
                            return
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            LOGGER.debug("Skipping malformed stream event: %s", data)
                            continue
                        choices = event.get("choices") or []
                        if not choices:
                            continue
                        token = (choices[0].get("delta") or {}).get("content")
                        if token:
                            yield token
        except httpx.HTTPError as exc:
            raise GenerationError(f"Self-hosted LLM stream failed: {exc}") from exc
