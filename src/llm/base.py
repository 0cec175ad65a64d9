"""Shared abstractions for language model clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable


class BaseLLMClient(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> str:
        """Return a chat-style completion."""

    async def stream_chat(
        self,
        messages: Iterable[dict[str, str]],
        *,
        temperature: float = 0.1,
    ) -> AsyncIterator[str]:
        """Yield completion tokens as they are produced.

        Providers without native streaming yield the whole reply once.
        """

        yield await self.chat(messages, temperature=temperature)

    async def classify(self, prompt: str, *, temperature: float = 0.0) -> str:
        """Run a single-prompt request and return the raw text."""

        return await self.chat([{"role": "user", "content": prompt}], temperature=temperature)

    def stream_generate(self, prompt: str, *, temperature: float = 0.4) -> AsyncIterator[str]:
        """Lazy, non-restartable token stream for one prompt.

        Consumers cancel by ceasing iteration.
        """

        return self.stream_chat([{"role": "user", "content": prompt}], temperature=temperature)
