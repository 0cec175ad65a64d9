"""Builds the language model gateway selected by ``LLM_PROVIDER``."""

from __future__ import annotations

import logging

from agents.errors import ConfigurationError
from config.settings import get_settings
from llm.base import BaseLLMClient

LOGGER = logging.getLogger(__name__)


def build_llm_client() -> BaseLLMClient:
    settings = get_settings()
    LOGGER.info("Using LLM provider %s (model %s)", settings.llm_provider, settings.llm_model)

    if settings.llm_provider == "self_hosted_vllm":
        from llm.vllm_client import VLLMClient

        return VLLMClient()
    if settings.llm_provider == "openai":
        from llm.openai_client import OpenAIClient

        return OpenAIClient()
    raise ConfigurationError(f"Unsupported llm_provider: {settings.llm_provider}")
