"""Helpers for building the OpenAI-compatible chat model for one request."""

from __future__ import annotations

from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from chathub.config import LLMSettings


def build_chat_model(model_name: str, credential: str, llm_settings: LLMSettings) -> OpenAIChatModel:
    """Bind ``model_name`` to the caller's own API key.

    Each request may carry a different key, so the provider is built per call
    instead of being shared across users.
    """

    if not credential:
        raise ValueError("An API key is required to call the chat provider.")
    provider = OpenAIProvider(
        api_key=credential,
        base_url=str(llm_settings.base_url) if llm_settings.base_url else None,
    )
    return OpenAIChatModel(model_name, provider=provider)


__all__ = ["build_chat_model"]
