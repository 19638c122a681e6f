"""Utilities for translating stored conversation turns into pydantic-ai history."""

from __future__ import annotations

from typing import Iterable, List

from pydantic_ai import ModelMessage, ModelRequest, ModelResponse, TextPart, UserPromptPart
from pydantic_ai.messages import SystemPromptPart

from chathub.domain.models import MessageModel


def build_message_history(messages: Iterable[MessageModel]) -> List[ModelMessage]:
    history: List[ModelMessage] = []
    for item in messages:
        content = item.content.strip()
        if not content:
            continue

        if item.role == "assistant":
            history.append(ModelResponse(parts=[TextPart(content=content)]))
        elif item.role == "system":
            history.append(ModelRequest(parts=[SystemPromptPart(content=content)]))
        else:
            history.append(ModelRequest(parts=[UserPromptPart(content=content)]))

    return history


__all__ = ["build_message_history"]
