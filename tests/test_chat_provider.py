"""Chat adapter: history translation, model wiring and error mapping."""

from __future__ import annotations

import asyncio

import pytest
from pydantic_ai import ModelRequest, ModelResponse, TextPart, UserPromptPart
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.messages import SystemPromptPart
from pydantic_ai.models.function import AgentInfo, FunctionModel
from pydantic_ai.models.openai import OpenAIChatModel

from chathub.config import LLMSettings
from chathub.domain.models import MessageModel
from chathub.providers import chat as chat_module
from chathub.providers.chat import PydanticAIChatProvider
from chathub.providers.history import build_message_history
from chathub.providers.model_factory import build_chat_model
from chathub.services.exceptions import (
    ProviderError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnauthorized,
)


def _history() -> list[MessageModel]:
    return [
        MessageModel(role="system", content="Earlier summary"),
        MessageModel(role="user", content="Hi"),
        MessageModel(role="assistant", content="Hello!"),
        MessageModel(role="user", content="   "),
    ]


def test_build_message_history_maps_roles():
    history = build_message_history(_history())

    assert len(history) == 3
    assert isinstance(history[0], ModelRequest)
    assert isinstance(history[0].parts[0], SystemPromptPart)
    assert isinstance(history[1].parts[0], UserPromptPart)
    assert isinstance(history[2], ModelResponse)
    assert history[2].parts[0].content == "Hello!"


def test_build_chat_model_uses_caller_key():
    model = build_chat_model("gpt-4o-mini", "sk-test", LLMSettings())

    assert isinstance(model, OpenAIChatModel)
    assert model.model_name == "gpt-4o-mini"
    with pytest.raises(ValueError):
        build_chat_model("gpt-4o-mini", "", LLMSettings())


@pytest.mark.asyncio
async def test_generate_reply_sends_history_and_prompt():
    seen: dict = {}
    built: list[tuple[str, str]] = []

    def _reply(messages, info: AgentInfo) -> ModelResponse:
        seen["messages"] = messages
        seen["max_tokens"] = (info.model_settings or {}).get("max_tokens")
        return ModelResponse(parts=[TextPart(content="  Sure thing.  ")])

    def _builder(model_name: str, credential: str) -> FunctionModel:
        built.append((model_name, credential))
        return FunctionModel(_reply)

    provider = PydanticAIChatProvider(LLMSettings(max_tokens=321), model_builder=_builder)
    reply = await provider.generate_reply(
        system_prompt="You are a pirate.",
        history=_history(),
        user_message="Where is the treasure?",
        model="gpt-4o-mini",
        credential="sk-user",
    )

    assert reply == "Sure thing."
    assert built == [("gpt-4o-mini", "sk-user")]
    assert seen["max_tokens"] == 321
    last_request = seen["messages"][-1]
    assert isinstance(last_request, ModelRequest)
    assert last_request.parts[-1].content == "Where is the treasure?"
    assert last_request.instructions == "You are a pirate."
    assert any(isinstance(message, ModelResponse) for message in seen["messages"])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (401, ProviderUnauthorized),
        (403, ProviderUnauthorized),
        (429, ProviderRateLimited),
        (500, ProviderError),
    ],
)
async def test_http_errors_are_mapped(status_code, expected):
    def _fail(messages, info):
        raise ModelHTTPError(status_code=status_code, model_name="gpt-4o-mini", body=None)

    provider = PydanticAIChatProvider(model_builder=lambda name, key: FunctionModel(_fail))

    with pytest.raises(expected) as excinfo:
        await provider.generate_reply(
            system_prompt="",
            history=[],
            user_message="hello",
            model="gpt-4o-mini",
            credential="sk-user",
        )
    assert excinfo.value.status_code == (401 if status_code == 403 else status_code)


@pytest.mark.asyncio
async def test_slow_model_times_out(monkeypatch):
    class SlowAgent:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def run(self, *args, **kwargs):
            await asyncio.sleep(5)

    monkeypatch.setattr(chat_module, "Agent", SlowAgent)
    settings = LLMSettings.model_construct(request_timeout_seconds=0.05, max_tokens=10, temperature=0.0)
    provider = PydanticAIChatProvider(settings, model_builder=lambda name, key: object())

    with pytest.raises(ProviderTimeout):
        await provider.generate_reply(
            system_prompt="",
            history=[],
            user_message="hello",
            model="gpt-4o-mini",
            credential="sk-user",
        )


@pytest.mark.asyncio
async def test_empty_reply_is_a_provider_error():
    provider = PydanticAIChatProvider(
        model_builder=lambda name, key: FunctionModel(
            lambda messages, info: ModelResponse(parts=[TextPart(content="   ")])
        )
    )

    with pytest.raises(ProviderError):
        await provider.generate_reply(
            system_prompt="",
            history=[],
            user_message="hello",
            model="gpt-4o-mini",
            credential="sk-user",
        )
