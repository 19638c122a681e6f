"""Chat completions through pydantic-ai, mapped onto the provider error taxonomy."""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol, Sequence

import openai
from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError, ModelHTTPError
from pydantic_ai.models import Model

from chathub.config import LLMSettings
from chathub.domain.models import MessageModel
from chathub.logging import logger
from chathub.providers.history import build_message_history
from chathub.providers.model_factory import build_chat_model
from chathub.services.exceptions import (
    ProviderError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnauthorized,
)

ModelBuilder = Callable[[str, str], Model]


class ChatProvider(Protocol):
    async def generate_reply(
        self,
        *,
        system_prompt: str,
        history: Sequence[MessageModel],
        user_message: str,
        model: str,
        credential: str,
    ) -> str: ...


class PydanticAIChatProvider:
    def __init__(
        self,
        settings: LLMSettings | None = None,
        *,
        model_builder: ModelBuilder | None = None,
    ) -> None:
        self.settings = settings or LLMSettings()
        self._model_builder = model_builder or (
            lambda model_name, credential: build_chat_model(model_name, credential, self.settings)
        )

    async def generate_reply(
        self,
        *,
        system_prompt: str,
        history: Sequence[MessageModel],
        user_message: str,
        model: str,
        credential: str,
    ) -> str:
        if not user_message:
            raise ValueError("user_message must not be empty")

        agent = Agent(
            self._model_builder(model, credential),
            output_type=str,
            instructions=system_prompt or None,
        )
        timeout = self.settings.request_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                result = await agent.run(
                    user_message,
                    message_history=build_message_history(history),
                    model_settings={
                        "max_tokens": self.settings.max_tokens,
                        "temperature": self.settings.temperature,
                    },
                )
        except TimeoutError as exc:
            logger.warning("chat_provider_timeout", model=model, timeout=timeout)
            raise ProviderTimeout(f"The model did not answer within {timeout} seconds.") from exc
        except ModelHTTPError as exc:
            raise _from_status(exc.status_code, model) from exc
        except openai.APITimeoutError as exc:
            logger.warning("chat_provider_timeout", model=model, timeout=timeout)
            raise ProviderTimeout("The model provider timed out.") from exc
        except openai.APIStatusError as exc:
            raise _from_status(exc.status_code, model) from exc
        except (openai.APIError, AgentRunError) as exc:
            logger.warning("chat_provider_failed", model=model, error=str(exc))
            raise ProviderError(f"The model provider failed: {exc}") from exc

        reply = result.output.strip()
        if not reply:
            raise ProviderError("The model returned an empty reply.")
        return reply


def _from_status(status_code: int, model: str) -> ProviderError | ProviderUnauthorized | ProviderRateLimited:
    logger.warning("chat_provider_http_error", model=model, status_code=status_code)
    if status_code in (401, 403):
        return ProviderUnauthorized("The API key was rejected by the model provider.")
    if status_code == 429:
        return ProviderRateLimited("The model provider is rate limiting this API key.")
    return ProviderError(f"The model provider answered with HTTP {status_code}.", status_code=status_code)


__all__ = ["ChatProvider", "ModelBuilder", "PydanticAIChatProvider"]
