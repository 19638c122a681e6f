"""Image generation over the OpenAI-compatible images endpoint."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from chathub.config import ImageSettings
from chathub.logging import logger
from chathub.services.exceptions import (
    ProviderError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnauthorized,
)


class ImageProvider(Protocol):
    async def generate_image(self, *, prompt: str, credential: str) -> str: ...


class HttpImageProvider:
    def __init__(self, http_client: httpx.AsyncClient, settings: ImageSettings | None = None) -> None:
        self._client = http_client
        self._settings = settings or ImageSettings()

    async def generate_image(self, *, prompt: str, credential: str) -> str:
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("prompt must not be empty")

        url = str(self._settings.base_url).rstrip("/") + "/images/generations"
        payload = {
            "model": self._settings.model,
            "prompt": prompt,
            "n": 1,
            "size": self._settings.size,
            "quality": self._settings.quality,
        }
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {credential}"},
                timeout=self._settings.request_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("image_provider_timeout", timeout=self._settings.request_timeout_seconds)
            raise ProviderTimeout("The image provider timed out.") from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            detail = _error_detail(exc.response)
            logger.warning("image_provider_http_error", status_code=status_code, detail=detail)
            if status_code in (401, 403):
                raise ProviderUnauthorized("The API key was rejected by the image provider.") from exc
            if status_code == 429:
                raise ProviderRateLimited("The image provider is rate limiting this API key.") from exc
            raise ProviderError(
                f"Image generation failed ({status_code}): {detail}", status_code=status_code
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"Failed to contact the image provider: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("Image provider response is not valid JSON.") from exc

        image_url = _first_url(data)
        if not image_url:
            raise ProviderError("Image provider response did not contain an image URL.")
        return image_url


def _first_url(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    items = data.get("data")
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return None
    url = items[0].get("url")
    return url if isinstance(url, str) and url else None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", ""))[:500]
    return response.text[:500]


__all__ = ["HttpImageProvider", "ImageProvider"]
