"""Runtime configuration based on environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseModel):
    data_dir: Path = Field(default=Path("./data"), description="Root directory for JSON documents.")
    users_document: str = "users"
    rate_limits_document: str = "rate_limits"
    lock_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    lock_poll_interval_seconds: float = Field(default=0.02, gt=0, le=1)


class RateLimitSettings(BaseModel):
    hourly: dict[str, int] = Field(
        default_factory=lambda: {
            "register": 5,
            "verifyOtp": 10,
            "forgotPassword": 3,
            "resetPassword": 5,
            "createBot": 20,
            "sendMessage": 50,
            "exportConversation": 20,
            "initiatePayment": 10,
        }
    )
    daily: dict[str, int] = Field(default_factory=lambda: {"generateImage": 10})
    login_max_failures: int = Field(default=3, ge=1)
    login_window_seconds: int = Field(default=15 * 60, ge=60)
    cleanup_interval_seconds: int = Field(default=3600, ge=60)
    retention_seconds: int = Field(default=24 * 3600, ge=3600)


class LLMSettings(BaseModel):
    default_model: str = "gpt-4o-mini"
    api_key: SecretStr | None = Field(
        default=None,
        description="Fallback credential used when a request does not carry its own key.",
    )
    base_url: HttpUrl | None = None
    request_timeout_seconds: int = Field(default=60, ge=5, le=600)
    max_tokens: int = Field(default=5000, ge=1)
    temperature: float = Field(default=0.7, ge=0, le=2)


class ImageSettings(BaseModel):
    base_url: HttpUrl = Field(default="https://api.openai.com/v1/")
    model: str = "dall-e-3"
    size: str = "1024x1024"
    quality: Literal["standard", "hd"] = "standard"
    request_timeout_seconds: int = Field(default=90, ge=5, le=600)


class SessionSettings(BaseModel):
    secret_key: SecretStr = SecretStr("change-me")
    cookie_name: str = "chathub_session"
    ttl_seconds: int = Field(default=7 * 24 * 3600, ge=60)
    secure_cookie: bool = False


class AuthSettings(BaseModel):
    otp_digits: int = Field(default=6, ge=4, le=10)
    otp_ttl_minutes: int = Field(default=15, ge=1, le=24 * 60)
    password_hash_rounds: int = Field(default=12, ge=4, le=16)
    password_min_length: int = Field(default=8, ge=6, le=72)


class SubscriptionSettings(BaseModel):
    subscription_duration_days: int = Field(default=30, ge=1)
    currency: str = "EUR"
    prices: dict[str, float] = Field(default_factory=lambda: {"basic": 9.99, "premium": 19.99})

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class HubSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    environment: Literal["dev", "staging", "prod"] = "dev"
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    storage: StorageSettings = Field(default_factory=StorageSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    images: ImageSettings = Field(default_factory=ImageSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    subscriptions: SubscriptionSettings = Field(default_factory=SubscriptionSettings)


@lru_cache
def get_settings() -> HubSettings:
    """Return cached settings instance."""

    return HubSettings()


__all__ = [
    "AuthSettings",
    "HubSettings",
    "ImageSettings",
    "LLMSettings",
    "RateLimitSettings",
    "SessionSettings",
    "StorageSettings",
    "SubscriptionSettings",
    "get_settings",
]
