"""Pydantic models persisted in the user document and shared across services."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chathub.utils.datetime import day_key, utc_now
from chathub.utils.ids import generate_id

Plan = Literal["free", "basic", "premium"]
Role = Literal["user", "assistant", "system"]

PLANS: tuple[str, ...] = ("free", "basic", "premium")
PAID_PLANS: tuple[str, ...] = ("basic", "premium")


class _Document(BaseModel):
    # Unknown keys written by older versions survive a load/save cycle.
    model_config = ConfigDict(extra="allow")


class MessageModel(_Document):
    id: str = Field(default_factory=generate_id)
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class BotModel(_Document):
    id: str = Field(default_factory=generate_id)
    name: str
    personality: str
    model: str
    created_at: datetime = Field(default_factory=utc_now)
    conversations: list[MessageModel] = Field(default_factory=list)


class UsageModel(_Document):
    # Stored and returned as lastReset / lastMessageReset; snake_case input is still accepted.
    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    messages: int = 0
    images: int = 0
    last_reset: str = Field(default_factory=lambda: day_key(utc_now()))
    last_message_reset: str = Field(default_factory=lambda: day_key(utc_now()))


class PendingPaymentModel(_Document):
    payment_id: str = Field(default_factory=generate_id)
    plan: Plan
    amount: float
    currency: str
    created_at: datetime = Field(default_factory=utc_now)


class SubscriptionModel(_Document):
    status: Literal["none", "active"] = "none"
    plan: Plan | None = None
    started_at: datetime | None = None
    expires_at: datetime | None = None
    pending_payment: PendingPaymentModel | None = None


class UserModel(_Document):
    id: str = Field(default_factory=generate_id)
    name: str
    email: str
    password_hash: str
    plan: Plan = "free"
    status: Literal["pending", "active"] = "pending"
    usage: UsageModel = Field(default_factory=UsageModel)
    settings: dict[str, Any] = Field(default_factory=dict)
    bots: list[BotModel] = Field(default_factory=list)
    subscription: SubscriptionModel = Field(default_factory=SubscriptionModel)
    otp_hash: str | None = None
    otp_expiry: datetime | None = None
    otp_purpose: Literal["verify", "reset"] | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def find_bot(self, bot_id: str) -> BotModel | None:
        for bot in self.bots:
            if bot.id == bot_id:
                return bot
        return None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def public_view(self) -> dict[str, Any]:
        """Serializable view without credentials, OTP state or opaque settings."""

        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"password_hash", "settings", "otp_hash", "otp_expiry", "otp_purpose"},
        )


class PlanLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    messages: int | None
    images: int | None
    history: int
    models: frozenset[str]


__all__ = [
    "BotModel",
    "MessageModel",
    "PAID_PLANS",
    "PLANS",
    "PendingPaymentModel",
    "Plan",
    "PlanLimits",
    "Role",
    "SubscriptionModel",
    "UsageModel",
    "UserModel",
]
