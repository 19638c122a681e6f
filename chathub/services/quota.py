"""Plan limits and lazily reset usage counters."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from chathub.domain.models import PlanLimits, UserModel
from chathub.logging import logger
from chathub.services.exceptions import ModelNotAllowed, QuotaExceeded
from chathub.utils.datetime import day_key, month_key, next_midnight, utc_now

_BASE_MODELS = frozenset({"gpt-4o-mini", "gpt-3.5-turbo"})

PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(messages=100, images=3, history=20, models=_BASE_MODELS),
    "basic": PlanLimits(
        messages=5000,
        images=10,
        history=50,
        models=_BASE_MODELS | {"gpt-4o", "gpt-4.1-mini"},
    ),
    "premium": PlanLimits(
        messages=None,
        images=None,
        history=100,
        models=_BASE_MODELS | {"gpt-4o", "gpt-4.1-mini", "gpt-4.1", "gpt-4-turbo", "o4-mini"},
    ),
}

# Remaining-message count at which clients are warned about the monthly quota.
NEAR_QUOTA_BUFFER = 10


def get_plan_limits(plan: str) -> PlanLimits:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS["free"])


def get_history_limit(plan: str) -> int:
    return get_plan_limits(plan).history


def is_model_allowed_for_plan(model: str, plan: str) -> bool:
    return model in get_plan_limits(plan).models


class QuotaEngine:
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def reset_if_needed(self, user: UserModel) -> bool:
        """Zero counters whose period has rolled over; return whether anything changed.

        The caller owns persistence and must run this inside the same exclusive
        section that later writes the user.
        """

        now = self._clock()
        today = day_key(now)
        changed = False
        usage = user.usage
        if usage.last_reset != today:
            usage.images = 0
            usage.last_reset = today
            changed = True
        if usage.last_message_reset[:7] != month_key(now):
            usage.messages = 0
            usage.last_message_reset = today
            changed = True
        if changed:
            logger.debug("usage_counters_reset", user_id=user.id, day=today)
        return changed

    def can_send_message(self, user: UserModel) -> bool:
        limit = get_plan_limits(user.plan).messages
        return user.plan == "premium" or limit is None or user.usage.messages < limit

    def can_generate_image(self, user: UserModel) -> bool:
        self.reset_if_needed(user)
        limit = get_plan_limits(user.plan).images
        return user.plan == "premium" or limit is None or user.usage.images < limit

    def remaining_messages(self, user: UserModel) -> int | None:
        limit = get_plan_limits(user.plan).messages
        if user.plan == "premium" or limit is None:
            return None
        return max(0, limit - user.usage.messages)

    def remaining_images(self, user: UserModel) -> int | None:
        limit = get_plan_limits(user.plan).images
        if user.plan == "premium" or limit is None:
            return None
        return max(0, limit - user.usage.images)

    def near_quota(self, user: UserModel) -> bool:
        remaining = self.remaining_messages(user)
        return remaining is not None and remaining <= NEAR_QUOTA_BUFFER

    def ensure_can_send_message(self, user: UserModel) -> None:
        if not self.can_send_message(user):
            raise QuotaExceeded(
                "Monthly message limit reached.",
                retry_after=self._seconds_until_next_month(),
            )

    def ensure_can_generate_image(self, user: UserModel) -> None:
        if not self.can_generate_image(user):
            now = self._clock()
            raise QuotaExceeded(
                "Daily image limit reached.",
                retry_after=int((next_midnight(now) - now).total_seconds()),
            )

    def ensure_model_allowed(self, model: str, plan: str) -> None:
        if not is_model_allowed_for_plan(model, plan):
            allowed = ", ".join(sorted(get_plan_limits(plan).models))
            raise ModelNotAllowed(
                f"Model '{model}' is not available on the {plan} plan. Allowed models: {allowed}."
            )

    def _seconds_until_next_month(self) -> int:
        now = self._clock().astimezone(timezone.utc)
        if now.month == 12:
            boundary = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            boundary = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
        return int((boundary - now).total_seconds())


__all__ = [
    "NEAR_QUOTA_BUFFER",
    "PLAN_LIMITS",
    "QuotaEngine",
    "get_history_limit",
    "get_plan_limits",
    "is_model_allowed_for_plan",
]
