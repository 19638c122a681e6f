"""Paid plan lifecycle: pending payments, upgrades and lazy expiry."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from chathub.config import SubscriptionSettings
from chathub.domain.models import PAID_PLANS, PendingPaymentModel, SubscriptionModel, UserModel
from chathub.logging import logger
from chathub.services.exceptions import InvalidPlan
from chathub.storage.users import UserRepository
from chathub.utils.datetime import utc_now


def ensure_paid_plan(plan: str) -> str:
    if plan not in PAID_PLANS:
        raise InvalidPlan(f"Unknown plan '{plan}'. Choose one of: {', '.join(PAID_PLANS)}.")
    return plan


class SubscriptionService:
    def __init__(
        self,
        repository: UserRepository,
        settings: SubscriptionSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings or SubscriptionSettings()
        self._clock = clock

    def price_for(self, plan: str) -> float:
        ensure_paid_plan(plan)
        try:
            return self.settings.prices[plan]
        except KeyError as exc:
            raise InvalidPlan(f"No price configured for the {plan} plan.") from exc

    async def initiate_payment(self, user_id: str, plan: str) -> PendingPaymentModel:
        """Record a pending payment for ``plan``; replaces any earlier pending one."""

        amount = self.price_for(plan)

        def _initiate(user: UserModel) -> PendingPaymentModel:
            payment = PendingPaymentModel(
                plan=plan,
                amount=amount,
                currency=self.settings.currency,
                created_at=self._clock(),
            )
            user.subscription.pending_payment = payment
            return payment

        payment = await self.repository.update(user_id, _initiate)
        logger.info(
            "payment_initiated",
            user_id=user_id,
            plan=plan,
            payment_id=payment.payment_id,
            amount=amount,
        )
        return payment

    async def upgrade_plan(self, user_id: str, plan: str) -> UserModel:
        ensure_paid_plan(plan)

        def _upgrade(user: UserModel) -> UserModel:
            self.activate(user, plan)
            return user

        user = await self.repository.update(user_id, _upgrade)
        logger.info(
            "plan_upgraded",
            user_id=user_id,
            plan=plan,
            expires_at=user.subscription.expires_at.isoformat() if user.subscription.expires_at else None,
        )
        return user

    def activate(self, user: UserModel, plan: str) -> None:
        """Switch ``user`` to ``plan`` in place; the caller persists."""

        now = self._clock()
        pending = user.subscription.pending_payment
        if pending is not None and pending.plan != plan:
            # A pending payment for another plan stays until it is superseded.
            kept = pending
        else:
            kept = None
        user.plan = plan
        user.subscription = SubscriptionModel(
            status="active",
            plan=plan,
            started_at=now,
            expires_at=now + timedelta(days=self.settings.subscription_duration_days),
            pending_payment=kept,
        )

    def expire_if_needed(self, user: UserModel) -> bool:
        """Downgrade an expired paid plan to free; return whether the user changed."""

        subscription = user.subscription
        if user.plan not in PAID_PLANS or subscription.expires_at is None:
            return False
        if self._clock() < subscription.expires_at:
            return False

        previous = user.plan
        user.plan = "free"
        user.subscription = SubscriptionModel(pending_payment=subscription.pending_payment)
        logger.info("subscription_expired", user_id=user.id, plan=previous)
        return True


__all__ = ["SubscriptionService", "ensure_paid_plan"]
