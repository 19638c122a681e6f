from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chathub.domain.models import UsageModel
from chathub.services.exceptions import ModelNotAllowed, QuotaExceeded
from chathub.services.quota import (
    QuotaEngine,
    get_history_limit,
    get_plan_limits,
    is_model_allowed_for_plan,
)
from tests.conftest import FakeClock, make_user


def test_plan_limits_lookup():
    assert get_plan_limits("free").messages == 100
    assert get_plan_limits("free").images == 3
    assert get_plan_limits("basic").messages == 5000
    assert get_plan_limits("basic").images == 10
    assert get_plan_limits("premium").messages is None
    assert [get_history_limit(plan) for plan in ("free", "basic", "premium")] == [20, 50, 100]
    # Unknown plans fall back to the free tier.
    assert get_plan_limits("enterprise") == get_plan_limits("free")


def test_model_allowlist_per_plan():
    assert is_model_allowed_for_plan("gpt-4o-mini", "free")
    assert not is_model_allowed_for_plan("gpt-4o", "free")
    assert is_model_allowed_for_plan("gpt-4o", "basic")
    assert is_model_allowed_for_plan("gpt-4.1", "premium")


def test_ensure_model_allowed_explains_rejection(quota):
    with pytest.raises(ModelNotAllowed) as excinfo:
        quota.ensure_model_allowed("gpt-4.1", "free")
    assert "gpt-4.1" in excinfo.value.message
    assert "gpt-4o-mini" in excinfo.value.message


def test_reset_zeroes_messages_from_previous_month(quota, clock):
    user = make_user(
        clock,
        usage=UsageModel(messages=50, images=1, last_reset="2024-05-15", last_message_reset="2024-04-30"),
    )

    assert quota.reset_if_needed(user) is True
    assert user.usage.messages == 0
    assert user.usage.last_message_reset == "2024-05-15"
    # Same day, so the image counter is kept.
    assert user.usage.images == 1


def test_reset_is_noop_within_the_same_period(quota, clock):
    user = make_user(
        clock,
        usage=UsageModel(messages=7, images=2, last_reset="2024-05-15", last_message_reset="2024-05-01"),
    )
    before = user.usage.model_dump()

    assert quota.reset_if_needed(user) is False
    assert user.usage.model_dump() == before


def test_reset_zeroes_images_on_a_new_day(quota, clock):
    user = make_user(
        clock,
        usage=UsageModel(messages=7, images=3, last_reset="2024-05-14", last_message_reset="2024-05-01"),
    )

    assert quota.reset_if_needed(user) is True
    assert user.usage.images == 0
    assert user.usage.last_reset == "2024-05-15"
    assert user.usage.messages == 7


def test_can_send_message_respects_plan(quota, clock):
    user = make_user(clock)
    user.usage.messages = 99
    assert quota.can_send_message(user)
    user.usage.messages = 100
    assert not quota.can_send_message(user)
    user.plan = "premium"
    assert quota.can_send_message(user)


def test_can_generate_image_resets_first():
    clock = FakeClock(datetime(2024, 5, 16, 8, 0, tzinfo=timezone.utc))
    quota = QuotaEngine(clock)
    user = make_user(
        usage=UsageModel(messages=0, images=3, last_reset="2024-05-15", last_message_reset="2024-05-01"),
    )

    assert quota.can_generate_image(user)
    assert user.usage.images == 0


def test_quota_errors_carry_retry_hints(quota, clock):
    user = make_user(clock)
    user.usage.messages = 100
    with pytest.raises(QuotaExceeded) as message_error:
        quota.ensure_can_send_message(user)
    # 2024-05-15 12:00 UTC to 2024-06-01 00:00 UTC.
    assert message_error.value.retry_after == (16 * 24 + 12) * 3600

    user.usage.images = 3
    with pytest.raises(QuotaExceeded) as image_error:
        quota.ensure_can_generate_image(user)
    assert image_error.value.retry_after == 12 * 3600


def test_near_quota_signal(quota, clock):
    user = make_user(clock)
    user.usage.messages = 89
    assert not quota.near_quota(user)
    user.usage.messages = 90
    assert quota.near_quota(user)
    assert quota.remaining_messages(user) == 10
    user.plan = "premium"
    assert not quota.near_quota(user)
    assert quota.remaining_messages(user) is None
