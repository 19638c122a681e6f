"""Time utilities with timezone-aware defaults."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Return current UTC time with tzinfo."""

    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def day_key(moment: datetime) -> str:
    """Calendar day in ``YYYY-MM-DD`` form."""

    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


def month_key(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


def next_midnight(moment: datetime) -> datetime:
    current = moment.astimezone(timezone.utc).date()
    following = current + timedelta(days=1)
    return datetime(following.year, following.month, following.day, tzinfo=timezone.utc)


__all__ = ["day_key", "from_timestamp", "month_key", "next_midnight", "utc_now"]
