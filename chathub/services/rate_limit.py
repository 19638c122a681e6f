"""Sliding-hour and calendar-day request counters plus login lockout.

All state lives in one JSON document::

    {
        "hourly": {subject: {action: [ts, ...]}},
        "daily": {subject: {action: {"YYYY-MM-DD": [ts, ...]}}},
        "login_attempts": {email: [ts, ...]},
        "last_cleanup": ts,
    }

Checking and recording happen in two separate locked sections, so a burst of
concurrent requests can overshoot a limit by a few events. Stale timestamps are
only dropped by the periodic cleanup that piggybacks on writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from chathub.config import RateLimitSettings
from chathub.logging import logger
from chathub.services.exceptions import AccountLocked, RateLimitExceeded
from chathub.storage.document_store import LockedDocumentStore
from chathub.utils.datetime import day_key, from_timestamp, next_midnight, utc_now

RATE_LIMITS_DOCUMENT = "rate_limits"
HOUR_SECONDS = 3600


@dataclass(slots=True)
class RateLimitStatus:
    exceeded: bool
    remaining: int | None
    reset_time: datetime | None
    limit: int | None = None

    def retry_after(self, now: datetime) -> int | None:
        if not self.exceeded or self.reset_time is None:
            return None
        return max(1, int((self.reset_time - now).total_seconds()))


@dataclass(slots=True)
class LoginLockStatus:
    locked: bool
    failures: int
    locked_until: datetime | None = None

    def retry_after(self, now: datetime) -> int | None:
        if not self.locked or self.locked_until is None:
            return None
        return max(1, int((self.locked_until - now).total_seconds()))


def subject_for(user_id: str | None, client_ip: str | None) -> str:
    """Attribute a request to a user, or to the caller's address when anonymous."""

    if user_id:
        return user_id
    return f"ip:{client_ip or 'unknown'}"


def empty_document() -> dict[str, Any]:
    return {"hourly": {}, "daily": {}, "login_attempts": {}, "last_cleanup": 0}


class RateLimiter:
    def __init__(
        self,
        store: LockedDocumentStore,
        settings: RateLimitSettings | None = None,
        *,
        document: str = RATE_LIMITS_DOCUMENT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or RateLimitSettings()
        self.document = document
        self._clock = clock

    # Request windows ----------------------------------------------------------

    async def check_rate_limit(self, subject: str, action: str) -> RateLimitStatus:
        """Report the window state for ``(subject, action)`` without mutating it."""

        if not self._is_limited(action):
            return RateLimitStatus(exceeded=False, remaining=None, reset_time=None)
        now = self._clock()
        document = await self.store.read(self.document, default=empty_document())
        return self._evaluate(_normalize(document), subject, action, now)

    async def ensure_within_limit(self, subject: str, action: str) -> RateLimitStatus:
        status = await self.check_rate_limit(subject, action)
        if status.exceeded:
            logger.info("rate_limit_exceeded", subject=subject, action=action, limit=status.limit)
            raise RateLimitExceeded(
                "Too many requests, please try again later.",
                retry_after=status.retry_after(self._clock()),
            )
        return status

    async def record_request(self, subject: str, action: str) -> None:
        """Count one successful ``action`` for ``subject``."""

        if not self._is_limited(action):
            return
        now = self._clock()
        stamp = now.timestamp()

        def _record(document: Any) -> dict[str, Any]:
            document = _normalize(document)
            if action in self.settings.daily:
                buckets = document["daily"].setdefault(subject, {}).setdefault(action, {})
                buckets.setdefault(day_key(now), []).append(stamp)
            else:
                document["hourly"].setdefault(subject, {}).setdefault(action, []).append(stamp)
            self._maybe_cleanup(document, stamp)
            return document

        await self.store.update(self.document, _record, default=empty_document())

    async def cleanup(self, *, force: bool = False) -> None:
        stamp = self._clock().timestamp()

        def _cleanup(document: Any) -> dict[str, Any]:
            document = _normalize(document)
            if force:
                self._purge(document, stamp)
            else:
                self._maybe_cleanup(document, stamp)
            return document

        await self.store.update(self.document, _cleanup, default=empty_document())

    # Login lockout ------------------------------------------------------------

    async def login_lock_status(self, email: str) -> LoginLockStatus:
        now = self._clock()
        document = await self.store.read(self.document, default=empty_document())
        return self._login_status(_normalize(document), email, now)

    async def ensure_login_allowed(self, email: str) -> None:
        status = await self.login_lock_status(email)
        if status.locked:
            logger.info("login_locked", email=email, failures=status.failures)
            raise AccountLocked(
                "Too many failed login attempts, try again later.",
                retry_after=status.retry_after(self._clock()),
            )

    async def record_failed_login(self, email: str) -> LoginLockStatus:
        now = self._clock()
        stamp = now.timestamp()

        def _record(document: Any) -> dict[str, Any]:
            document = _normalize(document)
            document["login_attempts"].setdefault(email, []).append(stamp)
            self._maybe_cleanup(document, stamp)
            return document

        document = await self.store.update(self.document, _record, default=empty_document())
        return self._login_status(document, email, now)

    async def clear_login_attempts(self, email: str) -> None:
        def _clear(document: Any) -> dict[str, Any]:
            document = _normalize(document)
            document["login_attempts"].pop(email, None)
            return document

        await self.store.update(self.document, _clear, default=empty_document())

    # Internal helpers ---------------------------------------------------------

    def _is_limited(self, action: str) -> bool:
        return action in self.settings.hourly or action in self.settings.daily

    def _evaluate(
        self, document: dict[str, Any], subject: str, action: str, now: datetime
    ) -> RateLimitStatus:
        if action in self.settings.daily:
            limit = self.settings.daily[action]
            buckets = document["daily"].get(subject, {}).get(action, {})
            count = len(_stamps_after(buckets.get(day_key(now)), 0))
            return RateLimitStatus(
                exceeded=count >= limit,
                remaining=max(0, limit - count),
                reset_time=next_midnight(now),
                limit=limit,
            )

        limit = self.settings.hourly[action]
        cutoff = now.timestamp() - HOUR_SECONDS
        stamps = document["hourly"].get(subject, {}).get(action, [])
        recent = sorted(_stamps_after(stamps, cutoff))
        reset_time = from_timestamp(recent[0] + HOUR_SECONDS) if recent else now
        return RateLimitStatus(
            exceeded=len(recent) >= limit,
            remaining=max(0, limit - len(recent)),
            reset_time=reset_time,
            limit=limit,
        )

    def _login_status(self, document: dict[str, Any], email: str, now: datetime) -> LoginLockStatus:
        window = self.settings.login_window_seconds
        failures = sorted(
            _stamps_after(document["login_attempts"].get(email, []), now.timestamp() - window)
        )
        if len(failures) < self.settings.login_max_failures:
            return LoginLockStatus(locked=False, failures=len(failures))
        locked_until = from_timestamp(failures[0] + window)
        return LoginLockStatus(
            locked=now < locked_until,
            failures=len(failures),
            locked_until=locked_until,
        )

    def _maybe_cleanup(self, document: dict[str, Any], stamp: float) -> None:
        last = document.get("last_cleanup") or 0
        if stamp - last > self.settings.cleanup_interval_seconds:
            self._purge(document, stamp)

    def _purge(self, document: dict[str, Any], stamp: float) -> None:
        cutoff = stamp - self.settings.retention_seconds
        removed = 0

        for subject in list(document["hourly"]):
            actions = document["hourly"][subject]
            for action in list(actions):
                removed += _prune(actions, action, cutoff)
            if not actions:
                del document["hourly"][subject]

        for subject in list(document["daily"]):
            actions = document["daily"][subject]
            for action in list(actions):
                buckets = actions[action]
                for day in list(buckets):
                    removed += _prune(buckets, day, cutoff)
                if not buckets:
                    del actions[action]
            if not actions:
                del document["daily"][subject]

        for email in list(document["login_attempts"]):
            removed += _prune(document["login_attempts"], email, cutoff)

        document["last_cleanup"] = stamp
        logger.info("rate_limit_cleanup", removed=removed)


def _stamps_after(stamps: Any, cutoff: float) -> list[float]:
    if not isinstance(stamps, list):
        return []
    return [stamp for stamp in stamps if isinstance(stamp, (int, float)) and stamp > cutoff]


def _prune(container: dict[str, Any], key: str, cutoff: float) -> int:
    """Keep only fresh timestamps under ``key``; drop the key once empty."""

    original = container[key]
    kept = _stamps_after(original, cutoff)
    if kept:
        container[key] = kept
    else:
        del container[key]
    return (len(original) if isinstance(original, list) else 1) - len(kept)


def _normalize(document: Any) -> dict[str, Any]:
    """Coerce a loaded document into the expected shape, dropping malformed entries."""

    if not isinstance(document, dict):
        document = empty_document()
    for key in ("hourly", "daily", "login_attempts"):
        if not isinstance(document.get(key), dict):
            document[key] = {}
    for section, expected in (("hourly", list), ("daily", dict)):
        for subject in list(document[section]):
            actions = document[section][subject]
            if not isinstance(actions, dict):
                del document[section][subject]
                continue
            for action in list(actions):
                if not isinstance(actions[action], expected):
                    del actions[action]
    for email in list(document["login_attempts"]):
        if not isinstance(document["login_attempts"][email], list):
            del document["login_attempts"][email]
    if not isinstance(document.get("last_cleanup"), (int, float)):
        document["last_cleanup"] = 0
    return document


__all__ = [
    "HOUR_SECONDS",
    "LoginLockStatus",
    "RATE_LIMITS_DOCUMENT",
    "RateLimitStatus",
    "RateLimiter",
    "empty_document",
    "subject_for",
]
