"""Registration, email verification, password reset and login."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable

import bcrypt

from chathub.config import AuthSettings
from chathub.domain.models import UsageModel, UserModel
from chathub.logging import logger
from chathub.services.email import EmailSender, OtpPurpose
from chathub.services.exceptions import (
    AccountNotVerified,
    DuplicateEmail,
    InvalidCredentials,
    InvalidOtp,
)
from chathub.services.rate_limit import RateLimiter
from chathub.storage.users import UserRepository
from chathub.utils.datetime import day_key, utc_now


def hash_password(password: str, *, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash or oversize password.
        return False


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class AuthService:
    def __init__(
        self,
        repository: UserRepository,
        rate_limiter: RateLimiter,
        email_sender: EmailSender,
        settings: AuthSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.email_sender = email_sender
        self.settings = settings or AuthSettings()
        self._clock = clock

    async def register(self, *, name: str, email: str, password: str) -> UserModel:
        if await self.repository.find_by_email(email) is not None:
            raise DuplicateEmail("Email already registered.")

        now = self._clock()
        today = day_key(now)
        user = UserModel(
            name=name,
            email=email,
            password_hash=await asyncio.to_thread(
                hash_password, password, rounds=self.settings.password_hash_rounds
            ),
            usage=UsageModel(last_reset=today, last_message_reset=today),
            created_at=now,
        )
        code = self._issue_otp(user, "verify")
        await self.repository.insert(user)
        await self.email_sender.send_otp(email, code, purpose="verify")
        logger.info("user_registered", user_id=user.id)
        return user

    async def verify_otp(self, *, email: str, code: str) -> UserModel:
        user = await self.repository.find_by_email(email)
        if user is None:
            raise InvalidOtp("Invalid or expired code.")

        def _verify(target: UserModel) -> UserModel:
            self._consume_otp(target, code, "verify")
            target.status = "active"
            return target

        verified = await self.repository.update(user.id, _verify)
        logger.info("user_verified", user_id=verified.id)
        return verified

    async def forgot_password(self, *, email: str) -> None:
        """Mail a reset code; unknown addresses are ignored without telling the caller."""

        user = await self.repository.find_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email")
            return

        code = await self.repository.update(user.id, lambda target: self._issue_otp(target, "reset"))
        await self.email_sender.send_otp(email, code, purpose="reset")
        logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, *, email: str, code: str, new_password: str) -> None:
        user = await self.repository.find_by_email(email)
        if user is None:
            raise InvalidOtp("Invalid or expired code.")
        password_hash = await asyncio.to_thread(
            hash_password, new_password, rounds=self.settings.password_hash_rounds
        )

        def _reset(target: UserModel) -> None:
            self._consume_otp(target, code, "reset")
            target.password_hash = password_hash
            # Receiving the code proves ownership of the address.
            target.status = "active"

        await self.repository.update(user.id, _reset)
        await self.rate_limiter.clear_login_attempts(email)
        logger.info("password_reset_completed", user_id=user.id)

    async def login(self, *, email: str, password: str) -> UserModel:
        await self.rate_limiter.ensure_login_allowed(email)

        user = await self.repository.find_by_email(email)
        valid = user is not None and await asyncio.to_thread(
            verify_password, password, user.password_hash
        )
        if not valid:
            status = await self.rate_limiter.record_failed_login(email)
            logger.info("login_failed", failures=status.failures, locked=status.locked)
            raise InvalidCredentials("Invalid email or password.")
        if user.status != "active":
            raise AccountNotVerified("Please verify your email before logging in.")

        await self.rate_limiter.clear_login_attempts(email)
        logger.info("login_succeeded", user_id=user.id)
        return user

    # Internal helpers -------------------------------------------------

    def _issue_otp(self, user: UserModel, purpose: OtpPurpose) -> str:
        code = "".join(secrets.choice(string.digits) for _ in range(self.settings.otp_digits))
        user.otp_hash = _digest(code)
        user.otp_purpose = purpose
        user.otp_expiry = self._clock() + timedelta(minutes=self.settings.otp_ttl_minutes)
        return code

    def _consume_otp(self, user: UserModel, code: str, purpose: OtpPurpose) -> None:
        valid = (
            user.otp_hash is not None
            and user.otp_purpose == purpose
            and user.otp_expiry is not None
            and self._clock() <= user.otp_expiry
            and hmac.compare_digest(_digest(code), user.otp_hash)
        )
        if not valid:
            raise InvalidOtp("Invalid or expired code.")
        user.otp_hash = None
        user.otp_purpose = None
        user.otp_expiry = None


__all__ = ["AuthService", "hash_password", "verify_password"]
