"""Signed session tokens carried in an HttpOnly cookie."""

from __future__ import annotations

from datetime import timedelta

import jwt

from chathub.config import SessionSettings
from chathub.logging import logger
from chathub.utils.datetime import utc_now

ALGORITHM = "HS256"


class SessionCodec:
    def __init__(self, settings: SessionSettings | None = None) -> None:
        self.settings = settings or SessionSettings()

    def encode(self, user_id: str) -> str:
        issued_at = utc_now()
        payload = {
            "sub": user_id,
            "iat": issued_at,
            "exp": issued_at + timedelta(seconds=self.settings.ttl_seconds),
        }
        return jwt.encode(payload, self.settings.secret_key.get_secret_value(), algorithm=ALGORITHM)

    def decode(self, token: str | None) -> str | None:
        """Return the user id of a valid token, or ``None``."""

        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key.get_secret_value(),
                algorithms=[ALGORITHM],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("session_expired")
            return None
        except jwt.InvalidTokenError as exc:
            logger.info("session_rejected", reason=str(exc))
            return None
        subject = payload.get("sub")
        return subject if isinstance(subject, str) and subject else None


__all__ = ["ALGORITHM", "SessionCodec"]
