"""Outbound email for one-time codes."""

from __future__ import annotations

from typing import Literal, Protocol

from chathub.logging import logger

OtpPurpose = Literal["verify", "reset"]


class EmailSender(Protocol):
    async def send_otp(self, email: str, code: str, *, purpose: OtpPurpose) -> None: ...


class LogEmailSender:
    """Development sender: writes the code to the structured log instead of mailing it."""

    def __init__(self, *, reveal_codes: bool = True) -> None:
        self.reveal_codes = reveal_codes

    async def send_otp(self, email: str, code: str, *, purpose: OtpPurpose) -> None:
        logger.info(
            "otp_email_queued",
            email=email,
            purpose=purpose,
            code=code if self.reveal_codes else "******",
        )


__all__ = ["EmailSender", "LogEmailSender", "OtpPurpose"]
