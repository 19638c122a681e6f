"""Input shape and length checks applied before any storage access."""

from __future__ import annotations

import html
import re
from typing import Any

from chathub.services.exceptions import InvalidInput

MAX_NAME_LENGTH = 100
MAX_PERSONALITY_LENGTH = 5000
MAX_MESSAGE_LENGTH = 10000
MAX_PROMPT_LENGTH = 4000
MAX_ID_LENGTH = 128
MAX_TIMESTAMP_LENGTH = 64
MAX_HISTORY_ENTRIES = 200
# bcrypt only looks at the first 72 bytes.
MAX_PASSWORD_BYTES = 72

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_ROLES = frozenset({"user", "assistant", "system"})


def sanitize_text(value: Any, field: str, *, max_length: int, required: bool = True) -> str:
    """Trim, bound and HTML-escape a free-text field."""

    if value is None:
        value = ""
    if not isinstance(value, str):
        raise InvalidInput(f"{field} must be a string.")
    value = value.strip()
    if required and not value:
        raise InvalidInput(f"{field} is required.")
    # The cap bounds the stored, escaped form.
    escaped = html.escape(value, quote=True)
    if len(escaped) > max_length:
        raise InvalidInput(f"{field} is too long (max {max_length} characters).")
    return escaped


def validate_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("email is required.")
    email = value.strip()
    if len(email) > 254 or not _EMAIL_RE.match(email):
        raise InvalidInput("email is not a valid address.")
    return email


def validate_password(value: Any, *, min_length: int = 8) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidInput("password is required.")
    if len(value) < min_length:
        raise InvalidInput(f"password must be at least {min_length} characters.")
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise InvalidInput(f"password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return value


def validate_code(value: Any, *, digits: int) -> str:
    if not isinstance(value, (str, int)):
        raise InvalidInput("code is required.")
    code = str(value).strip()
    if len(code) != digits or not code.isdigit():
        raise InvalidInput(f"code must be {digits} digits.")
    return code


def validate_identifier(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field} is required.")
    value = value.strip()
    if len(value) > MAX_ID_LENGTH:
        raise InvalidInput(f"{field} is too long.")
    return value


def validate_history(value: Any) -> list[dict[str, Any]]:
    """Check client-submitted history; only the newest entries are kept."""

    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidInput("history must be a list.")

    entries: list[dict[str, Any]] = []
    for raw in value[-MAX_HISTORY_ENTRIES:]:
        if not isinstance(raw, dict):
            raise InvalidInput("history entries must be objects.")
        role = raw.get("role")
        if role not in _ROLES:
            raise InvalidInput("history entry role must be user, assistant or system.")
        entry: dict[str, Any] = {
            "role": role,
            "content": sanitize_text(
                raw.get("content"), "history content", max_length=MAX_MESSAGE_LENGTH
            ),
        }
        entry_id = raw.get("id")
        if entry_id not in (None, ""):
            entry["id"] = validate_identifier(entry_id, "history id")
        timestamp = raw.get("timestamp")
        if isinstance(timestamp, str) and timestamp and len(timestamp) <= MAX_TIMESTAMP_LENGTH:
            entry["timestamp"] = timestamp
        entries.append(entry)
    return entries


__all__ = [
    "MAX_HISTORY_ENTRIES",
    "MAX_MESSAGE_LENGTH",
    "MAX_NAME_LENGTH",
    "MAX_PERSONALITY_LENGTH",
    "MAX_PROMPT_LENGTH",
    "sanitize_text",
    "validate_code",
    "validate_email",
    "validate_history",
    "validate_identifier",
    "validate_password",
]
