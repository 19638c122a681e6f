from __future__ import annotations

import pytest

from chathub.api.validation import (
    MAX_HISTORY_ENTRIES,
    sanitize_text,
    validate_code,
    validate_email,
    validate_history,
    validate_password,
)
from chathub.services.exceptions import InvalidInput


def test_sanitize_text_trims_and_escapes():
    assert sanitize_text("  <b>Tom & Jerry</b> ", "name", max_length=100) == "&lt;b&gt;Tom &amp; Jerry&lt;/b&gt;"


def test_sanitize_text_bounds():
    assert sanitize_text("x" * 100, "name", max_length=100) == "x" * 100
    with pytest.raises(InvalidInput):
        sanitize_text("x" * 101, "name", max_length=100)
    with pytest.raises(InvalidInput):
        sanitize_text("   ", "name", max_length=100)
    with pytest.raises(InvalidInput):
        sanitize_text(42, "name", max_length=100)
    assert sanitize_text(None, "bio", max_length=10, required=False) == ""


@pytest.mark.parametrize("raw", ["&" * 25, "<" * 30, '"' * 20])
def test_sanitize_text_bounds_the_escaped_value(raw):
    with pytest.raises(InvalidInput):
        sanitize_text(raw, "name", max_length=100)


def test_sanitize_text_accepts_escaped_value_at_the_cap():
    escaped = sanitize_text("&" * 20, "name", max_length=100)

    assert escaped == "&amp;" * 20
    assert len(escaped) == 100


@pytest.mark.parametrize("email", ["ada@example.com", " ada.lovelace+hub@mail.example.org "])
def test_validate_email_accepts(email):
    assert validate_email(email) == email.strip()


@pytest.mark.parametrize("email", ["", "ada", "ada@", "ada@example", "a b@example.com", None])
def test_validate_email_rejects(email):
    with pytest.raises(InvalidInput):
        validate_email(email)


def test_validate_password():
    assert validate_password("12345678") == "12345678"
    with pytest.raises(InvalidInput):
        validate_password("1234567")
    with pytest.raises(InvalidInput):
        validate_password("é" * 40)
    with pytest.raises(InvalidInput):
        validate_password(None)


def test_validate_code():
    assert validate_code(" 123456 ", digits=6) == "123456"
    assert validate_code(123456, digits=6) == "123456"
    with pytest.raises(InvalidInput):
        validate_code("12345a", digits=6)
    with pytest.raises(InvalidInput):
        validate_code("1234", digits=6)


def test_validate_history_normalizes_entries():
    entries = validate_history(
        [
            {"id": "m1", "role": "user", "content": " hi <3 ", "timestamp": "2024-05-01T10:00:00"},
            {"role": "assistant", "content": "hello", "extra": "ignored"},
        ]
    )

    assert entries == [
        {"role": "user", "content": "hi &lt;3", "id": "m1", "timestamp": "2024-05-01T10:00:00"},
        {"role": "assistant", "content": "hello"},
    ]
    assert validate_history(None) == []


def test_validate_history_keeps_newest_entries():
    raw = [{"role": "user", "content": f"m{index}"} for index in range(MAX_HISTORY_ENTRIES + 5)]

    entries = validate_history(raw)

    assert len(entries) == MAX_HISTORY_ENTRIES
    assert entries[0]["content"] == "m5"


@pytest.mark.parametrize(
    "history",
    [
        "not a list",
        ["not an object"],
        [{"role": "tool", "content": "x"}],
        [{"role": "user", "content": ""}],
        [{"role": "user", "content": "x" * 10001}],
        [{"role": "user", "content": "x", "id": "i" * 129}],
    ],
)
def test_validate_history_rejects(history):
    with pytest.raises(InvalidInput):
        validate_history(history)
