"""Shared pytest fixtures for storage-backed service tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chathub.config import AuthSettings, HubSettings, StorageSettings
from chathub.domain.models import UsageModel, UserModel
from chathub.main import build_dispatcher
from chathub.services.exceptions import ProviderFailure
from chathub.services.quota import QuotaEngine
from chathub.storage.document_store import LockedDocumentStore
from chathub.storage.users import UserRepository
from chathub.utils.datetime import day_key

START = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send_otp(self, email: str, code: str, *, purpose: str) -> None:
        self.sent.append((email, code, purpose))

    def last_code(self, email: str) -> str:
        for recipient, code, _ in reversed(self.sent):
            if recipient == email:
                return code
        raise AssertionError(f"no code sent to {email}")


class FakeChatProvider:
    def __init__(self, reply: str = "Hello from the bot") -> None:
        self.reply = reply
        self.error: ProviderFailure | None = None
        self.calls: list[dict] = []

    async def generate_reply(self, **kwargs) -> str:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeImageProvider:
    def __init__(self, url: str = "https://images.example/cat.png") -> None:
        self.url = url
        self.error: ProviderFailure | None = None
        self.calls: list[dict] = []

    async def generate_image(self, **kwargs) -> str:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.url


def make_user(clock: FakeClock | None = None, **overrides) -> UserModel:
    today = day_key((clock or FakeClock())())
    fields = {
        "name": "Ada",
        "email": "ada@example.com",
        "password_hash": "not-a-real-hash",
        "status": "active",
        "usage": UsageModel(last_reset=today, last_message_reset=today),
    }
    fields.update(overrides)
    return UserModel(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def store(data_dir) -> LockedDocumentStore:
    return LockedDocumentStore(data_dir, lock_timeout=2.0, poll_interval=0.005)


@pytest.fixture
def repository(store) -> UserRepository:
    return UserRepository(store)


@pytest.fixture
def quota(clock) -> QuotaEngine:
    return QuotaEngine(clock)


@pytest.fixture
def settings(data_dir) -> HubSettings:
    return HubSettings(
        _env_file=None,
        storage=StorageSettings(data_dir=data_dir, lock_timeout_seconds=2.0),
        auth=AuthSettings(password_hash_rounds=4),
    )


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def chat_provider() -> FakeChatProvider:
    return FakeChatProvider()


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def dispatcher(settings, clock, email_sender, chat_provider, image_provider):
    return build_dispatcher(
        settings,
        email_sender=email_sender,
        chat_provider=chat_provider,
        image_provider=image_provider,
        clock=clock,
    )
