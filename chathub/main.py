"""Application entrypoint."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

import httpx
import uvicorn
from fastapi import FastAPI

from chathub.api import ActionDispatcher, create_app
from chathub.config import HubSettings, get_settings
from chathub.logging import configure_logging, logger
from chathub.providers.chat import ChatProvider, PydanticAIChatProvider
from chathub.providers.images import HttpImageProvider, ImageProvider
from chathub.services.auth import AuthService
from chathub.services.conversations import ConversationManager
from chathub.services.email import EmailSender, LogEmailSender
from chathub.services.quota import QuotaEngine
from chathub.services.rate_limit import RateLimiter
from chathub.services.subscriptions import SubscriptionService
from chathub.storage.document_store import LockedDocumentStore
from chathub.storage.users import UserRepository
from chathub.utils.datetime import utc_now


def build_dispatcher(
    settings: HubSettings,
    *,
    http_client: httpx.AsyncClient | None = None,
    email_sender: EmailSender | None = None,
    chat_provider: ChatProvider | None = None,
    image_provider: ImageProvider | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ActionDispatcher:
    """Wire every service over one storage root."""

    store = LockedDocumentStore(
        settings.storage.data_dir,
        lock_timeout=settings.storage.lock_timeout_seconds,
        poll_interval=settings.storage.lock_poll_interval_seconds,
    )
    repository = UserRepository(store, settings.storage.users_document)
    quota = QuotaEngine(clock)
    rate_limiter = RateLimiter(
        store,
        settings.rate_limit,
        document=settings.storage.rate_limits_document,
        clock=clock,
    )
    subscriptions = SubscriptionService(repository, settings.subscriptions, clock=clock)
    conversations = ConversationManager(repository, quota, subscriptions, clock=clock)
    auth = AuthService(
        repository,
        rate_limiter,
        email_sender or LogEmailSender(reveal_codes=settings.environment == "dev"),
        settings.auth,
        clock=clock,
    )
    if image_provider is None:
        if http_client is None:
            raise ValueError("http_client is required when no image provider is given.")
        image_provider = HttpImageProvider(http_client, settings.images)

    return ActionDispatcher(
        settings=settings,
        repository=repository,
        quota=quota,
        rate_limiter=rate_limiter,
        conversations=conversations,
        auth=auth,
        subscriptions=subscriptions,
        chat_provider=chat_provider or PydanticAIChatProvider(settings.llm),
        image_provider=image_provider,
        clock=clock,
    )


def build_application(settings: HubSettings | None = None) -> FastAPI:
    settings = settings or get_settings()
    http_client = httpx.AsyncClient(timeout=settings.images.request_timeout_seconds)
    dispatcher = build_dispatcher(settings, http_client=http_client)
    return create_app(settings, dispatcher, http_client=http_client)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.session.secret_key.get_secret_value() == "change-me" and settings.environment != "dev":
        logger.warning("session_secret_default", environment=settings.environment)
    app = build_application(settings)
    logger.info("server_starting", host=settings.host, port=settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
