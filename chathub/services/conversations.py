"""Bot CRUD and bounded conversation logs embedded in user records."""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

from chathub.domain.models import BotModel, MessageModel, UsageModel, UserModel
from chathub.logging import logger
from chathub.services.exceptions import BotNotFound
from chathub.services.quota import QuotaEngine, get_history_limit
from chathub.services.subscriptions import SubscriptionService
from chathub.storage.users import UserRepository
from chathub.utils.datetime import utc_now

# Turns short of the history cap at which clients are told old turns will drop.
HISTORY_WARNING_BUFFER = 4

_ROLE_LABELS = {"user": "You", "assistant": "Bot", "system": "System"}


@dataclass(slots=True)
class ExchangeContext:
    """Snapshot taken before the provider call; nothing here is persisted."""

    personality: str
    model: str
    history: list[MessageModel]


@dataclass(slots=True)
class ExchangeOutcome:
    reply: str
    usage: UsageModel
    conversation: list[MessageModel]
    near_limit: bool
    near_quota: bool


def append_turn(
    bot: BotModel,
    role: str,
    content: str,
    *,
    timestamp: datetime | None = None,
) -> MessageModel:
    message = MessageModel(role=role, content=content, timestamp=timestamp or utc_now())
    bot.conversations.append(message)
    return message


def merge_history(
    server_history: Sequence[MessageModel],
    client_history: Sequence[Mapping[str, Any]],
) -> list[MessageModel]:
    """Append client entries the server has not recorded yet.

    Entries are matched by id; an entry without an id is always new and gets a
    fresh one. Server order is preserved and client order is kept for the tail.
    """

    merged = list(server_history)
    known = {message.id for message in merged}
    for entry in client_history:
        entry_id = entry.get("id")
        if entry_id and entry_id in known:
            continue
        fields: dict[str, Any] = {"role": entry["role"], "content": entry["content"]}
        if entry_id:
            fields["id"] = entry_id
            known.add(entry_id)
        timestamp = _parse_timestamp(entry.get("timestamp"))
        if timestamp is not None:
            fields["timestamp"] = timestamp
        merged.append(MessageModel(**fields))
    return merged


def truncate(conversations: Sequence[MessageModel], cap: int) -> list[MessageModel]:
    """Keep the newest ``cap`` turns, dropping the oldest first."""

    if cap <= 0:
        return []
    return list(conversations[-cap:])


def context_window(history: Sequence[MessageModel], cap: int) -> list[MessageModel]:
    """Slice of history sent to the model; the stored log is left untouched."""

    return truncate(history, cap)


def near_history_limit(count: int, cap: int) -> bool:
    return count >= cap - HISTORY_WARNING_BUFFER


def export_transcript(bot: BotModel, *, exported_at: datetime | None = None) -> str:
    exported_at = exported_at or utc_now()
    lines = [
        f"Conversation with {html.unescape(bot.name)}",
        f"Model: {bot.model}",
        f"Exported: {exported_at:%Y-%m-%d %H:%M:%S} UTC",
        "",
    ]
    for message in bot.conversations:
        label = _ROLE_LABELS.get(message.role, message.role)
        lines.append(f"[{message.timestamp:%Y-%m-%d %H:%M:%S}] {label}: {html.unescape(message.content)}")
    return "\n".join(lines) + "\n"


class ConversationManager:
    def __init__(
        self,
        repository: UserRepository,
        quota: QuotaEngine,
        subscriptions: SubscriptionService | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.quota = quota
        self.subscriptions = subscriptions
        self._clock = clock

    def refresh(self, user: UserModel) -> None:
        """Apply lazy plan expiry and counter resets; the caller persists."""

        if self.subscriptions is not None:
            self.subscriptions.expire_if_needed(user)
        self.quota.reset_if_needed(user)

    async def create_bot(self, user_id: str, *, name: str, personality: str, model: str) -> BotModel:
        def _create(user: UserModel) -> BotModel:
            self.refresh(user)
            self.quota.ensure_model_allowed(model, user.plan)
            bot = BotModel(name=name, personality=personality, model=model, created_at=self._clock())
            user.bots.append(bot)
            return bot

        bot = await self.repository.update(user_id, _create)
        logger.info("bot_created", user_id=user_id, bot_id=bot.id, model=model)
        return bot

    async def list_bots(self, user_id: str) -> list[BotModel]:
        user = await self.repository.get(user_id)
        return user.bots

    async def get_bot(self, user_id: str, bot_id: str) -> BotModel:
        user = await self.repository.get(user_id)
        return _require_bot(user, bot_id)

    async def delete_bot(self, user_id: str, bot_id: str) -> None:
        def _delete(user: UserModel) -> None:
            bot = _require_bot(user, bot_id)
            user.bots = [candidate for candidate in user.bots if candidate.id != bot.id]

        await self.repository.update(user_id, _delete)
        logger.info("bot_deleted", user_id=user_id, bot_id=bot_id)

    async def prepare_exchange(
        self,
        user_id: str,
        bot_id: str,
        client_history: Sequence[Mapping[str, Any]] = (),
    ) -> ExchangeContext:
        """Check eligibility and build the model context for one chat turn."""

        def _prepare(user: UserModel) -> ExchangeContext:
            self.refresh(user)
            self.quota.ensure_can_send_message(user)
            bot = _require_bot(user, bot_id)
            self.quota.ensure_model_allowed(bot.model, user.plan)
            merged = merge_history(bot.conversations, client_history)
            return ExchangeContext(
                personality=bot.personality,
                model=bot.model,
                history=context_window(merged, get_history_limit(user.plan)),
            )

        return await self.repository.update(user_id, _prepare)

    async def record_exchange(
        self,
        user_id: str,
        bot_id: str,
        *,
        user_message: str,
        reply: str,
        client_history: Sequence[Mapping[str, Any]] = (),
    ) -> ExchangeOutcome:
        """Persist both turns and the usage increment in one exclusive section.

        The message quota is checked again here; a reply produced after the
        quota ran out is discarded and nothing is written.
        """

        def _record(user: UserModel) -> ExchangeOutcome:
            self.refresh(user)
            # Concurrent sends may have used the quota since prepare_exchange.
            self.quota.ensure_can_send_message(user)
            bot = _require_bot(user, bot_id)
            cap = get_history_limit(user.plan)
            bot.conversations = merge_history(bot.conversations, client_history)
            now = self._clock()
            append_turn(bot, "user", user_message, timestamp=now)
            append_turn(bot, "assistant", reply, timestamp=now)
            near_limit = near_history_limit(len(bot.conversations), cap)
            bot.conversations = truncate(bot.conversations, cap)
            user.usage.messages += 1
            return ExchangeOutcome(
                reply=reply,
                usage=user.usage.model_copy(),
                conversation=list(bot.conversations),
                near_limit=near_limit,
                near_quota=self.quota.near_quota(user),
            )

        outcome = await self.repository.update(user_id, _record)
        logger.info(
            "exchange_recorded",
            user_id=user_id,
            bot_id=bot_id,
            messages_used=outcome.usage.messages,
            turns=len(outcome.conversation),
        )
        return outcome


def _require_bot(user: UserModel, bot_id: str) -> BotModel:
    bot = user.find_bot(bot_id)
    if bot is None:
        raise BotNotFound("Bot not found.")
    return bot


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


__all__ = [
    "ConversationManager",
    "ExchangeContext",
    "ExchangeOutcome",
    "HISTORY_WARNING_BUFFER",
    "append_turn",
    "context_window",
    "export_transcript",
    "merge_history",
    "near_history_limit",
    "truncate",
]
