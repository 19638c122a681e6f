from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from chathub.domain.models import BotModel, MessageModel
from chathub.services.conversations import (
    ConversationManager,
    append_turn,
    context_window,
    export_transcript,
    merge_history,
    near_history_limit,
    truncate,
)
from chathub.services.exceptions import BotNotFound, ModelNotAllowed, QuotaExceeded
from tests.conftest import make_user


def _turns(count: int) -> list[MessageModel]:
    return [MessageModel(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}") for i in range(count)]


@pytest.fixture
def manager(repository, quota, clock) -> ConversationManager:
    return ConversationManager(repository, quota, clock=clock)


@pytest_asyncio.fixture
async def user_with_bot(repository, clock):
    user = make_user(clock)
    user.bots.append(BotModel(name="Helper", personality="Be kind.", model="gpt-4o-mini"))
    await repository.insert(user)
    return user


def test_truncate_keeps_newest_turns():
    turns = _turns(105)
    kept = truncate(turns, 100)

    assert len(kept) == 100
    assert kept[0].content == "turn 5"
    assert kept[-1].content == "turn 104"
    assert truncate(turns[:3], 100) == turns[:3]


def test_context_window_does_not_mutate_history():
    turns = _turns(30)
    window = context_window(turns, 20)

    assert len(window) == 20
    assert len(turns) == 30


def test_merge_history_appends_only_unknown_ids():
    server = _turns(2)
    client = [
        {"id": server[1].id, "role": "assistant", "content": "turn 1"},
        {"id": "client-1", "role": "user", "content": "sent offline"},
    ]

    merged = merge_history(server, client)

    assert len(merged) == 3
    assert merged[-1].id == "client-1"
    assert merged[-1].content == "sent offline"


def test_merge_history_treats_id_less_entries_as_new():
    server = _turns(1)
    client = [
        {"role": "user", "content": "turn 0"},
        {"role": "user", "content": "again", "timestamp": "2024-05-01T10:00:00+00:00"},
    ]

    merged = merge_history(server, client)

    assert len(merged) == 3
    assert merged[1].id and merged[1].id != server[0].id
    assert merged[2].timestamp == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_near_history_limit():
    assert not near_history_limit(15, 20)
    assert near_history_limit(16, 20)
    assert near_history_limit(96, 100)


def test_export_transcript_renders_plain_text():
    bot = BotModel(name="Tom &amp; Jerry", personality="p", model="gpt-4o-mini")
    append_turn(bot, "user", "Hi &lt;there&gt;", timestamp=datetime(2024, 5, 15, 9, 30, tzinfo=timezone.utc))
    append_turn(bot, "assistant", "Hello!", timestamp=datetime(2024, 5, 15, 9, 31, tzinfo=timezone.utc))

    text = export_transcript(bot, exported_at=datetime(2024, 5, 15, 10, tzinfo=timezone.utc))

    assert text.startswith("Conversation with Tom & Jerry\n")
    assert "[2024-05-15 09:30:00] You: Hi <there>" in text
    assert "[2024-05-15 09:31:00] Bot: Hello!" in text


@pytest.mark.asyncio
async def test_bot_crud(manager, repository, clock):
    user = make_user(clock)
    await repository.insert(user)

    bot = await manager.create_bot(user.id, name="Helper", personality="Be kind.", model="gpt-4o-mini")
    assert [item.id for item in await manager.list_bots(user.id)] == [bot.id]
    assert (await manager.get_bot(user.id, bot.id)).name == "Helper"

    await manager.delete_bot(user.id, bot.id)
    assert await manager.list_bots(user.id) == []
    with pytest.raises(BotNotFound):
        await manager.delete_bot(user.id, bot.id)


@pytest.mark.asyncio
async def test_create_bot_rejects_model_outside_plan(manager, repository, clock):
    user = make_user(clock)
    await repository.insert(user)

    with pytest.raises(ModelNotAllowed):
        await manager.create_bot(user.id, name="Smart", personality="p", model="gpt-4.1")
    assert await manager.list_bots(user.id) == []


@pytest.mark.asyncio
async def test_prepare_exchange_uses_plan_window(manager, repository, user_with_bot):
    bot_id = user_with_bot.bots[0].id

    def _fill(user):
        user.bots[0].conversations = _turns(20)

    await repository.update(user_with_bot.id, _fill)
    client = [{"id": "c1", "role": "user", "content": "from client"}]

    context = await manager.prepare_exchange(user_with_bot.id, bot_id, client)

    assert context.personality == "Be kind."
    assert context.model == "gpt-4o-mini"
    assert len(context.history) == 20
    assert context.history[-1].content == "from client"
    # Preparing persists nothing beyond the lazy reset.
    assert len((await repository.get(user_with_bot.id)).bots[0].conversations) == 20


@pytest.mark.asyncio
async def test_prepare_exchange_stops_at_quota(manager, repository, user_with_bot):
    await repository.update(user_with_bot.id, lambda user: setattr(user.usage, "messages", 100))

    with pytest.raises(QuotaExceeded):
        await manager.prepare_exchange(user_with_bot.id, user_with_bot.bots[0].id)


@pytest.mark.asyncio
async def test_record_exchange_rechecks_quota(manager, repository, user_with_bot):
    bot_id = user_with_bot.bots[0].id
    await repository.update(user_with_bot.id, lambda user: setattr(user.usage, "messages", 99))
    await manager.prepare_exchange(user_with_bot.id, bot_id)
    await manager.prepare_exchange(user_with_bot.id, bot_id)

    results = await asyncio.gather(
        manager.record_exchange(user_with_bot.id, bot_id, user_message="a", reply="one"),
        manager.record_exchange(user_with_bot.id, bot_id, user_message="b", reply="two"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, QuotaExceeded) for result in results) == 1
    stored = await repository.get(user_with_bot.id)
    assert stored.usage.messages == 100
    assert len(stored.bots[0].conversations) == 2


@pytest.mark.asyncio
async def test_record_exchange_appends_both_turns_and_counts(manager, repository, user_with_bot):
    bot_id = user_with_bot.bots[0].id

    outcome = await manager.record_exchange(
        user_with_bot.id, bot_id, user_message="Hi", reply="Hello!"
    )

    assert [turn.role for turn in outcome.conversation] == ["user", "assistant"]
    assert outcome.usage.messages == 1
    assert not outcome.near_limit
    stored = await repository.get(user_with_bot.id)
    assert [turn.content for turn in stored.bots[0].conversations] == ["Hi", "Hello!"]
    assert stored.usage.messages == 1


@pytest.mark.asyncio
async def test_record_exchange_truncates_to_plan_cap(manager, repository, user_with_bot):
    bot_id = user_with_bot.bots[0].id

    def _fill(user):
        user.plan = "premium"
        user.bots[0].conversations = _turns(103)

    await repository.update(user_with_bot.id, _fill)

    outcome = await manager.record_exchange(
        user_with_bot.id, bot_id, user_message="newest question", reply="newest answer"
    )

    assert len(outcome.conversation) == 100
    assert outcome.conversation[-1].content == "newest answer"
    assert outcome.conversation[0].content == "turn 5"
    assert outcome.near_limit


@pytest.mark.asyncio
async def test_record_exchange_merges_client_history_once(manager, repository, user_with_bot):
    bot_id = user_with_bot.bots[0].id
    await manager.record_exchange(user_with_bot.id, bot_id, user_message="first", reply="one")
    stored = await repository.get(user_with_bot.id)
    known = stored.bots[0].conversations[0]

    client = [
        {"id": known.id, "role": "user", "content": "first"},
        {"id": "offline-1", "role": "user", "content": "sent while offline"},
    ]
    outcome = await manager.record_exchange(
        user_with_bot.id, bot_id, user_message="second", reply="two", client_history=client
    )

    contents = [turn.content for turn in outcome.conversation]
    assert contents == ["first", "one", "sent while offline", "second", "two"]
    assert outcome.usage.messages == 2
