import asyncio
import logging

import pytest

from dm_engine.engine.router import RealtimeRouter
from dm_engine.engine.store import MessageStore
from dm_engine.models import Reaction
from dm_engine.realtime.events import (
    DELETE,
    INSERT,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    UPDATE,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    ReactionDeleted,
    ReactionInserted,
    change_payload,
    decode_change,
)

from .conftest import insert_payload


ROW = {
    "id": "m1",
    "conversation_id": "c1",
    "sender_id": "bob",
    "content": "hi",
    "created_at": "2024-03-01T12:00:00Z",
    "edited_at": None,
    "is_read": None,
    "attachment_url": None,
    "attachment_type": None,
    "reply_to_id": None,
}


def test_decode_message_variants():
    inserted = decode_change(change_payload(MESSAGES_TABLE, INSERT, ROW))
    updated = decode_change(change_payload(MESSAGES_TABLE, "update", dict(ROW, content="edited")))
    deleted = decode_change(change_payload(MESSAGES_TABLE, DELETE, old_record={"id": "m1"}, conversation_id="c1"))

    assert isinstance(inserted, MessageInserted)
    assert inserted.message.is_read is False
    assert inserted.message.created_at.tzinfo is not None
    assert isinstance(updated, MessageUpdated) and updated.message.content == "edited"
    assert isinstance(deleted, MessageDeleted)
    assert (deleted.message_id, deleted.conversation_id) == ("m1", "c1")


def test_decode_reaction_variants():
    row = {"message_id": "m1", "user_id": "bob", "emoji": "👍"}

    inserted = decode_change(change_payload(REACTIONS_TABLE, INSERT, row))
    deleted = decode_change(change_payload(REACTIONS_TABLE, DELETE, old_record=row))

    assert isinstance(inserted, ReactionInserted)
    assert isinstance(deleted, ReactionDeleted)
    assert deleted.reaction == Reaction(**row)


@pytest.mark.parametrize(
    "payload",
    [
        {"table": "profiles", "type": INSERT, "record": {}},
        {"table": MESSAGES_TABLE, "type": "TRUNCATE", "record": ROW},
        {"table": MESSAGES_TABLE, "type": INSERT, "record": {"id": "m1"}},
        {"table": REACTIONS_TABLE, "type": UPDATE, "record": {"emoji": "👍"}},
    ],
)
def test_decode_rejects_malformed_payloads(payload):
    with pytest.raises(ValueError):
        decode_change(payload)


@pytest.fixture
def wired(remote, transport, settings, clock):
    remote.add_conversation("c1", "alice", "bob")
    store = MessageStore(remote, "alice", settings, clock)
    router = RealtimeRouter(transport, store, remote)
    return store, router


def test_router_opens_three_message_subscriptions_and_one_for_reactions(wired, transport):
    store, router = wired

    async def scenario():
        await store.load("c1")
        await router.open("c1")
        opened = sorted((s.table, s.event) for s in transport.subscriptions)
        await router.close()
        return opened

    opened = asyncio.run(scenario())
    assert opened == [
        (MESSAGES_TABLE, DELETE),
        (MESSAGES_TABLE, INSERT),
        (MESSAGES_TABLE, UPDATE),
        (REACTIONS_TABLE, "*"),
    ]
    assert transport.subscriptions == []
    assert transport.listeners == []


def test_router_applies_incoming_message_and_marks_it_read(wired, remote, transport):
    store, router = wired

    async def scenario():
        await store.load("c1")
        await router.open("c1")
        message = remote.add_message("c1", "bob", "live")
        await transport.emit(insert_payload(message))
        await transport.emit(insert_payload(message))
        return message

    message = asyncio.run(scenario())
    assert [m.id for m in store.messages] == [message.id]
    assert store.get(message.id).is_read is True
    assert remote.messages[message.id].is_read is True


def test_router_skips_malformed_payloads(wired, transport, caplog):
    store, router = wired

    async def scenario():
        await store.load("c1")
        await router.open("c1")
        await router.handle_payload({"table": MESSAGES_TABLE, "type": INSERT, "record": {"id": "broken"}})

    with caplog.at_level(logging.WARNING, logger="dm_engine.engine.router"):
        asyncio.run(scenario())
    assert len(store) == 0
    assert "malformed" in caplog.text


def test_reaction_events_are_coalesced_into_one_refetch(wired, remote, transport):
    store, router = wired
    target = remote.add_message("c1", "alice", "react to me")

    async def scenario():
        await store.load("c1")
        await router.open("c1")
        fetches_before = remote.count("fetch_reactions")
        for user, emoji in (("bob", "👍"), ("bob", "❤️"), ("bob", "🔥")):
            reaction = Reaction(message_id=target.id, user_id=user, emoji=emoji)
            remote.reactions[reaction.key] = reaction
            await router.handle_payload(change_payload(REACTIONS_TABLE, INSERT, reaction.model_dump(), conversation_id="c1"))
        await router.wait_idle()
        return remote.count("fetch_reactions") - fetches_before

    refetches = asyncio.run(scenario())
    assert 1 <= refetches <= 2
    assert {r.emoji for r in store.reactions_for(target.id)} == {"👍", "❤️", "🔥"}


def test_router_ignores_events_after_close(wired, remote, transport):
    store, router = wired

    async def scenario():
        await store.load("c1")
        await router.open("c1")
        await router.close()
        message = remote.add_message("c1", "bob", "late")
        await router.handle_payload(insert_payload(message))

    asyncio.run(scenario())
    assert len(store) == 0
