import asyncio
from datetime import timedelta

import pytest

from dm_engine.core.errors import EditDenied, FetchError, PermissionRace, RemoteError
from dm_engine.engine.store import TEMP_PREFIX, MessageStore, SendStatus
from dm_engine.models import Message, Reaction

from .conftest import START, settle


@pytest.fixture
def seeded(remote):
    remote.add_conversation("c1", "alice", "bob")
    return [
        remote.add_message("c1", "bob", "hello"),
        remote.add_message("c1", "alice", "hey"),
        remote.add_message("c1", "bob", "How are you?"),
    ]


@pytest.fixture
def store(remote, settings, clock):
    return MessageStore(remote, "alice", settings, clock)


def ids(store):
    return [m.id for m in store.messages]


def test_load_orders_history_and_marks_incoming_read(store, remote, seeded):
    late = remote.add_message("c1", "bob", "first", created_at=START - timedelta(minutes=5))

    assert asyncio.run(store.load("c1")) is True

    assert ids(store) == [late.id] + [m.id for m in seeded]
    incoming = [m for m in store.messages if m.sender_id == "bob"]
    assert all(m.is_read for m in incoming)
    assert not store.get(seeded[1].id).is_read
    assert remote.count("mark_read") == 1


def test_load_resolves_reply_targets_outside_the_conversation(store, remote, seeded):
    remote.add_conversation("c2", "alice", "carol")
    elsewhere = remote.add_message("c2", "carol", "quoted")
    reply = remote.add_message("c1", "bob", "re", reply_to_id=elsewhere.id)
    inner = remote.add_message("c1", "alice", "re2", reply_to_id=seeded[0].id)

    asyncio.run(store.load("c1"))

    entries = {e.message.id: e for e in store.entries()}
    assert entries[reply.id].reply_to.content == "quoted"
    assert entries[inner.id].reply_to.id == seeded[0].id


def test_load_failure_raises_fetch_error(store, remote, seeded):
    remote.fail["fetch_messages"] = RemoteError("transport", "down")

    with pytest.raises(FetchError):
        asyncio.run(store.load("c1"))
    assert len(store) == 0


def test_confirmation_before_insert_event_keeps_position(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        outcome = await store.send("hi")
        assert outcome.status == SendStatus.CONFIRMED
        assert store.index_of(outcome.message.id) == 3

        # the INSERT notification for the same row arrives afterwards
        assert store.apply_remote_insert(outcome.message) is False
        return outcome

    outcome = asyncio.run(scenario())
    assert len(store) == 4
    assert store.index_of(outcome.message.id) == 3
    assert not any(i.startswith(TEMP_PREFIX) for i in ids(store))


def test_insert_event_before_confirmation_keeps_position(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        gate = remote.gates["insert_message:respond"] = asyncio.Event()
        task = asyncio.create_task(store.send("hi"))
        await settle()

        temp_id = ids(store)[3]
        assert temp_id.startswith(TEMP_PREFIX)
        row = next(m for m in remote.messages.values() if m.content == "hi")

        store.apply_remote_insert(row)
        assert ids(store)[3] == row.id
        assert len(store) == 4

        gate.set()
        outcome = await task
        return row, outcome

    row, outcome = asyncio.run(scenario())
    assert outcome.status == SendStatus.CONFIRMED
    assert outcome.message.id == row.id
    assert ids(store)[3] == row.id
    assert len(store) == 4


def test_optimistic_entry_is_visible_while_send_is_in_flight(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        gate = remote.gates["insert_message"] = asyncio.Event()
        task = asyncio.create_task(store.send("hi"))
        await settle()
        pending = store.entries()[-1]
        gate.set()
        await task
        return pending

    pending = asyncio.run(scenario())
    assert pending.pending is True
    assert pending.message.content == "hi"
    assert pending.message.sender_id == "alice"


def test_race_tolerant_send_leaves_exactly_one_message(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        remote.fail["insert_message"] = PermissionRace("409", "duplicate client_id")
        return await store.send("hi")

    outcome = asyncio.run(scenario())
    assert outcome.status == SendStatus.TOLERATED
    assert [m.content for m in store.messages].count("hi") == 1


def test_failed_send_removes_entry_and_restores_content(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        remote.fail["insert_message"] = RemoteError("500", "boom")
        return await store.send("hi")

    outcome = asyncio.run(scenario())
    assert outcome.status == SendStatus.FAILED
    assert outcome.restored_content == "hi"
    assert ids(store) == [m.id for m in seeded]


def test_late_confirmation_after_switch_is_dropped(store, remote, seeded):
    remote.add_conversation("c2", "alice", "carol")

    async def scenario():
        await store.load("c1")
        gate = remote.gates["insert_message"] = asyncio.Event()
        task = asyncio.create_task(store.send("hi"))
        await settle()
        await store.load("c2")
        gate.set()
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.status == SendStatus.DROPPED
    assert store.conversation_id == "c2"
    assert len(store) == 0


def test_delete_is_idempotent(store, remote, seeded):
    target = seeded[1].id

    async def scenario():
        await store.load("c1")
        assert await store.delete_message(target) is True

    asyncio.run(scenario())
    after_first = ids(store)
    assert target not in after_first

    assert store.apply_remote_delete(target) is False
    assert store.apply_remote_delete(target) is False
    assert ids(store) == after_first
    assert target not in remote.messages


def test_delete_of_someone_elses_message_is_denied(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        await store.delete_message(seeded[0].id)

    with pytest.raises(EditDenied):
        asyncio.run(scenario())


def test_failed_delete_restores_message_in_place(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        remote.fail["delete_message"] = RemoteError("500", "boom")
        return await store.delete_message(seeded[1].id)

    assert asyncio.run(scenario()) is False
    assert ids(store) == [m.id for m in seeded]


def test_pending_message_deleted_before_confirmation_is_removed_remotely(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        gate = remote.gates["insert_message"] = asyncio.Event()
        task = asyncio.create_task(store.send("oops"))
        await settle()
        temp_id = ids(store)[-1]
        assert await store.delete_message(temp_id) is True
        assert len(store) == 3
        gate.set()
        outcome = await task
        await store.drain()
        return outcome

    outcome = asyncio.run(scenario())
    assert outcome.message is None
    assert ids(store) == [m.id for m in seeded]
    assert all(m.content != "oops" for m in remote.messages.values())


def test_edit_window_boundary(store, remote, seeded):
    mine = remote.add_message("c1", "alice", "mine", created_at=START)
    theirs = remote.add_message("c1", "bob", "theirs", created_at=START)
    asyncio.run(store.load("c1"))

    assert store.can_edit(mine.id, now=START + timedelta(minutes=14, seconds=59)) is True
    assert store.can_edit(mine.id, now=START + timedelta(minutes=15, seconds=1)) is False
    assert store.can_edit(theirs.id, now=START + timedelta(minutes=1)) is False


def test_edit_after_window_is_denied(store, remote, clock, seeded):
    mine = remote.add_message("c1", "alice", "mine", created_at=START)

    async def scenario():
        await store.load("c1")
        clock.advance(minutes=16)
        await store.edit(mine.id, "changed")

    with pytest.raises(EditDenied):
        asyncio.run(scenario())
    assert store.get(mine.id).content == "mine"


def test_edit_sets_content_and_edited_at(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        return await store.edit(seeded[1].id, "hey there")

    edited = asyncio.run(scenario())
    assert edited.content == "hey there"
    assert edited.edited_at is not None
    assert remote.messages[seeded[1].id].content == "hey there"


def test_failed_edit_reverts(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        remote.fail["update_message"] = RemoteError("500", "boom")
        return await store.edit(seeded[1].id, "hey there")

    assert asyncio.run(scenario()) is None
    current = store.get(seeded[1].id)
    assert current.content == "hey"
    assert current.edited_at is None


def test_react_twice_is_one_reaction(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        assert await store.react(seeded[0].id, "👍") is True
        assert await store.react(seeded[0].id, "👍") is True

    asyncio.run(scenario())
    assert store.reactions_for(seeded[0].id) == [Reaction(message_id=seeded[0].id, user_id="alice", emoji="👍")]
    assert len(remote.reactions) == 1


def test_reaction_summary_counts_per_emoji(store, remote, seeded):
    target = seeded[0].id
    for user, emoji in (("bob", "👍"), ("alice", "👍"), ("alice", "❤️")):
        reaction = Reaction(message_id=target, user_id=user, emoji=emoji)
        remote.reactions[reaction.key] = reaction
    asyncio.run(store.load("c1"))

    summary = {c.emoji: (c.count, c.reacted) for c in store.reaction_summary(target)}
    assert summary == {"👍": (2, True), "❤️": (1, True)}


def test_unreact_failure_restores_reaction(store, remote, seeded):
    async def scenario():
        await store.load("c1")
        await store.react(seeded[0].id, "🔥")
        remote.fail["delete_reaction"] = RemoteError("500", "boom")
        return await store.unreact(seeded[0].id, "🔥")

    assert asyncio.run(scenario()) is False
    assert [r.emoji for r in store.reactions_for(seeded[0].id)] == ["🔥"]


def test_remote_update_keeps_reply_and_reactions(store, remote, seeded):
    reply = remote.add_message("c1", "bob", "re", reply_to_id=seeded[1].id)
    reaction = Reaction(message_id=reply.id, user_id="alice", emoji="👍")
    remote.reactions[reaction.key] = reaction
    asyncio.run(store.load("c1"))

    bare = reply.model_copy(update={"content": "re (edited)", "edited_at": START, "reply_to_id": None})
    assert store.apply_remote_update(bare) is True

    entry = next(e for e in store.entries() if e.message.id == reply.id)
    assert entry.message.content == "re (edited)"
    assert entry.message.reply_to_id == seeded[1].id
    assert entry.reply_to.id == seeded[1].id
    assert entry.reactions == [reaction]


def test_remote_insert_for_other_conversation_is_ignored(store, remote, seeded):
    asyncio.run(store.load("c1"))
    stray = Message(id="x", conversation_id="c9", sender_id="bob", content="?", created_at=START)

    assert store.apply_remote_insert(stray) is False
    assert "x" not in ids(store)


def test_events_during_load_are_replayed(store, remote, seeded):
    fresh = Message(
        id="fresh", conversation_id="c1", sender_id="bob", content="new", created_at=START + timedelta(hours=1)
    )

    async def scenario():
        gate = remote.gates["fetch_messages"] = asyncio.Event()
        task = asyncio.create_task(store.load("c1"))
        await settle()
        store.apply_remote_insert(fresh)
        store.apply_remote_delete(seeded[0].id)
        gate.set()
        return await task

    assert asyncio.run(scenario()) is True
    assert ids(store) == [seeded[1].id, seeded[2].id, "fresh"]


def test_search_is_case_insensitive_and_non_destructive(store, remote, seeded):
    asyncio.run(store.load("c1"))

    assert [m.content for m in store.search("HOW")] == ["How are you?"]
    assert len(store.search("")) == 3
    assert len(store) == 3


@pytest.mark.parametrize("insert_event", [False, True])
def test_send_confirmed_during_reload_stays_visible(store, remote, seeded, insert_event):
    async def scenario():
        await store.load("c1")
        # the reload's snapshot is taken before the send lands
        gate = remote.gates["fetch_reactions"] = asyncio.Event()
        reload = asyncio.create_task(store.load("c1"))
        await settle()
        outcome = await store.send("hi")
        assert outcome.status == SendStatus.CONFIRMED
        if insert_event:
            assert store.apply_remote_insert(outcome.message) is False
        gate.set()
        assert await reload is True
        return outcome

    outcome = asyncio.run(scenario())
    assert ids(store) == [m.id for m in seeded] + [outcome.message.id]
    assert store.get(outcome.message.id).content == "hi"


def test_delete_during_reload_is_not_undone_by_the_snapshot(store, remote, seeded):
    target = seeded[1].id

    async def scenario():
        await store.load("c1")
        gate = remote.gates["fetch_reactions"] = asyncio.Event()
        reload = asyncio.create_task(store.load("c1"))
        await settle()
        assert await store.delete_message(target) is True
        gate.set()
        await reload

    asyncio.run(scenario())
    assert target not in ids(store)
    # a late INSERT for the deleted row is ignored as well
    assert store.apply_remote_insert(seeded[1]) is False
    assert target not in ids(store)
