from __future__ import annotations

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dm_engine.core.config import Settings
from dm_engine.core.errors import PermissionRace, RemoteError
from dm_engine.models import Conversation, Message, MessageDraft, Profile, Reaction
from dm_engine.realtime.events import INSERT, MESSAGES_TABLE, change_payload
from dm_engine.server.db.session import get_db
from dm_engine.server.main import app
from dm_engine.server.models import Base


START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Advances by ``tick`` on every read so successive timestamps differ."""

    def __init__(self, start: datetime = START, tick: timedelta = timedelta(milliseconds=1)) -> None:
        self.now = start
        self.tick = tick

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.tick
        return current

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeRemote:
    """In-memory stand-in for the hosted tables.

    ``fail[op]`` makes ``op`` raise; ``gates[op]`` holds ``op`` until the
    event is set. ``insert_message`` writes its row before waiting on
    ``gates["insert_message:respond"]`` so a test can deliver the INSERT
    notification ahead of the response.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.clock = clock or FakeClock()
        self.messages: Dict[str, Message] = {}
        self.reactions: Dict[Tuple[str, str, str], Reaction] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.participants: Dict[str, List[str]] = {}
        self.direct_keys: Dict[str, str] = {}
        self.profiles: Dict[str, Profile] = {}
        self.fail: Dict[str, RemoteError] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, Any]] = []
        self._ids = 0

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}-{self._ids}"

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op, args))
        await asyncio.sleep(0)
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.fail.get(op)
        if error is not None:
            raise error

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    # seeding helpers
    def add_conversation(self, conversation_id: str, *user_ids: str, updated_at: Optional[datetime] = None) -> None:
        self.conversations[conversation_id] = Conversation(
            id=conversation_id, created_at=START, updated_at=updated_at or START
        )
        self.participants[conversation_id] = list(user_ids)

    def add_message(self, conversation_id: str, sender_id: str, content: str, **fields: Any) -> Message:
        message = Message(
            id=fields.pop("id", None) or self._next_id("msg"),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=fields.pop("created_at", None) or self.clock(),
            **fields,
        )
        self.messages[message.id] = message
        return message

    # messages
    async def fetch_messages(self, conversation_id: str) -> List[Message]:
        await self._enter("fetch_messages", conversation_id)
        rows = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        return sorted(rows, key=lambda m: m.created_at)

    async def fetch_messages_by_ids(self, ids: Sequence[str]) -> List[Message]:
        await self._enter("fetch_messages_by_ids", list(ids))
        return [self.messages[i] for i in ids if i in self.messages]

    async def fetch_last_message(self, conversation_id: str) -> Optional[Message]:
        await self._enter("fetch_last_message", conversation_id)
        rows = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        return max(rows, key=lambda m: m.created_at) if rows else None

    async def insert_message(self, draft: MessageDraft) -> Message:
        await self._enter("insert_message", draft)
        if draft.client_id and any(m.client_id == draft.client_id for m in self.messages.values()):
            raise PermissionRace("409", "duplicate client_id")
        message = self.add_message(
            draft.conversation_id,
            draft.sender_id,
            draft.content,
            client_id=draft.client_id,
            attachment_url=draft.attachment_url,
            attachment_type=draft.attachment_type,
            reply_to_id=draft.reply_to_id,
        )
        if draft.conversation_id in self.conversations:
            conversation = self.conversations[draft.conversation_id]
            self.conversations[draft.conversation_id] = conversation.model_copy(
                update={"updated_at": message.created_at}
            )
        gate = self.gates.get("insert_message:respond")
        if gate is not None:
            await gate.wait()
        return message

    async def update_message(self, message_id: str, *, content=None, edited_at=None) -> Message:
        await self._enter("update_message", message_id, content)
        current = self.messages.get(message_id)
        if current is None:
            raise RemoteError("404", "message not found")
        update: Dict[str, Any] = {}
        if content is not None:
            update["content"] = content
            update["edited_at"] = edited_at or self.clock()
        updated = current.model_copy(update=update)
        self.messages[message_id] = updated
        return updated

    async def mark_read(self, ids: Sequence[str]) -> int:
        await self._enter("mark_read", list(ids))
        updated = 0
        for message_id in ids:
            current = self.messages.get(message_id)
            if current is not None and not current.is_read:
                self.messages[message_id] = current.model_copy(update={"is_read": True})
                updated += 1
        return updated

    async def delete_message(self, message_id: str) -> bool:
        await self._enter("delete_message", message_id)
        for key in [k for k in self.reactions if k[0] == message_id]:
            del self.reactions[key]
        return self.messages.pop(message_id, None) is not None

    # reactions
    async def fetch_reactions(self, message_ids: Sequence[str]) -> List[Reaction]:
        await self._enter("fetch_reactions", list(message_ids))
        wanted = set(message_ids)
        return [r for r in self.reactions.values() if r.message_id in wanted]

    async def upsert_reaction(self, reaction: Reaction) -> Reaction:
        await self._enter("upsert_reaction", reaction)
        self.reactions.setdefault(reaction.key, reaction)
        return self.reactions[reaction.key]

    async def delete_reaction(self, reaction: Reaction) -> bool:
        await self._enter("delete_reaction", reaction)
        return self.reactions.pop(reaction.key, None) is not None

    # conversations
    async def list_conversation_ids(self, user_id: str) -> List[str]:
        await self._enter("list_conversation_ids", user_id)
        return [cid for cid, users in self.participants.items() if user_id in users]

    async def fetch_conversations(self, ids: Sequence[str]) -> List[Conversation]:
        await self._enter("fetch_conversations", list(ids))
        return [self.conversations[i] for i in ids if i in self.conversations]

    async def fetch_participants(self, conversation_id: str) -> List[str]:
        await self._enter("fetch_participants", conversation_id)
        return list(self.participants.get(conversation_id, []))

    async def find_shared_conversation(self, user_id: str, other_user_id: str) -> Optional[str]:
        await self._enter("find_shared_conversation", user_id, other_user_id)
        for cid, users in self.participants.items():
            if user_id in users and other_user_id in users:
                return cid
        return None

    async def create_direct_conversation(self, user_id: str, other_user_id: str) -> str:
        await self._enter("create_direct_conversation", user_id, other_user_id)
        key = ":".join(sorted((user_id, other_user_id)))
        if key in self.direct_keys:
            return self.direct_keys[key]
        conversation_id = self._next_id("conv")
        self.direct_keys[key] = conversation_id
        self.add_conversation(conversation_id, user_id, other_user_id, updated_at=self.clock())
        return conversation_id

    # profiles
    async def fetch_profile(self, user_id: str) -> Profile:
        await self._enter("fetch_profile", user_id)
        if user_id not in self.profiles:
            raise RemoteError("404", f"profile {user_id} not found")
        return self.profiles[user_id]


async def _call(callback: Callable, *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class FakeSubscription:
    def __init__(self, transport: "FakeTransport", table: str, event: str, conversation_id: str, callback) -> None:
        self.transport = transport
        self.table = table
        self.event = event
        self.conversation_id = conversation_id
        self.callback = callback
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        if self in self.transport.subscriptions:
            self.transport.subscriptions.remove(self)


class FakePresenceChannel:
    def __init__(self, transport: "FakeTransport", name: str, key: str, on_sync, on_join=None, on_leave=None) -> None:
        self.transport = transport
        self.name = name
        self.key = key
        self.on_sync = on_sync
        self.on_join = on_join
        self.on_leave = on_leave
        self.tracked: List[Dict[str, Any]] = []
        self.closed = False

    async def track(self, meta: Dict[str, Any]) -> None:
        self.tracked.append(dict(meta))
        await self.transport.track(self.name, self.key, meta)

    def state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.transport.snapshot(self.name)

    async def close(self) -> None:
        self.closed = True
        await self.transport.leave(self)


class FakeTransport:
    """Shared by every simulated user; presence state is per channel name."""

    def __init__(self) -> None:
        self.subscriptions: List[FakeSubscription] = []
        self.channels: List[FakePresenceChannel] = []
        self.presence: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.listeners: List[Callable[[], Any]] = []

    async def subscribe_changes(self, table, event, conversation_id, callback) -> FakeSubscription:
        subscription = FakeSubscription(self, table, event, conversation_id, callback)
        self.subscriptions.append(subscription)
        return subscription

    async def join_presence(self, channel, key, on_sync, on_join=None, on_leave=None) -> FakePresenceChannel:
        presence = FakePresenceChannel(self, channel, key, on_sync, on_join, on_leave)
        self.channels.append(presence)
        await _call(on_sync, self.snapshot(channel))
        return presence

    def add_reconnect_listener(self, listener):
        self.listeners.append(listener)

        def remove() -> None:
            if listener in self.listeners:
                self.listeners.remove(listener)

        return remove

    # simulation
    def snapshot(self, channel: str) -> Dict[str, List[Dict[str, Any]]]:
        return {key: [dict(meta)] for key, meta in self.presence.get(channel, {}).items()}

    def open_channels(self, name: str) -> List[FakePresenceChannel]:
        return [c for c in self.channels if c.name == name and not c.closed]

    async def track(self, channel: str, key: str, meta: Dict[str, Any]) -> None:
        self.presence.setdefault(channel, {})[key] = dict(meta)
        for presence in self.open_channels(channel):
            if presence.on_join is not None:
                await _call(presence.on_join, key, dict(meta))
            await _call(presence.on_sync, self.snapshot(channel))

    async def leave(self, presence: FakePresenceChannel) -> None:
        if presence in self.channels:
            self.channels.remove(presence)
        if any(c.key == presence.key for c in self.open_channels(presence.name)):
            return
        if self.presence.get(presence.name, {}).pop(presence.key, None) is None:
            return
        for other in self.open_channels(presence.name):
            if other.on_leave is not None:
                await _call(other.on_leave, presence.key)
            await _call(other.on_sync, self.snapshot(presence.name))

    async def sync(self, channel: str, state: Dict[str, List[Dict[str, Any]]]) -> None:
        """Push an arbitrary snapshot, as after a resync."""
        self.presence[channel] = {key: metas[-1] for key, metas in state.items() if metas}
        for presence in self.open_channels(channel):
            await _call(presence.on_sync, self.snapshot(channel))

    async def emit(self, payload: Dict[str, Any]) -> None:
        op = str(payload.get("type", "")).upper()
        for subscription in list(self.subscriptions):
            if subscription.table != payload.get("table"):
                continue
            if subscription.event not in ("*", op):
                continue
            if subscription.conversation_id != payload.get("conversation_id"):
                continue
            await _call(subscription.callback, payload)

    async def reconnect(self) -> None:
        for listener in list(self.listeners):
            await _call(listener)


def insert_payload(message: Message) -> Dict[str, Any]:
    return change_payload(MESSAGES_TABLE, INSERT, message.to_wire(), conversation_id=message.conversation_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote(clock) -> FakeRemote:
    return FakeRemote(clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, typing_idle_seconds=0.05)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def api(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(api) -> TestClient:
    return TestClient(api)
