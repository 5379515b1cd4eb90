"""Client-side cache of the open conversation's messages.

The store is mutated from three directions: optimistic local sends, local
edit/delete/react commands, and remote change events fed in by the router.
Remote handlers are idempotent and commute with the optimistic path, so the
two may race in either order.

Optimistic sends are tracked as ``Pending(temp_id) -> Confirmed(real_id)``.
Screen position lives in ``_order`` and a confirmation swaps the key at the
temporary entry's index, so a confirmed message never moves.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Coroutine, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from dm_engine.core.clock import Clock, utcnow
from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import EditDenied, FetchError, PermissionRace, RemoteError
from dm_engine.models import Attachment, Message, MessageDraft, Reaction
from dm_engine.remote.base import RemoteStore

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"

ReactionKey = Tuple[str, str, str]


def within_edit_window(created_at: datetime, now: datetime, window: timedelta) -> bool:
    return now - created_at <= window


class SendStatus(str, Enum):
    CONFIRMED = "confirmed"
    # rejected as a duplicate row: the optimistic entry stays
    TOLERATED = "tolerated"
    FAILED = "failed"
    # the conversation was closed or switched before the write completed
    DROPPED = "dropped"


@dataclass
class SendOutcome:
    status: SendStatus
    temp_id: str
    message: Optional[Message] = None
    restored_content: Optional[str] = None
    error: Optional[RemoteError] = None


@dataclass
class MessageEntry:
    message: Message
    reply_to: Optional[Message] = None
    reactions: List[Reaction] = field(default_factory=list)
    pending: bool = False


@dataclass
class ReactionCount:
    emoji: str
    count: int
    reacted: bool


class MessageStore:
    def __init__(
        self,
        remote: RemoteStore,
        user_id: str,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or default_settings
        self.user_id = user_id
        self.conversation_id: Optional[str] = None
        self._remote = remote
        self._clock = clock
        self._edit_window = timedelta(seconds=self.settings.edit_window_seconds)
        self._epoch = 0
        self._order: List[str] = []
        self._messages: Dict[str, Message] = {}
        self._pending: Dict[str, MessageDraft] = {}
        self._confirmed: Dict[str, str] = {}
        self._deleted_pending: Set[str] = set()
        # Confirmed ids deleted locally; an older snapshot or a late INSERT must not bring them back.
        self._deleted_ids: Set[str] = set()
        self._reply_refs: Dict[str, Message] = {}
        self._reactions: Dict[str, Dict[ReactionKey, Reaction]] = {}
        self._replay: Optional[List[Callable[[], object]]] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def messages(self) -> List[Message]:
        return [self._messages[key] for key in self._order]

    def __len__(self) -> int:
        return len(self._order)

    def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def index_of(self, message_id: str) -> Optional[int]:
        try:
            return self._order.index(message_id)
        except ValueError:
            return None

    def is_pending(self, message_id: str) -> bool:
        return message_id.startswith(TEMP_PREFIX) and message_id in self._messages

    def entries(self) -> List[MessageEntry]:
        return [
            MessageEntry(
                message=self._messages[key],
                reply_to=self._reply_to(self._messages[key]),
                reactions=list(self._reactions.get(key, {}).values()),
                pending=self.is_pending(key),
            )
            for key in self._order
        ]

    def reactions_for(self, message_id: str) -> List[Reaction]:
        return list(self._reactions.get(message_id, {}).values())

    def reaction_summary(self, message_id: str) -> List[ReactionCount]:
        counts: Dict[str, ReactionCount] = {}
        for reaction in self._reactions.get(message_id, {}).values():
            item = counts.setdefault(reaction.emoji, ReactionCount(reaction.emoji, 0, False))
            item.count += 1
            if reaction.user_id == self.user_id:
                item.reacted = True
        return list(counts.values())

    def visible_message_ids(self) -> List[str]:
        return [key for key in self._order if not key.startswith(TEMP_PREFIX)]

    def search(self, text: str) -> List[Message]:
        needle = text.strip().lower()
        if not needle:
            return self.messages
        return [m for m in self.messages if needle in m.content.lower()]

    def can_edit(self, message_id: str, now: Optional[datetime] = None) -> bool:
        message = self._messages.get(message_id)
        if message is None or self.is_pending(message_id):
            return False
        if message.sender_id != self.user_id:
            return False
        return within_edit_window(message.created_at, now or self._clock(), self._edit_window)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def reset(self, conversation_id: Optional[str] = None) -> None:
        """Forget everything; completions of earlier operations are dropped."""
        self._epoch += 1
        self.conversation_id = conversation_id
        self._order = []
        self._messages = {}
        self._pending = {}
        self._confirmed = {}
        self._deleted_pending = set()
        self._deleted_ids = set()
        self._reply_refs = {}
        self._reactions = {}
        self._replay = None

    async def load(self, conversation_id: str) -> bool:
        """Fetch the full history, replacing the cached sequence.

        Returns False when the conversation changed while the fetch was in
        flight and the result was dropped.
        """
        if conversation_id != self.conversation_id:
            self.reset(conversation_id)
        epoch = self._epoch
        self._replay = []
        try:
            fetched = await self._remote.fetch_messages(conversation_id)
            known = {m.id for m in fetched}
            missing = sorted({m.reply_to_id for m in fetched if m.reply_to_id and m.reply_to_id not in known})
            refs = await self._remote.fetch_messages_by_ids(missing) if missing else []
            reactions = await self._remote.fetch_reactions(list(known))
        except RemoteError as exc:
            if epoch == self._epoch:
                self._replay = None
            logger.warning("[STORE] load %s failed: %s", conversation_id, exc)
            raise FetchError(f"could not load conversation {conversation_id}", exc) from exc
        if epoch != self._epoch:
            logger.info("[STORE] dropped stale load of %s", conversation_id)
            return False

        replay = self._replay or []
        self._replay = None
        self._install(fetched, refs, reactions)
        for apply in replay:
            apply()
        logger.info("[STORE] loaded %s messages=%d replayed=%d", conversation_id, len(self._order), len(replay))

        unread = [m.id for m in fetched if not m.is_read and m.sender_id != self.user_id]
        await self.mark_read(unread)
        return True

    def _install(
        self,
        fetched: Sequence[Message],
        refs: Sequence[Message],
        reactions: Iterable[Reaction],
    ) -> None:
        by_id: Dict[str, Message] = {}
        for message in fetched:
            if message.id not in self._deleted_ids:
                by_id.setdefault(message.id, message)
        ordered = sorted(by_id.values(), key=lambda m: m.created_at)

        # Sends still in flight, and sends confirmed after the snapshot was
        # taken, stay visible at the end in their current order.
        confirmed_ids = set(self._confirmed.values())
        pending = [(key, self._messages[key]) for key in self._order if key in self._pending]
        carried = [
            (key, self._messages[key], self._reactions.get(key))
            for key in self._order
            if key in confirmed_ids and key not in by_id
        ]

        self._order = [m.id for m in ordered]
        self._messages = {m.id: m for m in ordered}
        self._reactions = {}
        for reaction in reactions:
            if reaction.message_id in self._messages:
                self._reactions.setdefault(reaction.message_id, {})[reaction.key] = reaction
        for key, message, bucket in carried:
            self._order.append(key)
            self._messages[key] = message
            if bucket:
                self._reactions[key] = bucket

        ref_index = {m.id: m for m in refs}
        self._reply_refs = {}
        for message in ordered:
            if message.reply_to_id:
                ref = by_id.get(message.reply_to_id) or ref_index.get(message.reply_to_id)
                if ref is not None:
                    self._reply_refs[message.reply_to_id] = ref

        landed = {m.client_id: m for m in ordered if m.client_id}
        for temp_id, optimistic in pending:
            if temp_id in landed:
                self._pending.pop(temp_id, None)
                self._confirmed[temp_id] = landed[temp_id].id
                continue
            self._order.append(temp_id)
            self._messages[temp_id] = optimistic

    # ------------------------------------------------------------------
    # Local commands
    # ------------------------------------------------------------------
    async def send(
        self,
        content: str,
        attachment: Optional[Attachment] = None,
        reply_to_id: Optional[str] = None,
    ) -> SendOutcome:
        conversation_id = self._require_conversation()
        epoch = self._epoch
        temp_id = f"{TEMP_PREFIX}{uuid.uuid4().hex}"
        draft = MessageDraft(
            conversation_id=conversation_id,
            sender_id=self.user_id,
            content=content,
            client_id=temp_id,
            attachment_url=attachment.url if attachment else None,
            attachment_type=attachment.kind if attachment else None,
            reply_to_id=reply_to_id,
        )
        optimistic = Message(id=temp_id, created_at=self._clock(), is_read=False, **draft.model_dump())
        self._order.append(temp_id)
        self._messages[temp_id] = optimistic
        self._pending[temp_id] = draft
        self._remember_reply(optimistic)

        try:
            confirmed = await self._remote.insert_message(draft)
        except PermissionRace as exc:
            if epoch != self._epoch:
                return SendOutcome(SendStatus.DROPPED, temp_id, error=exc)
            logger.info("[STORE] send %s rejected as duplicate, keeping optimistic entry", temp_id)
            return SendOutcome(SendStatus.TOLERATED, temp_id, message=self._messages.get(temp_id), error=exc)
        except RemoteError as exc:
            if epoch != self._epoch:
                return SendOutcome(SendStatus.DROPPED, temp_id, error=exc)
            logger.warning("[STORE] send %s failed: %s", temp_id, exc)
            self._pending.pop(temp_id, None)
            self._deleted_pending.discard(temp_id)
            self._remove_key(temp_id)
            return SendOutcome(SendStatus.FAILED, temp_id, restored_content=content, error=exc)

        if epoch != self._epoch:
            logger.info("[STORE] dropped late confirmation %s for closed conversation", confirmed.id)
            return SendOutcome(SendStatus.DROPPED, temp_id, message=confirmed)
        message = self._confirm(temp_id, confirmed)
        return SendOutcome(SendStatus.CONFIRMED, temp_id, message=message)

    def _confirm(self, temp_id: str, message: Message) -> Optional[Message]:
        if self._confirmed.get(temp_id) == message.id and temp_id not in self._deleted_pending:
            # Second confirmation of the same send (response vs. INSERT event).
            return self._messages.get(message.id)
        self._pending.pop(temp_id, None)
        self._confirmed[temp_id] = message.id

        if temp_id in self._deleted_pending:
            self._deleted_pending.discard(temp_id)
            self._remove_key(temp_id)
            self._remove_key(message.id)
            self._deleted_ids.add(message.id)
            self._spawn(self._delete_remote_quietly(message.id))
            return None

        index = self.index_of(temp_id)
        if index is None:
            if message.id not in self._messages:
                self._insert_sorted(message)
            return self._messages.get(message.id)

        duplicate = self.index_of(message.id)
        if duplicate is not None:
            del self._order[duplicate]
            index = self.index_of(temp_id)
        self._order[index] = message.id
        self._messages.pop(temp_id, None)
        self._messages[message.id] = message
        self._remember_reply(message)
        return message

    async def edit(self, message_id: str, new_content: str) -> Optional[Message]:
        """Apply an edit locally, then remotely.

        Returns the updated message, or None when the remote write failed and
        the local edit was reverted.
        """
        if not self.can_edit(message_id):
            raise EditDenied(f"message {message_id} cannot be edited")
        if not new_content.strip():
            raise EditDenied("edited content is empty")
        epoch = self._epoch
        previous = self._messages[message_id]
        edited_at = self._clock()
        self._messages[message_id] = previous.model_copy(
            update={"content": new_content, "edited_at": edited_at}
        )
        try:
            confirmed = await self._remote.update_message(
                message_id, content=new_content, edited_at=edited_at
            )
        except RemoteError as exc:
            logger.warning("[STORE] edit %s failed: %s", message_id, exc)
            current = self._messages.get(message_id)
            if epoch == self._epoch and current is not None and current.content == new_content:
                self._messages[message_id] = current.model_copy(
                    update={"content": previous.content, "edited_at": previous.edited_at}
                )
            return None
        if epoch != self._epoch:
            return None
        self._merge_update(confirmed)
        return self._messages.get(message_id)

    async def delete_message(self, message_id: str) -> bool:
        message = self._messages.get(message_id)
        if message is None:
            return False
        if message.sender_id != self.user_id:
            raise EditDenied(f"message {message_id} belongs to another sender")
        if self.is_pending(message_id):
            # Deleted remotely once the real id is known.
            self._deleted_pending.add(message_id)
            self._remove_key(message_id)
            return True

        epoch = self._epoch
        reactions = self._reactions.get(message_id)
        self._remove_key(message_id)
        self._deleted_ids.add(message_id)
        try:
            await self._remote.delete_message(message_id)
        except RemoteError as exc:
            logger.warning("[STORE] delete %s failed, restoring: %s", message_id, exc)
            self._deleted_ids.discard(message_id)
            if epoch == self._epoch and message_id not in self._messages:
                self._insert_sorted(message)
                if reactions:
                    self._reactions[message_id] = reactions
            return False
        return True

    async def react(self, message_id: str, emoji: str) -> bool:
        if message_id not in self._messages or self.is_pending(message_id):
            return False
        epoch = self._epoch
        reaction = Reaction(message_id=message_id, user_id=self.user_id, emoji=emoji)
        bucket = self._reactions.setdefault(message_id, {})
        added = reaction.key not in bucket
        bucket[reaction.key] = reaction
        try:
            await self._remote.upsert_reaction(reaction)
        except PermissionRace:
            pass
        except RemoteError as exc:
            logger.warning("[STORE] react %s %s failed: %s", message_id, emoji, exc)
            if added and epoch == self._epoch:
                self._reactions.get(message_id, {}).pop(reaction.key, None)
            return False
        return True

    async def unreact(self, message_id: str, emoji: str) -> bool:
        epoch = self._epoch
        reaction = Reaction(message_id=message_id, user_id=self.user_id, emoji=emoji)
        removed = self._reactions.get(message_id, {}).pop(reaction.key, None)
        try:
            await self._remote.delete_reaction(reaction)
        except RemoteError as exc:
            logger.warning("[STORE] unreact %s %s failed: %s", message_id, emoji, exc)
            if removed is not None and epoch == self._epoch and message_id in self._messages:
                self._reactions.setdefault(message_id, {})[reaction.key] = removed
            return False
        return True

    async def mark_read(self, ids: Sequence[str]) -> None:
        ids = [i for i in ids if i in self._messages and not self._messages[i].is_read]
        if not ids:
            return
        epoch = self._epoch
        try:
            await self._remote.mark_read(ids)
        except RemoteError as exc:
            logger.warning("[STORE] mark read failed for %d messages: %s", len(ids), exc)
            return
        if epoch != self._epoch:
            return
        for message_id in ids:
            current = self._messages.get(message_id)
            if current is not None:
                self._messages[message_id] = current.model_copy(update={"is_read": True})

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------
    def apply_remote_insert(self, message: Message) -> bool:
        """Returns True when the event added a new visible message."""
        if not self._accepts(message.conversation_id):
            return False
        self._record(lambda: self._insert_remote(message))
        return self._insert_remote(message)

    def apply_remote_update(self, message: Message) -> bool:
        if not self._accepts(message.conversation_id):
            return False
        self._record(lambda: self._merge_update(message))
        return self._merge_update(message)

    def apply_remote_delete(self, message_id: str) -> bool:
        self._record(lambda: self._remove_key(message_id))
        return self._remove_key(message_id)

    def replace_reactions(self, message_ids: Iterable[str], reactions: Iterable[Reaction]) -> None:
        scope = {i for i in message_ids if i in self._messages}
        for message_id in scope:
            self._reactions[message_id] = {}
        for reaction in reactions:
            if reaction.message_id in scope:
                self._reactions[reaction.message_id][reaction.key] = reaction

    def _insert_remote(self, message: Message) -> bool:
        if message.id in self._messages:
            return False
        temp_id = message.client_id
        if temp_id and (temp_id in self._pending or temp_id in self._deleted_pending):
            self._confirm(temp_id, message)
            return False
        if message.id in self._deleted_ids:
            return False
        self._insert_sorted(message)
        self._remember_reply(message)
        return True

    def _merge_update(self, message: Message) -> bool:
        current = self._messages.get(message.id)
        if current is None:
            return False
        # Only server-authoritative fields; reply and reaction payloads stay.
        updated = current.model_copy(
            update={
                "content": message.content,
                "edited_at": message.edited_at,
                "is_read": message.is_read,
            }
        )
        self._messages[message.id] = updated
        if message.id in self._reply_refs:
            self._reply_refs[message.id] = updated
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _accepts(self, conversation_id: str) -> bool:
        return self.conversation_id is not None and conversation_id == self.conversation_id

    def _require_conversation(self) -> str:
        if self.conversation_id is None:
            raise RuntimeError("no conversation loaded")
        return self.conversation_id

    def _record(self, apply: Callable[[], object]) -> None:
        if self._replay is not None:
            self._replay.append(apply)

    def _insert_sorted(self, message: Message) -> None:
        index = len(self._order)
        while index > 0 and self._messages[self._order[index - 1]].created_at > message.created_at:
            index -= 1
        self._order.insert(index, message.id)
        self._messages[message.id] = message

    def _remove_key(self, key: str) -> bool:
        if key not in self._messages:
            return False
        self._messages.pop(key)
        self._order.remove(key)
        self._reactions.pop(key, None)
        return True

    def _reply_to(self, message: Message) -> Optional[Message]:
        if not message.reply_to_id:
            return None
        return self._messages.get(message.reply_to_id) or self._reply_refs.get(message.reply_to_id)

    def _remember_reply(self, message: Message) -> None:
        ref_id = message.reply_to_id
        if ref_id and ref_id in self._messages:
            self._reply_refs[ref_id] = self._messages[ref_id]

    async def _delete_remote_quietly(self, message_id: str) -> None:
        try:
            await self._remote.delete_message(message_id)
        except RemoteError as exc:
            logger.warning("[STORE] deferred delete of %s failed: %s", message_id, exc)

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for deferred remote writes (deletes of messages removed while pending)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
