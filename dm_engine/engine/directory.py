"""Conversation list for the signed-in user."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

from dm_engine.core.clock import utcnow
from dm_engine.core.errors import FetchError, PermissionRace, RemoteError
from dm_engine.models import (
    Conversation,
    ConversationSummary,
    Message,
    MessagePreview,
    Profile,
)
from dm_engine.remote.base import RemoteStore

logger = logging.getLogger(__name__)


def _preview(message: Message) -> MessagePreview:
    return MessagePreview(
        id=message.id,
        content=message.content,
        created_at=message.created_at,
        is_read=message.is_read,
        sender_id=message.sender_id,
    )


class ConversationDirectory:
    def __init__(self, remote: RemoteStore, user_id: str) -> None:
        self.user_id = user_id
        self._remote = remote
        self._entries: Dict[str, ConversationSummary] = {}
        self._deep_links: Set[str] = set()

    @property
    def entries(self) -> List[ConversationSummary]:
        return sorted(self._entries.values(), key=lambda s: s.activity_at, reverse=True)

    def get(self, conversation_id: str) -> Optional[ConversationSummary]:
        return self._entries.get(conversation_id)

    def unread_count(self) -> int:
        return sum(1 for s in self._entries.values() if s.has_unread(self.user_id))

    async def list(self) -> List[ConversationSummary]:
        try:
            ids = await self._remote.list_conversation_ids(self.user_id)
            conversations = await self._remote.fetch_conversations(ids) if ids else []
        except RemoteError as exc:
            logger.warning("[DIRECTORY] listing for %s failed: %s", self.user_id, exc)
            raise FetchError("could not list conversations", exc) from exc

        summaries = await asyncio.gather(*(self._summarize(c) for c in conversations))
        entries = {s.id: s for s in summaries}
        # Deep-linked conversations whose rows are not visible yet stay listed.
        for conversation_id in self._deep_links:
            if conversation_id not in entries and conversation_id in self._entries:
                entries[conversation_id] = self._entries[conversation_id]
        self._deep_links &= set(entries) - {s.id for s in summaries}
        self._entries = entries
        logger.info("[DIRECTORY] %s has %d conversations", self.user_id, len(entries))
        return self.entries

    async def refresh(self, conversation_id: str) -> Optional[ConversationSummary]:
        """Re-resolve one conversation, e.g. after its last message was deleted."""
        existing = self._entries.get(conversation_id)
        if existing is None:
            return None
        last = await self._last_message(conversation_id)
        summary = existing.model_copy(update={"last_message": _preview(last) if last else None})
        self._entries[conversation_id] = summary
        return summary

    async def upsert_from_deep_link(
        self,
        conversation_id: str,
        fallback_profile: Optional[Profile] = None,
    ) -> ConversationSummary:
        participants = await self._resolve_participants(conversation_id)
        if fallback_profile is not None and not any(p.user_id != self.user_id for p in participants):
            # Participant rows not visible yet: the create/list race.
            participants = [p for p in participants if p.user_id == self.user_id]
            participants.append(fallback_profile)
        last = await self._last_message(conversation_id)

        existing = self._entries.get(conversation_id)
        if existing is not None:
            updated_at = existing.updated_at
        elif last is not None:
            updated_at = last.created_at
        else:
            updated_at = utcnow()
        summary = ConversationSummary(
            id=conversation_id,
            updated_at=updated_at,
            participants=participants,
            last_message=_preview(last) if last else None,
        )
        self._entries[conversation_id] = summary
        self._deep_links.add(conversation_id)
        return summary

    async def find_or_create_direct(self, other_user_id: str) -> str:
        """Id of the direct conversation with ``other_user_id``, created if needed.

        Creation is a conditional insert on the backend's unique pair key, so
        two sessions racing here converge on one conversation.
        """
        if other_user_id == self.user_id:
            raise ValueError("cannot start a conversation with yourself")
        try:
            existing = await self._remote.find_shared_conversation(self.user_id, other_user_id)
            if existing:
                return existing
            conversation_id = await self._remote.create_direct_conversation(self.user_id, other_user_id)
        except PermissionRace:
            try:
                conversation_id = await self._remote.find_shared_conversation(self.user_id, other_user_id)
            except RemoteError as exc:
                raise FetchError("could not look up the conversation after a create race", exc) from exc
            if not conversation_id:
                raise FetchError("conversation vanished after a create race")
        except RemoteError as exc:
            raise FetchError("could not open a direct conversation", exc) from exc
        logger.info("[DIRECTORY] direct %s <-> %s is %s", self.user_id, other_user_id, conversation_id)
        return conversation_id

    # Router feed
    def apply_message(self, message: Message) -> None:
        entry = self._entries.get(message.conversation_id)
        if entry is None:
            return
        last = entry.last_message
        update = {}
        if last is None or message.created_at >= last.created_at:
            update["last_message"] = _preview(message)
        if message.created_at > entry.updated_at:
            update["updated_at"] = message.created_at
        if update:
            self._entries[entry.id] = entry.model_copy(update=update)

    def apply_message_update(self, message: Message) -> None:
        entry = self._entries.get(message.conversation_id)
        if entry is None or entry.last_message is None or entry.last_message.id != message.id:
            return
        preview = entry.last_message.model_copy(
            update={"content": message.content, "is_read": message.is_read}
        )
        self._entries[entry.id] = entry.model_copy(update={"last_message": preview})

    def apply_message_delete(self, conversation_id: Optional[str], message_id: str) -> bool:
        """True when the deleted message was a preview and needs a refresh."""
        candidates = [self._entries[conversation_id]] if conversation_id in self._entries else self._entries.values()
        for entry in candidates:
            if entry.last_message is not None and entry.last_message.id == message_id:
                self._entries[entry.id] = entry.model_copy(update={"last_message": None})
                return True
        return False

    # Resolution helpers
    async def _summarize(self, conversation: Conversation) -> ConversationSummary:
        participants, last = await asyncio.gather(
            self._resolve_participants(conversation.id),
            self._last_message(conversation.id),
        )
        return ConversationSummary(
            id=conversation.id,
            updated_at=conversation.updated_at,
            participants=participants,
            last_message=_preview(last) if last else None,
        )

    async def _resolve_participants(self, conversation_id: str) -> List[Profile]:
        try:
            user_ids = await self._remote.fetch_participants(conversation_id)
        except RemoteError as exc:
            logger.warning("[DIRECTORY] participants of %s unavailable: %s", conversation_id, exc)
            return []
        return list(await asyncio.gather(*(self._profile(u) for u in user_ids)))

    async def _profile(self, user_id: str) -> Profile:
        try:
            return await self._remote.fetch_profile(user_id)
        except RemoteError as exc:
            logger.info("[DIRECTORY] profile %s unavailable (%s), using placeholder", user_id, exc)
            return Profile.placeholder_for(user_id)

    async def _last_message(self, conversation_id: str) -> Optional[Message]:
        try:
            return await self._remote.fetch_last_message(conversation_id)
        except RemoteError as exc:
            logger.warning("[DIRECTORY] last message of %s unavailable: %s", conversation_id, exc)
            return None
