from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from dm_engine.models import Conversation, Message, MessageDraft, Profile, Reaction


class RemoteStore(Protocol):
    """Table operations the engine needs from the hosted backend."""

    # messages
    async def fetch_messages(self, conversation_id: str) -> List[Message]: ...

    async def fetch_messages_by_ids(self, ids: Sequence[str]) -> List[Message]: ...

    async def fetch_last_message(self, conversation_id: str) -> Optional[Message]: ...

    async def insert_message(self, draft: MessageDraft) -> Message: ...

    async def update_message(
        self,
        message_id: str,
        *,
        content: Optional[str] = None,
        edited_at: Optional[datetime] = None,
    ) -> Message: ...

    async def mark_read(self, ids: Sequence[str]) -> int: ...

    async def delete_message(self, message_id: str) -> bool: ...

    # reactions
    async def fetch_reactions(self, message_ids: Sequence[str]) -> List[Reaction]: ...

    async def upsert_reaction(self, reaction: Reaction) -> Reaction: ...

    async def delete_reaction(self, reaction: Reaction) -> bool: ...

    # conversations
    async def list_conversation_ids(self, user_id: str) -> List[str]: ...

    async def fetch_conversations(self, ids: Sequence[str]) -> List[Conversation]: ...

    async def fetch_participants(self, conversation_id: str) -> List[str]: ...

    async def find_shared_conversation(self, user_id: str, other_user_id: str) -> Optional[str]: ...

    async def create_direct_conversation(self, user_id: str, other_user_id: str) -> str: ...

    # profiles
    async def fetch_profile(self, user_id: str) -> Profile: ...


class ObjectStorage(Protocol):
    async def upload(self, data: bytes, path: str, content_type: Optional[str] = None) -> str: ...


class Notifier(Protocol):
    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None: ...
