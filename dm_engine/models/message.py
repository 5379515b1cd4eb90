"""Wire models for messages and reactions.

Field names follow the rows of the ``messages`` and ``message_reactions``
tables so a payload decoded from a change notification and a payload
returned by a REST call produce the same object.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from dm_engine.core.clock import ensure_utc


class AttachmentKind(str, Enum):
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"


class Attachment(BaseModel):
    url: str
    kind: AttachmentKind
    filename: Optional[str] = None

    def caption(self) -> str:
        """Synthetic content for a message that carries only this attachment."""
        if self.kind == AttachmentKind.IMAGE:
            return "📷 Photo"
        if self.kind == AttachmentKind.VOICE:
            return "🎤 Voice message"
        return f"📎 {self.filename or 'File'}"


class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    edited_at: Optional[datetime] = None
    is_read: bool = False
    attachment_url: Optional[str] = None
    attachment_type: Optional[AttachmentKind] = None
    reply_to_id: Optional[str] = None
    # temporary id the sender used for its optimistic entry
    client_id: Optional[str] = None

    @field_validator("is_read", mode="before")
    @classmethod
    def _null_is_unread(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("created_at", "edited_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def attachment(self) -> Optional[Attachment]:
        if not self.attachment_url or self.attachment_type is None:
            return None
        return Attachment(url=self.attachment_url, kind=self.attachment_type)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class MessageDraft(BaseModel):
    """Insert payload for a new message row."""

    conversation_id: str
    sender_id: str
    content: str
    client_id: Optional[str] = None
    attachment_url: Optional[str] = None
    attachment_type: Optional[AttachmentKind] = None
    reply_to_id: Optional[str] = None


class Reaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    user_id: str
    emoji: str

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.message_id, self.user_id, self.emoji)
