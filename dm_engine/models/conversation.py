from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from dm_engine.core.clock import ensure_utc

PLACEHOLDER_NAME = "User"


class Profile(BaseModel):
    user_id: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    placeholder: bool = False

    @property
    def display_name(self) -> str:
        return self.full_name or PLACEHOLDER_NAME

    @classmethod
    def placeholder_for(cls, user_id: str) -> "Profile":
        return cls(user_id=user_id, placeholder=True)


class Conversation(BaseModel):
    id: str
    created_at: Optional[datetime] = None
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class MessagePreview(BaseModel):
    id: Optional[str] = None
    content: str
    created_at: datetime
    is_read: bool = False
    sender_id: str

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ConversationSummary(BaseModel):
    """One row of the conversation list."""

    id: str
    updated_at: datetime
    participants: List[Profile] = []
    last_message: Optional[MessagePreview] = None

    @property
    def activity_at(self) -> datetime:
        # A stale conversation row falls back to its newest message.
        if self.last_message and self.last_message.created_at > self.updated_at:
            return self.last_message.created_at
        return self.updated_at

    def other_participant(self, user_id: str) -> Optional[Profile]:
        for profile in self.participants:
            if profile.user_id != user_id:
                return profile
        return None

    def has_unread(self, user_id: str) -> bool:
        last = self.last_message
        return bool(last and not last.is_read and last.sender_id != user_id)
