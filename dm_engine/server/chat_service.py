from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dm_engine.core.clock import to_wire
from dm_engine.core.config import settings
from dm_engine.realtime.events import (
    DELETE,
    INSERT,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    UPDATE,
    change_payload,
)
from dm_engine.server.change_bus import bus
from dm_engine.server.models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReaction,
    Notification,
    Profile,
)
from dm_engine.server.models.clock import db_now

logger = logging.getLogger(__name__)


class DuplicateRow(Exception):
    pass


class EditWindowClosed(Exception):
    pass


# Serialization
def message_to_dict(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "client_id": m.client_id,
        "conversation_id": m.conversation_id,
        "sender_id": m.sender_id,
        "content": m.content,
        "created_at": to_wire(m.created_at),
        "edited_at": to_wire(m.edited_at),
        "is_read": m.is_read,
        "attachment_url": m.attachment_url,
        "attachment_type": m.attachment_type,
        "reply_to_id": m.reply_to_id,
    }


def reaction_to_dict(r: MessageReaction) -> Dict[str, Any]:
    return {"message_id": r.message_id, "user_id": r.user_id, "emoji": r.emoji}


def conversation_to_dict(c: Conversation) -> Dict[str, Any]:
    return {
        "id": c.id,
        "created_at": to_wire(c.created_at),
        "updated_at": to_wire(c.updated_at),
    }


def profile_to_dict(p: Profile) -> Dict[str, Any]:
    return {"user_id": p.user_id, "full_name": p.full_name, "avatar_url": p.avatar_url}


def notification_to_dict(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "user_id": n.user_id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "reference_id": n.reference_id,
        "reference_type": n.reference_type,
        "is_read": n.is_read,
        "created_at": to_wire(n.created_at),
    }


def _publish(table: str, type: str, conversation_id: str, record=None, old_record=None) -> None:
    payload = change_payload(table, type, record, old_record, conversation_id=conversation_id)
    delivered = bus.publish(table, conversation_id, payload)
    logger.info("[PUB] %s %s conversation=%s subscribers=%d", table, type, conversation_id, delivered)


# Profiles
def get_profile(db: Session, *, user_id: str) -> Optional[Profile]:
    return db.get(Profile, user_id)


def upsert_profile(
    db: Session, *, user_id: str, full_name: Optional[str], avatar_url: Optional[str]
) -> Profile:
    profile = db.get(Profile, user_id)
    if profile is None:
        profile = Profile(user_id=user_id)
        db.add(profile)
    profile.full_name = full_name
    profile.avatar_url = avatar_url
    profile.updated_at = db_now()
    db.commit()
    db.refresh(profile)
    return profile


# Conversations
def direct_key(user_id: str, other_user_id: str) -> str:
    return ":".join(sorted((user_id, other_user_id)))


def list_membership_ids(db: Session, *, user_id: str) -> List[str]:
    rows = db.execute(
        select(Conversation.id)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .where(ConversationParticipant.user_id == user_id)
        .order_by(Conversation.updated_at.desc())
    )
    return [row[0] for row in rows]


def get_conversations(db: Session, *, ids: Sequence[str]) -> List[Conversation]:
    if not ids:
        return []
    return list(db.scalars(select(Conversation).where(Conversation.id.in_(ids))))


def list_participant_ids(db: Session, *, conversation_id: str) -> List[str]:
    return list(
        db.scalars(
            select(ConversationParticipant.user_id)
            .where(ConversationParticipant.conversation_id == conversation_id)
            .order_by(ConversationParticipant.id)
        )
    )


def find_shared_conversation(db: Session, *, user_id: str, other_user_id: str) -> Optional[str]:
    mine = select(ConversationParticipant.conversation_id).where(
        ConversationParticipant.user_id == user_id
    )
    return db.scalars(
        select(ConversationParticipant.conversation_id)
        .where(
            ConversationParticipant.user_id == other_user_id,
            ConversationParticipant.conversation_id.in_(mine),
        )
        .limit(1)
    ).first()


def create_direct_conversation(db: Session, *, user_id: str, other_user_id: str) -> Tuple[str, bool]:
    """Conditional insert on ``direct_key``; returns ``(id, created)``."""
    key = direct_key(user_id, other_user_id)
    existing = db.scalars(select(Conversation.id).where(Conversation.direct_key == key)).first()
    if existing is not None:
        return existing, False
    now = db_now()
    conversation = Conversation(direct_key=key, created_at=now, updated_at=now)
    db.add(conversation)
    try:
        db.flush()
        db.add_all(
            [
                ConversationParticipant(conversation_id=conversation.id, user_id=user_id, created_at=now),
                ConversationParticipant(conversation_id=conversation.id, user_id=other_user_id, created_at=now),
            ]
        )
        db.commit()
    except IntegrityError:
        # the other participant created it first
        db.rollback()
        winner = db.scalars(select(Conversation.id).where(Conversation.direct_key == key)).first()
        if winner is None:
            raise
        return winner, False
    logger.info("[PUB] conversation %s created for %s", conversation.id, key)
    return conversation.id, True


def last_message(db: Session, *, conversation_id: str) -> Optional[Message]:
    return db.scalars(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(1)
    ).first()


# Messages
def list_messages(db: Session, *, conversation_id: str) -> List[Message]:
    return list(
        db.scalars(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
        )
    )


def get_messages(db: Session, *, ids: Sequence[str]) -> List[Message]:
    if not ids:
        return []
    return list(db.scalars(select(Message).where(Message.id.in_(ids))))


def create_message(
    db: Session,
    *,
    conversation_id: str,
    sender_id: str,
    content: str,
    message_id: Optional[str] = None,
    client_id: Optional[str] = None,
    attachment_url: Optional[str] = None,
    attachment_type: Optional[str] = None,
    reply_to_id: Optional[str] = None,
) -> Message:
    message_id = message_id or str(uuid.uuid4())
    condition = Message.id == message_id
    if client_id:
        condition = condition | (Message.client_id == client_id)
    clash = db.scalars(select(Message.id).where(condition)).first()
    if clash is not None:
        raise DuplicateRow(f"message {clash} already exists")

    now = db_now()
    msg = Message(
        id=message_id,
        client_id=client_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        created_at=now,
        edited_at=None,
        is_read=False,
        attachment_url=attachment_url,
        attachment_type=attachment_type,
        reply_to_id=reply_to_id,
    )
    db.add(msg)
    conversation = db.get(Conversation, conversation_id)
    if conversation is not None:
        conversation.updated_at = now
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateRow(str(exc.orig)) from exc
    db.refresh(msg)
    _publish(MESSAGES_TABLE, INSERT, msg.conversation_id, message_to_dict(msg))
    return msg


def update_message(
    db: Session,
    *,
    message_id: str,
    content: Optional[str] = None,
    edited_at: Optional[datetime] = None,
    is_read: Optional[bool] = None,
) -> Optional[Message]:
    msg = db.get(Message, message_id)
    if msg is None:
        return None
    if content is not None:
        window = timedelta(seconds=settings.edit_window_seconds)
        if db_now() - msg.created_at > window:
            raise EditWindowClosed(f"message {message_id} is older than the edit window")
        msg.content = content
        msg.edited_at = edited_at.replace(tzinfo=None) if edited_at else db_now()
    if is_read is not None:
        msg.is_read = is_read
    db.commit()
    db.refresh(msg)
    _publish(MESSAGES_TABLE, UPDATE, msg.conversation_id, message_to_dict(msg))
    return msg


def mark_read(db: Session, *, ids: Sequence[str]) -> int:
    rows = [m for m in get_messages(db, ids=ids) if not m.is_read]
    for msg in rows:
        msg.is_read = True
    db.commit()
    for msg in rows:
        _publish(MESSAGES_TABLE, UPDATE, msg.conversation_id, message_to_dict(msg))
    return len(rows)


def delete_message(db: Session, *, message_id: str) -> bool:
    msg = db.get(Message, message_id)
    if msg is None:
        return False
    old = message_to_dict(msg)
    reactions = list(db.scalars(select(MessageReaction).where(MessageReaction.message_id == message_id)))
    for reaction in reactions:
        db.delete(reaction)
    db.delete(msg)
    db.commit()
    for reaction in reactions:
        _publish(REACTIONS_TABLE, DELETE, old["conversation_id"], old_record=reaction_to_dict(reaction))
    _publish(MESSAGES_TABLE, DELETE, old["conversation_id"], old_record=old)
    return True


# Reactions
def list_reactions(db: Session, *, message_ids: Sequence[str]) -> List[MessageReaction]:
    if not message_ids:
        return []
    return list(
        db.scalars(
            select(MessageReaction)
            .where(MessageReaction.message_id.in_(message_ids))
            .order_by(MessageReaction.id)
        )
    )


def _find_reaction(db: Session, message_id: str, user_id: str, emoji: str) -> Optional[MessageReaction]:
    return db.scalars(
        select(MessageReaction).where(
            MessageReaction.message_id == message_id,
            MessageReaction.user_id == user_id,
            MessageReaction.emoji == emoji,
        )
    ).first()


def upsert_reaction(
    db: Session, *, message_id: str, user_id: str, emoji: str
) -> Optional[Tuple[MessageReaction, bool]]:
    """None when the message is unknown, else ``(row, created)``."""
    msg = db.get(Message, message_id)
    if msg is None:
        return None
    existing = _find_reaction(db, message_id, user_id, emoji)
    if existing is not None:
        return existing, False
    reaction = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji, created_at=db_now())
    db.add(reaction)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return _find_reaction(db, message_id, user_id, emoji), False
    db.refresh(reaction)
    _publish(REACTIONS_TABLE, INSERT, msg.conversation_id, reaction_to_dict(reaction))
    return reaction, True


def delete_reaction(db: Session, *, message_id: str, user_id: str, emoji: str) -> bool:
    reaction = _find_reaction(db, message_id, user_id, emoji)
    if reaction is None:
        return False
    msg = db.get(Message, message_id)
    record = reaction_to_dict(reaction)
    db.delete(reaction)
    db.commit()
    if msg is not None:
        _publish(REACTIONS_TABLE, DELETE, msg.conversation_id, old_record=record)
    return True


# Notifications
def create_notification(
    db: Session,
    *,
    user_id: str,
    type: str,
    title: str,
    message: Optional[str] = None,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        reference_id=reference_id,
        reference_type=reference_type,
        is_read=False,
        created_at=db_now(),
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def list_notifications(db: Session, *, user_id: str, unread_only: bool = False) -> List[Notification]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    return list(db.scalars(query.order_by(Notification.created_at.desc())))


def count_unread_notifications(db: Session, *, user_id: str) -> int:
    return db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
    ) or 0
