from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dm_engine.core.clock import ensure_utc
from dm_engine.models import AttachmentKind
from dm_engine.server.chat_service import (
    DuplicateRow,
    EditWindowClosed,
    create_message,
    delete_message,
    get_messages,
    list_messages,
    list_participant_ids,
    mark_read,
    message_to_dict,
    update_message,
)
from dm_engine.server.db.session import get_db


class MessageCreate(BaseModel):
    conversation_id: str
    sender_id: str
    content: str
    id: Optional[str] = None
    client_id: Optional[str] = None
    attachment_url: Optional[str] = None
    attachment_type: Optional[AttachmentKind] = None
    reply_to_id: Optional[str] = None


class MessageUpdate(BaseModel):
    content: Optional[str] = None
    edited_at: Optional[datetime] = None
    is_read: Optional[bool] = None


class MarkRead(BaseModel):
    ids: List[str]


router = APIRouter()


@router.get("")
def _list_messages(conversationId: str, db: Session = Depends(get_db)):
    return {"items": [message_to_dict(m) for m in list_messages(db, conversation_id=conversationId)]}


@router.get("/by-ids")
def _messages_by_ids(ids: List[str] = Query(default=[]), db: Session = Depends(get_db)):
    return {"items": [message_to_dict(m) for m in get_messages(db, ids=ids)]}


@router.post("")
def _create_message(body: MessageCreate, db: Session = Depends(get_db)):
    participants = list_participant_ids(db, conversation_id=body.conversation_id)
    if not participants:
        raise HTTPException(status_code=404, detail=f"conversation {body.conversation_id} not found")
    if body.sender_id not in participants:
        raise HTTPException(status_code=403, detail="sender is not a participant")
    try:
        msg = create_message(
            db,
            conversation_id=body.conversation_id,
            sender_id=body.sender_id,
            content=body.content,
            message_id=body.id,
            client_id=body.client_id,
            attachment_url=body.attachment_url,
            attachment_type=body.attachment_type.value if body.attachment_type else None,
            reply_to_id=body.reply_to_id,
        )
    except DuplicateRow as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return message_to_dict(msg)


@router.post("/read")
def _mark_read(body: MarkRead, db: Session = Depends(get_db)):
    return {"updated": mark_read(db, ids=body.ids)}


@router.patch("/{message_id}")
def _update_message(message_id: str, body: MessageUpdate, db: Session = Depends(get_db)):
    edited_at = ensure_utc(body.edited_at)
    try:
        msg = update_message(
            db,
            message_id=message_id,
            content=body.content,
            edited_at=edited_at,
            is_read=body.is_read,
        )
    except EditWindowClosed as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    if msg is None:
        raise HTTPException(status_code=404, detail=f"message {message_id} not found")
    return message_to_dict(msg)


@router.delete("/{message_id}")
def _delete_message(message_id: str, db: Session = Depends(get_db)):
    return {"deleted": delete_message(db, message_id=message_id)}
