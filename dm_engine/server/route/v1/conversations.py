from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dm_engine.server.chat_service import (
    conversation_to_dict,
    create_direct_conversation,
    find_shared_conversation,
    get_conversations,
    last_message,
    list_membership_ids,
    list_participant_ids,
    message_to_dict,
)
from dm_engine.server.db.session import get_db


class DirectConversationCreate(BaseModel):
    userId: str
    otherUserId: str


router = APIRouter()


@router.get("/memberships")
def _list_memberships(userId: str, db: Session = Depends(get_db)):
    return {"items": list_membership_ids(db, user_id=userId)}


@router.get("/batch")
def _batch(ids: List[str] = Query(default=[]), db: Session = Depends(get_db)):
    return {"items": [conversation_to_dict(c) for c in get_conversations(db, ids=ids)]}


@router.get("/shared")
def _shared(userId: str, otherUserId: str, db: Session = Depends(get_db)):
    return {"id": find_shared_conversation(db, user_id=userId, other_user_id=otherUserId)}


@router.post("/direct")
def _create_direct(body: DirectConversationCreate, db: Session = Depends(get_db)):
    if body.userId == body.otherUserId:
        raise HTTPException(status_code=422, detail="a direct conversation needs two users")
    conversation_id, created = create_direct_conversation(
        db, user_id=body.userId, other_user_id=body.otherUserId
    )
    return {"id": conversation_id, "created": created}


@router.get("/{conversation_id}/participants")
def _participants(conversation_id: str, db: Session = Depends(get_db)):
    return {"items": list_participant_ids(db, conversation_id=conversation_id)}


@router.get("/{conversation_id}/last-message")
def _last_message(conversation_id: str, db: Session = Depends(get_db)):
    msg = last_message(db, conversation_id=conversation_id)
    return {"item": message_to_dict(msg) if msg else None}
