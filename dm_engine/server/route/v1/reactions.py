from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dm_engine.server.chat_service import (
    delete_reaction,
    list_reactions,
    reaction_to_dict,
    upsert_reaction,
)
from dm_engine.server.db.session import get_db


class ReactionCreate(BaseModel):
    message_id: str
    user_id: str
    emoji: str


router = APIRouter()


@router.get("")
def _list_reactions(messageIds: List[str] = Query(default=[]), db: Session = Depends(get_db)):
    return {"items": [reaction_to_dict(r) for r in list_reactions(db, message_ids=messageIds)]}


@router.post("")
def _upsert_reaction(body: ReactionCreate, db: Session = Depends(get_db)):
    result = upsert_reaction(db, message_id=body.message_id, user_id=body.user_id, emoji=body.emoji)
    if result is None:
        raise HTTPException(status_code=404, detail=f"message {body.message_id} not found")
    reaction, created = result
    return {"reaction": reaction_to_dict(reaction), "created": created}


@router.delete("")
def _delete_reaction(messageId: str, userId: str, emoji: str, db: Session = Depends(get_db)):
    return {"deleted": delete_reaction(db, message_id=messageId, user_id=userId, emoji=emoji)}
