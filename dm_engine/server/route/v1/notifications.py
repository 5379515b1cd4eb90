from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dm_engine.server.chat_service import (
    count_unread_notifications,
    create_notification,
    list_notifications,
    notification_to_dict,
)
from dm_engine.server.db.session import get_db


class NotificationCreate(BaseModel):
    user_id: str
    type: str
    title: str
    message: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None


router = APIRouter()


@router.post("")
def _create_notification(body: NotificationCreate, db: Session = Depends(get_db)):
    return notification_to_dict(create_notification(db, **body.model_dump()))


@router.get("")
def _list_notifications(userId: str, unreadOnly: bool = False, db: Session = Depends(get_db)):
    items = list_notifications(db, user_id=userId, unread_only=unreadOnly)
    return {
        "items": [notification_to_dict(n) for n in items],
        "unread": count_unread_notifications(db, user_id=userId),
    }
