from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dm_engine.server.chat_service import get_profile, profile_to_dict, upsert_profile
from dm_engine.server.db.session import get_db


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


router = APIRouter()


@router.get("/{user_id}")
def _get_profile(user_id: str, db: Session = Depends(get_db)):
    profile = get_profile(db, user_id=user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"profile {user_id} not found")
    return profile_to_dict(profile)


@router.put("/{user_id}")
def _put_profile(user_id: str, body: ProfileUpdate, db: Session = Depends(get_db)):
    profile = upsert_profile(db, user_id=user_id, full_name=body.full_name, avatar_url=body.avatar_url)
    return profile_to_dict(profile)
