from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dm_engine import __version__
from dm_engine.server.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/healthz")
def _liveness():
    return {"status": "ok", "version": __version__}


@router.get("/readyz")
def _readiness(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("[HEALTH] database unreachable: %s", exc)
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"status": "ready", "database": "ok"}
