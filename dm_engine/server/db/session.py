from __future__ import annotations

from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dm_engine.core.config import settings


def connect_args_for(url: str) -> Dict[str, Any]:
    # sync routes run in the threadpool
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=connect_args_for(settings.database_url),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
