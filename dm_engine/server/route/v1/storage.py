from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import FileResponse

from dm_engine.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()


def resolve_object_path(path: str) -> Path:
    root = Path(settings.storage_dir).resolve()
    target = (root / path).resolve()
    if target == root or root not in target.parents:
        raise HTTPException(status_code=400, detail="invalid object path")
    return target


@router.put("/{path:path}")
async def _put_object(path: str, request: Request):
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="empty object")
    target = resolve_object_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    logger.info("[STORAGE] stored %s (%d bytes)", path, len(data))
    return {"path": path, "url": f"{settings.public_base_url.rstrip('/')}/storage/{path}"}


@router.get("/{path:path}")
def _get_object(path: str):
    target = resolve_object_path(path)
    if not target.is_file():
        raise HTTPException(status_code=404, detail=f"object {path} not found")
    return FileResponse(target)
