"""Attachment upload to object storage."""
from __future__ import annotations

import logging
import uuid
from typing import Optional

import httpx

from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import RemoteError, UploadFailed
from dm_engine.models import Attachment, AttachmentKind
from dm_engine.remote.base import ObjectStorage

logger = logging.getLogger(__name__)


class HttpObjectStorage:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url, timeout=self.settings.request_timeout
        )

    async def upload(self, data: bytes, path: str, content_type: Optional[str] = None) -> str:
        headers = {"content-type": content_type or "application/octet-stream"}
        try:
            response = await self._client.put(f"/storage/{path}", content=data, headers=headers)
        except httpx.HTTPError as exc:
            raise RemoteError("transport", str(exc)) from exc
        if response.status_code >= 400:
            raise RemoteError(str(response.status_code), response.text)
        return response.json()["url"]


class AttachmentUploader:
    def __init__(self, storage: ObjectStorage, user_id: str) -> None:
        self._storage = storage
        self._user_id = user_id

    async def upload(
        self,
        data: bytes,
        filename: str,
        kind: AttachmentKind,
        content_type: Optional[str] = None,
    ) -> Attachment:
        if not data:
            raise UploadFailed(f"{filename}: empty upload")
        path = f"{self._user_id}/{uuid.uuid4().hex}-{filename}"
        try:
            url = await self._storage.upload(data, path, content_type)
        except RemoteError as exc:
            logger.warning("[UPLOAD] %s failed: %s", path, exc)
            raise UploadFailed(f"{filename}: {exc}") from exc
        logger.info("[UPLOAD] stored %s (%d bytes)", path, len(data))
        return Attachment(url=url, kind=AttachmentKind(kind), filename=filename)
