from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import RemoteError

logger = logging.getLogger(__name__)

TITLES = {
    "message": "New message",
    "reaction": "New reaction",
}


class HttpNotifier:
    """Writes a row into the recipient's notification inbox."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url, timeout=self.settings.request_timeout
        )

    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        body = {
            "user_id": user_id,
            "type": kind,
            "title": payload.get("title") or TITLES.get(kind, kind),
            "message": payload.get("message"),
            "reference_id": payload.get("reference_id"),
            "reference_type": payload.get("reference_type"),
        }
        try:
            response = await self._client.post("/notifications", json=body)
        except httpx.HTTPError as exc:
            raise RemoteError("transport", str(exc)) from exc
        if response.status_code >= 400:
            raise RemoteError(str(response.status_code), response.text)
        logger.info("[NOTIFY] %s -> %s", kind, user_id)
