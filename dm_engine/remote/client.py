"""httpx client for the backend's table API."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from dm_engine.core.clock import to_wire
from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import PermissionRace, RemoteError
from dm_engine.models import Conversation, Message, MessageDraft, Profile, Reaction

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text


class HttpRemoteStore:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url, timeout=self.settings.request_timeout
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("[REMOTE] %s %s failed: %s", method, url, exc)
            raise RemoteError("transport", str(exc)) from exc
        if response.status_code == 409:
            raise PermissionRace("409", _detail(response))
        if response.status_code >= 400:
            raise RemoteError(str(response.status_code), _detail(response))
        return response.json()

    # Messages
    async def fetch_messages(self, conversation_id: str) -> List[Message]:
        body = await self._request("GET", "/messages", params={"conversationId": conversation_id})
        return [Message.model_validate(item) for item in body["items"]]

    async def fetch_messages_by_ids(self, ids: Sequence[str]) -> List[Message]:
        if not ids:
            return []
        body = await self._request("GET", "/messages/by-ids", params={"ids": list(ids)})
        return [Message.model_validate(item) for item in body["items"]]

    async def fetch_last_message(self, conversation_id: str) -> Optional[Message]:
        body = await self._request("GET", f"/conversations/{conversation_id}/last-message")
        item = body.get("item")
        return Message.model_validate(item) if item else None

    async def insert_message(self, draft: MessageDraft) -> Message:
        body = await self._request("POST", "/messages", json=draft.model_dump(mode="json"))
        return Message.model_validate(body)

    async def update_message(
        self,
        message_id: str,
        *,
        content: Optional[str] = None,
        edited_at: Optional[datetime] = None,
    ) -> Message:
        payload: Dict[str, Any] = {}
        if content is not None:
            payload["content"] = content
        if edited_at is not None:
            payload["edited_at"] = to_wire(edited_at)
        body = await self._request("PATCH", f"/messages/{message_id}", json=payload)
        return Message.model_validate(body)

    async def mark_read(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        body = await self._request("POST", "/messages/read", json={"ids": list(ids)})
        return int(body.get("updated", 0))

    async def delete_message(self, message_id: str) -> bool:
        body = await self._request("DELETE", f"/messages/{message_id}")
        return bool(body.get("deleted"))

    # Reactions
    async def fetch_reactions(self, message_ids: Sequence[str]) -> List[Reaction]:
        if not message_ids:
            return []
        body = await self._request("GET", "/reactions", params={"messageIds": list(message_ids)})
        return [Reaction.model_validate(item) for item in body["items"]]

    async def upsert_reaction(self, reaction: Reaction) -> Reaction:
        body = await self._request("POST", "/reactions", json=reaction.model_dump())
        return Reaction.model_validate(body["reaction"])

    async def delete_reaction(self, reaction: Reaction) -> bool:
        body = await self._request(
            "DELETE",
            "/reactions",
            params={
                "messageId": reaction.message_id,
                "userId": reaction.user_id,
                "emoji": reaction.emoji,
            },
        )
        return bool(body.get("deleted"))

    # Conversations
    async def list_conversation_ids(self, user_id: str) -> List[str]:
        body = await self._request("GET", "/conversations/memberships", params={"userId": user_id})
        return list(body["items"])

    async def fetch_conversations(self, ids: Sequence[str]) -> List[Conversation]:
        if not ids:
            return []
        body = await self._request("GET", "/conversations/batch", params={"ids": list(ids)})
        return [Conversation.model_validate(item) for item in body["items"]]

    async def fetch_participants(self, conversation_id: str) -> List[str]:
        body = await self._request("GET", f"/conversations/{conversation_id}/participants")
        return list(body["items"])

    async def find_shared_conversation(self, user_id: str, other_user_id: str) -> Optional[str]:
        body = await self._request(
            "GET",
            "/conversations/shared",
            params={"userId": user_id, "otherUserId": other_user_id},
        )
        return body.get("id")

    async def create_direct_conversation(self, user_id: str, other_user_id: str) -> str:
        body = await self._request(
            "POST",
            "/conversations/direct",
            json={"userId": user_id, "otherUserId": other_user_id},
        )
        return body["id"]

    # Profiles
    async def fetch_profile(self, user_id: str) -> Profile:
        body = await self._request("GET", f"/profiles/{user_id}")
        return Profile.model_validate(body)

    async def aclose(self) -> None:
        await self._client.aclose()
