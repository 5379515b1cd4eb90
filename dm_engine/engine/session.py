"""Messaging session: one open conversation and the UI command surface.

State machine per conversation::

    CLOSED -> LOADING -> LIVE -> CLOSED

Router subscriptions exist only while ``LIVE`` and commands are rejected
with ``NotReady`` in any other state. ``open`` of a new conversation first
closes the current one, so no subscription outlives its conversation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from dm_engine.core.clock import Clock, utcnow
from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import FetchError, NotAuthenticated, NotReady, RemoteError, UploadFailed
from dm_engine.engine.directory import ConversationDirectory
from dm_engine.engine.presence import PresenceTracker
from dm_engine.engine.router import RealtimeRouter
from dm_engine.engine.scheduling import Coalescer
from dm_engine.engine.store import MessageStore, SendOutcome, SendStatus
from dm_engine.models import Attachment, AttachmentKind, Message, Profile
from dm_engine.realtime.transport import RealtimeTransport
from dm_engine.remote.base import Notifier, RemoteStore
from dm_engine.remote.storage import AttachmentUploader

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CLOSED = "closed"
    LOADING = "loading"
    LIVE = "live"


@dataclass
class AttachmentUpload:
    """A local file or voice recording waiting to be uploaded with a send."""

    data: bytes
    filename: str
    kind: AttachmentKind
    content_type: Optional[str] = None


class MessagingSession:
    def __init__(
        self,
        user_id: Optional[str],
        remote: RemoteStore,
        transport: RealtimeTransport,
        presence: PresenceTracker,
        directory: Optional[ConversationDirectory] = None,
        uploader: Optional[AttachmentUploader] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        if not user_id:
            raise NotAuthenticated("a signed-in user is required")
        self.user_id = user_id
        self.settings = settings or default_settings
        self.state = SessionState.CLOSED
        self.conversation_id: Optional[str] = None
        self.other_participant: Optional[Profile] = None
        # Content handed back to the compose field after a failed send.
        self.compose = ""
        self.presence = presence
        self.directory = directory or ConversationDirectory(remote, user_id)
        self.store = MessageStore(remote, user_id, self.settings, clock)
        self.router = RealtimeRouter(
            transport,
            self.store,
            remote,
            directory=self.directory,
            presence=presence,
            on_reconnect=self._on_reconnect,
        )
        self._remote = remote
        self._uploader = uploader
        self._notifier = notifier
        self._reloader = Coalescer(self.reload, "SESSION reload")
        self._transition = asyncio.Lock()
        self._notifications: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self, conversation_id: str) -> None:
        """Load ``conversation_id`` and go live.

        Raises ``FetchError`` when the history cannot be fetched. On any
        failure the subscriptions opened so far are closed and the session is
        ``CLOSED``; the caller may retry by opening again.
        """
        async with self._transition:
            await self._close_locked()
            self.state = SessionState.LOADING
            self.conversation_id = conversation_id
            self.store.reset(conversation_id)
            logger.info("[SESSION] %s opening %s", self.user_id, conversation_id)
            try:
                self.other_participant = await self._resolve_other(conversation_id)
                await self.store.load(conversation_id)
                await self.router.open(conversation_id)
            except BaseException:
                await self._abort_open()
                raise
            self.state = SessionState.LIVE
            logger.info("[SESSION] %s live with %d messages", conversation_id, len(self.store))

    async def _abort_open(self) -> None:
        try:
            await self.router.close()
        except Exception as exc:
            logger.warning("[SESSION] cleanup after failed open raised: %s", exc)
        self.store.reset(None)
        logger.info("[SESSION] open of %s failed", self.conversation_id)
        self.conversation_id = None
        self.other_participant = None
        self.state = SessionState.CLOSED

    async def close(self) -> None:
        async with self._transition:
            await self._close_locked()

    async def _close_locked(self) -> None:
        if self.state == SessionState.CLOSED and self.conversation_id is None:
            return
        self._reloader.cancel()
        await self.router.close()
        self.store.reset(None)
        logger.info("[SESSION] closed %s", self.conversation_id)
        self.conversation_id = None
        self.other_participant = None
        self.state = SessionState.CLOSED

    async def teardown(self) -> None:
        """Logout: close the conversation and drop presence."""
        await self.close()
        await self.presence.teardown()

    async def reload(self) -> None:
        """Fresh ``load()`` after a transport reconnect."""
        if self.state != SessionState.LIVE or self.conversation_id is None:
            return
        try:
            await self.store.load(self.conversation_id)
        except FetchError as exc:
            logger.warning("[SESSION] reload of %s failed: %s", self.conversation_id, exc)

    def _on_reconnect(self) -> Optional[asyncio.Task]:
        if self.state != SessionState.LIVE:
            return None
        return self._reloader.request()

    async def _resolve_other(self, conversation_id: str) -> Optional[Profile]:
        cached = self.directory.get(conversation_id)
        preview = cached.other_participant(self.user_id) if cached else None
        try:
            participant_ids = await self._remote.fetch_participants(conversation_id)
        except RemoteError as exc:
            raise FetchError(f"could not resolve participants of {conversation_id}", exc) from exc
        other_id = next((uid for uid in participant_ids if uid != self.user_id), None)
        if other_id is None:
            return preview
        try:
            return await self._remote.fetch_profile(other_id)
        except RemoteError as exc:
            logger.info("[SESSION] profile %s unavailable: %s", other_id, exc)
            if preview is not None and preview.user_id == other_id:
                return preview
            return Profile.placeholder_for(other_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def _require_live(self) -> str:
        if self.state != SessionState.LIVE or self.conversation_id is None:
            raise NotReady(f"session is {self.state.value}")
        return self.conversation_id

    async def send(
        self,
        content: str = "",
        attachment: Optional[AttachmentUpload] = None,
        reply_to_id: Optional[str] = None,
    ) -> SendOutcome:
        conversation_id = self._require_live()
        text = content.strip()
        if not text and attachment is None:
            raise ValueError("nothing to send")

        uploaded: Optional[Attachment] = None
        if attachment is not None:
            if self._uploader is None:
                raise UploadFailed("no object storage configured")
            uploaded = await self._uploader.upload(
                attachment.data, attachment.filename, attachment.kind, attachment.content_type
            )
            if self.conversation_id != conversation_id or self.state != SessionState.LIVE:
                logger.info("[SESSION] dropped send for %s after upload", conversation_id)
                return SendOutcome(SendStatus.DROPPED, temp_id="")

        outcome = await self.store.send(text or uploaded.caption(), uploaded, reply_to_id)
        if outcome.status == SendStatus.FAILED:
            self.compose = outcome.restored_content or ""
        elif outcome.status == SendStatus.CONFIRMED and outcome.message is not None:
            self.compose = ""
            self.directory.apply_message(outcome.message)
            self._notify_other("message", outcome.message)
        elif outcome.status == SendStatus.TOLERATED:
            self.compose = ""
        return outcome

    async def edit(self, message_id: str, new_content: str) -> Optional[Message]:
        self._require_live()
        return await self.store.edit(message_id, new_content)

    async def delete(self, message_id: str) -> bool:
        self._require_live()
        return await self.store.delete_message(message_id)

    async def react(self, message_id: str, emoji: str) -> bool:
        self._require_live()
        ok = await self.store.react(message_id, emoji)
        message = self.store.get(message_id)
        if ok and message is not None and message.sender_id != self.user_id:
            self._notify_other("reaction", message, emoji=emoji)
        return ok

    async def unreact(self, message_id: str, emoji: str) -> bool:
        self._require_live()
        return await self.store.unreact(message_id, emoji)

    async def set_typing(self) -> None:
        self._require_live()
        await self.presence.set_typing()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def search(self, text: str) -> List[Message]:
        return self.store.search(text)

    def can_edit(self, message_id: str) -> bool:
        return self.store.can_edit(message_id)

    def is_other_online(self) -> bool:
        return self.other_participant is not None and self.presence.is_online(
            self.other_participant.user_id
        )

    def is_other_typing(self) -> bool:
        return self.conversation_id is not None and self.presence.is_typing(self.conversation_id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def _notify_other(self, kind: str, message: Message, **extra: Any) -> None:
        if self._notifier is None or self.other_participant is None:
            return
        payload: Dict[str, Any] = {
            "message": extra.get("emoji") or message.content,
            "reference_id": message.conversation_id,
            "reference_type": "conversation",
        }
        task = asyncio.get_running_loop().create_task(
            self._dispatch(self.other_participant.user_id, kind, payload)
        )
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _dispatch(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        try:
            await self._notifier.notify(user_id, kind, payload)
        except Exception as exc:
            logger.warning("[SESSION] %s notification to %s failed: %s", kind, user_id, exc)

    async def wait_idle(self) -> None:
        """Wait for background work: reloads, reaction refreshes, notifications."""
        await self._reloader.wait()
        await self.router.wait_idle()
        if self._notifications:
            await asyncio.gather(*self._notifications, return_exceptions=True)
        await self.store.drain()
