"""Fans realtime change events for the open conversation into the store."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from dm_engine.core.errors import RemoteError
from dm_engine.engine.directory import ConversationDirectory
from dm_engine.engine.presence import PresenceTracker
from dm_engine.engine.scheduling import Coalescer
from dm_engine.engine.store import MessageStore
from dm_engine.realtime.events import (
    DELETE,
    INSERT,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    UPDATE,
    ChangeEvent,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    decode_change,
)
from dm_engine.realtime.transport import RealtimeTransport, Subscription
from dm_engine.remote.base import RemoteStore

logger = logging.getLogger(__name__)


class RealtimeRouter:
    def __init__(
        self,
        transport: RealtimeTransport,
        store: MessageStore,
        remote: RemoteStore,
        directory: Optional[ConversationDirectory] = None,
        presence: Optional[PresenceTracker] = None,
        on_reconnect: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.conversation_id: Optional[str] = None
        self._transport = transport
        self._store = store
        self._remote = remote
        self._directory = directory
        self._presence = presence
        self._on_reconnect = on_reconnect
        self._subscriptions: List[Subscription] = []
        self._remove_listener: Optional[Callable[[], None]] = None
        self._reactions = Coalescer(self._refresh_reactions, "ROUTER reactions")
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self.conversation_id is not None

    async def open(self, conversation_id: str) -> None:
        await self.close()
        self.conversation_id = conversation_id
        for event in (INSERT, UPDATE, DELETE):
            self._subscriptions.append(
                await self._transport.subscribe_changes(
                    MESSAGES_TABLE, event, conversation_id, self.handle_payload
                )
            )
        self._subscriptions.append(
            await self._transport.subscribe_changes(
                REACTIONS_TABLE, "*", conversation_id, self.handle_payload
            )
        )
        if self._presence is not None:
            await self._presence.join_conversation(conversation_id)
        self._remove_listener = self._transport.add_reconnect_listener(self._reconnected)
        logger.info("[ROUTER] subscribed to %s", conversation_id)

    async def close(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._reactions.cancel()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()
        if self._presence is not None:
            await self._presence.leave_conversation()
        if self.conversation_id is not None:
            logger.info("[ROUTER] unsubscribed from %s", self.conversation_id)
        self.conversation_id = None

    async def handle_payload(self, payload: Dict[str, Any]) -> None:
        if not self.active:
            return
        try:
            event = decode_change(payload)
        except ValueError as exc:
            logger.warning("[ROUTER] skipping malformed change: %s", exc)
            return
        await self.dispatch(event)

    async def dispatch(self, event: ChangeEvent) -> None:
        if isinstance(event, MessageInserted):
            message = event.message
            if message.conversation_id != self.conversation_id:
                return
            added = self._store.apply_remote_insert(message)
            if self._directory is not None:
                self._directory.apply_message(message)
            if added and message.sender_id != self._store.user_id:
                await self._store.mark_read([message.id])
        elif isinstance(event, MessageUpdated):
            if event.message.conversation_id != self.conversation_id:
                return
            self._store.apply_remote_update(event.message)
            if self._directory is not None:
                self._directory.apply_message_update(event.message)
        elif isinstance(event, MessageDeleted):
            if event.conversation_id not in (None, self.conversation_id):
                return
            self._store.apply_remote_delete(event.message_id)
            if self._directory is not None and self._directory.apply_message_delete(
                event.conversation_id or self.conversation_id, event.message_id
            ):
                self._spawn(self._directory.refresh(self.conversation_id))
        else:
            self._reactions.request()

    async def _refresh_reactions(self) -> None:
        conversation_id = self.conversation_id
        ids = self._store.visible_message_ids()
        if conversation_id is None or not ids:
            return
        try:
            reactions = await self._remote.fetch_reactions(ids)
        except RemoteError as exc:
            logger.warning("[ROUTER] reaction refresh for %s failed: %s", conversation_id, exc)
            return
        if conversation_id != self.conversation_id:
            return
        self._store.replace_reactions(ids, reactions)

    def _reconnected(self) -> Any:
        if not self.active or self._on_reconnect is None:
            return None
        logger.info("[ROUTER] transport reconnected, resynchronising %s", self.conversation_id)
        return self._on_reconnect()

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        await self._reactions.wait()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
