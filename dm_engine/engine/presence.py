"""Online set and per-conversation typing state.

One ``PresenceTracker`` lives for one signed-in user: ``init(user_id)``
joins the global online channel, ``teardown()`` on logout closes every
channel and clears timers. Typing state is rebuilt from each presence sync
snapshot, never accumulated, so a resync drops stale flags.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, List, Optional, Set

from dm_engine.core.clock import to_wire, utcnow
from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import NotAuthenticated, RemoteError
from dm_engine.engine.scheduling import DebounceTimer, Heartbeat
from dm_engine.realtime.transport import PresenceChannel, RealtimeTransport

logger = logging.getLogger(__name__)

PresenceState = Dict[str, List[Dict[str, Any]]]

ONLINE = "online"
AWAY = "away"


def typing_channel_name(conversation_id: str) -> str:
    return f"typing:{conversation_id}"


class PresenceTracker:
    def __init__(self, transport: RealtimeTransport, settings: Optional[Settings] = None) -> None:
        self.settings = settings or default_settings
        self.user_id: Optional[str] = None
        self.conversation_id: Optional[str] = None
        self._transport = transport
        self.status = ONLINE
        self._online: Set[str] = set()
        self._statuses: Dict[str, str] = {}
        self._typing: Dict[str, Dict[str, bool]] = {}
        self._online_channel: Optional[PresenceChannel] = None
        self._typing_channel: Optional[PresenceChannel] = None
        self._typing_active = False
        self._idle_timer = DebounceTimer(self.settings.typing_idle_seconds, self._stop_typing)
        self._heartbeat = Heartbeat(self.settings.presence_heartbeat_seconds, self._beat, "PRESENCE heartbeat")

    # Lifecycle
    async def init(self, user_id: str) -> None:
        if not user_id:
            raise NotAuthenticated("presence requires a signed-in user")
        if self.user_id == user_id and self._online_channel is not None:
            return
        if self.user_id is not None:
            await self.teardown()
        self.user_id = user_id
        self.status = ONLINE
        self._online_channel = await self._transport.join_presence(
            self.settings.online_channel,
            user_id,
            on_sync=self.apply_online_sync,
            on_join=self.apply_join,
            on_leave=self.apply_leave,
        )
        await self._track(self._online_channel, self._online_meta())
        self._heartbeat.start()
        logger.info("[PRESENCE] %s online", user_id)

    async def teardown(self) -> None:
        await self._heartbeat.stop()
        await self.leave_conversation()
        if self._online_channel is not None:
            await self._online_channel.close()
            self._online_channel = None
        self._online = set()
        self._statuses = {}
        self._typing = {}
        logger.info("[PRESENCE] %s torn down", self.user_id)
        self.user_id = None

    # Status
    async def set_status(self, status: str) -> None:
        """Re-track the online meta as ``"online"`` or ``"away"`` (for a hidden
        window). Away users stay in the online set; heartbeats pause while away."""
        if status not in (ONLINE, AWAY):
            raise ValueError(f"unknown presence status {status!r}")
        if self._online_channel is None:
            raise NotAuthenticated("presence is not initialised")
        self.status = status
        await self._track(self._online_channel, self._online_meta())

    async def _beat(self) -> None:
        if self.status == ONLINE and self._online_channel is not None:
            await self._track(self._online_channel, self._online_meta())

    def _online_meta(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "online_at": to_wire(utcnow()), "status": self.status}

    async def join_conversation(self, conversation_id: str) -> None:
        if self.user_id is None:
            raise NotAuthenticated("presence is not initialised")
        await self.leave_conversation()
        self.conversation_id = conversation_id
        self._typing_channel = await self._transport.join_presence(
            typing_channel_name(conversation_id),
            self.user_id,
            on_sync=lambda state: self.apply_typing_sync(conversation_id, state),
        )
        await self._track(self._typing_channel, self._typing_meta(False))

    async def leave_conversation(self) -> None:
        self._idle_timer.disarm()
        self._typing_active = False
        channel, self._typing_channel = self._typing_channel, None
        if channel is not None:
            await channel.close()
        if self.conversation_id is not None:
            self._typing.pop(self.conversation_id, None)
        self.conversation_id = None

    # Typing
    async def set_typing(self) -> None:
        """Keystroke hook: broadcast on the first keystroke after idle, then
        broadcast ``is_typing=False`` once keystrokes stop for the idle delay."""
        if self._typing_channel is None:
            return
        self._idle_timer.arm()
        if not self._typing_active:
            self._typing_active = True
            await self._broadcast(True)

    async def _stop_typing(self) -> None:
        if not self._typing_active:
            return
        self._typing_active = False
        await self._broadcast(False)

    async def _broadcast(self, is_typing: bool) -> None:
        channel = self._typing_channel
        if channel is not None:
            await self._track(channel, self._typing_meta(is_typing))

    def _typing_meta(self, is_typing: bool) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "is_typing": is_typing,
        }

    async def _track(self, channel: PresenceChannel, meta: Dict[str, Any]) -> None:
        try:
            await channel.track(meta)
        except RemoteError as exc:
            logger.warning("[PRESENCE] track on %s failed: %s", channel.name, exc)

    # Queries
    def is_typing(self, conversation_id: str) -> bool:
        flags = self._typing.get(conversation_id, {})
        return any(flag for user_id, flag in flags.items() if user_id != self.user_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def status_of(self, user_id: str) -> Optional[str]:
        if user_id not in self._online:
            return None
        return self._statuses.get(user_id, ONLINE)

    @property
    def online_users(self) -> FrozenSet[str]:
        return frozenset(self._online)

    @property
    def typing_broadcast_active(self) -> bool:
        return self._typing_active

    # Channel callbacks
    def apply_online_sync(self, state: PresenceState) -> None:
        self._online = set(state.keys())
        self._statuses = {
            key: (metas[-1].get("status") or ONLINE) if metas else ONLINE for key, metas in state.items()
        }

    def apply_join(self, key: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._online.add(key)
        self._statuses[key] = (meta or {}).get("status") or ONLINE

    def apply_leave(self, key: str) -> None:
        self._online.discard(key)
        self._statuses.pop(key, None)

    def apply_typing_sync(self, conversation_id: str, state: PresenceState) -> None:
        snapshot: Dict[str, bool] = {}
        for key, metas in state.items():
            latest = metas[-1] if metas else {}
            if latest.get("conversation_id", conversation_id) != conversation_id:
                continue
            snapshot[latest.get("user_id") or key] = bool(latest.get("is_typing"))
        self._typing[conversation_id] = snapshot
