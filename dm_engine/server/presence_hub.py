"""Ephemeral presence channels: who is connected, with what tracked meta."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Set, Tuple

logger = logging.getLogger(__name__)

PresenceEvent = Tuple[str, Dict[str, Any]]


class PresenceHub:
    """Per-channel ``{key: [meta]}`` state.

    A key is listed once it has tracked a meta and disappears when its last
    stream disconnects. Every change is broadcast as the ``join``/``leave``
    delta followed by a full ``sync`` snapshot. All methods run on the event
    loop.
    """

    def __init__(self) -> None:
        self._state: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._connections: Dict[Tuple[str, str], int] = defaultdict(int)
        self._listeners: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def snapshot(self, channel: str) -> Dict[str, List[Dict[str, Any]]]:
        return {key: [dict(meta)] for key, meta in self._state.get(channel, {}).items()}

    def connect(self, channel: str, key: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners[channel].add(queue)
        self._connections[(channel, key)] += 1
        queue.put_nowait(("sync", {"state": self.snapshot(channel)}))
        logger.info("[PRESENCE] %s connected to %s", key, channel)
        return queue

    def disconnect(self, channel: str, key: str, queue: asyncio.Queue) -> None:
        self._listeners[channel].discard(queue)
        self._connections[(channel, key)] -= 1
        if self._connections[(channel, key)] <= 0:
            self._connections.pop((channel, key), None)
            if self._state[channel].pop(key, None) is not None:
                self._broadcast(channel, ("leave", {"key": key}))
        if not self._listeners[channel]:
            self._listeners.pop(channel, None)
        if not self._state[channel]:
            self._state.pop(channel, None)
        logger.info("[PRESENCE] %s disconnected from %s", key, channel)

    def track(self, channel: str, key: str, meta: Dict[str, Any]) -> None:
        self._state[channel][key] = dict(meta)
        self._broadcast(channel, ("join", {"key": key, "meta": dict(meta)}))

    def _broadcast(self, channel: str, delta: PresenceEvent) -> None:
        sync: PresenceEvent = ("sync", {"state": self.snapshot(channel)})
        for queue in list(self._listeners.get(channel, ())):
            queue.put_nowait(delta)
            queue.put_nowait(sync)


hub = PresenceHub()
