"""In-process fan-out of committed row changes to SSE subscribers."""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Topic = Tuple[str, str]


class ChangeBus:
    """Subscribers are keyed by ``(table, conversation_id)``.

    Queues belong to the event loop serving the SSE streams while writes are
    committed by sync routes in the threadpool, so ``publish`` hands every
    payload over with ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._topic_to_queues: Dict[Topic, Set[asyncio.Queue]] = defaultdict(set)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    def add_subscriber(self, table: str, conversation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._topic_to_queues[(table, conversation_id)].add(queue)
        return queue

    def remove_subscriber(self, table: str, conversation_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._topic_to_queues.get((table, conversation_id))
            if queues is None:
                return
            queues.discard(queue)
            if not queues:
                self._topic_to_queues.pop((table, conversation_id), None)

    def subscriber_count(self, table: str, conversation_id: str) -> int:
        with self._lock:
            return len(self._topic_to_queues.get((table, conversation_id), ()))

    def publish(self, table: str, conversation_id: str, payload: Dict[str, Any]) -> int:
        with self._lock:
            queues = list(self._topic_to_queues.get((table, conversation_id), ()))
            loop = self._loop
        if not queues or loop is None:
            return 0
        delivered = 0
        for queue in queues:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, payload)
                delivered += 1
            except RuntimeError:
                # loop already closed
                logger.debug("[BUS] dropped %s change for %s", table, conversation_id)
        return delivered


bus = ChangeBus()
