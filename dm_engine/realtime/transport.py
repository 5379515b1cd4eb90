"""Realtime transport: row-change subscriptions and ephemeral presence channels.

``RealtimeTransport`` is the boundary the router and the presence tracker
depend on. ``HttpRealtimeTransport`` implements it over server-sent events
from the reference backend and owns the reconnect policy: dropped streams
are retried with exponential backoff and every re-connection is announced
to the registered reconnect listeners.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from dm_engine.core.config import Settings, settings as default_settings
from dm_engine.core.errors import RemoteError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Dict[str, Any]], Any]
SyncCallback = Callable[[Dict[str, List[Dict[str, Any]]]], Any]
JoinCallback = Callable[[str, Dict[str, Any]], Any]
LeaveCallback = Callable[[str], Any]
ReconnectListener = Callable[[], Any]


async def maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class Subscription(Protocol):
    async def close(self) -> None: ...


class PresenceChannel(Protocol):
    name: str

    async def track(self, meta: Dict[str, Any]) -> None: ...

    def state(self) -> Dict[str, List[Dict[str, Any]]]: ...

    async def close(self) -> None: ...


class RealtimeTransport(Protocol):
    async def subscribe_changes(
        self,
        table: str,
        event: str,
        conversation_id: str,
        callback: ChangeCallback,
    ) -> Subscription: ...

    async def join_presence(
        self,
        channel: str,
        key: str,
        on_sync: SyncCallback,
        on_join: Optional[JoinCallback] = None,
        on_leave: Optional[LeaveCallback] = None,
    ) -> PresenceChannel: ...

    def add_reconnect_listener(self, listener: ReconnectListener) -> Callable[[], None]: ...


class _EventStream:
    """One long-lived SSE request, re-established until closed."""

    def __init__(
        self,
        transport: "HttpRealtimeTransport",
        path: str,
        params: Dict[str, Any],
        on_event: Callable[[str, Dict[str, Any]], Awaitable[None]],
        on_connect: Optional[Callable[[bool], Awaitable[None]]] = None,
    ) -> None:
        self._transport = transport
        self._path = path
        self._params = params
        self._on_event = on_event
        self._on_connect = on_connect
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        cfg = self._transport.settings
        delay = cfg.reconnect_initial_delay
        connected_before = False
        while not self._closed:
            try:
                async with self._transport.client.stream(
                    "GET",
                    self._path,
                    params=self._params,
                    timeout=httpx.Timeout(cfg.request_timeout, read=None),
                ) as response:
                    response.raise_for_status()
                    reconnected = connected_before
                    connected_before = True
                    delay = cfg.reconnect_initial_delay
                    logger.info("[SSE] connected %s %s reconnect=%s", self._path, self._params, reconnected)
                    if self._on_connect is not None:
                        await self._on_connect(reconnected)
                    if reconnected:
                        self._transport.notify_reconnect()
                    await self._consume(response)
                logger.info("[SSE] stream ended %s", self._path)
            except asyncio.CancelledError:
                raise
            except httpx.HTTPError as exc:
                logger.warning("[SSE] stream %s dropped: %s", self._path, exc)
            if self._closed:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, cfg.reconnect_max_delay)

    async def _consume(self, response: httpx.Response) -> None:
        event = "message"
        data_lines: List[str] = []
        async for line in response.aiter_lines():
            if line == "":
                if data_lines:
                    await self._dispatch(event, "\n".join(data_lines))
                event = "message"
                data_lines = []
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event = value
            elif field == "data":
                data_lines.append(value)

    async def _dispatch(self, event: str, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[SSE] invalid json on %s: %s", self._path, raw[:200])
            return
        try:
            await self._on_event(event, data)
        except Exception:
            logger.exception("[SSE] handler failed for %s event=%s", self._path, event)

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None


class _ChangeSubscription:
    def __init__(self, stream: _EventStream) -> None:
        self._stream = stream

    async def close(self) -> None:
        await self._stream.close()


class HttpPresenceChannel:
    """Presence channel backed by ``/realtime/presence/{name}``.

    The server drops a key when its stream disconnects, so the last tracked
    meta is re-sent after every re-connection.
    """

    def __init__(
        self,
        transport: "HttpRealtimeTransport",
        name: str,
        key: str,
        on_sync: SyncCallback,
        on_join: Optional[JoinCallback] = None,
        on_leave: Optional[LeaveCallback] = None,
    ) -> None:
        self.name = name
        self.key = key
        self._transport = transport
        self._on_sync = on_sync
        self._on_join = on_join
        self._on_leave = on_leave
        self._state: Dict[str, List[Dict[str, Any]]] = {}
        self._meta: Optional[Dict[str, Any]] = None
        self._stream = _EventStream(
            transport,
            f"/realtime/presence/{name}",
            {"key": key},
            self._handle,
            on_connect=self._connected,
        )

    def start(self) -> None:
        self._stream.start()

    async def _connected(self, reconnected: bool) -> None:
        if reconnected and self._meta is not None:
            try:
                await self.track(self._meta)
            except RemoteError as exc:
                logger.warning("[SSE] re-track on %s failed: %s", self.name, exc)

    async def _handle(self, event: str, data: Dict[str, Any]) -> None:
        if event == "sync":
            self._state = data.get("state") or {}
            await maybe_await(self._on_sync(dict(self._state)))
        elif event == "join" and self._on_join is not None:
            await maybe_await(self._on_join(data.get("key", ""), data.get("meta") or {}))
        elif event == "leave" and self._on_leave is not None:
            await maybe_await(self._on_leave(data.get("key", "")))

    async def track(self, meta: Dict[str, Any]) -> None:
        self._meta = dict(meta)
        try:
            response = await self._transport.client.post(
                f"/realtime/presence/{self.name}/track",
                json={"key": self.key, "meta": meta},
            )
        except httpx.HTTPError as exc:
            raise RemoteError("transport", str(exc)) from exc
        if response.status_code >= 400:
            raise RemoteError(str(response.status_code), response.text)

    def state(self) -> Dict[str, List[Dict[str, Any]]]:
        return dict(self._state)

    async def close(self) -> None:
        await self._stream.close()


class HttpRealtimeTransport:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url, timeout=self.settings.request_timeout
        )
        self._listeners: List[ReconnectListener] = []

    async def subscribe_changes(
        self,
        table: str,
        event: str,
        conversation_id: str,
        callback: ChangeCallback,
    ) -> Subscription:
        async def on_event(_name: str, data: Dict[str, Any]) -> None:
            await maybe_await(callback(data))

        stream = _EventStream(
            self,
            "/realtime/changes",
            {"table": table, "event": event, "conversationId": conversation_id},
            on_event,
        )
        stream.start()
        return _ChangeSubscription(stream)

    async def join_presence(
        self,
        channel: str,
        key: str,
        on_sync: SyncCallback,
        on_join: Optional[JoinCallback] = None,
        on_leave: Optional[LeaveCallback] = None,
    ) -> PresenceChannel:
        presence = HttpPresenceChannel(self, channel, key, on_sync, on_join, on_leave)
        presence.start()
        return presence

    def add_reconnect_listener(self, listener: ReconnectListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            with suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def notify_reconnect(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("[SSE] reconnect listener failed")

    async def aclose(self) -> None:
        await self.client.aclose()
