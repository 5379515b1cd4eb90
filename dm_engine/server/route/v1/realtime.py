from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, Dict

from fastapi import APIRouter
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from dm_engine.server.change_bus import bus
from dm_engine.server.presence_hub import hub

logger = logging.getLogger(__name__)

router = APIRouter()


class TrackRequest(BaseModel):
    key: str
    meta: Dict[str, Any] = {}


class EventSourceResponse(StreamingResponse):
    media_type = "text/event-stream"


def format_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def listen_changes(table: str, event: str, conversation_id: str) -> AsyncGenerator[str, None]:
    logger.info("[SSE] subscribe %s %s conversation=%s", table, event, conversation_id)
    queue = bus.add_subscriber(table, conversation_id)
    try:
        # comment line so the client sees the stream open before any change
        yield ": subscribed\n\n"
        while True:
            payload = await queue.get()
            if event != "*" and payload.get("type") != event.upper():
                continue
            yield format_event("change", payload)
    finally:
        bus.remove_subscriber(table, conversation_id, queue)
        logger.info("[SSE] unsubscribe %s %s conversation=%s", table, event, conversation_id)


async def listen_presence(channel: str, key: str) -> AsyncGenerator[str, None]:
    queue = hub.connect(channel, key)
    try:
        while True:
            name, data = await queue.get()
            yield format_event(name, data)
    finally:
        hub.disconnect(channel, key, queue)


@router.get("/changes")
async def _changes(table: str, conversationId: str, event: str = "*"):
    return EventSourceResponse(listen_changes(table, event, conversationId))


@router.get("/presence/{channel}")
async def _presence(channel: str, key: str):
    return EventSourceResponse(listen_presence(channel, key))


@router.post("/presence/{channel}/track")
async def _track(channel: str, body: TrackRequest):
    hub.track(channel, body.key, body.meta)
    return {"channel": channel, "key": body.key}


@router.get("/presence/{channel}/state")
async def _presence_state(channel: str):
    return {"state": hub.snapshot(channel)}
