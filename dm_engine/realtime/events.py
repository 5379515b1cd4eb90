"""Row-change notifications as a closed set of typed events.

Payloads arrive from the transport as ``{table, type, record, old_record}``
dictionaries and are decoded exactly once, here, into one of six variants.
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from dm_engine.models.message import Message, Reaction

MESSAGES_TABLE = "messages"
REACTIONS_TABLE = "message_reactions"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


class MessageInserted(BaseModel):
    kind: Literal["message.insert"] = "message.insert"
    message: Message


class MessageUpdated(BaseModel):
    kind: Literal["message.update"] = "message.update"
    message: Message


class MessageDeleted(BaseModel):
    kind: Literal["message.delete"] = "message.delete"
    message_id: str
    conversation_id: Optional[str] = None


class ReactionInserted(BaseModel):
    kind: Literal["reaction.insert"] = "reaction.insert"
    reaction: Reaction


class ReactionUpdated(BaseModel):
    kind: Literal["reaction.update"] = "reaction.update"
    reaction: Reaction


class ReactionDeleted(BaseModel):
    kind: Literal["reaction.delete"] = "reaction.delete"
    reaction: Reaction


ChangeEvent = Annotated[
    Union[
        MessageInserted,
        MessageUpdated,
        MessageDeleted,
        ReactionInserted,
        ReactionUpdated,
        ReactionDeleted,
    ],
    Field(discriminator="kind"),
]

_change_adapter: TypeAdapter = TypeAdapter(ChangeEvent)

_REACTION_KINDS = {INSERT: "reaction.insert", UPDATE: "reaction.update", DELETE: "reaction.delete"}


def change_payload(
    table: str,
    type: str,
    record: Optional[Dict[str, Any]] = None,
    old_record: Optional[Dict[str, Any]] = None,
    conversation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the payload the backend publishes for a committed row change."""
    return {
        "table": table,
        "type": type,
        "conversation_id": conversation_id,
        "record": record or {},
        "old_record": old_record or {},
    }


def decode_change(payload: Dict[str, Any]) -> ChangeEvent:
    """Decode a raw change payload; raises ``ValueError`` when it is not one."""
    table = payload.get("table")
    op = str(payload.get("type", "")).upper()
    record = payload.get("record") or {}
    old = payload.get("old_record") or {}

    if table == MESSAGES_TABLE:
        if op == INSERT:
            data: Dict[str, Any] = {"kind": "message.insert", "message": record}
        elif op == UPDATE:
            data = {"kind": "message.update", "message": record}
        elif op == DELETE:
            source = old or record
            data = {
                "kind": "message.delete",
                "message_id": source.get("id"),
                "conversation_id": source.get("conversation_id") or payload.get("conversation_id"),
            }
        else:
            raise ValueError(f"unknown change type {op!r} for {table}")
    elif table == REACTIONS_TABLE:
        if op not in _REACTION_KINDS:
            raise ValueError(f"unknown change type {op!r} for {table}")
        source = (old or record) if op == DELETE else record
        data = {"kind": _REACTION_KINDS[op], "reaction": source}
    else:
        raise ValueError(f"unknown table {table!r}")

    try:
        return _change_adapter.validate_python(data)
    except ValidationError as exc:
        raise ValueError(f"malformed {table} {op} payload: {exc}") from exc
