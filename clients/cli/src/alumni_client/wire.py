"""Decode and encode messages crossing the client boundary.

Servers, pushes and older history records disagree on field names; this is
the only place that reconciles them into :class:`ChatMessage`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

LOCAL_ID_PREFIX = "local:"


class InvalidMessage(ValueError):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: int

    @property
    def has_server_id(self) -> bool:
        return not self.id.startswith(LOCAL_ID_PREFIX)


def fallback_id(sender_id: str, created_at: int) -> str:
    return f"{LOCAL_ID_PREFIX}{sender_id}:{created_at}"


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _timestamp_ms(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def decode_message(payload: Any, *, now_ms: int | None = None) -> ChatMessage:
    if isinstance(payload, ChatMessage):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidMessage("message payload must be an object")
    sender_id = _first(payload, "sender_id", "senderId")
    receiver_id = _first(payload, "receiver_id", "receiverId")
    if sender_id is None or receiver_id is None:
        raise InvalidMessage("sender_id and receiver_id required")
    content = _first(payload, "content", "text", "message")
    created_at = _timestamp_ms(_first(payload, "created_at", "createdAt"))
    if created_at is None:
        created_at = now_ms if now_ms is not None else _now_ms()
    message_id = _first(payload, "id", "_id")
    return ChatMessage(
        id=str(message_id) if message_id is not None else fallback_id(str(sender_id), created_at),
        sender_id=str(sender_id),
        receiver_id=str(receiver_id),
        content=content if isinstance(content, str) else "",
        created_at=created_at,
    )


def encode_message(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id if message.has_server_id else None,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "text": message.content,
        "message": message.content,
        "created_at": message.created_at,
    }
