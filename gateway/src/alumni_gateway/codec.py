"""Wire adapters for messages and socket frames.

The canonical :class:`Message` has a single ``content`` field. Outbound
payloads carry it twice, as ``text`` and as the legacy ``message`` alias, and
inbound payloads may use either name. Legacy history records (``_id``,
``senderId``, ISO-8601 ``createdAt``) are accepted here and nowhere else.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from .messages import InvalidMessage, Message, validate_parts

PROTOCOL_VERSION = 1

ONLINE_SET_CHANGED = "online-set-changed"
NEW_MESSAGE = "new-message"
SEND_ACK = "send-ack"
REQUEST_ONLINE_SET = "request-online-set"
PUSH_MESSAGE = "push-message"


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_timestamp_ms(value: Any) -> int | None:
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
        except ValueError as exc:
            raise InvalidMessage(f"unparseable timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise InvalidMessage(f"unsupported timestamp type: {type(value).__name__}")


def message_to_wire(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "text": message.content,
        "message": message.content,
        "created_at": message.created_at_ms,
    }


def message_from_wire(
    payload: Any,
    *,
    sender_id: str | None = None,
    default_created_at_ms: int | None = None,
) -> Message:
    """Decode a wire or legacy payload into a canonical :class:`Message`.

    ``sender_id`` overrides whatever sender the payload claims.
    """

    if not isinstance(payload, Mapping):
        raise InvalidMessage("message payload must be an object")
    message_id = _first(payload, "id", "_id")
    sender = sender_id or _first(payload, "sender_id", "senderId")
    receiver = _first(payload, "receiver_id", "receiverId")
    content = _first(payload, "content", "text", "message")
    validate_parts(sender, receiver, content)
    created_at_ms = parse_timestamp_ms(_first(payload, "created_at", "createdAt"))
    if created_at_ms is None:
        if default_created_at_ms is None:
            raise InvalidMessage("created_at required")
        created_at_ms = default_created_at_ms
    return Message(
        id=str(message_id) if message_id is not None else None,
        sender_id=str(sender),
        receiver_id=str(receiver),
        content=content,
        created_at_ms=created_at_ms,
    )


def content_from_body(body: Any) -> str | None:
    if not isinstance(body, Mapping):
        return None
    content = _first(body, "content", "text", "message")
    return content if isinstance(content, str) else None


def frame(frame_type: str, body: dict[str, Any] | None = None, *, request_id: str | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {"v": PROTOCOL_VERSION, "t": frame_type}
    if request_id is not None:
        result["id"] = request_id
    if body is not None:
        result["body"] = body
    return result


def online_set_frame(user_ids: Iterable[str]) -> dict[str, Any]:
    return frame(ONLINE_SET_CHANGED, {"user_ids": sorted(user_ids)})


def new_message_frame(message: Message) -> dict[str, Any]:
    return frame(NEW_MESSAGE, message_to_wire(message))


def send_ack_frame(success: bool, message: Message, *, request_id: str | None = None) -> dict[str, Any]:
    return frame(SEND_ACK, {"success": success, "message": message_to_wire(message)}, request_id=request_id)


def error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "error", "id": request_id, "body": {"code": code, "message": message}}
