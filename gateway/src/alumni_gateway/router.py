from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .codec import message_from_wire, new_message_frame, send_ack_frame
from .messages import InvalidMessage, Message
from .presence import PresenceRegistry
from .sessions import _now_ms

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
OFFLINE = "offline"
REJECTED = "rejected"


@dataclass(frozen=True)
class DeliveryResult:
    status: str
    message: Message | None = None
    reason: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DELIVERED


class DeliveryRouter:
    """Best-effort live push of already-persisted messages.

    Nothing is queued for offline receivers; they pick the message up from
    history on their next fetch.
    """

    def __init__(self, presence: PresenceRegistry, *, now_func=_now_ms) -> None:
        self._presence = presence
        self._now = now_func

    def deliver(
        self,
        payload: Message | dict[str, Any],
        *,
        sender_handle: str | None = None,
        request_id: str | None = None,
    ) -> DeliveryResult:
        try:
            message = self._decode(payload, sender_handle)
        except InvalidMessage as exc:
            logger.warning("rejected delivery from %s: %s", sender_handle or "<internal>", exc)
            return DeliveryResult(status=REJECTED, reason=str(exc))

        receiver_handle = self._presence.lookup(message.receiver_id)
        pushed = False
        if receiver_handle is None:
            logger.debug("receiver %s offline; message %s left in store", message.receiver_id, message.id)
        else:
            pushed = self._presence.send(receiver_handle, new_message_frame(message))
            if not pushed:
                logger.warning("push of %s to stale connection %s dropped", message.id, receiver_handle)

        if sender_handle is not None:
            self._presence.send(sender_handle, send_ack_frame(pushed, message, request_id=request_id))
        return DeliveryResult(status=DELIVERED if pushed else OFFLINE, message=message)

    def _decode(self, payload: Message | dict[str, Any], sender_handle: str | None) -> Message:
        if isinstance(payload, Message):
            return payload
        bound_sender = self._presence.user_for(sender_handle) if sender_handle is not None else None
        return message_from_wire(payload, sender_id=bound_sender, default_created_at_ms=self._now())
