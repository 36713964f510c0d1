from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .sessions import _now_ms


class InvalidMessage(ValueError):
    pass


@dataclass(frozen=True)
class Message:
    """An immutable direct message between one sender and one receiver."""

    id: str | None
    sender_id: str
    receiver_id: str
    content: str
    created_at_ms: int

    def involves(self, user_a: str, user_b: str) -> bool:
        return {self.sender_id, self.receiver_id} == {user_a, user_b}


def new_message_id() -> str:
    return f"m_{secrets.token_hex(12)}"


def validate_parts(sender_id: str | None, receiver_id: str | None, content: str | None) -> None:
    if not sender_id:
        raise InvalidMessage("sender_id required")
    if not receiver_id:
        raise InvalidMessage("receiver_id required")
    if not isinstance(content, str) or not content.strip():
        raise InvalidMessage("content required")


class InMemoryMessageStore:
    """Append-only message store kept in process memory."""

    def __init__(self, *, now_func=_now_ms) -> None:
        self._now = now_func
        self._messages: List[Message] = []
        self._by_pair: Dict[Tuple[str, str], List[Message]] = {}

    def append(self, sender_id: str, receiver_id: str, content: str) -> Message:
        """Store a new message and return the canonical record.

        The id and ``created_at_ms`` are assigned here; callers never supply
        them.
        """

        validate_parts(sender_id, receiver_id, content)
        message = Message(
            id=new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at_ms=self._now(),
        )
        self._messages.append(message)
        self._by_pair.setdefault(self._pair_key(sender_id, receiver_id), []).append(message)
        return message

    def list_between(self, user_a: str, user_b: str) -> list[Message]:
        """Return every message exchanged by the two users, oldest first.

        ``sorted`` is stable, so equal timestamps keep their append order.
        """

        messages = self._by_pair.get(self._pair_key(user_a, user_b), [])
        return sorted(messages, key=lambda message: message.created_at_ms)

    def count(self) -> int:
        return len(self._messages)

    @staticmethod
    def _pair_key(user_a: str, user_b: str) -> Tuple[str, str]:
        return (user_a, user_b) if user_a <= user_b else (user_b, user_a)
