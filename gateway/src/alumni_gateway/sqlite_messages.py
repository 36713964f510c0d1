from __future__ import annotations

import sqlite3

from .messages import Message, new_message_id, validate_parts
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend


class SQLiteMessageStore:
    """Durable message store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, *, now_func=_now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def append(self, sender_id: str, receiver_id: str, content: str) -> Message:
        """Insert a message atomically and return the canonical record."""

        validate_parts(sender_id, receiver_id, content)
        message = Message(
            id=new_message_id(),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at_ms=self._now(),
        )
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute(
                    """
                    INSERT INTO messages (msg_id, sender_id, receiver_id, content, created_at_ms)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (message.id, message.sender_id, message.receiver_id, message.content, message.created_at_ms),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return message

    def list_between(self, user_a: str, user_b: str) -> list[Message]:
        query = """
            SELECT msg_id, sender_id, receiver_id, content, created_at_ms FROM messages
            WHERE (sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?)
            ORDER BY created_at_ms ASC, seq ASC
        """
        with self._backend.lock:
            rows = self._backend.connection.execute(query, (user_a, user_b, user_b, user_a)).fetchall()
        return [
            Message(
                id=row[0],
                sender_id=row[1],
                receiver_id=row[2],
                content=row[3],
                created_at_ms=row[4],
            )
            for row in rows
        ]

    def count(self) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute("SELECT COUNT(*) FROM messages").fetchone()
        return int(row[0])
