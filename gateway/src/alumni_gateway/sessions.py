from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Dict


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    user_id: str
    session_token: str
    expires_at_ms: int


class SessionStore:
    """Maps HTTP bearer tokens to the user identity supplied by the host application."""

    def __init__(self, ttl_ms: int = 60 * 60 * 1000, *, now_func=_now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._by_token: Dict[str, Session] = {}

    def create(self, user_id: str) -> Session:
        session = Session(
            user_id=user_id,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        self._by_token[session.session_token] = session
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        session = self._by_token.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= self._now():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_token.pop(session.session_token, None)
