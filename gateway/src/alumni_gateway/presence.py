from __future__ import annotations

import logging
from typing import Callable, Dict, Set

from .codec import online_set_frame

logger = logging.getLogger(__name__)

Callback = Callable[[dict], None]


class PresenceRegistry:
    """Tracks open connections and which user each one is bound to.

    A user has at most one binding; binding again from another connection
    replaces the earlier one without touching that connection. Every change
    to the bound set is broadcast as an ``online-set-changed`` frame to all
    open connections, bound or anonymous.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Callback] = {}
        self._bindings: Dict[str, str] = {}

    def connect(self, handle: str, callback: Callback) -> None:
        self._connections[handle] = callback

    def bind(self, handle: str, user_id: str | None) -> bool:
        if not user_id:
            return False
        previous_user = self.user_for(handle)
        if previous_user is not None and previous_user != user_id:
            self._bindings.pop(previous_user, None)
        replaced = self._bindings.get(user_id)
        self._bindings[user_id] = handle
        if replaced is not None and replaced != handle:
            logger.info("user %s rebound from %s to %s", user_id, replaced, handle)
        else:
            logger.info("user %s bound to %s", user_id, handle)
        self.broadcast(online_set_frame(self._bindings))
        return True

    def unbind(self, handle: str) -> bool:
        """Forget ``handle``; return whether it held a binding.

        Matching is by handle so a late close of a replaced connection never
        removes the user's newer binding.
        """

        self._connections.pop(handle, None)
        for user_id, bound_handle in list(self._bindings.items()):
            if bound_handle == handle:
                del self._bindings[user_id]
                logger.info("user %s unbound from %s", user_id, handle)
                self.broadcast(online_set_frame(self._bindings))
                return True
        return False

    def lookup(self, user_id: str) -> str | None:
        return self._bindings.get(user_id)

    def user_for(self, handle: str) -> str | None:
        for user_id, bound_handle in self._bindings.items():
            if bound_handle == handle:
                return user_id
        return None

    def snapshot(self) -> Set[str]:
        return set(self._bindings)

    def is_connected(self, handle: str) -> bool:
        return handle in self._connections

    def connection_count(self) -> int:
        return len(self._connections)

    def send(self, handle: str, frame: dict) -> bool:
        callback = self._connections.get(handle)
        if callback is None:
            return False
        try:
            callback(frame)
        except Exception:
            logger.warning("push to connection %s failed", handle, exc_info=True)
            return False
        return True

    def send_snapshot(self, handle: str) -> bool:
        return self.send(handle, online_set_frame(self._bindings))

    def broadcast(self, frame: dict) -> None:
        for handle in list(self._connections):
            self.send(handle, frame)
