"""Client-side cache reconciling history fetches with live pushes."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from .gateway_client import TRANSIENT_ERRORS
from .wire import ChatMessage, InvalidMessage, _now_ms, decode_message, encode_message

logger = logging.getLogger(__name__)

ONLINE_SET_CHANGED = "online-set-changed"
NEW_MESSAGE = "new-message"
SEND_ACK = "send-ack"

STATUS_EMPTY = "EMPTY"
STATUS_LOADED = "LOADED"


class NoConversationSelected(Exception):
    pass


class MessageApi(Protocol):
    async def list_between(self, counterpart_id: str) -> List[ChatMessage]: ...

    async def append(self, counterpart_id: str, content: str) -> ChatMessage: ...


class LivePush(Protocol):
    async def push(self, message: ChatMessage) -> None: ...


@dataclass(frozen=True)
class Notice:
    notice_id: int
    level: str
    text: str


class ConversationState:
    """Per-counterpart message cache, online set and unread counters.

    Messages reach the cache from history fetches, live pushes, send acks and
    local sends, in any order and possibly more than once. Convergence comes
    from deduplication in :meth:`add_message`, not from ordering.
    """

    def __init__(
        self,
        user_id: str,
        api: MessageApi,
        live: LivePush | None = None,
        *,
        dedup_tolerance_ms: int = 1000,
        notifier: Callable[[ChatMessage], None] | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.user_id = user_id
        self._api = api
        self._live = live
        self.dedup_tolerance_ms = dedup_tolerance_ms
        self.notifier = notifier
        self._now = now_func
        self.notifications_enabled = True
        self.conversations: Dict[str, List[ChatMessage]] = {}
        self.unread: Dict[str, int] = {}
        self.selected: Optional[str] = None
        self.online: Set[str] = set()
        self.notices: List[Notice] = []
        self._notice_ids = itertools.count(1)
        self._generations: Dict[str, int] = {}
        self._arrivals: Dict[str, List[ChatMessage]] = {}

    # -- messages -------------------------------------------------------

    def counterpart_of(self, message: ChatMessage) -> str | None:
        if message.sender_id == self.user_id:
            return message.receiver_id
        if message.receiver_id == self.user_id:
            return message.sender_id
        return None

    def is_duplicate(self, first: ChatMessage, second: ChatMessage) -> bool:
        # Local fallback ids are only unique per (sender, timestamp), so they
        # never match on id alone.
        if first.has_server_id and second.has_server_id and first.id == second.id:
            return True
        return (
            first.sender_id == second.sender_id
            and first.content == second.content
            and abs(first.created_at - second.created_at) <= self.dedup_tolerance_ms
        )

    def add_message(self, message: ChatMessage | Dict[str, Any]) -> bool:
        """Merge one message into its conversation; return False for duplicates."""

        message = decode_message(message, now_ms=self._now())
        counterpart = self.counterpart_of(message)
        if counterpart is None:
            logger.warning("ignoring message %s not addressed to %s", message.id, self.user_id)
            return False

        cached = self.conversations.setdefault(counterpart, [])
        if any(self.is_duplicate(existing, message) for existing in cached):
            return False
        cached.append(message)
        if counterpart in self._arrivals:
            self._arrivals[counterpart].append(message)

        if message.sender_id != self.user_id and message.sender_id != self.selected:
            self.unread[message.sender_id] = self.unread.get(message.sender_id, 0) + 1
            if self.notifications_enabled and self.notifier is not None:
                try:
                    self.notifier(message)
                except Exception:
                    logger.warning("notifier failed for message %s", message.id, exc_info=True)
        return True

    def messages_for(self, counterpart_id: str) -> List[ChatMessage]:
        return list(self.conversations.get(counterpart_id, []))

    @property
    def active_messages(self) -> List[ChatMessage]:
        if self.selected is None:
            return []
        return self.messages_for(self.selected)

    def status(self, counterpart_id: str) -> str:
        return STATUS_LOADED if counterpart_id in self.conversations else STATUS_EMPTY

    async def load_history(self, counterpart_id: str) -> bool:
        """Replace the cached conversation with the stored history.

        Only the most recent request per counterpart is applied. Messages
        that arrived live while the request was in flight are kept when the
        history does not already contain them.
        """

        generation = self._generations.get(counterpart_id, 0) + 1
        self._generations[counterpart_id] = generation
        self._arrivals.setdefault(counterpart_id, [])
        try:
            history = await self._api.list_between(counterpart_id)
        except (*TRANSIENT_ERRORS, InvalidMessage) as exc:
            if self._generations.get(counterpart_id) == generation:
                self._arrivals.pop(counterpart_id, None)
            logger.warning("history fetch for %s failed: %s", counterpart_id, exc)
            self.notify_failure("Failed to fetch messages")
            return False

        if self._generations.get(counterpart_id) != generation:
            logger.info("discarding superseded history response for %s", counterpart_id)
            return False

        arrivals = self._arrivals.pop(counterpart_id, [])
        merged: List[ChatMessage] = []
        for entry in history:
            try:
                merged.append(decode_message(entry, now_ms=self._now()))
            except InvalidMessage as exc:
                logger.warning("skipping malformed history record: %s", exc)
        for message in arrivals:
            if not any(self.is_duplicate(existing, message) for existing in merged):
                merged.append(message)
        self.conversations[counterpart_id] = merged
        self.unread[counterpart_id] = 0
        return True

    # -- selection and unread -------------------------------------------

    def select_conversation(self, counterpart_id: str | None) -> None:
        self.selected = counterpart_id
        if counterpart_id is not None:
            self.mark_read(counterpart_id)

    def mark_read(self, counterpart_id: str) -> None:
        if counterpart_id in self.unread:
            self.unread[counterpart_id] = 0

    def get_unread_count(self, counterpart_id: str) -> int:
        return self.unread.get(counterpart_id, 0)

    def get_total_unread_count(self) -> int:
        return sum(self.unread.values())

    def toggle_notifications(self) -> bool:
        self.notifications_enabled = not self.notifications_enabled
        return self.notifications_enabled

    # -- presence -------------------------------------------------------

    def set_online(self, user_ids: Iterable[str]) -> None:
        self.online = {user_id for user_id in user_ids if isinstance(user_id, str)}

    def is_online(self, user_id: str) -> bool:
        return user_id in self.online

    # -- sending --------------------------------------------------------

    async def send(self, content: str, counterpart_id: str | None = None) -> ChatMessage | None:
        """Persist ``content`` then push it live; return the canonical message.

        Returns None when nothing was stored, in which case local state is
        unchanged and no push is attempted.
        """

        try:
            target = self._send_target(counterpart_id)
        except NoConversationSelected:
            self.notify_failure("No user selected")
            return None
        if not isinstance(content, str) or not content.strip():
            self.notify_failure("Message is required")
            return None

        try:
            message = await self._api.append(target, content)
        except (*TRANSIENT_ERRORS, InvalidMessage) as exc:
            logger.warning("sending to %s failed: %s", target, exc)
            self.notify_failure(str(exc) or "Failed to send message")
            return None

        self.add_message(message)
        if self._live is not None:
            try:
                await self._live.push(message)
            except TRANSIENT_ERRORS as exc:
                logger.warning("live push of %s failed: %s", message.id, exc)
        return message

    def _send_target(self, counterpart_id: str | None) -> str:
        if self.selected is None:
            raise NoConversationSelected("no conversation selected")
        return counterpart_id or self.selected

    # -- pushed events --------------------------------------------------

    def handle_event(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if not isinstance(body, dict):
            logger.warning("dropping %s event with non-object body", frame_type)
            return
        try:
            if frame_type == ONLINE_SET_CHANGED:
                user_ids = body.get("user_ids")
                self.set_online(user_ids if isinstance(user_ids, list) else [])
            elif frame_type == NEW_MESSAGE:
                self.add_message(body)
            elif frame_type == SEND_ACK:
                if body.get("success") is True and body.get("message") is not None:
                    self.add_message(body["message"])
            elif frame_type == "error":
                logger.warning("gateway error %s: %s", body.get("code"), body.get("message"))
                self.notify_failure(str(body.get("message") or "Gateway error"))
        except InvalidMessage as exc:
            logger.warning("dropping malformed %s event: %s", frame_type, exc)

    # -- notices --------------------------------------------------------

    def notify_failure(self, text: str) -> Notice:
        notice = Notice(notice_id=next(self._notice_ids), level="error", text=text)
        self.notices.append(notice)
        return notice

    def dismiss_notice(self, notice_id: int) -> None:
        self.notices = [notice for notice in self.notices if notice.notice_id != notice_id]

    # -- lifecycle ------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "selected": self.selected,
            "notifications_enabled": self.notifications_enabled,
            "unread": {counterpart: count for counterpart, count in self.unread.items() if count},
            "conversations": {
                counterpart: [encode_message(message) for message in messages]
                for counterpart, messages in self.conversations.items()
            },
        }

    def restore(self, snapshot: Dict[str, Any]) -> bool:
        if not isinstance(snapshot, dict) or snapshot.get("user_id") != self.user_id:
            return False
        conversations: Dict[str, List[ChatMessage]] = {}
        raw_conversations = snapshot.get("conversations")
        if isinstance(raw_conversations, dict):
            for counterpart, entries in raw_conversations.items():
                if not isinstance(entries, list):
                    continue
                restored: List[ChatMessage] = []
                for entry in entries:
                    try:
                        restored.append(decode_message(entry, now_ms=self._now()))
                    except InvalidMessage:
                        continue
                conversations[str(counterpart)] = restored
        unread: Dict[str, int] = {}
        raw_unread = snapshot.get("unread")
        if isinstance(raw_unread, dict):
            for counterpart, count in raw_unread.items():
                if isinstance(count, int) and count > 0:
                    unread[str(counterpart)] = count
        selected = snapshot.get("selected")

        self.conversations = conversations
        self.unread = unread
        self.selected = selected if isinstance(selected, str) else None
        self.notifications_enabled = snapshot.get("notifications_enabled") is not False
        return True

    def reset(self) -> None:
        self.conversations = {}
        self.unread = {}
        self.selected = None
        self.online = set()
        self.notices = []
        self._generations = {}
        self._arrivals = {}
