from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from . import state_store
from .conversation_state import ConversationState
from .gateway_client import TRANSIENT_ERRORS, GatewayApi, _build_url
from .live import LiveChannel
from .wire import ChatMessage

logger = logging.getLogger(__name__)


class ChatClient:
    """Wires the request/response API, the live channel and the local cache.

    Persisted state is read once in :meth:`start`, written in :meth:`close`
    and removed in :meth:`logout`.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        session_token: str,
        *,
        state_dir: Path = state_store.BASE_DIR,
        http: Optional[aiohttp.ClientSession] = None,
        dedup_tolerance_ms: int = 1000,
        notifier: Callable[[ChatMessage], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self.state_dir = state_dir
        self.api = GatewayApi(base_url, session_token, http=http)
        self.live = LiveChannel(_build_url(base_url, "/v1/ws"), user_id, http=http)
        self.state = ConversationState(
            user_id,
            self.api,
            self.live,
            dedup_tolerance_ms=dedup_tolerance_ms,
            notifier=notifier,
        )
        self._reader_task: asyncio.Task | None = None
        self._stopping = False

    async def start(self) -> bool:
        snapshot = state_store.load_state(self.user_id, self.state_dir)
        if snapshot is not None:
            self.state.restore(snapshot)
        connected = await self._connect_live()
        if self.state.selected is not None:
            await self.state.load_history(self.state.selected)
        return connected

    async def _connect_live(self) -> bool:
        try:
            await self.live.connect()
            self._reader_task = asyncio.create_task(self._read_events())
            await self.live.request_online_set()
        except TRANSIENT_ERRORS as exc:
            logger.warning("live channel unavailable: %s", exc)
            self.state.notify_failure("Live updates unavailable")
            return False
        return True

    async def _read_events(self) -> None:
        try:
            async for frame in self.live.frames():
                self.state.handle_event(frame)
        except TRANSIENT_ERRORS as exc:
            logger.warning("live channel dropped: %s", exc)
        except Exception:
            logger.exception("live event handling failed")
        if not self._stopping:
            logger.warning("live channel for %s ended", self.user_id)
            self.state.notify_failure("Live updates stopped")

    async def _stop_live(self) -> None:
        self._stopping = True
        try:
            await self.live.close()
            if self._reader_task is not None:
                self._reader_task.cancel()
                await asyncio.gather(self._reader_task, return_exceptions=True)
                self._reader_task = None
        finally:
            self._stopping = False

    async def partners(self) -> List[Dict[str, Any]]:
        try:
            return await self.api.list_partners()
        except TRANSIENT_ERRORS as exc:
            logger.warning("partner list failed: %s", exc)
            self.state.notify_failure("Failed to fetch users")
            return []

    async def open_conversation(self, counterpart_id: str) -> bool:
        self.state.select_conversation(counterpart_id)
        return await self.state.load_history(counterpart_id)

    async def send(self, content: str) -> ChatMessage | None:
        return await self.state.send(content)

    async def reconnect(self) -> bool:
        """Re-open the live channel and refetch what may have been missed."""

        await self._stop_live()
        connected = await self._connect_live()
        if connected and self.state.selected is not None:
            await self.state.load_history(self.state.selected)
        return connected

    async def close(self) -> None:
        state_store.save_state(self.user_id, self.state.snapshot(), self.state_dir)
        await self._stop_live()
        await self.api.close()

    async def logout(self) -> None:
        await self._stop_live()
        state_store.clear_state(self.user_id, self.state_dir)
        self.state.reset()
        await self.api.close()
