from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from .wire import ChatMessage, encode_message

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


class LiveChannelClosed(ConnectionError):
    pass


class LiveChannel:
    """Persistent socket to the gateway carrying presence and pushed messages."""

    def __init__(self, ws_url: str, user_id: str | None, *, http: Optional[aiohttp.ClientSession] = None) -> None:
        self.ws_url = ws_url
        self.user_id = user_id
        self._http = http
        self._owns_http = http is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        params = {"user_id": self.user_id} if self.user_id else None
        self._ws = await self._http.ws_connect(self.ws_url, params=params)

    async def _send(self, frame: Dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise LiveChannelClosed("live channel is not connected")
        await self._ws.send_json(frame)

    async def push(self, message: ChatMessage) -> None:
        body = encode_message(message)
        await self._send({"v": PROTOCOL_VERSION, "t": "push-message", "id": body["id"], "body": body})

    async def request_online_set(self) -> None:
        await self._send({"v": PROTOCOL_VERSION, "t": "request-online-set"})

    async def frames(self) -> AsyncIterator[Dict[str, Any]]:
        ws = self._ws
        if ws is None:
            raise LiveChannelClosed("live channel is not connected")
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = msg.json()
                except ValueError:
                    logger.warning("dropping malformed frame from gateway")
                    continue
                if not isinstance(payload, dict):
                    continue
                if payload.get("t") == "ping":
                    await ws.send_json({"v": PROTOCOL_VERSION, "t": "pong", "id": payload.get("id")})
                    continue
                yield payload
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("live channel error: %s", ws.exception())
                break

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
