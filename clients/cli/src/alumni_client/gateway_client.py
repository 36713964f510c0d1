"""aiohttp client for the gateway's request/response message endpoints."""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import aiohttp

from .wire import ChatMessage, InvalidMessage, decode_message

logger = logging.getLogger(__name__)


class GatewayApiError(Exception):
    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        super().__init__(message)


# Failures that leave local state untouched and surface as a notice.
TRANSIENT_ERRORS = (GatewayApiError, aiohttp.ClientError, OSError)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _user_path(user_id: str) -> str:
    return f"/v1/messages/{urllib.parse.quote(user_id, safe='')}"


async def _read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
    try:
        data = await response.json(content_type=None)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        data = {}
    if response.status >= 400:
        raise GatewayApiError(
            response.status,
            str(data.get("code") or "http_error"),
            str(data.get("message") or response.reason or "request failed"),
        )
    return data


async def session_start(
    base_url: str,
    auth_token: str,
    user_id: str,
    *,
    http: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, str]:
    """Exchange the host application's auth token for a gateway session."""

    payload = {"auth_token": auth_token, "user_id": user_id}
    client = http or aiohttp.ClientSession()
    try:
        async with client.post(_build_url(base_url, "/v1/session/start"), json=payload) as response:
            data = await _read_json(response)
    finally:
        if http is None:
            await client.close()
    if not data.get("session_token"):
        raise GatewayApiError(502, "invalid_response", "session_token missing")
    return {"session_token": str(data["session_token"]), "user_id": str(data.get("user_id") or user_id)}


class GatewayApi:
    def __init__(self, base_url: str, session_token: str, *, http: Optional[aiohttp.ClientSession] = None) -> None:
        self.base_url = base_url
        self._session_token = session_token
        self._http = http
        self._owns_http = http is None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self._http

    async def _request_json(self, method: str, path: str, payload: Optional[Dict[str, object]] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._session_token}"}
        async with self._client().request(method, _build_url(self.base_url, path), json=payload, headers=headers) as response:
            return await _read_json(response)

    async def list_partners(self) -> List[Dict[str, Any]]:
        data = await self._request_json("GET", "/v1/messages/users")
        users = data.get("users")
        return [user for user in users if isinstance(user, dict)] if isinstance(users, list) else []

    async def list_between(self, counterpart_id: str) -> List[ChatMessage]:
        data = await self._request_json("GET", _user_path(counterpart_id))
        raw = data.get("messages")
        if not isinstance(raw, list):
            return []
        messages: List[ChatMessage] = []
        for entry in raw:
            try:
                messages.append(decode_message(entry))
            except InvalidMessage as exc:
                logger.warning("skipping malformed history record from gateway: %s", exc)
        return messages

    async def append(self, counterpart_id: str, content: str) -> ChatMessage:
        data = await self._request_json("POST", _user_path(counterpart_id), {"content": content})
        return decode_message(data.get("message"))

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
