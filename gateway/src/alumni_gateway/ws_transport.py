from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Protocol

from aiohttp import WSMsgType, web

from .codec import (
    PROTOCOL_VERSION,
    PUSH_MESSAGE,
    REQUEST_ONLINE_SET,
    content_from_body,
    error_frame,
    frame as make_frame,
    message_to_wire,
)
from .messages import InMemoryMessageStore, InvalidMessage, Message
from .presence import PresenceRegistry
from .router import REJECTED, DeliveryRouter
from .sessions import Session, SessionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_messages import SQLiteMessageStore
from .users import UserDirectory

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    def append(self, sender_id: str, receiver_id: str, content: str) -> Message: ...

    def list_between(self, user_a: str, user_b: str) -> list[Message]: ...


class Runtime:
    def __init__(
        self,
        *,
        store: MessageStore,
        presence: PresenceRegistry,
        router: DeliveryRouter,
        sessions: SessionStore,
        users: UserDirectory,
        backend: SQLiteBackend | None = None,
        auth_token: str | None = None,
    ) -> None:
        self.store = store
        self.presence = presence
        self.router = router
        self.sessions = sessions
        self.users = users
        self.backend = backend
        self.auth_token = auth_token

    def accepts_auth_token(self, auth_token: str) -> bool:
        if self.auth_token is None:
            return True
        return secrets.compare_digest(auth_token.encode("utf-8"), self.auth_token.encode("utf-8"))


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _unauthorized(message: str = "invalid session_token") -> web.Response:
    return web.json_response({"code": "unauthorized", "message": message}, status=401)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _not_found(message: str) -> web.Response:
    return web.json_response({"code": "not_found", "message": message}, status=404)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return runtime.sessions.get_by_session(session_token)


async def handle_session_start(request: web.Request) -> web.Response:
    """Mint a bearer session for a user vouched for by the host application."""

    runtime = request.app[RUNTIME_KEY]
    try:
        body = await request.json()
    except Exception:
        return _with_no_store(_invalid_request("malformed json"))
    if not isinstance(body, dict):
        return _with_no_store(_invalid_request("body must be an object"))

    auth_token = body.get("auth_token")
    user_id = body.get("user_id")
    if not isinstance(auth_token, str) or not auth_token or not isinstance(user_id, str) or not user_id:
        return _with_no_store(_invalid_request("auth_token and user_id required"))
    if not runtime.accepts_auth_token(auth_token):
        return _with_no_store(_unauthorized("invalid auth_token"))
    if runtime.users.get(user_id) is None:
        return _with_no_store(_not_found("unknown user"))

    session = runtime.sessions.create(user_id)
    logger.info("session started for %s", user_id)
    return _with_no_store(
        web.json_response(
            {
                "session_token": session.session_token,
                "user_id": session.user_id,
                "expires_at_ms": session.expires_at_ms,
            }
        )
    )


async def handle_partners(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    partners = [user.public_dict() for user in runtime.users.partners_of(session.user_id)]
    return _with_no_store(web.json_response({"users": partners}))


async def handle_history(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    counterpart_id = request.match_info["user_id"]
    messages = runtime.store.list_between(session.user_id, counterpart_id)
    return _with_no_store(web.json_response({"messages": [message_to_wire(m) for m in messages]}))


async def handle_send(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _with_no_store(_unauthorized())
    try:
        body = await request.json()
    except Exception:
        return _with_no_store(_invalid_request("malformed json"))

    receiver_id = request.match_info["user_id"]
    content = content_from_body(body)
    if content is None or not content.strip():
        return _with_no_store(_invalid_request("content required"))
    if runtime.users.get(receiver_id) is None:
        return _with_no_store(_not_found("unknown user"))
    try:
        message = runtime.store.append(session.user_id, receiver_id, content)
    except InvalidMessage as exc:
        return _with_no_store(_invalid_request(str(exc)))
    return _with_no_store(web.json_response({"message": message_to_wire(message)}, status=201))


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    session_ttl_ms: int = 60 * 60 * 1000,
    users: UserDirectory | None = None,
    presence: PresenceRegistry | None = None,
    auth_token: str | None = None,
) -> web.Application:
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        store: MessageStore = SQLiteMessageStore(backend)
    else:
        store = InMemoryMessageStore()

    presence = presence or PresenceRegistry()
    runtime = Runtime(
        store=store,
        presence=presence,
        router=DeliveryRouter(presence),
        sessions=SessionStore(ttl_ms=session_ttl_ms),
        users=users if users is not None else UserDirectory(),
        backend=backend,
        auth_token=auth_token,
    )
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/messages/users", handle_partners)
    app.router.add_get("/v1/messages/{user_id}", handle_history)
    app.router.add_post("/v1/messages/{user_id}", handle_send)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(application: web.Application) -> None:
            application[RUNTIME_KEY].backend.close()

        app.on_cleanup.append(close_db)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    handle = f"c_{secrets.token_urlsafe(8)}"
    user_id = request.query.get("user_id") or request.query.get("userId") or None
    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("connection %s reset while writing", handle)

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue(make_frame("ping"))
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    runtime.presence.connect(handle, enqueue)
    runtime.presence.bind(handle, user_id)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != PROTOCOL_VERSION:
                    enqueue(error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    enqueue(make_frame("pong", request_id=request_id))
                elif frame_type == "pong":
                    continue
                elif frame_type == REQUEST_ONLINE_SET:
                    runtime.presence.send_snapshot(handle)
                elif frame_type == PUSH_MESSAGE:
                    result = runtime.router.deliver(body, sender_handle=handle, request_id=request_id)
                    if result.status == REJECTED:
                        enqueue(error_frame("invalid_message", result.reason or "rejected", request_id=request_id))
                else:
                    enqueue(error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type == WSMsgType.ERROR:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.presence.unbind(handle)
        heartbeat_task.cancel()
        writer_task.cancel()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            pass
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
