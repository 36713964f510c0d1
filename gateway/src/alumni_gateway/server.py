"""Gateway entry points: the aiohttp server and an offline frame simulator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Callable, Iterable, TextIO

from aiohttp import web

from .codec import error_frame, message_to_wire
from .config import GatewayConfig, configure_logging, load_config_from_env
from .messages import InMemoryMessageStore, InvalidMessage
from .presence import PresenceRegistry
from .router import DeliveryRouter
from .users import load_users
from .ws_transport import create_app

logger = logging.getLogger(__name__)


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Run frames through an in-process registry, router and store.

    Every frame a connection would receive is written as one JSON line
    ``{"handle": ..., "frame": ...}``.
    """

    presence = PresenceRegistry()
    router = DeliveryRouter(presence)
    store = InMemoryMessageStore()

    def write(record: dict) -> None:
        output.write(json.dumps(record, sort_keys=True) + "\n")

    def callback_for(handle: str) -> Callable[[dict], None]:
        def _callback(pushed: dict) -> None:
            write({"handle": handle, "frame": pushed})

        return _callback

    for frame in frames:
        frame_type = frame.get("t")
        handle = frame.get("handle")
        if frame_type == "connect":
            presence.connect(handle, callback_for(handle))
            presence.bind(handle, frame.get("user_id"))
        elif frame_type == "disconnect":
            presence.unbind(handle)
        elif frame_type == "request-online-set":
            presence.send_snapshot(handle)
        elif frame_type == "send":
            sender_id = presence.user_for(handle) or frame.get("sender_id")
            try:
                message = store.append(sender_id, frame.get("receiver_id"), frame.get("content"))
            except InvalidMessage as exc:
                write({"handle": handle, "frame": error_frame("invalid_message", str(exc))})
                continue
            router.deliver(message, sender_handle=handle)
        elif frame_type == "push":
            result = router.deliver(frame.get("body") or {}, sender_handle=handle)
            if result.reason is not None:
                write({"handle": handle, "frame": error_frame("invalid_message", result.reason)})
        elif frame_type == "history":
            messages = store.list_between(frame["user_a"], frame["user_b"])
            write({"history": [message_to_wire(message) for message in messages]})
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _serve_config(args: argparse.Namespace, base: GatewayConfig) -> GatewayConfig:
    overrides = {
        "host": args.host,
        "port": args.port,
        "db_path": args.db,
        "users_path": args.users,
        "ping_interval_s": args.ping_interval,
        "log_level": args.log_level,
        "auth_token": args.auth_token,
    }
    return replace(base, **{key: value for key, value in overrides.items() if value is not None})


def build_app(config: GatewayConfig) -> web.Application:
    users = load_users(config.users_path) if config.users_path else None
    return create_app(
        ping_interval_s=config.ping_interval_s,
        ping_miss_limit=config.ping_miss_limit,
        max_msg_size=config.max_msg_size,
        db_path=config.db_path,
        session_ttl_ms=config.session_ttl_ms,
        users=users,
        auth_token=config.auth_token,
    )


def _run_serve(args: argparse.Namespace) -> int:
    config = _serve_config(args, load_config_from_env())
    configure_logging(config.log_level)
    if config.auth_token is None:
        logger.warning("no auth token configured; any non-empty auth_token may start a session")
    logger.info("serving on %s:%s (db=%s)", config.host, config.port, config.db_path or "memory")
    web.run_app(build_app(config), host=config.host, port=config.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Alumni presence and messaging gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay connection frames offline")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--users", type=str, default=None, help="JSON file seeding the user directory")
    serve_parser.add_argument("--log-level", default=None, help="Logging level name")
    serve_parser.add_argument("--auth-token", default=None, help="Shared secret the host application presents to start sessions")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
