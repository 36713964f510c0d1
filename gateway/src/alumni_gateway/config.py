from __future__ import annotations

import logging
import os
from dataclasses import dataclass

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    users_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    session_ttl_s: int = 60 * 60
    log_level: str = "INFO"
    auth_token: str | None = None

    @property
    def session_ttl_ms(self) -> int:
        return max(self.session_ttl_s, 0) * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_optional_str(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    return raw


def load_config_from_env() -> GatewayConfig:
    defaults = GatewayConfig()
    log_level = (os.environ.get("GATEWAY_LOG_LEVEL") or defaults.log_level).upper()
    if log_level not in logging.getLevelNamesMapping():
        raise ValueError("GATEWAY_LOG_LEVEL must be a logging level name")
    return GatewayConfig(
        host=os.environ.get("GATEWAY_HOST") or defaults.host,
        port=_parse_non_negative_int("GATEWAY_PORT", defaults.port),
        db_path=_parse_optional_str("GATEWAY_DB_PATH"),
        users_path=_parse_optional_str("GATEWAY_USERS_PATH"),
        ping_interval_s=max(1, _parse_non_negative_int("GATEWAY_PING_INTERVAL_S", defaults.ping_interval_s)),
        ping_miss_limit=_parse_non_negative_int("GATEWAY_PING_MISS_LIMIT", defaults.ping_miss_limit),
        max_msg_size=_parse_non_negative_int("GATEWAY_MAX_MSG_SIZE", defaults.max_msg_size),
        session_ttl_s=_parse_non_negative_int("GATEWAY_SESSION_TTL_S", defaults.session_ttl_s),
        log_level=log_level,
        auth_token=_parse_optional_str("GATEWAY_AUTH_TOKEN"),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
