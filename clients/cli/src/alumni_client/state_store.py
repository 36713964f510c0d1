"""Persist the chat cache between runs, one file per signed-in user."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

BASE_DIR = Path.home() / ".alumni_chat"


def state_path(user_id: str, base_dir: Path = BASE_DIR) -> Path:
    safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)
    return Path(base_dir).expanduser() / f"state_{safe_id}.json"


def _atomic_write_json(path: Path, payload: Dict[str, object]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_state(user_id: str, base_dir: Path = BASE_DIR) -> Optional[Dict[str, Any]]:
    path = state_path(user_id, base_dir)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, ValueError):
        logger.warning("ignoring unreadable chat state at %s", path)
        return None

    if not isinstance(data, dict) or data.get("user_id") != user_id:
        return None
    return data


def save_state(user_id: str, snapshot: Dict[str, Any], base_dir: Path = BASE_DIR) -> None:
    _atomic_write_json(state_path(user_id, base_dir), snapshot)


def clear_state(user_id: str, base_dir: Path = BASE_DIR) -> None:
    state_path(user_id, base_dir).unlink(missing_ok=True)
