from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable


@dataclass(frozen=True)
class User:
    user_id: str
    name: str
    username: str = ""
    email: str = ""
    profile_pic: str = ""
    password_hash: str = ""

    def public_dict(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "name": self.name,
            "username": self.username,
            "profile_pic": self.profile_pic,
        }


class UserDirectory:
    """Read-mostly view of the accounts owned by the host application."""

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._users: Dict[str, User] = {}
        for user in users:
            self.add(user)

    def add(self, user: User) -> None:
        self._users[user.user_id] = user

    def get(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def partners_of(self, user_id: str) -> list[User]:
        partners = [user for user in self._users.values() if user.user_id != user_id]
        return sorted(partners, key=lambda user: (user.name.lower(), user.user_id))

    def __len__(self) -> int:
        return len(self._users)


def load_users(path: Path | str) -> UserDirectory:
    data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("user seed file must contain a JSON list")
    directory = UserDirectory()
    for entry in data:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            raise ValueError("each user entry needs a string id")
        directory.add(
            User(
                user_id=entry["id"],
                name=str(entry.get("name") or entry["id"]),
                username=str(entry.get("username") or ""),
                email=str(entry.get("email") or ""),
                profile_pic=str(entry.get("profile_pic") or ""),
                password_hash=str(entry.get("password_hash") or ""),
            )
        )
    return directory
