"""SQLite-backed user repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import TYPE_CHECKING

from shared.dal.models import Key, User
from shared.dal.user_repository import UserRepository

if TYPE_CHECKING:
    from shared.db.connection import Database


class SqliteUserRepository(UserRepository):
    """SQLite implementation of UserRepository.

    Stores each user as a JSON document keyed by name. Writes run under an
    asyncio lock; the primary key constraint guards against duplicate names.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def create_user(self, user: User) -> None:
        """Insert a user. Raises ValueError if the name is already taken."""
        async with self._lock:
            try:
                with self._db.transaction("insert user") as conn:
                    conn.execute(
                        "INSERT INTO users (name, data) VALUES (?, ?)",
                        (user.name, user.model_dump_json()),
                    )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"User '{user.name}' already exists") from exc

    async def get_user(self, name: str) -> User | None:
        with self._db.reading("read user") as conn:
            row = conn.execute("SELECT data FROM users WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return User.model_validate(json.loads(row[0]))

    async def update_keys(self, name: str, keys: list[Key]) -> bool:
        """Replace the user's key list. Returns False when the user does not exist."""
        keys_json = json.dumps([k.model_dump() for k in keys])
        async with self._lock:
            with self._db.transaction("update user keys") as conn:
                cursor = conn.execute(
                    "UPDATE users SET data = json_set(data, '$.keys', json(?)) WHERE name = ?",
                    (keys_json, name),
                )
        return cursor.rowcount > 0

    async def delete_user(self, name: str) -> bool:
        """Delete a user. Returns False when the user does not exist."""
        async with self._lock:
            with self._db.transaction("delete user") as conn:
                cursor = conn.execute("DELETE FROM users WHERE name = ?", (name,))
        return cursor.rowcount > 0

    async def list_users(self) -> list[User]:
        """Return every user ordered by name."""
        with self._db.reading("list users") as conn:
            rows = conn.execute("SELECT data FROM users ORDER BY name").fetchall()
        return [User.model_validate(json.loads(row[0])) for row in rows]
