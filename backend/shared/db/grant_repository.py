"""SQLite-backed repository access-list storage."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import TYPE_CHECKING

from shared.dal.grant_repository import GrantRepository
from shared.dal.models import Repository

if TYPE_CHECKING:
    from shared.db.connection import Database


def _unique(users: list[str]) -> list[str]:
    """Drop repeated names, keeping the first occurrence of each."""
    return list(dict.fromkeys(users))


class SqliteGrantRepository(GrantRepository):
    """SQLite implementation of GrantRepository.

    The ordered grantee list lives in the repository's JSON document.
    ``repository_grants`` mirrors it as an indexed membership table so
    lookups by user do not scan every repository. Both are written in
    the same transaction.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def create_repository(self, repository: Repository) -> None:
        """Insert a repository. Raises ValueError if the name is already taken."""
        async with self._lock:
            try:
                with self._db.transaction("insert repository") as conn:
                    conn.execute(
                        "INSERT INTO repositories (name, data) VALUES (?, ?)",
                        (repository.name, repository.model_dump_json()),
                    )
                    self._write_grants(conn, repository.name, repository.users)
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Repository '{repository.name}' already exists") from exc

    async def get_repository(self, name: str) -> Repository | None:
        with self._db.reading("read repository") as conn:
            row = conn.execute("SELECT data FROM repositories WHERE name = ?", (name,)).fetchone()
        if row is None:
            return None
        return Repository.model_validate(json.loads(row[0]))

    async def find_by_user(self, user_name: str) -> list[Repository]:
        """Return every repository granting access to ``user_name``, ordered by name."""
        with self._db.reading("find repositories by user") as conn:
            rows = conn.execute(
                "SELECT r.data FROM repositories r "
                "JOIN repository_grants g ON g.repository = r.name "
                "WHERE g.user_name = ? "
                "ORDER BY r.name",
                (user_name,),
            ).fetchall()
        return [Repository.model_validate(json.loads(row[0])) for row in rows]

    async def update_users(self, name: str, users: list[str]) -> bool:
        """Replace the grantee list. Returns False when the repository does not exist."""
        async with self._lock:
            with self._db.transaction("update repository users") as conn:
                cursor = conn.execute(
                    "UPDATE repositories SET data = json_set(data, '$.users', json(?)) WHERE name = ?",
                    (json.dumps(users), name),
                )
                if cursor.rowcount == 0:
                    return False
                conn.execute("DELETE FROM repository_grants WHERE repository = ?", (name,))
                self._write_grants(conn, name, users)
        return True

    @staticmethod
    def _write_grants(conn: sqlite3.Connection, repository: str, users: list[str]) -> None:
        conn.executemany(
            "INSERT INTO repository_grants (repository, user_name) VALUES (?, ?)",
            [(repository, user) for user in _unique(users)],
        )
