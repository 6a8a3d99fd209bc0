"""Shared fixtures: a real SQLite store and authorized-keys file under tmp_path."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from keywarden.keys import AuthorizedKeysFile
from keywarden.service import UserService
from shared.db import Database, SqliteGrantRepository, SqliteUserRepository

if TYPE_CHECKING:
    from pathlib import Path

SSH_COMMAND = "/usr/local/bin/keywarden-serve"


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "test.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def user_repo(db: Database) -> SqliteUserRepository:
    return SqliteUserRepository(db)


@pytest.fixture
def grant_repo(db: Database) -> SqliteGrantRepository:
    return SqliteGrantRepository(db)


@pytest.fixture
def keys_path(tmp_path: Path) -> Path:
    return tmp_path / "home" / ".ssh" / "authorized_keys"


@pytest.fixture
def keys_file(keys_path: Path) -> AuthorizedKeysFile:
    return AuthorizedKeysFile(keys_path, command=SSH_COMMAND)


@pytest.fixture
def service(user_repo, grant_repo, keys_file) -> UserService:
    return UserService(user_repo, grant_repo, keys_file)
