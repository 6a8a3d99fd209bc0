"""SQLite database layer: connection management and repository implementations."""

from shared.db.connection import Database
from shared.db.grant_repository import SqliteGrantRepository
from shared.db.user_repository import SqliteUserRepository

__all__ = [
    "Database",
    "SqliteGrantRepository",
    "SqliteUserRepository",
]
