"""Abstract interface for repository access-list persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import Repository


class GrantRepository(ABC):
    """Abstract interface for repository records and their grantee lists.

    Each update is atomic for a single repository. There are no
    cross-repository transactions.
    """

    @abstractmethod
    async def create_repository(self, repository: Repository) -> None: ...

    @abstractmethod
    async def get_repository(self, name: str) -> Repository | None: ...

    @abstractmethod
    async def find_by_user(self, user_name: str) -> list[Repository]: ...

    @abstractmethod
    async def update_users(self, name: str, users: list[str]) -> bool: ...
