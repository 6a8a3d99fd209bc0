"""Abstract interface for user persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from shared.dal.models import Key, User


class UserRepository(ABC):
    """Abstract interface for user persistence.

    Duplicate names raise ValueError, storage failures raise OSError.
    Mutations of a missing user return False instead of raising.
    """

    @abstractmethod
    async def create_user(self, user: User) -> None: ...

    @abstractmethod
    async def get_user(self, name: str) -> User | None: ...

    @abstractmethod
    async def update_keys(self, name: str, keys: list[Key]) -> bool: ...

    @abstractmethod
    async def delete_user(self, name: str) -> bool: ...

    @abstractmethod
    async def list_users(self) -> list[User]: ...
