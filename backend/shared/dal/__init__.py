"""Data access layer: repository interfaces and shared persistence models."""

from shared.dal.grant_repository import GrantRepository
from shared.dal.models import Key, Repository, User
from shared.dal.user_repository import UserRepository

__all__ = [
    "GrantRepository",
    "Key",
    "Repository",
    "User",
    "UserRepository",
]
