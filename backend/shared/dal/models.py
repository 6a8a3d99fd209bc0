"""Persistence models for the data access layer."""

from pydantic import BaseModel, Field


class Key(BaseModel, frozen=True):
    """SSH public key owned by a single user."""

    name: str  # label chosen by the owner, unique within that user's keys only
    content: str  # raw public key material plus optional comment, passed through verbatim


class User(BaseModel, frozen=True):
    """User identity with its ordered SSH keys."""

    name: str
    keys: list[Key] = Field(default_factory=list)

    def find_key(self, key_name: str) -> Key | None:
        return next((k for k in self.keys if k.name == key_name), None)


class Repository(BaseModel, frozen=True):
    """Git repository access record. Grantees are weak references to user names."""

    name: str
    users: list[str] = Field(default_factory=list)  # ordered, unique grantee names
