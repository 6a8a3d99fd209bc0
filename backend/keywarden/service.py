"""User lifecycle: create and remove users, add and remove their SSH keys.

The store is the source of truth. Every operation commits its store
mutation first and then brings the authorized-keys file in line. A file
failure after the store commit is logged and raised as PersistenceError
but not rolled back; ``rebuild_authorized_keys`` regenerates the file
from the store to repair it.
"""

from __future__ import annotations

import contextlib
import re
import unicodedata
from typing import TYPE_CHECKING, Any

import structlog

from keywarden.exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError
from keywarden.revocation import revoke_access
from shared.dal.models import Key, User

if TYPE_CHECKING:
    from collections.abc import Awaitable, Iterator

    from keywarden.keys.authorized_keys import AuthorizedKeysFile
    from shared.dal.grant_repository import GrantRepository
    from shared.dal.user_repository import UserRepository

logger = structlog.get_logger()

# Plain usernames and e-mail addresses: starts with a letter or digit.
USER_NAME_PATTERN = re.compile(r"[a-zA-Z0-9][-a-zA-Z0-9@_.+]*")

# Control characters plus the Unicode line and paragraph separators.
_FORBIDDEN_CATEGORIES = frozenset({"Cc", "Zl", "Zp"})


def is_valid_user_name(name: str) -> bool:
    return USER_NAME_PATTERN.fullmatch(name) is not None


class UserService:
    """Coordinate user and key mutations across the store and the authorized-keys file."""

    def __init__(
        self,
        users: UserRepository,
        grants: GrantRepository,
        authorized_keys: AuthorizedKeysFile,
    ) -> None:
        self._users = users
        self._grants = grants
        self._keys = authorized_keys

    async def create(self, name: str, keys: list[Key] | None = None) -> User:
        """Persist a new user, then write every one of its keys to the file."""
        keys = list(keys or [])
        _validate_user_name(name)
        _validate_new_keys(keys)

        user = User(name=name, keys=keys)
        try:
            with _store_errors("create user", user=name):
                await self._users.create_user(user)
        except ValueError as e:
            raise ConflictError(reason="user already exists", operation="create user", user=name) from e
        logger.info("created user", user=name, keys=len(keys))

        await self._sync_file(self._keys.add_keys(name, keys), action="create user", user=name)
        return user

    async def remove(self, name: str) -> None:
        """Revoke shared repository access, delete the user, then purge its key lines.

        Fails with ConflictError, changing nothing, when the user is the
        sole grantee of any repository.
        """
        with _store_errors("remove user", user=name):
            user = await self._users.get_user(name)
        if user is None:
            raise NotFoundError(reason="not found", operation="remove user", user=name)

        await revoke_access(name, self._grants)

        with _store_errors("remove user", user=name):
            deleted = await self._users.delete_user(name)
        if not deleted:
            raise NotFoundError(reason="not found", operation="remove user", user=name)
        logger.info("removed user", user=name, keys=len(user.keys))

        await self._sync_file(self._keys.remove_all_for_user(name), action="remove user", user=name)

    async def get(self, name: str) -> User:
        return await self._require_user(name)

    async def list_keys(self, user_name: str) -> list[Key]:
        user = await self._require_user(user_name)
        return list(user.keys)

    async def add_key(self, user_name: str, key: Key) -> User:
        """Append a key to the user's persisted list and write its line."""
        user = await self._require_user(user_name)
        _validate_key(key)
        if user.find_key(key.name) is not None:
            raise ConflictError(
                reason=f'Key "{key.name}" already exists for user "{user_name}"',
                user=user_name,
                key=key.name,
            )

        keys = [*user.keys, key]
        with _store_errors("add key", user=user_name, key=key.name):
            updated = await self._users.update_keys(user_name, keys)
        if not updated:
            raise _user_not_found(user_name)
        logger.info("added key", user=user_name, key=key.name)

        await self._sync_file(self._keys.add_key(user_name, key), action="add key", user=user_name)
        return user.model_copy(update={"keys": keys})

    async def remove_key(self, user_name: str, key_name: str) -> User:
        """Drop exactly one named key from the persisted list and the file.

        Keys with the same content under other names are left in place.
        """
        user = await self._require_user(user_name)
        if user.find_key(key_name) is None:
            raise NotFoundError(
                reason=f'Key "{key_name}" not found for user "{user_name}"',
                user=user_name,
                key=key_name,
            )

        keys = [k for k in user.keys if k.name != key_name]
        with _store_errors("remove key", user=user_name, key=key_name):
            updated = await self._users.update_keys(user_name, keys)
        if not updated:
            raise _user_not_found(user_name)
        logger.info("removed key", user=user_name, key=key_name)

        await self._sync_file(self._keys.remove_key(user_name, key_name), action="remove key", user=user_name)
        return user.model_copy(update={"keys": keys})

    async def rebuild_authorized_keys(self) -> int:
        """Regenerate the authorized-keys file from every persisted key.

        Returns the number of key lines written.
        """
        with _store_errors("rebuild authorized keys"):
            users = await self._users.list_users()
        return await self._keys.rebuild(users)

    # -- private helpers --

    async def _require_user(self, name: str) -> User:
        with _store_errors("read user", user=name):
            user = await self._users.get_user(name)
        if user is None:
            raise _user_not_found(name)
        return user

    async def _sync_file(self, write: Awaitable[object], *, action: str, user: str) -> None:
        """Await a file update that follows a committed store mutation."""
        try:
            await write
        except PersistenceError:
            logger.exception(
                "authorized keys out of sync with store",
                action=action,
                user=user,
                path=str(self._keys.path),
            )
            raise


def _user_not_found(name: str) -> NotFoundError:
    return NotFoundError(reason=f'User "{name}" not found', user=name)


@contextlib.contextmanager
def _store_errors(operation: str, **context: Any) -> Iterator[None]:  # noqa: ANN401
    """Re-raise store I/O failures as PersistenceError."""
    try:
        yield
    except OSError as exc:
        raise PersistenceError(reason=str(exc), operation=operation, **context) from exc


def _validate_user_name(name: str) -> None:
    if not is_valid_user_name(name):
        raise ValidationError(reason="user name is not valid", user=name)


def _is_single_line(value: str) -> bool:
    """True when ``value`` is non-blank and holds no line separator or control character."""
    if not value.strip() or len(value.splitlines()) > 1:
        return False
    return not any(c != "\t" and unicodedata.category(c) in _FORBIDDEN_CATEGORIES for c in value)


def _validate_key(key: Key) -> None:
    """Reject keys that would break the one-key-per-line file format."""
    if not _is_single_line(key.name):
        raise ValidationError(reason="key name is not valid", key=key.name)
    if not _is_single_line(key.content):
        raise ValidationError(reason="key content is not valid", key=key.name)


def _validate_new_keys(keys: list[Key]) -> None:
    seen: set[str] = set()
    for key in keys:
        _validate_key(key)
        if key.name in seen:
            raise ValidationError(reason=f'duplicate key name "{key.name}"', key=key.name)
        seen.add(key.name)
