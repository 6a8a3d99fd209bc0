"""Authorized-keys file synchronization.

The file is a derived projection of the persisted key set: one line per
key, written by ``encoder.encode``. Lines without a key id (comments or
keys added by hand) are left alone by every operation.

Writes are read-modify-write cycles that replace the whole file through a
temp file in the same directory, so sshd never reads a partial file. All
instances pointing at the same resolved path share one asyncio.Lock per
event loop, held for the whole cycle to avoid lost updates. File I/O runs
in a worker thread so a disk flush does not stall the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
import weakref
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from keywarden.exceptions import PersistenceError
from keywarden.keys.encoder import encode, key_id, parse_key_id, user_prefix

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from shared.dal.models import Key, User

logger = structlog.get_logger()

# sshd StrictModes rejects group/world-writable key files and directories.
_SSH_DIR_MODE = 0o700
_KEYS_FILE_MODE = 0o600

# asyncio.Lock binds to the loop it is first contended on, so each loop gets its own set.
_file_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Path, asyncio.Lock]] = (
    weakref.WeakKeyDictionary()
)


def _lock_for(path: Path) -> asyncio.Lock:
    """Return the writer lock for a resolved file path on the running event loop."""
    locks = _file_locks.setdefault(asyncio.get_running_loop(), {})
    return locks.setdefault(path, asyncio.Lock())


class AuthorizedKeysFile:
    """Keeps an ``authorized_keys`` file in step with persisted keys."""

    def __init__(self, path: str | Path, *, command: str) -> None:
        self._path = Path(path).expanduser().resolve()
        self._command = command

    @property
    def path(self) -> Path:
        return self._path

    def read_lines(self) -> list[str]:
        """Return the current lines, or an empty list when the file does not exist."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise PersistenceError(
                reason=f"failed to read {self._path}",
                operation="read authorized keys",
                path=str(self._path),
            ) from exc
        # Only "\n" separates entries, as for sshd; str.splitlines would also split on \x0c, \x85, ...
        lines = text.split("\n")
        if lines[-1] == "":
            lines.pop()
        return lines

    def key_ids(self) -> list[str]:
        """Return the ids of every managed line, in file order."""
        return [i for i in map(parse_key_id, self.read_lines()) if i is not None]

    def encode(self, user_name: str, key: Key) -> str:
        return encode(user_name, key, command=self._command)

    async def add_line(self, line: str) -> None:
        """Add one line, replacing an existing line with the same key id."""
        await self.add_lines([line])

    async def add_lines(self, lines: list[str]) -> None:
        """Add several lines in a single rewrite.

        A line whose key id is already present replaces the old line in
        place; other lines are appended. Identical unmanaged lines are not
        duplicated.
        """

        def merge(current: list[str]) -> list[str]:
            merged = list(current)
            for line in lines:
                identity = parse_key_id(line)
                index = next(
                    (
                        i
                        for i, existing in enumerate(merged)
                        if (identity is not None and parse_key_id(existing) == identity) or existing == line
                    ),
                    None,
                )
                if index is None:
                    merged.append(line)
                else:
                    merged[index] = line
            return merged

        await self._rewrite(merge)

    async def add_key(self, user_name: str, key: Key) -> None:
        await self.add_line(self.encode(user_name, key))

    async def add_keys(self, user_name: str, keys: list[Key]) -> None:
        if not keys:
            return
        await self.add_lines([self.encode(user_name, key) for key in keys])

    async def remove_lines(self, predicate: Callable[[str], bool]) -> int:
        """Drop every managed line whose key id matches ``predicate``.

        Returns the number of lines removed.
        """
        removed = 0

        def keep(current: list[str]) -> list[str]:
            nonlocal removed
            kept = []
            for line in current:
                identity = parse_key_id(line)
                if identity is not None and predicate(identity):
                    removed += 1
                else:
                    kept.append(line)
            return kept

        await self._rewrite(keep)
        return removed

    async def remove_key(self, user_name: str, key_name: str) -> int:
        target = key_id(user_name, key_name)
        return await self.remove_lines(lambda identity: identity == target)

    async def remove_all_for_user(self, user_name: str) -> int:
        prefix = user_prefix(user_name)
        return await self.remove_lines(lambda identity: identity.startswith(prefix))

    async def rebuild(self, users: Iterable[User]) -> int:
        """Regenerate every managed line from the complete persisted key set.

        Unmanaged lines are preserved at the top of the file. Returns the
        number of key lines written.
        """
        generated = [self.encode(user.name, key) for user in users for key in user.keys]

        def regenerate(current: list[str]) -> list[str]:
            return [line for line in current if parse_key_id(line) is None] + generated

        await self._rewrite(regenerate, force=True)
        logger.info("rebuilt authorized keys", path=str(self._path), keys=len(generated))
        return len(generated)

    async def _rewrite(self, transform: Callable[[list[str]], list[str]], *, force: bool = False) -> None:
        async with _lock_for(self._path):
            current = await asyncio.to_thread(self.read_lines)
            updated = transform(current)
            if updated == current and not force:
                return
            try:
                await asyncio.to_thread(self._write, updated)
            except OSError as exc:
                raise PersistenceError(
                    reason=f"failed to write {self._path}",
                    operation="update authorized keys",
                    path=str(self._path),
                ) from exc

    def _write(self, lines: list[str]) -> None:
        """Atomically replace the file with ``lines``.

        Creates the parent directory with owner-only permissions when it is
        missing. The temp file is removed on failure, leaving the previous
        content in place.
        """
        parent = self._path.parent
        parent.mkdir(mode=_SSH_DIR_MODE, parents=True, exist_ok=True)

        content = "".join(f"{line}\n" for line in lines).encode("utf-8")

        fd, tmp_path = tempfile.mkstemp(dir=str(parent), prefix=".authorized_keys_", suffix=".tmp")
        fd_owned = True
        try:
            with os.fdopen(fd, "wb") as f:
                fd_owned = False  # os.fdopen took ownership; it will close fd
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, _KEYS_FILE_MODE)  # noqa: PTH101
            Path(tmp_path).replace(self._path)
        except BaseException:
            if fd_owned:
                with contextlib.suppress(OSError):
                    os.close(fd)
            with contextlib.suppress(OSError):
                Path(tmp_path).unlink()
            raise
