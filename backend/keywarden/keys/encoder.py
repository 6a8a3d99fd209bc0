"""Encode SSH keys as command-restricted ``authorized_keys`` lines.

Each line forces a single command and passes it an opaque key id::

    no-port-forwarding,no-X11-forwarding,no-agent-forwarding,no-pty,command="<command> <key-id>" <content>

The key id is ``<user>:<key name>`` with both parts percent-encoded, so it
never contains whitespace or quotes and identifies one key of one user
even when two keys share the same content.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote

if TYPE_CHECKING:
    from shared.dal.models import Key

KEY_OPTIONS = "no-port-forwarding,no-X11-forwarding,no-agent-forwarding,no-pty"

_ID_SEPARATOR = ":"
_SAFE_CHARS = "@+"

_LINE_PATTERN = re.compile(
    "^" + re.escape(KEY_OPTIONS) + r',command="[^"]* (?P<key_id>[^\s"]+)"(?: |$)',
)


def key_id(user_name: str, key_name: str) -> str:
    """Build the opaque identifier embedded in a key's line."""
    return f"{quote(user_name, safe=_SAFE_CHARS)}{_ID_SEPARATOR}{quote(key_name, safe=_SAFE_CHARS)}"


def user_prefix(user_name: str) -> str:
    """Prefix shared by the ids of every key owned by ``user_name``."""
    return f"{quote(user_name, safe=_SAFE_CHARS)}{_ID_SEPARATOR}"


def owner_of(identifier: str) -> str:
    """Return the user name encoded in a key id."""
    return unquote(identifier.partition(_ID_SEPARATOR)[0])


def encode(user_name: str, key: Key, *, command: str) -> str:
    """Serialize one key into a single ``authorized_keys`` line (no trailing newline)."""
    return f'{KEY_OPTIONS},command="{command} {key_id(user_name, key.name)}" {key.content}'


def parse_key_id(line: str) -> str | None:
    """Recover the key id from a line written by ``encode``.

    Returns None for lines this module did not write (comments, blank
    lines, keys added by hand).
    """
    match = _LINE_PATTERN.match(line)
    if match is None:
        return None
    return match.group("key_id")
