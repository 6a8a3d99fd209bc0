"""SSH key encoding and authorized-keys file synchronization."""

from keywarden.keys.authorized_keys import AuthorizedKeysFile
from keywarden.keys.encoder import encode, key_id, owner_of, parse_key_id

__all__ = [
    "AuthorizedKeysFile",
    "encode",
    "key_id",
    "owner_of",
    "parse_key_id",
]
