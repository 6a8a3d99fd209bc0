"""Manage users, SSH keys, and the authorized-keys file from the command line.

Usage:
    uv run python bin/keywarden.py create-user <name> [--key NAME=CONTENT ...]
    uv run python bin/keywarden.py remove-user <name>
    uv run python bin/keywarden.py add-key <user> <key_name> <content>
    uv run python bin/keywarden.py remove-key <user> <key_name>
    uv run python bin/keywarden.py list-keys <user>
    uv run python bin/keywarden.py rebuild

Paths and the forced SSH command come from KEYWARDEN_* environment variables.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add backend to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from keywarden.exceptions import AccessError
from keywarden.keys import AuthorizedKeysFile
from keywarden.service import UserService
from keywarden.settings import KeywardenSettings
from shared.dal.models import Key
from shared.db import Database, SqliteGrantRepository, SqliteUserRepository
from shared.logging import setup_logging


def _parse_key(value: str) -> Key:
    name, sep, content = value.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected NAME=CONTENT, got {value!r}")
    return Key(name=name, content=content)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="keywarden", description=__doc__.splitlines()[0])
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create-user", help="create a user and write its keys")
    create.add_argument("name")
    create.add_argument("--key", dest="keys", action="append", type=_parse_key, default=[], metavar="NAME=CONTENT")

    remove = commands.add_parser("remove-user", help="revoke shared access and remove a user")
    remove.add_argument("name")

    add_key = commands.add_parser("add-key", help="add an SSH key to a user")
    add_key.add_argument("user")
    add_key.add_argument("key_name")
    add_key.add_argument("content")

    remove_key = commands.add_parser("remove-key", help="remove one SSH key from a user")
    remove_key.add_argument("user")
    remove_key.add_argument("key_name")

    list_keys = commands.add_parser("list-keys", help="list a user's SSH keys")
    list_keys.add_argument("user")

    commands.add_parser("rebuild", help="regenerate the authorized-keys file from the database")
    return parser


async def _run(args: argparse.Namespace, service: UserService) -> None:
    match args.command:
        case "create-user":
            user = await service.create(args.name, args.keys)
            print(f"User created: {user.name} ({len(user.keys)} key(s))")
        case "remove-user":
            await service.remove(args.name)
            print(f"User removed: {args.name}")
        case "add-key":
            await service.add_key(args.user, Key(name=args.key_name, content=args.content))
            print(f"Key added: {args.user}/{args.key_name}")
        case "remove-key":
            await service.remove_key(args.user, args.key_name)
            print(f"Key removed: {args.user}/{args.key_name}")
        case "list-keys":
            for key in await service.list_keys(args.user):
                print(f"{key.name}\t{key.content}")
        case "rebuild":
            count = await service.rebuild_authorized_keys()
            print(f"Authorized keys rebuilt: {count} key(s)")


async def main() -> None:
    args = _build_parser().parse_args()
    settings = KeywardenSettings()
    setup_logging(log_dir=settings.log_dir or None)

    db = Database(settings.database_path)
    db.connect()
    try:
        service = UserService(
            SqliteUserRepository(db),
            SqliteGrantRepository(db),
            AuthorizedKeysFile(settings.authorized_keys_path, command=settings.ssh_command),
        )
        try:
            await _run(args, service)
        except AccessError as e:
            print(f"Error: {e}")
            sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    asyncio.run(main())
