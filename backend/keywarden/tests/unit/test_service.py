"""Tests for UserService: user and key lifecycle across store and authorized-keys file."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from keywarden.exceptions import (
    ConflictError,
    ErrorKind,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from keywarden.service import UserService, is_valid_user_name
from shared.dal.models import Key, Repository

if TYPE_CHECKING:
    from pathlib import Path

    from keywarden.keys import AuthorizedKeysFile


def _auth_keys_content(keys_path: Path) -> str:
    if not keys_path.exists():
        return ""
    return keys_path.read_text(encoding="utf-8")


async def _user_plus_repos(service: UserService, grant_repo) -> None:
    await service.create("silver", [])
    await grant_repo.create_repository(Repository(name="run", users=["silver", "slot"]))
    await grant_repo.create_repository(Repository(name="stay", users=["silver", "cnot"]))


class TestUserNameValidity:
    @pytest.mark.parametrize("name", ["someuser", "r2d2@gmail.com", "first.last+git@example.org", "u", "9lives"])
    def test_accepts(self, name):
        assert is_valid_user_name(name)

    @pytest.mark.parametrize("name", ["", " ", "-leading-dash", "has space", "colon:name", 'quote"d', "new\nline"])
    def test_rejects(self, name):
        assert not is_valid_user_name(name)


class TestCreate:
    async def test_returns_filled_user(self, service: UserService):
        user = await service.create("someuser", [Key(content="id_rsa someKeyChars", name="somekey")])

        assert user.name == "someuser"
        assert len(user.keys) == 1

    async def test_stores_user_in_database(self, service: UserService, user_repo):
        keys = [Key(content="ssh-rsa a", name="a"), Key(content="ssh-rsa b", name="b")]
        await service.create("someuser", keys)

        stored = await user_repo.get_user("someuser")
        assert stored is not None
        assert stored.name == "someuser"
        assert stored.keys == keys

    async def test_empty_name_fails_validation_without_writes(self, service: UserService, user_repo, keys_path):
        with pytest.raises(ValidationError) as exc_info:
            await service.create("", [Key(content="ssh-rsa a", name="a")])

        assert str(exc_info.value) == "Validation Error: user name is not valid"
        assert exc_info.value.kind == ErrorKind.VALIDATION
        assert await user_repo.list_users() == []
        assert not keys_path.exists()

    async def test_accepts_email_as_user_name(self, service: UserService):
        user = await service.create("r2d2@gmail.com", [Key(content="id_rsa foooBar", name="somekey")])

        assert user.name == "r2d2@gmail.com"

    async def test_writes_key_in_authorized_keys(self, service: UserService, keys_path: Path):
        await service.create("piccolo", [Key(content="idrsakey piccolo@myhost", name="somekey")])

        assert "idrsakey piccolo@myhost" in _auth_keys_content(keys_path)

    async def test_duplicate_name_raises_conflict(self, service: UserService):
        await service.create("someuser", [])

        with pytest.raises(ConflictError, match="^Could not create user: user already exists$"):
            await service.create("someuser", [])

    async def test_rejects_multiline_key_content(self, service: UserService, user_repo):
        with pytest.raises(ValidationError, match="key content is not valid"):
            await service.create("umi", [Key(content="ssh-rsa a\nssh-rsa injected", name="a")])

        assert await user_repo.get_user("umi") is None

    @pytest.mark.parametrize("separator", ["\x0b", "\x0c", "\x1c", "\x85", "\u2028", "\u2029"])
    async def test_rejects_key_content_split_by_any_line_separator(
        self, service: UserService, user_repo, keys_path: Path, separator: str
    ):
        content = f"ssh-rsa AAAA x{separator}ssh-ed25519 EVILKEY"

        with pytest.raises(ValidationError, match="key content is not valid"):
            await service.create("mallory", [Key(content=content, name="k")])

        assert await user_repo.get_user("mallory") is None
        assert not keys_path.exists()

    async def test_rejects_control_characters_in_key_name(self, service: UserService, user_repo):
        with pytest.raises(ValidationError, match="key name is not valid"):
            await service.create("umi", [Key(content="ssh-rsa a", name="lap\x00top")])

        assert await user_repo.get_user("umi") is None

    async def test_rejects_duplicate_key_names(self, service: UserService, user_repo):
        keys = [Key(content="ssh-rsa a", name="same"), Key(content="ssh-rsa b", name="same")]

        with pytest.raises(ValidationError, match="duplicate key name"):
            await service.create("umi", keys)

        assert await user_repo.get_user("umi") is None

    async def test_file_failure_keeps_committed_user(self, service: UserService, user_repo, keys_path: Path):
        with (
            patch("os.fsync", side_effect=OSError("disk full")),
            pytest.raises(PersistenceError, match="Could not update authorized keys"),
        ):
            await service.create("umi", [Key(content="ssh-rsa mykey", name="k")])

        assert await user_repo.get_user("umi") is not None
        assert "ssh-rsa mykey" not in _auth_keys_content(keys_path)

    async def test_store_failure_raises_persistence_error(self, service: UserService, user_repo, keys_path: Path):
        with (
            patch.object(user_repo, "create_user", side_effect=OSError("Failed to insert user")),
            pytest.raises(PersistenceError, match="^Could not create user: Failed to insert user$"),
        ):
            await service.create("umi", [Key(content="ssh-rsa mykey", name="k")])

        assert not keys_path.exists()


class TestRemove:
    async def test_removes_user_from_database(self, service: UserService, user_repo):
        await service.create("someuser", [])

        await service.remove("someuser")

        assert await user_repo.get_user("someuser") is None

    async def test_removes_keys_from_authorized_keys_file(self, service: UserService, keys_path: Path):
        await service.create("gandalf", [Key(content="gandalfkey gandalf@mordor", name="somekey")])

        await service.remove("gandalf")

        assert "gandalfkey gandalf@mordor" not in _auth_keys_content(keys_path)

    async def test_keeps_other_users_keys(self, service: UserService, keys_file: AuthorizedKeysFile):
        await service.create("gandalf", [Key(content="ssh-rsa g", name="k")])
        await service.create("frodo", [Key(content="ssh-rsa f", name="k")])

        await service.remove("gandalf")

        assert keys_file.key_ids() == ["frodo:k"]

    async def test_inexistent_user_returns_descriptive_message(self, service: UserService):
        with pytest.raises(NotFoundError, match="^Could not remove user: not found$"):
            await service.remove("otheruser")

    async def test_sole_grantee_is_not_removed(self, service: UserService, user_repo, grant_repo, keys_path: Path):
        await service.create("silver", [Key(content="ssh-rsa silver", name="k")])
        await grant_repo.create_repository(Repository(name="run", users=["silver"]))

        with pytest.raises(
            ConflictError,
            match="^Could not remove user: user is the only one with access to at least one of its repositories$",
        ):
            await service.remove("silver")

        assert await user_repo.get_user("silver") is not None
        run = await grant_repo.get_repository("run")
        assert run is not None
        assert run.users == ["silver"]
        assert "ssh-rsa silver" in _auth_keys_content(keys_path)

    async def test_revokes_access_to_repos_with_more_than_one_user(self, service: UserService, grant_repo):
        await _user_plus_repos(service, grant_repo)

        await service.remove("silver")

        run = await grant_repo.get_repository("run")
        stay = await grant_repo.get_repository("stay")
        assert run is not None
        assert stay is not None
        assert run.users == ["slot"]
        assert stay.users == ["cnot"]

    async def test_second_remove_is_not_found(self, service: UserService):
        await service.create("someuser", [])
        await service.remove("someuser")

        with pytest.raises(NotFoundError):
            await service.remove("someuser")

    async def test_file_failure_keeps_user_deleted(self, service: UserService, user_repo, keys_path: Path):
        await service.create("umi", [Key(content="ssh-rsa mykey", name="k")])

        with (
            patch("os.fsync", side_effect=OSError("disk full")),
            pytest.raises(PersistenceError),
        ):
            await service.remove("umi")

        assert await user_repo.get_user("umi") is None
        assert "ssh-rsa mykey" in _auth_keys_content(keys_path)

    async def test_rebuild_repairs_divergence(self, service: UserService, keys_path: Path):
        await service.create("umi", [Key(content="ssh-rsa mykey", name="k")])
        with (
            patch("os.fsync", side_effect=OSError("disk full")),
            pytest.raises(PersistenceError),
        ):
            await service.remove("umi")

        await service.rebuild_authorized_keys()

        assert "ssh-rsa mykey" not in _auth_keys_content(keys_path)


class TestAddKey:
    async def test_appends_key_into_users_document(self, service: UserService, user_repo):
        await service.create("umi", [])
        k = Key(content="ssh-rsa mykey umi@lolcats", name="somekey")

        await service.add_key("umi", k)

        stored = await user_repo.get_user("umi")
        assert stored is not None
        assert stored.keys == [k]

    async def test_writes_key_in_authorized_keys(self, service: UserService, keys_path: Path):
        await service.create("umi", [])
        k = Key(content="ssh-rsa mykey umi@lolcats", name="somekey")

        await service.add_key("umi", k)

        assert _auth_keys_content(keys_path).rstrip("\n").endswith(" " + k.content)

    async def test_returns_updated_user(self, service: UserService):
        await service.create("umi", [Key(content="ssh-rsa first", name="first")])

        user = await service.add_key("umi", Key(content="ssh-rsa second", name="second"))

        assert [k.name for k in user.keys] == ["first", "second"]

    async def test_custom_error_when_user_does_not_exist(self, service: UserService, keys_path: Path):
        with pytest.raises(NotFoundError, match='^User "umi" not found$'):
            await service.add_key("umi", Key(content="ssh-rsa mykey umi@host", name="somekey"))

        assert not keys_path.exists()

    async def test_duplicate_key_name_raises_conflict(self, service: UserService, keys_file: AuthorizedKeysFile):
        await service.create("umi", [Key(content="ssh-rsa a", name="laptop")])

        with pytest.raises(ConflictError, match='Key "laptop" already exists for user "umi"'):
            await service.add_key("umi", Key(content="ssh-rsa b", name="laptop"))

        assert keys_file.read_lines()[0].endswith(" ssh-rsa a")

    async def test_rejects_empty_content(self, service: UserService):
        await service.create("umi", [])

        with pytest.raises(ValidationError, match="^Validation Error: key content is not valid$"):
            await service.add_key("umi", Key(content="  ", name="blank"))

    @pytest.mark.parametrize(
        "content",
        ["ssh-rsa AAAA x\x0cssh-ed25519 EVILKEY", "ssh-rsa AAAA\x85ssh-ed25519 EVILKEY"],
    )
    async def test_rejects_content_that_would_split_into_two_lines(
        self, service: UserService, user_repo, keys_path: Path, content: str
    ):
        await service.create("mallory", [Key(content="ssh-rsa good", name="main")])

        with pytest.raises(ValidationError, match="key content is not valid"):
            await service.add_key("mallory", Key(content=content, name="k"))

        user = await user_repo.get_user("mallory")
        assert user is not None
        assert [k.name for k in user.keys] == ["main"]
        assert "EVILKEY" not in _auth_keys_content(keys_path)

        await service.create("alice", [Key(content="ssh-rsa alice", name="main")])
        await service.remove("mallory")

        assert "EVILKEY" not in _auth_keys_content(keys_path)
        assert "mallory" not in _auth_keys_content(keys_path)


class TestRemoveKey:
    async def test_removes_key_from_user_document(self, service: UserService, user_repo):
        await service.create("luke", [Key(content="ssh-rsa lukeskey@home", name="homekey")])

        await service.remove_key("luke", "homekey")

        stored = await user_repo.get_user("luke")
        assert stored is not None
        assert stored.keys == []

    async def test_removes_from_authorized_keys_file(self, service: UserService, keys_path: Path):
        k = "ssh-rsa lukeskey@home"
        await service.create("luke", [Key(content=k, name="homekey")])

        await service.remove_key("luke", "homekey")

        assert k not in _auth_keys_content(keys_path)

    async def test_keeps_key_with_same_content_and_other_name(
        self,
        service: UserService,
        user_repo,
        keys_file: AuthorizedKeysFile,
    ):
        keys = [Key(content="ssh-rsa same", name="home"), Key(content="ssh-rsa same", name="work")]
        await service.create("luke", keys)

        await service.remove_key("luke", "home")

        stored = await user_repo.get_user("luke")
        assert stored is not None
        assert stored.keys == [keys[1]]
        assert keys_file.key_ids() == ["luke:work"]

    async def test_missing_key_raises_not_found(self, service: UserService):
        await service.create("luke", [Key(content="ssh-rsa a", name="homekey")])

        with pytest.raises(NotFoundError, match='^Key "workkey" not found for user "luke"$'):
            await service.remove_key("luke", "workkey")

    async def test_missing_user_raises_not_found(self, service: UserService):
        with pytest.raises(NotFoundError, match='^User "luke" not found$'):
            await service.remove_key("luke", "homekey")


class TestLookups:
    async def test_get_returns_user(self, service: UserService):
        await service.create("luke", [Key(content="ssh-rsa a", name="a")])

        user = await service.get("luke")

        assert user.name == "luke"

    async def test_list_keys_preserves_order(self, service: UserService):
        keys = [Key(content="ssh-rsa b", name="b"), Key(content="ssh-rsa a", name="a")]
        await service.create("luke", keys)

        assert await service.list_keys("luke") == keys

    async def test_list_keys_for_missing_user(self, service: UserService):
        with pytest.raises(NotFoundError):
            await service.list_keys("nobody")


class TestRebuildAuthorizedKeys:
    async def test_rebuild_writes_every_persisted_key(self, service: UserService, keys_file: AuthorizedKeysFile):
        await service.create("leia", [Key(content="ssh-rsa l", name="a")])
        await service.create("luke", [Key(content="ssh-rsa x", name="a"), Key(content="ssh-rsa y", name="b")])
        keys_file.path.write_text("")

        count = await service.rebuild_authorized_keys()

        assert count == 3
        assert keys_file.key_ids() == ["leia:a", "luke:a", "luke:b"]
