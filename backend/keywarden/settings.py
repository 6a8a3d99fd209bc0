"""keywarden configuration via environment variables."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def default_authorized_keys_path() -> Path:
    """Authorized-keys file of the invoking account."""
    return Path.home() / ".ssh" / "authorized_keys"


class KeywardenSettings(BaseSettings):
    model_config = {"env_prefix": "KEYWARDEN_"}

    # SQLite database file path
    database_path: str = "backend/storage.db"

    # Resolved from the invoking account's home directory when unset
    authorized_keys_path: Path = Field(default_factory=default_authorized_keys_path)

    # Forced command written into every key line; receives the key id as its argument
    ssh_command: str = "/usr/local/bin/keywarden-serve"

    # Empty string disables file logging
    log_dir: str = "backend/logs/keywarden"

    @field_validator("ssh_command")
    @classmethod
    def validate_ssh_command(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("ssh_command must not be empty")
        if '"' in stripped or "\n" in stripped:
            raise ValueError("ssh_command must not contain double quotes or newlines")
        return stripped
