"""
Credential providers for the submission client.

Credentials are handed to the client explicitly; nothing here caches them
in module state.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from usage_sync.config.loader import ENV_TOKEN


@dataclass(frozen=True)
class Credentials:
    """Bearer token plus the username it belongs to."""
    token: str
    username: Optional[str] = None

    def __post_init__(self):
        if not self.token or not self.token.strip():
            raise ValueError("token is required and cannot be empty")


class CredentialProvider:
    """Source of credentials; returns None when none are available."""

    def load(self) -> Optional[Credentials]:
        raise NotImplementedError


class StaticCredentialProvider(CredentialProvider):
    """Provider wrapping credentials known up front."""

    def __init__(self, credentials: Credentials):
        self.credentials = credentials

    def load(self) -> Optional[Credentials]:
        return self.credentials


class FileCredentialProvider(CredentialProvider):
    """Reads ``{"token": ..., "username": ...}`` from a JSON file.

    The ``USAGE_SYNC_TOKEN`` environment variable, when set, takes
    precedence over the file.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()

    def load(self) -> Optional[Credentials]:
        env_token = os.environ.get(ENV_TOKEN)
        if env_token:
            return Credentials(token=env_token)

        if not self.path.exists():
            return None
        with open(self.path, 'r', encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid credentials file {self.path}: {e}")
        if not isinstance(data, dict) or not data.get("token"):
            raise ValueError(f"Credentials file {self.path} has no 'token'")
        return Credentials(token=data["token"], username=data.get("username"))

    def save(self, credentials: Credentials) -> None:
        """Write credentials to the file, readable by the owner only."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump({"token": credentials.token, "username": credentials.username}, f, indent=2)
        # O_CREAT's mode only applies to new files.
        os.chmod(self.path, 0o600)
