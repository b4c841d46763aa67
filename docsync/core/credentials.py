"""Credential persistence: one file per profile, or a host key-value store."""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from ..errors import StorageError
from ..models.records import Credential

logger = logging.getLogger(__name__)


def default_config_dir() -> Path:
    """Per-environment configuration directory.

    ``$DOCSYNC_CONFIG_DIR`` wins, then ``$XDG_CONFIG_HOME/docsync``, then
    ``~/.config/docsync``.
    """
    explicit = os.getenv("DOCSYNC_CONFIG_DIR")
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg).expanduser() / "docsync"
    return Path.home() / ".config" / "docsync"


def _normalize_profile(profile: str | None) -> str:
    return profile.strip() if profile and profile.strip() else "default"


class CredentialStore(Protocol):
    """Persists and retrieves a single credential."""

    async def load(self) -> Credential | None:
        ...

    async def save(self, credential: Credential) -> None:
        ...

    async def exists(self) -> bool:
        ...

    async def clear(self) -> None:
        ...


class FileCredentialStore:
    """Token file ``tokens-<profile>.json`` in the config directory."""

    def __init__(self, profile: str | None = None, config_dir: Path | None = None) -> None:
        self.profile = _normalize_profile(profile)
        self.config_dir = Path(config_dir) if config_dir is not None else default_config_dir()

    @property
    def token_path(self) -> Path:
        return self.config_dir / f"tokens-{self.profile}.json"

    def _read(self) -> Credential | None:
        if not self.token_path.exists():
            return None
        try:
            with open(self.token_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read token file %s: %s", self.token_path, e)
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            logger.warning("Token file %s has no access_token", self.token_path)
            return None
        return Credential.from_dict(data)

    def _write(self, credential: Credential) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(credential.to_dict(), f, indent=2)
                f.write("\n")
        except OSError as e:
            raise StorageError(
                f"Failed to save credential: {e}", operation="save_credential",
                path=str(self.token_path), cause=e,
            ) from e
        logger.info("Saved credential for profile '%s' to %s", self.profile, self.token_path)

    def _remove(self) -> None:
        try:
            self.token_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to clear credential: {e}", operation="clear_credential",
                path=str(self.token_path), cause=e,
            ) from e

    async def load(self) -> Credential | None:
        return await asyncio.to_thread(self._read)

    async def save(self, credential: Credential) -> None:
        await asyncio.to_thread(self._write, credential)

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.token_path.exists)

    async def clear(self) -> None:
        await asyncio.to_thread(self._remove)


class HostDataStore(Protocol):
    """Host application's persisted data dictionary."""

    async def load_data(self) -> dict[str, Any] | None:
        ...

    async def save_data(self, data: dict[str, Any]) -> None:
        ...


class HostCredentialStore:
    """Credential kept under ``auth_tokens_<profile>`` in host data."""

    def __init__(self, host: HostDataStore, profile: str | None = None) -> None:
        self.host = host
        self.profile = _normalize_profile(profile)

    @property
    def key(self) -> str:
        return f"auth_tokens_{self.profile}"

    async def load(self) -> Credential | None:
        data = await self.host.load_data() or {}
        raw = data.get(self.key)
        if not isinstance(raw, dict) or not raw.get("access_token"):
            return None
        return Credential.from_dict(raw)

    async def save(self, credential: Credential) -> None:
        data = dict(await self.host.load_data() or {})
        data[self.key] = credential.to_dict()
        try:
            await self.host.save_data(data)
        except Exception as e:
            raise StorageError(
                f"Failed to save credential: {e}", operation="save_credential", path=self.key, cause=e,
            ) from e

    async def exists(self) -> bool:
        return await self.load() is not None

    async def clear(self) -> None:
        data = dict(await self.host.load_data() or {})
        if data.pop(self.key, None) is not None:
            await self.host.save_data(data)
