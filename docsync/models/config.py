"""Configuration models for docsync.

Configuration is an explicit value handed to each component at construction.
It is loaded from a YAML file and then overlaid with environment variables
(a local ``.env`` file is honoured).
"""

import fnmatch
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from ..errors import ConfigurationError

CONFLICT_POLICIES = ("prefer-doc", "prefer-md", "merge", "prompt")
DELETE_HANDLING = ("ignore", "archive", "recreate")

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/documents",
]


def sanitize_filename(name: str) -> str:
    """Sanitize a document name for use as a local file name.

    Replaces characters that are invalid on common filesystems and collapses
    whitespace.
    """
    sanitized = re.sub(r'[<>:"/\\|?*]', "-", name)
    sanitized = re.sub(r"\s+", " ", sanitized)
    sanitized = sanitized.strip(" .")
    return sanitized or "untitled"


@dataclass
class RetryConfig:
    """Exponential backoff parameters for remote calls."""

    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay
    retryable_statuses: tuple[int, ...] = (408, 429, 500, 502, 503, 504)
    retryable_errors: tuple[str, ...] = ("ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "multiplier": self.multiplier,
            "jitter": self.jitter,
            "retryable_statuses": list(self.retryable_statuses),
            "retryable_errors": list(self.retryable_errors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryConfig":
        """Create from dictionary."""
        defaults = cls()
        return cls(
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            initial_delay=float(data.get("initial_delay", defaults.initial_delay)),
            max_delay=float(data.get("max_delay", defaults.max_delay)),
            multiplier=float(data.get("multiplier", defaults.multiplier)),
            jitter=float(data.get("jitter", defaults.jitter)),
            retryable_statuses=tuple(data.get("retryable_statuses", defaults.retryable_statuses)),
            retryable_errors=tuple(data.get("retryable_errors", defaults.retryable_errors)),
        )


@dataclass
class NetworkConfig:
    """Network settings shared by the remote client and token exchange."""

    timeout: float = 30.0  # seconds per request
    concurrency: int = 5  # in-flight remote calls
    retry: RetryConfig = field(default_factory=RetryConfig)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timeout": self.timeout,
            "concurrency": self.concurrency,
            "retry": self.retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkConfig":
        """Create from dictionary."""
        concurrency = int(data.get("concurrency", 5))
        if concurrency < 1:
            raise ConfigurationError("network.concurrency must be at least 1", key="network.concurrency")
        return cls(
            timeout=float(data.get("timeout", 30.0)),
            concurrency=concurrency,
            retry=RetryConfig.from_dict(data.get("retry") or {}),
        )


@dataclass
class SyncSettings:
    """Sync operation settings."""

    conflict_policy: str = "prefer-doc"
    drive_folder: str = ""  # Drive folder name or id
    local_root: str = "."
    file_extension: str = ".md"
    exclude: list[str] = field(default_factory=list)  # Glob patterns to exclude
    backup_on_pull: bool = True
    backup_dir: str = ".docsync-backups"
    reconcile_root: bool = True
    sync_timeout: float = 600.0  # seconds for a whole batch
    delete_handling: str = "ignore"  # when the linked Google Doc is trashed or gone
    trash_dir: str = ".trash"

    def __post_init__(self) -> None:
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ConfigurationError(
                f"Unknown conflict policy '{self.conflict_policy}', "
                f"expected one of: {', '.join(CONFLICT_POLICIES)}",
                key="sync.conflict_policy",
            )
        if self.delete_handling not in DELETE_HANDLING:
            raise ConfigurationError(
                f"Unknown delete handling '{self.delete_handling}', "
                f"expected one of: {', '.join(DELETE_HANDLING)}",
                key="sync.delete_handling",
            )

    def should_exclude(self, path: str) -> bool:
        """Check if a relative path matches any exclude pattern.

        Args:
            path: Relative path to check (e.g., "drafts/notes.md")

        Returns:
            True if path should be excluded
        """
        for pattern in self.exclude:
            if fnmatch.fnmatch(path, pattern):
                return True
            # Also check just the name portion
            if fnmatch.fnmatch(path.split("/")[-1], pattern):
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "conflict_policy": self.conflict_policy,
            "drive_folder": self.drive_folder,
            "local_root": self.local_root,
            "file_extension": self.file_extension,
            "exclude": list(self.exclude),
            "backup_on_pull": self.backup_on_pull,
            "backup_dir": self.backup_dir,
            "reconcile_root": self.reconcile_root,
            "sync_timeout": self.sync_timeout,
            "delete_handling": self.delete_handling,
            "trash_dir": self.trash_dir,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        """Create from dictionary."""
        return cls(
            conflict_policy=data.get("conflict_policy", "prefer-doc"),
            drive_folder=str(data.get("drive_folder", "") or ""),
            local_root=str(data.get("local_root", ".") or "."),
            file_extension=data.get("file_extension", ".md"),
            exclude=list(data.get("exclude") or []),
            backup_on_pull=bool(data.get("backup_on_pull", True)),
            backup_dir=data.get("backup_dir", ".docsync-backups"),
            reconcile_root=bool(data.get("reconcile_root", True)),
            sync_timeout=float(data.get("sync_timeout", 600.0)),
            delete_handling=data.get("delete_handling", "ignore"),
            trash_dir=data.get("trash_dir", ".trash"),
        )


@dataclass
class OAuthSettings:
    """OAuth client settings. The client id is public; PKCE proves possession."""

    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    profile: str = "default"
    auth_timeout: float = 300.0  # seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary. The client secret is not written out."""
        return {
            "client_id": self.client_id,
            "scopes": list(self.scopes),
            "profile": self.profile,
            "auth_timeout": self.auth_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthSettings":
        """Create from dictionary."""
        profile = str(data.get("profile") or "default").strip() or "default"
        return cls(
            client_id=data.get("client_id", ""),
            client_secret=data.get("client_secret", ""),
            scopes=list(data.get("scopes") or DEFAULT_SCOPES),
            profile=profile,
            auth_timeout=float(data.get("auth_timeout", 300.0)),
        )


@dataclass
class AppConfig:
    """Main configuration for docsync."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    oauth: OAuthSettings = field(default_factory=OAuthSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """Create from dictionary."""
        try:
            return cls(
                network=NetworkConfig.from_dict(data.get("network") or {}),
                sync=SyncSettings.from_dict(data.get("sync") or {}),
                oauth=OAuthSettings.from_dict(data.get("oauth") or {}),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}", cause=e) from e

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "network": self.network.to_dict(),
            "sync": self.sync.to_dict(),
            "oauth": self.oauth.to_dict(),
        }

    @classmethod
    def load(cls, config_path: Path) -> "AppConfig":
        """Load configuration from YAML file."""
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Config file {config_path} is not valid YAML: {e}", cause=e) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        return cls.from_dict(data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def apply_env(self) -> "AppConfig":
        """Overlay environment variables (and a local .env file) onto this config."""
        load_dotenv()

        client_id = os.getenv("DOCSYNC_OAUTH_CLIENT_ID")
        if client_id:
            self.oauth.client_id = client_id
        client_secret = os.getenv("DOCSYNC_OAUTH_CLIENT_SECRET")
        if client_secret:
            self.oauth.client_secret = client_secret
        profile = os.getenv("DOCSYNC_PROFILE")
        if profile and profile.strip():
            self.oauth.profile = profile.strip()
        folder = os.getenv("DOCSYNC_DRIVE_FOLDER")
        if folder:
            self.sync.drive_folder = folder
        policy = os.getenv("DOCSYNC_CONFLICT_POLICY")
        if policy:
            if policy not in CONFLICT_POLICIES:
                raise ConfigurationError(
                    f"DOCSYNC_CONFLICT_POLICY has unknown value '{policy}'",
                    key="DOCSYNC_CONFLICT_POLICY",
                )
            self.sync.conflict_policy = policy
        return self

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> "AppConfig":
        """Load the YAML file when present, then apply environment overrides."""
        if config_path is not None and Path(config_path).exists():
            config = cls.load(config_path)
        else:
            config = cls()
        return config.apply_env()
