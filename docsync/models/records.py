"""Domain records shared by the sync components."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Frontmatter keys
KEY_REMOTE_ID = "google-doc-id"
KEY_LEGACY_REMOTE_ID = "docId"
KEY_REVISION = "revisionId"
KEY_FINGERPRINT = "sha256"
KEY_LAST_SYNCED = "last-synced"
KEY_URL = "google-doc-url"
KEY_TITLE = "google-doc-title"

RECORD_KEYS = (KEY_REMOTE_ID, KEY_REVISION, KEY_FINGERPRINT, KEY_LAST_SYNCED)

DEFAULT_TOKEN_LIFETIME = 3600  # seconds


@dataclass
class Credential:
    """OAuth credential as persisted in the token file."""

    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "Bearer"
    scope: str = ""
    expiry_date: int | None = None  # epoch milliseconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "scope": self.scope,
            "expiry_date": self.expiry_date,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        """Create from dictionary."""
        expiry = data.get("expiry_date")
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or "",
            expiry_date=int(expiry) if expiry is not None else None,
        )

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        now_ms: int | None = None,
        fallback_refresh_token: str = "",
        fallback_scope: str = "",
    ) -> "Credential":
        """Build a credential from an OAuth token endpoint response.

        Google omits ``expires_in`` only in unusual cases; an hour is assumed.
        """
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        expires_in = data.get("expires_in") or DEFAULT_TOKEN_LIFETIME
        expiry = now_ms + int(expires_in) * 1000
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope") or fallback_scope,
            expiry_date=expiry,
        )

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type or 'Bearer'} {self.access_token}"


@dataclass
class DocumentRecord:
    """Sync state embedded in a local document's frontmatter."""

    remote_id: str
    revision: str = ""
    fingerprint: str = ""
    last_synced: str = ""  # ISO-8601
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> "DocumentRecord | None":
        """Extract the record from parsed frontmatter.

        Returns None when the document was never synced.
        """
        remote_id = metadata.get(KEY_REMOTE_ID) or metadata.get(KEY_LEGACY_REMOTE_ID)
        if not remote_id:
            return None
        extra = {
            k: v for k, v in metadata.items()
            if k not in RECORD_KEYS and k != KEY_LEGACY_REMOTE_ID
        }
        revision = metadata.get(KEY_REVISION)
        return cls(
            remote_id=str(remote_id),
            revision="" if revision is None else str(revision),
            fingerprint=str(metadata.get(KEY_FINGERPRINT) or ""),
            last_synced=str(metadata.get(KEY_LAST_SYNCED) or ""),
            extra=extra,
        )

    def to_metadata(self) -> dict[str, Any]:
        """Render as frontmatter, passthrough keys preserved."""
        metadata: dict[str, Any] = dict(self.extra)
        metadata[KEY_REMOTE_ID] = self.remote_id
        if self.revision:
            metadata[KEY_REVISION] = self.revision
        if self.fingerprint:
            metadata[KEY_FINGERPRINT] = self.fingerprint
        if self.last_synced:
            metadata[KEY_LAST_SYNCED] = self.last_synced
        return metadata


@dataclass
class RemoteDocumentSummary:
    """A remote document found during discovery. Never persisted."""

    remote_id: str
    name: str
    parent_id: str = ""
    modified_time: str = ""
    relative_path: str = ""  # folder path relative to the sync root
    web_link: str = ""
    via_shortcut: bool = False

    @property
    def display_path(self) -> str:
        return f"{self.relative_path}/{self.name}" if self.relative_path else self.name


@dataclass
class RemoteState:
    """Remote side of a change comparison, fetched just-in-time."""

    revision: str
    fingerprint: str | None = None  # only fetched when the revision moved
    text: str | None = None
    modified_time: str = ""


class ChangeState(str, Enum):
    """Divergence of a document pair. Derived each pass, never stored."""

    UNCHANGED = "unchanged"
    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    BOTH_CHANGED = "both_changed"


@dataclass(frozen=True)
class Found:
    """Folder lookup hit."""

    folder_id: str


@dataclass(frozen=True)
class NotFound:
    """Folder lookup miss."""

    name: str = ""


FolderLookup = Found | NotFound
