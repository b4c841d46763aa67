"""Data models for docsync."""

from .config import (
    AppConfig,
    NetworkConfig,
    OAuthSettings,
    RetryConfig,
    SyncSettings,
    sanitize_filename,
)
from .records import (
    ChangeState,
    Credential,
    DocumentRecord,
    FolderLookup,
    Found,
    NotFound,
    RemoteDocumentSummary,
    RemoteState,
)

__all__ = [
    "AppConfig",
    "ChangeState",
    "Credential",
    "DocumentRecord",
    "FolderLookup",
    "Found",
    "NetworkConfig",
    "NotFound",
    "OAuthSettings",
    "RemoteDocumentSummary",
    "RemoteState",
    "RetryConfig",
    "SyncSettings",
    "sanitize_filename",
]
