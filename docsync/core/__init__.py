"""Core sync functionality."""

from .auth import TokenLifecycle, generate_pkce, is_expired
from .client import RemoteDocumentClient
from .conflict import ConflictPolicy, ConflictResolver, LineMerger, Resolution
from .credentials import FileCredentialStore, HostCredentialStore
from .engine import SyncEngine, SyncOutcome, ValidationResult
from .ignore import IgnoreRules
from .retry import RetryPolicy
from .state import ChangeInfo, detect_change
from .storage import FilesystemStorage, StorageAdapter, VaultStorage, create_storage
from .transport import HttpResponse, RequestsRequester

__all__ = [
    "ChangeInfo",
    "ConflictPolicy",
    "ConflictResolver",
    "FileCredentialStore",
    "FilesystemStorage",
    "HostCredentialStore",
    "HttpResponse",
    "IgnoreRules",
    "LineMerger",
    "RemoteDocumentClient",
    "RequestsRequester",
    "Resolution",
    "RetryPolicy",
    "StorageAdapter",
    "SyncEngine",
    "SyncOutcome",
    "TokenLifecycle",
    "ValidationResult",
    "VaultStorage",
    "create_storage",
    "detect_change",
    "generate_pkce",
    "is_expired",
]
