"""Error taxonomy for docsync.

Every error carries an ErrorContext describing where it originated, so a
failure deep inside a batch can still be traced back to the operation and
resource that caused it.
"""

from dataclasses import dataclass, field
from typing import Any

PAYLOAD_PREVIEW_LENGTH = 200


def truncate(value: Any, limit: int = PAYLOAD_PREVIEW_LENGTH) -> str:
    """Render a value as a short single string for diagnostics."""
    text = value if isinstance(value, str) else repr(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


@dataclass
class ErrorContext:
    """Where an error happened."""

    operation: str = ""
    resource_id: str = ""
    resource_name: str = ""
    path: str = ""
    payload: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def with_payload(self, payload: Any) -> "ErrorContext":
        """Return a copy carrying a truncated payload preview."""
        return ErrorContext(
            operation=self.operation,
            resource_id=self.resource_id,
            resource_name=self.resource_name,
            path=self.path,
            payload=truncate(payload),
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, dropping empty fields."""
        data: dict[str, Any] = {
            "operation": self.operation,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "path": self.path,
            "payload": self.payload,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return {k: v for k, v in data.items() if v}


class DocSyncError(Exception):
    """Base class for all docsync errors."""

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.cause = cause
        self.attempts = 1

    def __str__(self) -> str:
        parts = [self.message]
        ctx = self.context
        if ctx.operation:
            parts.append(f"operation={ctx.operation}")
        if ctx.resource_id:
            parts.append(f"id={ctx.resource_id}")
        if ctx.resource_name:
            parts.append(f"name={ctx.resource_name}")
        if ctx.path:
            parts.append(f"path={ctx.path}")
        if self.attempts > 1:
            parts.append(f"attempts={self.attempts}")
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Structured form for logs and reports."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context.to_dict(),
            "attempts": self.attempts,
            "cause": str(self.cause) if self.cause else None,
        }


class AuthenticationRequired(DocSyncError):
    """No usable credential; the user must authenticate again."""


class RemoteServiceError(DocSyncError):
    """The remote API answered with an error status."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, context, cause)
        self.status_code = status_code
        self.retry_after = retry_after


class TransportError(DocSyncError):
    """The request never produced an HTTP response."""

    CONNECTION_RESET = "ECONNRESET"
    DNS_FAILURE = "ENOTFOUND"
    CONNECTION_REFUSED = "ECONNREFUSED"
    TIMEOUT = "ETIMEDOUT"
    OTHER = "OTHER"

    def __init__(
        self,
        message: str,
        kind: str = OTHER,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, context, cause)
        self.kind = kind


class ValidationError(DocSyncError):
    """Local metadata is malformed. Reported in results, not raised."""

    def __init__(
        self,
        message: str,
        field_name: str = "",
        value: Any = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.field_name = field_name
        self.value = value


class ConflictUnresolved(DocSyncError):
    """Both replicas changed and the policy asks the caller to decide."""

    def __init__(
        self,
        message: str,
        local_fingerprint: str = "",
        remote_fingerprint: str = "",
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.local_fingerprint = local_fingerprint
        self.remote_fingerprint = remote_fingerprint


class StorageError(DocSyncError):
    """A local storage operation failed."""

    def __init__(
        self,
        message: str,
        operation: str,
        path: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, ErrorContext(operation=operation, path=path), cause)
        self.operation = operation
        self.path = path


class ConfigurationError(DocSyncError):
    """Configuration is missing or invalid."""

    def __init__(self, message: str, key: str = "", cause: BaseException | None = None) -> None:
        super().__init__(message, ErrorContext(operation="configuration", metadata={"key": key}), cause)
        self.key = key
