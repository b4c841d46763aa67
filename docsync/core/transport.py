"""Authenticated HTTP requester contract and its requests-based backend."""

import asyncio
import errno
import json as jsonlib
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from ..errors import ErrorContext, RemoteServiceError, TransportError, truncate

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Transport-neutral HTTP response."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if not self.content:
            return {}
        return jsonlib.loads(self.content)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class Requester(Protocol):
    """Anything that can perform an HTTP request without blocking the loop."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        ...


def _classify_connection_error(exc: BaseException) -> str:
    """Map a requests connection failure to a transport error kind."""
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, OSError) and current.errno is not None:
            if current.errno == errno.ECONNRESET:
                return TransportError.CONNECTION_RESET
            if current.errno == errno.ECONNREFUSED:
                return TransportError.CONNECTION_REFUSED
            if current.errno == errno.ETIMEDOUT:
                return TransportError.TIMEOUT
        current = current.__cause__ or current.__context__

    text = str(exc).lower()
    if "name or service not known" in text or "nodename nor servname" in text or "getaddrinfo" in text \
            or "nameresolution" in text or "temporary failure in name resolution" in text:
        return TransportError.DNS_FAILURE
    if "connection refused" in text:
        return TransportError.CONNECTION_REFUSED
    if "connection reset" in text or "connection aborted" in text or "remotedisconnected" in text:
        return TransportError.CONNECTION_RESET
    return TransportError.OTHER


class RequestsRequester:
    """Requester backed by a requests.Session, run in a worker thread."""

    def __init__(self, session: requests.Session | None = None, timeout: float = 30.0) -> None:
        """Initialize the requester.

        Args:
            session: Session to use (a new one is created if not provided)
            timeout: Default per-request timeout in seconds
        """
        self.session = session or requests.Session()
        self.timeout = timeout

    def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json: Any,
        data: dict[str, Any] | None,
        headers: dict[str, str] | None,
        timeout: float,
    ) -> HttpResponse:
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json,
                data=data,
                headers=headers,
                timeout=timeout,
            )
        except requests.Timeout as e:
            raise TransportError(
                f"Request timed out: {e}",
                kind=TransportError.TIMEOUT,
                context=ErrorContext(operation=f"{method} {url}"),
                cause=e,
            ) from e
        except requests.ConnectionError as e:
            raise TransportError(
                f"Connection failed: {e}",
                kind=_classify_connection_error(e),
                context=ErrorContext(operation=f"{method} {url}"),
                cause=e,
            ) from e
        except requests.RequestException as e:
            raise TransportError(
                f"Request failed: {e}",
                context=ErrorContext(operation=f"{method} {url}"),
                cause=e,
            ) from e

        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            content=response.content,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        return await asyncio.to_thread(
            self._send,
            method.upper(),
            url,
            params,
            json,
            data,
            headers,
            timeout if timeout is not None else self.timeout,
        )

    def close(self) -> None:
        self.session.close()


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(seconds, 0.0)


def raise_for_status(response: HttpResponse, context: ErrorContext) -> None:
    """Raise RemoteServiceError for an error status.

    Args:
        response: Response to check
        context: Operation context attached to the error

    Raises:
        RemoteServiceError: If the status is 400 or above
    """
    if response.status < 400:
        return

    message = response.text
    try:
        body = response.json()
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
            elif isinstance(error, str):
                message = body.get("error_description") or error
    except ValueError:
        pass

    raise RemoteServiceError(
        f"API error {response.status}: {truncate(message)}",
        status_code=response.status,
        context=context,
        retry_after=parse_retry_after(response.header("Retry-After")),
    )
