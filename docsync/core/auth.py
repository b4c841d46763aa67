"""OAuth 2.0 authorization-code flow with PKCE for Google APIs."""

import asyncio
import base64
import hashlib
import html
import logging
import secrets
import time
import webbrowser
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

from ..errors import AuthenticationRequired, ConfigurationError, DocSyncError, ErrorContext, RemoteServiceError
from ..models.config import NetworkConfig, OAuthSettings
from ..models.records import Credential
from .credentials import CredentialStore
from .retry import RetryPolicy
from .transport import Requester, RequestsRequester, raise_for_status

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
OOB_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"

# Refresh this long before the recorded expiry.
EXPIRY_BUFFER_MS = 5 * 60 * 1000

CALLBACK_PATH = "/callback"

_CALLBACK_PAGE = (
    "<html><body><h1>{title}</h1><p>{detail}</p></body></html>"
)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class PKCEPair:
    """Code verifier and its S256 challenge."""

    verifier: str
    challenge: str


def generate_pkce() -> PKCEPair:
    """Generate a random code verifier and derive its challenge.

    The verifier is 32 random bytes in base64url; the challenge is the
    base64url SHA-256 of the verifier, both without padding.
    """
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return PKCEPair(verifier=verifier, challenge=challenge)


def is_expired(credential: Credential, now_ms: int | None = None) -> bool:
    """Check whether a credential is expired or about to expire.

    A credential with no recorded expiry is treated as non-expiring.

    Args:
        credential: Credential to check
        now_ms: Current time in epoch milliseconds (defaults to the wall clock)

    Returns:
        True if ``now >= expiry - 5 minutes``
    """
    if credential.expiry_date is None:
        return False
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return now_ms >= credential.expiry_date - EXPIRY_BUFFER_MS


class TokenLifecycle:
    """Turns a stored grant into valid access credentials."""

    def __init__(
        self,
        store: CredentialStore,
        settings: OAuthSettings | None = None,
        requester: Requester | None = None,
        network: NetworkConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the token lifecycle.

        Args:
            store: Where the credential is persisted
            settings: OAuth client settings (client id, scopes)
            requester: HTTP requester for the token endpoint
            network: Timeout and retry settings for token requests
            clock: Returns the current time in epoch seconds
        """
        self.store = store
        self.settings = settings or OAuthSettings()
        self.network = network or NetworkConfig()
        self.requester = requester or RequestsRequester(timeout=self.network.timeout)
        self.retry = RetryPolicy(self.network.retry)
        self.clock = clock
        self._credential: Credential | None = None
        self._refresh_lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def is_expired(self, credential: Credential) -> bool:
        return is_expired(credential, self._now_ms())

    # -------------------------------------------------------------------------
    # Credential access
    # -------------------------------------------------------------------------

    async def get_valid_credential(self) -> Credential:
        """Return a non-expired credential, refreshing when needed.

        Raises:
            AuthenticationRequired: If nothing is stored, the stored
                credential cannot be refreshed, or the refresh fails
        """
        credential = self._credential or await self.store.load()
        if credential is None:
            raise AuthenticationRequired(
                "No stored credential, run the authorization flow first",
                ErrorContext(operation="get_valid_credential"),
            )
        if not self.is_expired(credential):
            self._credential = credential
            return credential

        async with self._refresh_lock:
            # Another task may have refreshed while we waited.
            if self._credential is not None and not self.is_expired(self._credential):
                return self._credential
            self._credential = await self._refresh(credential)
            return self._credential

    async def authorization_headers(self) -> dict[str, str]:
        credential = await self.get_valid_credential()
        return {"Authorization": credential.authorization_header}

    def invalidate(self) -> None:
        """Drop the in-memory credential so the next call reloads it."""
        self._credential = None

    async def _refresh(self, credential: Credential) -> Credential:
        context = ErrorContext(operation="refresh_token")
        if not credential.refresh_token:
            raise AuthenticationRequired(
                "Credential expired and has no refresh token, re-authentication required", context
            )

        logger.info("Access token expired, refreshing")
        form = {
            "grant_type": "refresh_token",
            "client_id": self.settings.client_id,
            "refresh_token": credential.refresh_token,
        }
        if self.settings.client_secret:
            form["client_secret"] = self.settings.client_secret

        try:
            data = await self._token_request(form, context)
        except DocSyncError as err:
            logger.warning("Token refresh failed, clearing stored credential: %s", err.message)
            self._credential = None
            await self.store.clear()
            raise AuthenticationRequired(
                f"Token refresh failed: {err.message}. Please re-authenticate.", context, cause=err
            ) from err

        refreshed = Credential.from_token_response(
            data,
            now_ms=self._now_ms(),
            fallback_refresh_token=credential.refresh_token,
            fallback_scope=credential.scope,
        )
        await self.store.save(refreshed)
        logger.info("Token refreshed")
        return refreshed

    async def _token_request(self, form: dict[str, str], context: ErrorContext) -> dict:
        async def call() -> dict:
            response = await self.requester.request(
                "POST",
                TOKEN_URL,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.network.timeout,
            )
            raise_for_status(response, context)
            return response.json()

        data = await self.retry.run(context.operation, call)
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthenticationRequired("Token endpoint returned no access_token", context)
        return data

    # -------------------------------------------------------------------------
    # Authorization flow
    # -------------------------------------------------------------------------

    def _require_client_id(self) -> str:
        if not self.settings.client_id:
            raise ConfigurationError(
                "No OAuth client id configured. Set oauth.client_id or DOCSYNC_OAUTH_CLIENT_ID.",
                key="oauth.client_id",
            )
        return self.settings.client_id

    def authorization_url(self, redirect_uri: str, challenge: str, state: str | None = None) -> str:
        """Build the consent-screen URL.

        Args:
            redirect_uri: Where the authorization server sends the code
            challenge: PKCE S256 challenge
            state: Optional opaque value echoed back on the redirect

        Returns:
            Authorization URL
        """
        params = {
            "client_id": self._require_client_id(),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.settings.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, verifier: str, redirect_uri: str) -> Credential:
        """Exchange an authorization code and PKCE verifier for a credential.

        The credential is saved to the store before it is returned.

        Raises:
            AuthenticationRequired: If the token endpoint rejects the exchange
        """
        context = ErrorContext(operation="exchange_code")
        form = {
            "grant_type": "authorization_code",
            "client_id": self._require_client_id(),
            "code": code.strip(),
            "code_verifier": verifier,
            "redirect_uri": redirect_uri,
        }
        if self.settings.client_secret:
            form["client_secret"] = self.settings.client_secret

        try:
            data = await self._token_request(form, context)
        except RemoteServiceError as err:
            raise AuthenticationRequired(f"Token exchange failed: {err.message}", context, cause=err) from err

        credential = Credential.from_token_response(
            data, now_ms=self._now_ms(), fallback_scope=" ".join(self.settings.scopes)
        )
        if not credential.refresh_token:
            logger.warning("Token response carried no refresh token; re-authentication will be needed on expiry")
        await self.store.save(credential)
        self._credential = credential
        return credential

    async def start_auth_flow(
        self,
        mode: str = "loopback",
        open_browser: Callable[[str], object] | None = None,
        code_prompt: Callable[[str], Awaitable[str]] | None = None,
    ) -> Credential:
        """Run the PKCE authorization-code flow.

        Args:
            mode: "loopback" to receive the code on a local callback listener,
                "manual" to have the user paste it (out-of-band redirect)
            open_browser: Called with the authorization URL (defaults to
                ``webbrowser.open`` in loopback mode)
            code_prompt: Coroutine returning the pasted code, given the URL
                (required in manual mode)

        Returns:
            The new credential, already persisted

        Raises:
            AuthenticationRequired: On denial, timeout, or a failed exchange
        """
        pkce = generate_pkce()
        if mode == "manual":
            if code_prompt is None:
                raise ConfigurationError("Manual authorization needs a code prompt", key="code_prompt")
            url = self.authorization_url(OOB_REDIRECT_URI, pkce.challenge)
            try:
                async with asyncio.timeout(self.settings.auth_timeout):
                    code = await code_prompt(url)
            except TimeoutError as e:
                raise AuthenticationRequired(
                    f"Authorization timed out after {self.settings.auth_timeout:.0f} seconds",
                    ErrorContext(operation="start_auth_flow"),
                    cause=e,
                ) from e
            if not code or not code.strip():
                raise AuthenticationRequired("No authorization code entered", ErrorContext(operation="start_auth_flow"))
            return await self.exchange_code(code, pkce.verifier, OOB_REDIRECT_URI)

        if mode != "loopback":
            raise ConfigurationError(f"Unknown authorization mode '{mode}'", key="mode")
        code, redirect_uri = await self._receive_code_loopback(pkce, open_browser or webbrowser.open)
        return await self.exchange_code(code, pkce.verifier, redirect_uri)

    async def _receive_code_loopback(
        self,
        pkce: PKCEPair,
        open_browser: Callable[[str], object],
    ) -> tuple[str, str]:
        """Listen on 127.0.0.1 for the redirect and return (code, redirect_uri)."""
        loop = asyncio.get_running_loop()
        received: asyncio.Future[str] = loop.create_future()
        state = secrets.token_urlsafe(16)
        context = ErrorContext(operation="start_auth_flow")

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            try:
                request_line = (await reader.readline()).decode("latin-1")
                while (await reader.readline()) not in (b"\r\n", b"\n", b""):
                    pass
                parts = request_line.split()
                target = urlsplit(parts[1]) if len(parts) >= 2 else urlsplit("/")
                if target.path != CALLBACK_PATH:
                    await _respond(writer, "404 Not Found", "Not found", "")
                    return
                query = parse_qs(target.query)
                error = query.get("error", [""])[0]
                code = query.get("code", [""])[0]
                if query.get("state", [""])[0] != state:
                    error = error or "state mismatch"
                if error:
                    await _respond(writer, "400 Bad Request", "Authorization Error", error)
                    if not received.done():
                        received.set_exception(AuthenticationRequired(f"OAuth error: {error}", context))
                    return
                if not code:
                    await _respond(writer, "400 Bad Request", "Authorization Error", "No authorization code received")
                    if not received.done():
                        received.set_exception(AuthenticationRequired("No authorization code received", context))
                    return
                await _respond(writer, "200 OK", "Authorization Successful", "You can close this window.")
                if not received.done():
                    received.set_result(code)
            finally:
                writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        try:
            port = server.sockets[0].getsockname()[1]
            redirect_uri = f"http://127.0.0.1:{port}{CALLBACK_PATH}"
            url = self.authorization_url(redirect_uri, pkce.challenge, state=state)
            logger.info("Waiting for authorization on %s", redirect_uri)
            await asyncio.to_thread(open_browser, url)
            try:
                async with asyncio.timeout(self.settings.auth_timeout):
                    code = await received
            except TimeoutError as e:
                raise AuthenticationRequired(
                    f"Authorization timed out after {self.settings.auth_timeout:.0f} seconds", context, cause=e
                ) from e
            return code, redirect_uri
        finally:
            server.close()
            await server.wait_closed()

    async def sign_out(self) -> None:
        """Forget the stored credential."""
        self._credential = None
        await self.store.clear()


async def _respond(writer: asyncio.StreamWriter, status: str, title: str, detail: str) -> None:
    body = _CALLBACK_PAGE.format(title=html.escape(title), detail=html.escape(detail)).encode("utf-8")
    writer.write(
        f"HTTP/1.1 {status}\r\nContent-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n".encode("latin-1") + body
    )
    await writer.drain()
