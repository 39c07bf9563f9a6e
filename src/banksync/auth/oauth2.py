"""
OAuth2 token lifecycle — authorization, code exchange, refresh, and storage.

Implements the Authorization Code flow with PKCE against the aggregator's
auth server. Tokens are kept in memory and persisted encrypted through
:class:`~banksync.auth.token_store.SecureTokenStore` so users don't need to
reconnect every time banksync runs.

Features:
- PKCE (S256) and state validation before any code exchange
- Local callback server for browser-based flows
- Single-flight refresh: concurrent callers share one refresh request
- Failed refreshes never delete stored tokens; only disconnect() does
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from banksync.auth.pkce import PkceSession, new_session, states_match
from banksync.auth.token_store import SecureTokenStore, TokenSet
from banksync.config import ProviderConfig
from banksync.errors import (
    AuthorizationDeniedError,
    AuthRequiredError,
    MalformedResponseError,
    StateMismatchError,
    TokenExchangeRejectedError,
    TransportError,
)

logger = logging.getLogger("banksync.auth.oauth2")

DEFAULT_SAFETY_MARGIN = 30.0


class TokenState(str, Enum):
    """Logical token states."""

    UNAUTHENTICATED = "unauthenticated"
    VALID = "valid"
    EXPIRED = "expired"


def parse_callback_url(callback_url: str) -> dict[str, str | None]:
    """Extract ``code``, ``state``, ``error`` and ``error_description`` from a redirect URL.

    Works for custom schemes (``app://callback?...``) as well as loopback URLs.
    """
    params = parse_qs(urlparse(callback_url).query)

    def first(name: str) -> str | None:
        values = params.get(name)
        return values[0] if values else None

    return {
        "code": first("code"),
        "state": first("state"),
        "error": first("error"),
        "error_description": first("error_description"),
    }


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


class TokenLifecycleManager:
    """Owns the current :class:`TokenSet` and every change to it.

    Usage::

        manager = TokenLifecycleManager(config.provider, store)
        manager.load()

        url = manager.begin_authorization("mock")
        # ... user authorizes in a browser, app receives the redirect ...
        await manager.handle_callback(redirect_url)

        if await manager.ensure_valid():
            headers = manager.auth_header()
    """

    def __init__(
        self,
        provider: ProviderConfig,
        store: SecureTokenStore,
        *,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.store = store
        self.safety_margin = safety_margin
        self._clock = clock
        self._http_client = http_client
        self._token: TokenSet | None = None
        self._session: PkceSession | None = None
        self._refresh_task: asyncio.Task[bool] | None = None
        self._generation = 0
        self.consecutive_refresh_failures = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.provider.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def token(self) -> TokenSet | None:
        return self._token

    @property
    def pending_session(self) -> PkceSession | None:
        return self._session

    @property
    def generation(self) -> int:
        """Incremented on every disconnect and code exchange.

        Lets callers detect that the tokens they started with were replaced
        or dropped while they were in flight.
        """
        return self._generation

    @property
    def state(self) -> TokenState:
        if self._token is None or not self._token.access_token:
            return TokenState.UNAUTHENTICATED
        if self._token.expires_within(self.safety_margin, self._clock()):
            return TokenState.EXPIRED
        return TokenState.VALID

    def is_valid(self) -> bool:
        """True when an access token exists and is outside the safety margin. No I/O."""
        return self.state == TokenState.VALID

    def has_refresh_token(self) -> bool:
        return bool(self._token and self._token.refresh_token)

    def auth_header(self) -> dict[str, str]:
        if not self._token or not self._token.access_token:
            raise AuthRequiredError()
        return {"Authorization": f"{self._token.token_type or 'Bearer'} {self._token.access_token}"}

    def load(self) -> TokenState:
        """Repopulate in-memory state from the store (startup)."""
        stored = self.store.load()
        if stored is not None:
            self._token = stored
            logger.info("Loaded stored tokens (expires in %.0fs)", stored.seconds_remaining(self._clock()))
        else:
            logger.debug("No stored tokens found")
        return self.state

    def _adopt(self, token_set: TokenSet) -> None:
        self._token = token_set
        self.store.save(token_set)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def begin_authorization(self, provider_id: str, redirect_uri: str | None = None) -> str:
        """Start a new authorization attempt and return the URL to open.

        Any previous in-flight session is discarded.
        """
        if self._session is not None:
            logger.debug("Discarding previous authorization session")
        self._session = new_session(redirect_uri or self.provider.redirect_uri, provider_id)

        params = {
            "response_type": "code",
            "client_id": self.provider.client_id,
            "redirect_uri": self._session.redirect_uri,
            "scope": " ".join(self.provider.scopes),
            "state": self._session.state,
            "provider_id": provider_id,
            "code_challenge": self._session.code_challenge,
            "code_challenge_method": "S256",
        }
        logger.info("Starting authorization for provider %s", provider_id)
        return f"{self.provider.auth_base_url}/?{urlencode(params)}"

    async def complete_authorization(self, code: str, state: str | None) -> TokenSet:
        """Validate ``state`` against the active session, then exchange ``code``.

        Raises:
            StateMismatchError: No active session or the state differs. No
                request is sent to the token endpoint.
        """
        session = self._session
        if session is None or not states_match(session.state, state):
            logger.warning("Rejected authorization callback: state mismatch")
            raise StateMismatchError()

        token_set = await self.exchange_code(code, session.code_verifier, session.redirect_uri)
        self._session = None
        return token_set

    async def handle_callback(self, callback_url: str) -> TokenSet:
        """Complete authorization from the full redirect URL."""
        params = parse_callback_url(callback_url)
        if params["error"]:
            self._session = None
            raise AuthorizationDeniedError(
                f"Authorization failed: {params['error_description'] or params['error']}"
            )
        if not params["code"]:
            raise AuthorizationDeniedError("No authorization code in callback URL")
        return await self.complete_authorization(params["code"], params["state"])

    async def exchange_code(self, code: str, verifier: str, redirect_uri: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        ``redirect_uri`` must be exactly the value sent in the authorization
        request; it is posted unchanged.

        Raises:
            TokenExchangeRejectedError: The server refused the code.
            TransportError: The token endpoint could not be reached.
            MalformedResponseError: The response was not a token response.
        """
        client = await self._get_client()
        generation = self._generation

        payload = {
            "grant_type": "authorization_code",
            "client_id": self.provider.client_id,
            "client_secret": self.provider.client_secret,
            "redirect_uri": redirect_uri,
            "code": code,
            "code_verifier": verifier,
        }

        try:
            resp = await client.post(self.provider.token_url, data=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"Token endpoint unreachable: {e}") from e

        if resp.status_code >= 400:
            error_code, description = _error_fields(resp)
            logger.error("Token exchange failed: %s %s", resp.status_code, error_code)
            raise TokenExchangeRejectedError.from_error_code(error_code, description)

        try:
            token_set = TokenSet.from_oauth_response(resp.json(), now=self._clock())
        except (ValueError, TypeError) as e:
            raise MalformedResponseError(f"Unexpected token response: {e}") from e

        if generation != self._generation:
            raise AuthRequiredError("Tokens were replaced or cleared while exchanging the authorization code")

        # A refresh still running holds the previous refresh token
        self._generation += 1
        self._adopt(token_set)
        self.consecutive_refresh_failures = 0
        logger.info("Exchanged authorization code for tokens (scope: %s)", token_set.scope)
        return token_set

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Refresh the access token. Returns False on any failure.

        At most one refresh is in flight; concurrent callers await the same
        attempt. Stored tokens are left untouched when the refresh fails.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def ensure_valid(self) -> bool:
        """Return True if a valid access token is available, refreshing if needed."""
        if self.is_valid():
            return True
        return await self.refresh()

    async def _do_refresh(self) -> bool:
        current = self._token
        if current is None or not current.refresh_token:
            logger.warning("No refresh token available")
            return False

        client = await self._get_client()
        generation = self._generation
        payload = {
            "grant_type": "refresh_token",
            "client_id": self.provider.client_id,
            "client_secret": self.provider.client_secret,
            "refresh_token": current.refresh_token,
        }

        logger.debug("Refreshing access token")
        try:
            resp = await client.post(self.provider.token_url, data=payload)
        except httpx.HTTPError as e:
            return self._refresh_failed(f"network error: {e}")

        if resp.status_code >= 400:
            error_code, _ = _error_fields(resp)
            return self._refresh_failed(f"status {resp.status_code} ({error_code or 'no error code'})")

        try:
            token_set = TokenSet.from_oauth_response(
                resp.json(),
                now=self._clock(),
                previous_refresh_token=current.refresh_token,
            )
        except (ValueError, TypeError) as e:
            return self._refresh_failed(f"malformed response: {e}")

        if generation != self._generation:
            logger.info("Tokens replaced or cleared during refresh; discarding refreshed tokens")
            return self.is_valid()

        self._adopt(token_set)
        self.consecutive_refresh_failures = 0
        logger.info("Refreshed access token (expires in %.0fs)", token_set.seconds_remaining(self._clock()))
        return True

    def _refresh_failed(self, reason: str) -> bool:
        self.consecutive_refresh_failures += 1
        logger.error(
            "Token refresh failed (%d in a row): %s",
            self.consecutive_refresh_failures,
            reason,
        )
        return False

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect(self) -> None:
        """Forget all tokens, in memory and on disk.

        An in-flight refresh or exchange is allowed to finish, but its result
        is discarded.
        """
        self._generation += 1
        self._token = None
        self._session = None
        self.consecutive_refresh_failures = 0
        self.store.clear()
        logger.info("Disconnected; tokens cleared")


def _error_fields(resp: httpx.Response) -> tuple[str | None, str | None]:
    """Pull ``error`` / ``error_description`` out of an OAuth error body."""
    try:
        body = resp.json()
    except ValueError:
        return None, resp.text or None
    if not isinstance(body, dict):
        return None, None
    return body.get("error"), body.get("error_description")


# ---------------------------------------------------------------------------
# Local callback server
# ---------------------------------------------------------------------------

_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>banksync - Connected</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 20vh;">
    <h1 style="color: #16a34a;">Bank connected</h1>
    <p>You can close this window and return to banksync.</p>
</body>
</html>
"""

_ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><title>banksync - Error</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 20vh;">
    <h1 style="color: #dc2626;">Connection failed</h1>
    <p>{error}</p>
</body>
</html>
"""


class _CallbackHTTPServer(HTTPServer):
    callback_path: str = "/callback"
    result: dict[str, str | None] | None = None


class _OAuthCallbackHandler(BaseHTTPRequestHandler):
    """Captures the redirect carrying ``code``/``state`` or ``error``."""

    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        params = parse_callback_url(self.path)
        if params["code"] or params["error"]:
            self.server.result = params

        if params["code"]:
            self._send_page(200, _SUCCESS_PAGE)
        else:
            error = params["error_description"] or params["error"] or "No authorization code received"
            self._send_page(400, _ERROR_PAGE.format(error=error))

    def _send_page(self, status: int, html: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(html.encode())

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        """Suppress default logging."""


class OAuthCallbackServer:
    """Local HTTP server to capture the OAuth2 redirect.

    Usage::

        server = OAuthCallbackServer.from_redirect_uri("http://localhost:8765/callback")
        server.start()
        # ... open the authorization URL in a browser ...
        callback_url = await server.wait_for_callback(timeout=300)
        await manager.handle_callback(callback_url)
    """

    def __init__(self, port: int = 8765, *, host: str = "localhost", path: str = "/callback") -> None:
        self.host = host
        self.port = port
        self.path = path
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @classmethod
    def from_redirect_uri(cls, redirect_uri: str) -> OAuthCallbackServer:
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or parsed.hostname not in ("localhost", "127.0.0.1"):
            raise ValueError(f"Redirect URI is not a loopback http URL: {redirect_uri}")
        return cls(port=parsed.port or 80, host=parsed.hostname, path=parsed.path or "/")

    def get_redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    def start(self) -> None:
        """Start serving in a background thread."""
        self._server = _CallbackHTTPServer((self.host, self.port), _OAuthCallbackHandler)
        self._server.callback_path = self.path
        # Port 0 binds an ephemeral port
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("OAuth callback server started on port %d", self.port)

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        logger.debug("OAuth callback server stopped")

    async def wait_for_callback(self, timeout: float = 300) -> str:
        """Wait for the redirect and return it as a full callback URL.

        Raises:
            TimeoutError: If no callback arrives within ``timeout`` seconds.
        """
        if self._server is None:
            raise RuntimeError("Callback server is not running")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            result = self._server.result
            if result is not None:
                query = urlencode({k: v for k, v in result.items() if v is not None})
                return f"{self.get_redirect_uri()}?{query}"
            await asyncio.sleep(0.2)

        raise TimeoutError(f"OAuth callback not received within {timeout}s")
