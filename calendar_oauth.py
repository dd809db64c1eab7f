"""
Google Calendar OAuth: PKCE authorization-code flow over a loopback redirect,
plus lazy access-token refresh.

The authorization URL only ever carries the public client id and the PKCE
challenge. The client secret is read from the process environment and sent
only to the token endpoint.
"""

import asyncio
import base64
import binascii
import contextlib
import hashlib
import json
import logging
import secrets
import socket
import webbrowser
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from calendar_models import ConnectionStatus, Credential, now_ms
from calendar_store import CalendarStore
from config import DEFAULT_SCOPE

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
OAUTH_TIMEOUT_SECONDS = 120
REFRESH_MARGIN_MS = 5 * 60 * 1000

_PAGE = "<html><body><h3>{message} You can close this tab.</h3></body></html>"
SUCCESS_PAGE = _PAGE.format(message="Authentication successful!")
FAILURE_PAGE = _PAGE.format(message="Authentication failed.")
NO_EMAIL_PAGE = _PAGE.format(message="Authentication failed: could not retrieve email.")
INVALID_PAGE = _PAGE.format(message="Invalid request.")
ERROR_PAGE = _PAGE.format(message="An error occurred.")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AuthorizationError(Exception):
    """The authorization attempt failed. The credential store is untouched."""


class AuthorizationDenied(AuthorizationError):
    def __init__(self, error: str):
        super().__init__(f"OAuth error: {error}")
        self.error = error


class AuthorizationTimeout(AuthorizationError):
    pass


class TokenExchangeError(AuthorizationError):
    pass


class NotConnectedError(Exception):
    pass


class TokenRefreshError(Exception):
    pass


# ---------------------------------------------------------------------------
# PKCE / token helpers
# ---------------------------------------------------------------------------


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def pkce_challenge(code_verifier: str) -> str:
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, code_challenge). The verifier is 43 characters."""
    code_verifier = _b64url(secrets.token_bytes(32))[:43]
    return code_verifier, pkce_challenge(code_verifier)


def extract_email(id_token: Optional[str]) -> Optional[str]:
    """Read the email claim from an (unverified) OpenID identity token."""
    if not id_token:
        return None
    parts = id_token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeEncodeError):
        return None
    if not isinstance(payload, dict):
        return None
    email = payload.get("email")
    return email if isinstance(email, str) and email else None


def _token_error(response: httpx.Response) -> Optional[str]:
    """Return the provider's error text for a failed token response, else None."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data.get("error_description") or data["error"])
    if response.status_code >= 400:
        return f"HTTP {response.status_code}"
    if not isinstance(data, dict):
        return "invalid JSON response"
    return None


# ---------------------------------------------------------------------------
# Loopback listener
# ---------------------------------------------------------------------------


class _LoopbackServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handlers alone."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class LoopbackListener:
    """One-shot HTTP listener on 127.0.0.1 with an ephemeral port."""

    def __init__(self, app: FastAPI):
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(8)
        self.port = self._sock.getsockname()[1]
        self._server = _LoopbackServer(uvicorn.Config(
            app,
            log_level="warning",
            lifespan="off",
            access_log=False,
            timeout_graceful_shutdown=5,
        ))
        self._task: Optional[asyncio.Task] = None
        self.close_count = 0

    @property
    def redirect_uri(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def start(self, on_stopped: Callable[[asyncio.Task], Any]) -> None:
        self._task = asyncio.create_task(self._server.serve(sockets=[self._sock]), name="oauth-loopback")
        self._task.add_done_callback(on_stopped)

    async def close(self) -> None:
        if self.close_count:
            return
        self.close_count += 1
        self._server.should_exit = True
        if self._task is not None and not self._task.done():
            try:
                await self._task
            except Exception as e:
                logger.warning(f"Loopback listener shut down with error: {e}")
        self._sock.close()
        logger.debug(f"Loopback listener on port {self.port} closed")


# ---------------------------------------------------------------------------
# Authorizer
# ---------------------------------------------------------------------------


class OAuthAuthorizer:
    def __init__(
        self,
        store: CalendarStore,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        scope: str = DEFAULT_SCOPE,
        timeout_seconds: float = OAUTH_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        opener: Callable[[str], Any] = webbrowser.open,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client or httpx.AsyncClient(timeout=20.0)
        self._owns_http_client = http_client is None
        self._opener = opener
        self._clock = clock
        self.last_listener: Optional[LoopbackListener] = None

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def is_connected(self) -> bool:
        return self.store.get_credential() is not None

    def connection_status(self) -> ConnectionStatus:
        credential = self.store.get_credential()
        return ConnectionStatus(
            connected=credential is not None,
            email=credential.account_email if credential else None,
            expiresAt=credential.expires_at if credential else None,
        )

    def authorization_url(self, *, redirect_uri: str, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def begin_authorization(self) -> dict:
        """Run the browser sign-in flow and store the resulting credential.

        Returns ``{"email": ...}``. Raises an AuthorizationError subclass when
        the provider denies access, the code exchange fails, no email can be
        read from the identity token, or nothing valid arrives within the
        timeout. The loopback listener is closed exactly once on every path.
        """
        if not self.client_id:
            raise AuthorizationError("GOOGLE_CALENDAR_CLIENT_ID is not set")

        code_verifier, code_challenge = generate_pkce_pair()
        state = secrets.token_hex(32)
        outcome: asyncio.Future = asyncio.get_running_loop().create_future()

        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        listener = LoopbackListener(app)
        self.last_listener = listener
        redirect_uri = listener.redirect_uri

        @app.get("/", response_class=HTMLResponse)
        async def oauth_redirect(request: Request):
            return await self._handle_redirect(
                request, outcome, state=state, code_verifier=code_verifier, redirect_uri=redirect_uri,
            )

        def on_stopped(task: asyncio.Task) -> None:
            if outcome.done():
                return
            error = None if task.cancelled() else task.exception()
            outcome.set_exception(AuthorizationError(f"Loopback listener stopped unexpectedly: {error}"))

        listener.start(on_stopped)
        try:
            url = self.authorization_url(redirect_uri=redirect_uri, state=state, code_challenge=code_challenge)
            logger.info(f"Waiting for Google sign-in on {redirect_uri}")
            try:
                self._opener(url)
            except Exception as e:
                logger.warning(f"Could not open browser ({e}); open this URL to continue: {url}")
            try:
                return await asyncio.wait_for(asyncio.shield(outcome), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                raise AuthorizationTimeout("OAuth flow timed out") from None
        finally:
            if not outcome.done():
                outcome.cancel()
            await listener.close()

    async def _handle_redirect(
        self, request: Request, outcome: asyncio.Future, *, state: str, code_verifier: str, redirect_uri: str,
    ) -> HTMLResponse:
        if outcome.done():
            return HTMLResponse(FAILURE_PAGE, status_code=410)

        params = request.query_params
        error = params.get("error")
        if error:
            logger.warning(f"Google sign-in returned error: {error}")
            outcome.set_exception(AuthorizationDenied(error))
            return HTMLResponse(FAILURE_PAGE)

        code = params.get("code")
        returned_state = params.get("state") or ""
        if not code or not secrets.compare_digest(returned_state.encode(), state.encode()):
            logger.warning("Rejected OAuth redirect with missing code or mismatched state")
            return HTMLResponse(INVALID_PAGE, status_code=400)

        try:
            token_data = await self._exchange_code(code, code_verifier, redirect_uri)
            email = extract_email(token_data.get("id_token"))
            if not email:
                if not outcome.done():
                    outcome.set_exception(AuthorizationError("Could not extract email from Google OAuth response"))
                return HTMLResponse(NO_EMAIL_PAGE)
            if outcome.done():
                # The flow timed out or was cancelled while the exchange was in flight.
                return HTMLResponse(FAILURE_PAGE)
            self.store.save_credential(Credential(
                account_email=email,
                access_token=token_data["access_token"],
                refresh_token=token_data.get("refresh_token") or "",
                expires_at=self._clock() + int(token_data.get("expires_in", 3600)) * 1000,
                scope=token_data.get("scope") or self.scope,
            ))
        except TokenExchangeError as e:
            logger.error(f"Authorization code exchange failed: {e}")
            if not outcome.done():
                outcome.set_exception(e)
            return HTMLResponse(FAILURE_PAGE)
        except Exception as e:
            logger.error(f"OAuth redirect handling failed: {e}", exc_info=True)
            if not outcome.done():
                outcome.set_exception(e)
            return HTMLResponse(ERROR_PAGE, status_code=500)

        logger.info(f"Google Calendar connected for {email}")
        outcome.set_result({"email": email})
        return HTMLResponse(SUCCESS_PAGE)

    async def _post_token(self, data: dict) -> httpx.Response:
        return await self._http_client.post(
            GOOGLE_TOKEN_URL,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    async def _exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> dict:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": code_verifier,
        }
        try:
            response = await self._post_token(data)
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token exchange failed: {e}") from e
        error = _token_error(response)
        if error:
            raise TokenExchangeError(f"Token exchange failed: {error}")
        token_data = response.json()
        if not token_data.get("access_token"):
            raise TokenExchangeError("Token exchange failed: no access_token in response")
        return token_data

    async def refresh_if_needed(self) -> str:
        """Return a usable access token, refreshing it first when it is close to expiry."""
        credential = self.store.get_credential()
        if credential is None:
            raise NotConnectedError("No Google Calendar credential stored")

        now = self._clock()
        if credential.expires_at - now >= REFRESH_MARGIN_MS:
            return credential.access_token

        logger.info("Access token expires soon, refreshing")
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._post_token(data)
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh failed: {e}") from e
        error = _token_error(response)
        if error:
            raise TokenRefreshError(f"Token refresh failed: {error}")
        refreshed = response.json()
        access_token = refreshed.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token refresh failed: no access_token in response")

        self.store.save_credential(credential.model_copy(update={
            "access_token": access_token,
            "expires_at": self._clock() + int(refreshed.get("expires_in", 3600)) * 1000,
        }))
        return access_token
