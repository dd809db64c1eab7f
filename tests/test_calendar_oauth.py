#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "pytest-asyncio>=0.24.0",
#     "fastapi>=0.115.0",
#     "uvicorn>=0.34.0",
#     "httpx>=0.28.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Tests for the Google OAuth authorizer.

Covers:
- PKCE: the challenge is SHA-256/base64url of the verifier
- extract_email(): identity-token claim parsing
- refresh_if_needed(): 5-minute margin, refresh token retained, errors
- begin_authorization() against a live loopback listener: success, denial,
  state mismatch, timeout, failed exchange; listener closed exactly once

The token endpoint is an httpx.MockTransport; the browser is replaced by an
opener that follows the redirect itself.

Run with: uv run pytest tests/test_calendar_oauth.py -v
"""

import asyncio
import base64
import hashlib
import json
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from calendar_models import Credential
from calendar_oauth import (
    AuthorizationDenied,
    AuthorizationError,
    AuthorizationTimeout,
    GOOGLE_TOKEN_URL,
    NotConnectedError,
    OAuthAuthorizer,
    REFRESH_MARGIN_MS,
    TokenExchangeError,
    TokenRefreshError,
    extract_email,
    generate_pkce_pair,
    pkce_challenge,
)
from calendar_store import CalendarStore

NOW_MS = 1_800_000_000_000


def make_id_token(claims: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJSUzI1NiJ9.{body}.signature"


@pytest.fixture
def store(tmp_path):
    s = CalendarStore(str(tmp_path / "oauth.db"))
    yield s
    s.close()


class TokenEndpoint:
    """MockTransport handler recording every token request."""

    def __init__(self, response_json=None, status_code=200):
        self.requests: list[dict] = []
        self.response_json = response_json if response_json is not None else {}
        self.status_code = status_code

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert str(request.url) == GOOGLE_TOKEN_URL
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)
        return httpx.Response(self.status_code, json=self.response_json)


def make_authorizer(store, endpoint, **kwargs):
    kwargs.setdefault("client_id", "client-123")
    kwargs.setdefault("client_secret", "secret-xyz")
    kwargs.setdefault("clock", lambda: NOW_MS)
    return OAuthAuthorizer(
        store,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestPkce:
    def test_challenge_matches_verifier(self):
        verifier, challenge = generate_pkce_pair()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert challenge == expected
        assert pkce_challenge(verifier) == challenge

    def test_verifier_shape(self):
        verifier, _ = generate_pkce_pair()
        assert len(verifier) == 43
        assert "=" not in verifier

    def test_pairs_are_unique(self):
        assert generate_pkce_pair()[0] != generate_pkce_pair()[0]


class TestExtractEmail:
    def test_reads_email_claim(self):
        assert extract_email(make_id_token({"email": "a@example.com"})) == "a@example.com"

    def test_missing_claim(self):
        assert extract_email(make_id_token({"sub": "123"})) is None

    def test_garbage(self):
        assert extract_email("not-a-jwt") is None
        assert extract_email("a.!!!.c") is None
        assert extract_email(None) is None


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def save_credential(store, expires_in_ms):
    store.save_credential(Credential(
        account_email="user@example.com",
        access_token="old-access",
        refresh_token="keep-me",
        expires_at=NOW_MS + expires_in_ms,
        scope="openid email",
    ))


class TestRefreshIfNeeded:
    @pytest.mark.asyncio
    async def test_not_connected(self, store):
        authorizer = make_authorizer(store, TokenEndpoint())
        with pytest.raises(NotConnectedError):
            await authorizer.refresh_if_needed()

    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_without_refresh(self, store):
        endpoint = TokenEndpoint()
        save_credential(store, 10 * 60 * 1000)
        authorizer = make_authorizer(store, endpoint)
        assert await authorizer.refresh_if_needed() == "old-access"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_exactly_at_margin_does_not_refresh(self, store):
        endpoint = TokenEndpoint()
        save_credential(store, REFRESH_MARGIN_MS)
        authorizer = make_authorizer(store, endpoint)
        assert await authorizer.refresh_if_needed() == "old-access"
        assert endpoint.requests == []

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self, store):
        endpoint = TokenEndpoint({"access_token": "new-access", "expires_in": 3600})
        save_credential(store, 4 * 60 * 1000)
        authorizer = make_authorizer(store, endpoint)

        assert await authorizer.refresh_if_needed() == "new-access"
        assert endpoint.requests[0]["grant_type"] == "refresh_token"
        assert endpoint.requests[0]["refresh_token"] == "keep-me"

        credential = store.get_credential()
        assert credential.access_token == "new-access"
        assert credential.refresh_token == "keep-me"
        assert credential.expires_at == NOW_MS + 3600 * 1000

    @pytest.mark.asyncio
    async def test_refresh_rejected(self, store):
        endpoint = TokenEndpoint({"error": "invalid_grant"}, status_code=400)
        save_credential(store, -1000)
        authorizer = make_authorizer(store, endpoint)
        with pytest.raises(TokenRefreshError, match="invalid_grant"):
            await authorizer.refresh_if_needed()
        assert store.get_credential().access_token == "old-access"


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


class BrowserStub:
    """Stands in for the system browser: records the URL and optionally visits the redirect."""

    def __init__(self, redirect_params=None):
        self.redirect_params = redirect_params
        self.url = None
        self.query = None
        self.responses: list[httpx.Response] = []
        self.task = None

    def __call__(self, url):
        self.url = url
        self.query = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        if self.redirect_params is not None:
            self.task = asyncio.get_running_loop().create_task(self._visit())

    async def _visit(self):
        params = self.redirect_params(self.query)
        async with httpx.AsyncClient(trust_env=False) as client:
            for _ in range(50):
                try:
                    response = await client.get(self.query["redirect_uri"] + "/", params=params)
                    self.responses.append(response)
                    return
                except httpx.ConnectError:
                    await asyncio.sleep(0.05)


class TestBeginAuthorization:
    @pytest.mark.asyncio
    async def test_requires_client_id(self, store):
        authorizer = make_authorizer(store, TokenEndpoint(), client_id=None)
        with pytest.raises(AuthorizationError):
            await authorizer.begin_authorization()

    @pytest.mark.asyncio
    async def test_successful_flow(self, store):
        endpoint = TokenEndpoint({
            "access_token": "at-1",
            "refresh_token": "rt-1",
            "expires_in": 3600,
            "scope": "openid email",
            "id_token": make_id_token({"email": "user@example.com"}),
        })
        browser = BrowserStub(lambda q: {"code": "auth-code", "state": q["state"]})
        authorizer = make_authorizer(store, endpoint, opener=browser, timeout_seconds=10)

        result = await authorizer.begin_authorization()
        await browser.task

        assert result == {"email": "user@example.com"}
        assert browser.responses[0].status_code == 200
        assert "successful" in browser.responses[0].text

        # The verifier sent to the token endpoint hashes to the challenge in the URL.
        form = endpoint.requests[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"
        assert pkce_challenge(form["code_verifier"]) == browser.query["code_challenge"]
        assert form["redirect_uri"] == browser.query["redirect_uri"]

        credential = store.get_credential()
        assert credential.account_email == "user@example.com"
        assert credential.refresh_token == "rt-1"
        assert credential.expires_at == NOW_MS + 3600 * 1000
        assert authorizer.last_listener.close_count == 1

    @pytest.mark.asyncio
    async def test_authorization_url(self, store):
        browser = BrowserStub()
        authorizer = make_authorizer(store, TokenEndpoint(), opener=browser, timeout_seconds=0.2)
        with pytest.raises(AuthorizationTimeout):
            await authorizer.begin_authorization()

        assert browser.url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert browser.query["client_id"] == "client-123"
        assert browser.query["access_type"] == "offline"
        assert browser.query["prompt"] == "consent"
        assert browser.query["code_challenge_method"] == "S256"
        assert browser.query["redirect_uri"].startswith("http://127.0.0.1:")
        assert len(browser.query["state"]) == 64
        assert "secret-xyz" not in browser.url

    @pytest.mark.asyncio
    async def test_timeout_closes_listener_once(self, store):
        authorizer = make_authorizer(store, TokenEndpoint(), opener=BrowserStub(), timeout_seconds=0.2)
        with pytest.raises(AuthorizationTimeout):
            await authorizer.begin_authorization()
        assert authorizer.last_listener.close_count == 1
        assert store.get_credential() is None

    @pytest.mark.asyncio
    async def test_provider_denial(self, store):
        endpoint = TokenEndpoint()
        browser = BrowserStub(lambda q: {"error": "access_denied", "state": q["state"]})
        authorizer = make_authorizer(store, endpoint, opener=browser, timeout_seconds=10)

        with pytest.raises(AuthorizationDenied) as exc_info:
            await authorizer.begin_authorization()

        assert exc_info.value.error == "access_denied"
        assert endpoint.requests == []
        assert store.get_credential() is None
        assert authorizer.last_listener.close_count == 1

    @pytest.mark.asyncio
    async def test_state_mismatch_is_rejected(self, store):
        endpoint = TokenEndpoint()
        browser = BrowserStub(lambda q: {"code": "auth-code", "state": "forged"})
        authorizer = make_authorizer(store, endpoint, opener=browser, timeout_seconds=1)

        with pytest.raises(AuthorizationTimeout):
            await authorizer.begin_authorization()

        assert browser.responses[0].status_code == 400
        assert endpoint.requests == []
        assert store.get_credential() is None

    @pytest.mark.asyncio
    async def test_failed_exchange(self, store):
        endpoint = TokenEndpoint({"error": "invalid_grant", "error_description": "Bad code"}, status_code=400)
        browser = BrowserStub(lambda q: {"code": "auth-code", "state": q["state"]})
        authorizer = make_authorizer(store, endpoint, opener=browser, timeout_seconds=10)

        with pytest.raises(TokenExchangeError, match="Bad code"):
            await authorizer.begin_authorization()
        assert store.get_credential() is None

    @pytest.mark.asyncio
    async def test_missing_email(self, store):
        endpoint = TokenEndpoint({"access_token": "at", "id_token": make_id_token({"sub": "1"})})
        browser = BrowserStub(lambda q: {"code": "auth-code", "state": q["state"]})
        authorizer = make_authorizer(store, endpoint, opener=browser, timeout_seconds=10)

        with pytest.raises(AuthorizationError, match="email"):
            await authorizer.begin_authorization()
        assert store.get_credential() is None

    @pytest.mark.asyncio
    async def test_connection_status(self, store):
        authorizer = make_authorizer(store, TokenEndpoint())
        assert authorizer.connection_status().connected is False
        save_credential(store, 60_000)
        status = authorizer.connection_status()
        assert status.connected is True
        assert status.email == "user@example.com"
        assert status.expiresAt == NOW_MS + 60_000
