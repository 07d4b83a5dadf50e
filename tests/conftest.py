"""
Shared test fixtures for the MCP gateway test suite.

Pytest fixtures are reusable setup functions that tests can request by name.
Most of them here are factory fixtures: they return a function so a test can
ask for several objects with different parameters.

Key fixtures:
- config / store: Settings and a SQLite store in a per-test temporary file
- app / client: the Starlette app and an httpx.AsyncClient wired to it
  (in-memory ASGI transport, no network needed)
- make_login_token / login_headers: the host login cookie (a signed JWT)
- pkce_pair: a fresh code_verifier and its S256 challenge
- register_client / authorize / issue_code / issue_token / bearer: walk the
  OAuth flow through the real HTTP endpoints up to a usable access token

Testing approach:
- test_pkce.py, test_store.py, test_clients.py, test_auth.py, test_jsonrpc.py
  and test_tools.py test one component in isolation.
- test_oauth.py, test_sessions.py and test_transport.py send real HTTP
  requests to the ASGI app.
"""

import datetime
import secrets
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from pydantic import BaseModel

from mcp_gateway.config import Settings
from mcp_gateway.pkce import s256_challenge
from mcp_gateway.server import create_app
from mcp_gateway.store import SQLiteStore
from mcp_gateway.tools import ToolError, ToolRegistry

TEST_SECRET = "test-login-secret-with-at-least-32-bytes"
TEST_ALGORITHM = "HS256"
BASE_URL = "http://testserver"
REDIRECT_URI = "http://localhost:3000/callback"


# ---------------------------------------------------------------------------
# Application fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        jwt_secret_key=TEST_SECRET,
        jwt_algorithm=TEST_ALGORITHM,
        database_path=tmp_path / "gateway.db",
        public_url=None,
        backend_url="http://backend.test",
    )


@pytest.fixture
def store(config) -> SQLiteStore:
    # A file, not ":memory:": the store opens a new connection per operation.
    return SQLiteStore(config.database_path)


class EchoArguments(BaseModel):
    text: str


class NoArguments(BaseModel):
    pass


@pytest.fixture
def tools() -> ToolRegistry:
    """A small tool set that needs no backend."""
    registry = ToolRegistry()

    @registry.tool("echo", "Echo the text back.", EchoArguments)
    def echo(args, context):
        return args.text

    @registry.tool("whoami", "Return the acting identity.", NoArguments)
    def whoami(args, context):
        return {"user_id": context.principal.user_id, "client_id": context.principal.client_id}

    @registry.tool("explode", "Always fails.", NoArguments)
    def explode(args, context):
        raise ToolError("backend is on fire")

    return registry


@pytest.fixture
def app(config, store, tools):
    return create_app(config, store=store, tools=tools)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        yield client


# ---------------------------------------------------------------------------
# Login cookie factory
# ---------------------------------------------------------------------------


@pytest.fixture
def make_login_token():
    """
    Factory fixture for host login tokens (the value of the login cookie).

    Usage in tests:
        def test_something(make_login_token):
            token = make_login_token(sub="alice", exp_hours=-1)
    """

    def _make_login_token(
        sub: str = "alice",
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        include_exp: bool = True,
        include_sub: bool = True,
        extra_claims: dict | None = None,
    ) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {"iat": now}
        if include_sub:
            payload["sub"] = sub
        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)
        if extra_claims:
            payload.update(extra_claims)
        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_login_token


@pytest.fixture
def login_headers(make_login_token, config):
    """Request headers carrying a login cookie for the given user."""

    def _login_headers(sub: str = "alice", **kwargs) -> dict[str, str]:
        return {"Cookie": f"{config.login_cookie_name}={make_login_token(sub=sub, **kwargs)}"}

    return _login_headers


# ---------------------------------------------------------------------------
# OAuth flow helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def pkce_pair():
    def _pkce_pair() -> tuple[str, str]:
        verifier = secrets.token_urlsafe(48)
        return verifier, s256_challenge(verifier)

    return _pkce_pair


def query_of(location: str) -> dict[str, str]:
    """Flatten the query string of a redirect Location into a dict."""
    return {key: values[0] for key, values in parse_qs(urlsplit(location).query).items()}


@pytest.fixture
def register_client(client):
    async def _register_client(
        redirect_uris: list[str] | None = None,
        auth_method: str = "none",
        client_name: str = "Test Client",
    ) -> dict:
        response = await client.post(
            "/oauth/register",
            json={
                "client_name": client_name,
                "redirect_uris": redirect_uris or [REDIRECT_URI],
                "token_endpoint_auth_method": auth_method,
            },
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _register_client


@pytest.fixture
def authorize(client, login_headers):
    """POST the consent form as the given user. Returns the raw response."""

    async def _authorize(
        client_id: str,
        code_challenge: str,
        redirect_uri: str = REDIRECT_URI,
        user: str | None = "alice",
        method: str = "S256",
        state: str = "xyz",
        action: str = "approve",
        scope: str = "mcp",
    ) -> httpx.Response:
        data = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": method,
            "state": state,
            "scope": scope,
            "action": action,
        }
        headers = login_headers(user) if user else {}
        return await client.post("/oauth/authorize", data=data, headers=headers)

    return _authorize


@pytest.fixture
def issue_code(register_client, authorize, pkce_pair):
    """Register a public client and approve an authorization request for it."""

    async def _issue_code(user: str = "alice", redirect_uri: str = REDIRECT_URI) -> tuple[dict, str, str]:
        registered = await register_client(redirect_uris=[redirect_uri])
        verifier, challenge = pkce_pair()
        response = await authorize(registered["client_id"], challenge, redirect_uri=redirect_uri, user=user)
        assert response.status_code == 302, response.text
        return registered, query_of(response.headers["location"])["code"], verifier

    return _issue_code


@pytest.fixture
def token_request(client):
    async def _token_request(client_id: str, code: str, verifier: str, redirect_uri: str = REDIRECT_URI, **extra):
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": verifier,
            **extra,
        }
        return await client.post("/oauth/token", data=data)

    return _token_request


@pytest.fixture
def issue_token(issue_code, token_request):
    async def _issue_token(user: str = "alice") -> str:
        registered, code, verifier = await issue_code(user=user)
        response = await token_request(registered["client_id"], code, verifier)
        assert response.status_code == 200, response.text
        return response.json()["access_token"]

    return _issue_token


@pytest.fixture
def bearer(issue_token):
    """Authorization header with a freshly issued access token."""

    async def _bearer(user: str = "alice") -> dict[str, str]:
        return {"Authorization": f"Bearer {await issue_token(user)}"}

    return _bearer
