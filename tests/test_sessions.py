"""
Tests for session management (mcp_gateway/sessions.py) and session
termination through ``DELETE /mcp``.
"""

import pytest
from starlette.requests import Request
from starlette.responses import Response

from mcp_gateway.sessions import SESSION_COOKIE_NAME, SESSION_ID_HEADER, SessionManager
from mcp_gateway.store import MemoryStore

INITIALIZE = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2025-03-26"}}


def make_request(headers: dict[str, str]) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/mcp",
        "query_string": b"",
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
    }
    return Request(scope)


@pytest.fixture
def manager() -> SessionManager:
    return SessionManager(MemoryStore(), lifetime=120)


class TestSessionManager:
    def test_create_lookup_terminate(self, manager):
        session = manager.create()

        assert manager.lookup(session.session_id) == session
        assert manager.terminate(session.session_id) is True
        assert manager.lookup(session.session_id) is None
        assert manager.terminate(session.session_id) is False

    def test_session_ids_are_unique_uuids(self, manager):
        ids = {manager.create().session_id for _ in range(20)}

        assert len(ids) == 20
        assert all(len(session_id) == 36 for session_id in ids)

    def test_lookup_of_empty_id(self, manager):
        assert manager.lookup("") is None

    def test_cookie_wins_over_header(self):
        request = make_request({"Cookie": f"{SESSION_COOKIE_NAME}=from-cookie", SESSION_ID_HEADER: "from-header"})

        assert SessionManager.session_id_from_request(request) == "from-cookie"

    def test_header_is_the_fallback(self):
        request = make_request({SESSION_ID_HEADER: "from-header"})

        assert SessionManager.session_id_from_request(request) == "from-header"

    def test_neither_present(self):
        assert SessionManager.session_id_from_request(make_request({})) == ""

    def test_attach_uses_configured_lifetime(self, manager):
        response = Response()
        session = manager.create()

        manager.attach(response, session, secure=True)

        set_cookie = response.headers["set-cookie"].lower()
        assert "max-age=120" in set_cookie
        assert "; secure" in set_cookie
        assert response.headers[SESSION_ID_HEADER] == session.session_id


class TestDeleteSession:
    async def test_round_trip(self, client, bearer, store):
        auth = await bearer()
        initialized = await client.post("/mcp", json=INITIALIZE, headers=auth)
        session_id = initialized.headers["mcp-session-id"]
        assert store.get_session(session_id) is not None

        # The cookie set by initialize identifies the session.
        deleted = await client.delete("/mcp", headers=auth)

        assert deleted.status_code == 200
        assert store.get_session(session_id) is None
        clearing = deleted.headers["set-cookie"].lower()
        assert clearing.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "max-age=0" in clearing

        client.cookies.clear()
        again = await client.delete("/mcp", headers={**auth, SESSION_ID_HEADER: session_id})

        assert again.status_code == 404
        assert again.json()["error"] == "invalid_session"

    async def test_missing_session(self, client, bearer):
        response = await client.delete("/mcp", headers=await bearer())

        assert response.status_code == 400
        assert response.json()["error"] == "missing_session"

    async def test_unknown_session(self, client, bearer):
        response = await client.delete("/mcp", headers={**(await bearer()), SESSION_ID_HEADER: "not-a-session"})

        assert response.status_code == 404

    async def test_requires_authentication(self, client, bearer, store):
        auth = await bearer()
        session_id = (await client.post("/mcp", json=INITIALIZE, headers=auth)).headers["mcp-session-id"]

        response = await client.delete("/mcp", headers={SESSION_ID_HEADER: session_id})

        assert response.status_code == 401
        assert store.get_session(session_id) is not None

    async def test_session_is_independent_of_token(self, client, bearer):
        """Any valid bearer may end a session; the session itself grants nothing."""
        alice = await bearer("alice")
        bob = await bearer("bob")
        session_id = (await client.post("/mcp", json=INITIALIZE, headers=alice)).headers["mcp-session-id"]
        client.cookies.clear()

        response = await client.delete("/mcp", headers={**bob, SESSION_ID_HEADER: session_id})

        assert response.status_code == 200
