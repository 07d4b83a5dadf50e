"""
Integration tests for the MCP transport (mcp_gateway/server.py).

These tests exercise the full path of an MCP call:
HTTP request -> bearer authentication -> JSON-RPC dispatch -> handler -> reply.

Access tokens are obtained through the real OAuth endpoints (see the
``bearer`` fixture in conftest.py), so a passing test here also proves that
tokens minted by the token endpoint are accepted by the transport.
"""

import dataclasses

import httpx

from conftest import REDIRECT_URI, query_of
from mcp_gateway.server import create_app
from mcp_gateway.store import MemoryStore, StoreError

INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "test", "version": "1.0"},
    },
}


def rpc(method: str, params: dict | None = None, request_id: int | str = 2) -> dict:
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


class TestAuthentication:
    async def test_get_is_not_allowed_even_without_token(self, client):
        response = await client.get("/mcp")

        assert response.status_code == 405
        assert response.headers["allow"] == "POST, DELETE"

    async def test_missing_token(self, client):
        response = await client.post("/mcp", json=INITIALIZE)

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"
        assert response.headers["www-authenticate"] == (
            'Bearer realm="http://testserver/mcp", '
            'resource_metadata="http://testserver/.well-known/oauth-protected-resource"'
        )

    async def test_unknown_token(self, client):
        response = await client.post("/mcp", json=INITIALIZE, headers={"Authorization": "Bearer made-up"})

        assert response.status_code == 401
        assert "www-authenticate" in response.headers

    async def test_expired_token(self, client, bearer, store):
        headers = await bearer()
        token = headers["Authorization"].split()[1]
        record = store.get_access_token(token)
        store.delete_access_token(token)
        store.put_access_token(dataclasses.replace(record, expires_at=record.created_at - 1))

        response = await client.post("/mcp", json=rpc("ping"), headers=headers)

        assert response.status_code == 401

    async def test_health_needs_no_token(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestMessages:
    async def test_initialize_sets_session(self, client, bearer):
        response = await client.post("/mcp", json=INITIALIZE, headers=await bearer())
        body = response.json()

        assert response.status_code == 200
        assert body["id"] == 1
        assert body["result"]["protocolVersion"] == "2025-03-26"
        assert body["result"]["serverInfo"]["name"] == "mcp-content-gateway"

        session_id = response.headers["mcp-session-id"]
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"mcp_session_id={session_id};")
        assert "httponly" in set_cookie.lower()
        assert "samesite=lax" in set_cookie.lower()
        assert "path=/" in set_cookie.lower()
        assert "max-age=86400" in set_cookie.lower()
        assert "secure" not in set_cookie.lower()

    async def test_session_cookie_is_secure_over_https(self, app, bearer):
        headers = await bearer()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="https://testserver") as c:
            response = await c.post("/mcp", json=INITIALIZE, headers=headers)

        assert "; secure" in response.headers["set-cookie"].lower()

    async def test_only_initialize_creates_sessions(self, client, bearer):
        response = await client.post("/mcp", json=rpc("ping"), headers=await bearer())

        assert response.json() == {"jsonrpc": "2.0", "id": 2, "result": {}}
        assert "set-cookie" not in response.headers
        assert "mcp-session-id" not in response.headers

    async def test_notification_gets_202_without_body(self, client, bearer):
        response = await client.post(
            "/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"}, headers=await bearer()
        )

        assert response.status_code == 202
        assert response.content == b""

    async def test_client_response_gets_202(self, client, bearer):
        response = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 5, "result": {}}, headers=await bearer())

        assert response.status_code == 202

    async def test_unknown_method(self, client, bearer):
        response = await client.post("/mcp", json=rpc("does/not/exist", request_id="abc"), headers=await bearer())

        assert response.status_code == 200
        assert response.json() == {
            "jsonrpc": "2.0",
            "id": "abc",
            "error": {"code": -32601, "message": "Method not found: does/not/exist"},
        }

    async def test_malformed_json(self, client, bearer):
        headers = {**(await bearer()), "Content-Type": "application/json"}
        response = await client.post("/mcp", content=b'{"jsonrpc": "2.0", "id": 1', headers=headers)
        body = response.json()

        assert response.status_code == 200
        assert body["id"] is None
        assert body["error"]["code"] == -32700

    async def test_batch_is_rejected(self, client, bearer):
        response = await client.post("/mcp", json=[rpc("ping"), rpc("ping")], headers=await bearer())
        body = response.json()

        assert body["id"] is None
        assert body["error"] == {"code": -32600, "message": "Batch requests are not supported"}

    async def test_tool_call_runs_as_token_owner(self, client, bearer):
        response = await client.post(
            "/mcp", json=rpc("tools/call", {"name": "whoami", "arguments": {}}), headers=await bearer("carol")
        )
        result = response.json()["result"]

        assert result["isError"] is False
        assert '"user_id": "carol"' in result["content"][0]["text"]

    async def test_tool_failure_is_a_result_not_an_error(self, client, bearer):
        response = await client.post(
            "/mcp", json=rpc("tools/call", {"name": "explode", "arguments": {}}), headers=await bearer()
        )
        body = response.json()

        assert "error" not in body
        assert body["result"]["isError"] is True

    async def test_invalid_tool_arguments(self, client, bearer):
        response = await client.post(
            "/mcp", json=rpc("tools/call", {"name": "echo", "arguments": {"text": ["x"]}}), headers=await bearer()
        )

        assert response.json()["error"]["code"] == -32602


class TestCors:
    async def test_preflight(self, client):
        response = await client.options(
            "/mcp",
            headers={
                "Origin": "http://localhost:6274",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type, mcp-session-id",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    async def test_session_header_is_exposed(self, client, bearer):
        headers = {**(await bearer()), "Origin": "http://localhost:6274"}
        response = await client.post("/mcp", json=INITIALIZE, headers=headers)

        assert "mcp-session-id" in response.headers["access-control-expose-headers"].lower()


class FailingStore(MemoryStore):
    def get_access_token(self, token):
        raise StoreError("disk on fire")


class TestStoreFailure:
    async def test_store_error_is_a_500(self, config, tools):
        app = create_app(config, store=FailingStore(), tools=tools)

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as c:
            response = await c.post("/mcp", json=INITIALIZE, headers={"Authorization": "Bearer anything"})

        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestEndToEnd:
    async def test_register_authorize_exchange_initialize_call(self, client, login_headers, pkce_pair):
        # 1. Discovery from the 401 challenge
        challenge = await client.post("/mcp", json=INITIALIZE)
        assert challenge.status_code == 401
        metadata = (await client.get("/.well-known/oauth-authorization-server")).json()

        # 2. Dynamic registration
        registered = (
            await client.post(
                "/oauth/register",
                json={"client_name": "E2E Client", "redirect_uris": [REDIRECT_URI]},
            )
        ).json()

        # 3. Authorization: consent page, then approval
        verifier, code_challenge = pkce_pair()
        params = {
            "client_id": registered["client_id"],
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": "e2e-state",
        }
        consent = await client.get("/oauth/authorize", params=params, headers=login_headers("dave"))
        assert consent.status_code == 200

        approval = await client.post(
            "/oauth/authorize", data={**params, "scope": "mcp", "action": "approve"}, headers=login_headers("dave")
        )
        assert approval.status_code == 302
        redirect = query_of(approval.headers["location"])
        assert redirect["state"] == "e2e-state"

        # 4. Code exchange
        token = await client.post(
            metadata["token_endpoint"],
            data={
                "grant_type": "authorization_code",
                "code": redirect["code"],
                "redirect_uri": REDIRECT_URI,
                "client_id": registered["client_id"],
                "code_verifier": verifier,
            },
        )
        assert token.status_code == 200
        auth = {"Authorization": f"Bearer {token.json()['access_token']}"}

        # 5. Initialize opens a session
        initialized = await client.post("/mcp", json=INITIALIZE, headers=auth)
        assert initialized.status_code == 200
        assert "mcp_session_id=" in initialized.headers["set-cookie"]

        # 6. Unknown methods are reported, not fatal
        unknown = await client.post("/mcp", json=rpc("nonexistent/method", request_id=99), headers=auth)
        assert unknown.json()["error"]["code"] == -32601
        assert unknown.json()["id"] == 99

        # 7. Tools are listed and callable with the same token
        listed = await client.post("/mcp", json=rpc("tools/list", request_id=3), headers=auth)
        assert [t["name"] for t in listed.json()["result"]["tools"]] == ["echo", "whoami", "explode"]

        called = await client.post(
            "/mcp", json=rpc("tools/call", {"name": "whoami", "arguments": {}}, request_id=4), headers=auth
        )
        assert '"user_id": "dave"' in called.json()["result"]["content"][0]["text"]


class TestLifespan:
    async def test_shutdown_closes_tool_resources(self, config, store, tools):
        closed = []
        tools.on_close(lambda: closed.append(True))
        app = create_app(config, store=store, tools=tools)

        async with app.router.lifespan_context(app):
            assert closed == []

        assert closed == [True]
