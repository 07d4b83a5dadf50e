"""
Starlette application for the MCP content gateway.

This module wires the components together and exposes:
- The MCP transport at ``settings.mcp_path`` (default /mcp): POST-only
  JSON-RPC with a Bearer token on every request, DELETE to end a session
- The OAuth 2.1 authorization server (discovery, registration, authorize, token)
- A health endpoint for liveness probes

Architecture:
    The flow for every MCP request:

    1. Client sends ``POST /mcp`` with "Authorization: Bearer <token>"
    2. BearerAuthenticator looks the token up in the credential store and
       resolves it to a Principal (user, client, scopes)
    3. The body is decoded and handed to the Dispatcher together with a
       RequestContext carrying the Principal
    4. The Dispatcher parses the JSON-RPC envelope, validates params and runs
       the handler; the reply is sent back as one JSON object
    5. If the reply is a successful initialize result, a session is created
       and its id handed out as cookie and Mcp-Session-Id header

    Store and dispatch calls are blocking (SQLite, httpx for the backend
    tool), so they run in Starlette's threadpool.

Running the server:
    python -m mcp_gateway.server

    This starts the server on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp
    - OAuth metadata at /.well-known/oauth-authorization-server
    - Health check at /health
"""

import contextlib
import logging
from collections.abc import AsyncIterator

import uvicorn
from mcp.types import ErrorData, InitializeResult
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.endpoints import HTTPEndpoint
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from mcp_gateway import jsonrpc
from mcp_gateway.auth import AuthError, BearerAuthenticator, Principal
from mcp_gateway.clients import ClientRegistry
from mcp_gateway.config import Settings, settings
from mcp_gateway.handlers import McpHandlers
from mcp_gateway.log import configure_logging
from mcp_gateway.oauth import OAuthError, OAuthServer, oauth_error_response
from mcp_gateway.sessions import SESSION_ID_HEADER, SessionManager
from mcp_gateway.store import MemoryStore, SQLiteStore, StoreError, create_store
from mcp_gateway.tools import ToolRegistry, create_tool_registry

logger = logging.getLogger("mcp-gateway")


# ---------------------------------------------------------------------------
# MCP transport
# ---------------------------------------------------------------------------


class McpTransport(HTTPEndpoint):
    """
    POST-only MCP transport.

    GET is refused with 405 before authentication: this server never pushes
    messages, so there is no stream to open.
    """

    async def _authenticate(self, request: Request, request_id: str) -> Principal:
        authenticator: BearerAuthenticator = request.app.state.authenticator
        principal = await run_in_threadpool(
            authenticator.authenticate, request.headers.get("authorization"), request_id
        )
        request.state.principal = principal
        return principal

    async def get(self, request: Request) -> Response:
        return JSONResponse(
            {"error": "method_not_allowed", "error_description": "Server-initiated streams are not supported"},
            status_code=405,
            headers={"Allow": "POST, DELETE"},
        )

    async def post(self, request: Request) -> Response:
        context = jsonrpc.RequestContext()
        context.principal = await self._authenticate(request, context.request_id)
        context.session_id = SessionManager.session_id_from_request(request) or None

        body = await request.body()
        try:
            payload = jsonrpc.decode_body(body)
        except jsonrpc.InvalidMessage as e:
            logger.warning(
                "Unparseable request body",
                extra={"event_data": {"request_id": context.request_id, "reason": e.message}},
            )
            error = jsonrpc.Error(id=None, error=ErrorData(code=e.code, message=e.message))
            return JSONResponse(error.to_dict())

        dispatcher: jsonrpc.Dispatcher = request.app.state.dispatcher
        reply = await run_in_threadpool(dispatcher.handle, payload, context)
        if reply is None:
            return Response(status_code=202)

        response = JSONResponse(reply.to_dict())
        if isinstance(reply, jsonrpc.Response) and isinstance(reply.result, InitializeResult):
            sessions: SessionManager = request.app.state.sessions
            session = await run_in_threadpool(sessions.create)
            sessions.attach(response, session, secure=request.url.scheme == "https")
        return response

    async def delete(self, request: Request) -> Response:
        context = jsonrpc.RequestContext()
        principal = await self._authenticate(request, context.request_id)

        session_id = SessionManager.session_id_from_request(request)
        if not session_id:
            return JSONResponse(
                {
                    "error": "missing_session",
                    "error_description": f"No session id in cookie or {SESSION_ID_HEADER} header",
                },
                status_code=400,
            )

        sessions: SessionManager = request.app.state.sessions
        if not await run_in_threadpool(sessions.terminate, session_id):
            return JSONResponse(
                {"error": "invalid_session", "error_description": "Session not found"},
                status_code=404,
            )

        logger.info(
            "Session closed by client",
            extra={
                "event_data": {
                    "request_id": context.request_id,
                    "session_id": session_id,
                    "user_id": principal.user_id,
                }
            },
        )
        response = JSONResponse({"status": "terminated"})
        SessionManager.clear(response)
        return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def auth_error_response(request: Request, exc: AuthError) -> Response:
    """Bearer failures: 401 with a challenge pointing at the resource metadata."""
    oauth: OAuthServer = request.app.state.oauth
    challenge = (
        f'Bearer realm="{oauth.resource_url(request)}", '
        f'resource_metadata="{oauth.resource_metadata_url(request)}"'
    )
    return JSONResponse(
        {"error": "invalid_token", "error_description": exc.message},
        status_code=exc.status_code,
        headers={"WWW-Authenticate": challenge},
    )


async def store_error_response(request: Request, exc: Exception) -> Response:
    logger.error(
        "Storage failure",
        exc_info=exc,
        extra={"event_data": {"path": request.url.path, "method": request.method}},
    )
    return JSONResponse(
        {"error": "server_error", "error_description": "Internal storage error"},
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------
# Not authenticated: probes don't carry tokens and the answer exposes nothing.


async def health_check(request: Request) -> Response:
    """Liveness probe: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    config: Settings | None = None,
    store: SQLiteStore | MemoryStore | None = None,
    tools: ToolRegistry | None = None,
) -> Starlette:
    """
    Build the ASGI app.

    Args:
        config: Settings to use (defaults to the environment-backed singleton)
        store: Credential and session store (defaults to create_store(config))
        tools: Tool registry (defaults to the rest_api tool against config.backend_url)
    """
    config = config or settings
    store = store if store is not None else create_store(config)
    tools = tools if tools is not None else create_tool_registry(config)

    clients = ClientRegistry(store)
    oauth = OAuthServer(config, store, clients)

    dispatcher = jsonrpc.Dispatcher()
    McpHandlers(tools, config.server_name, config.server_version, config.instructions).install(dispatcher)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        try:
            yield
        finally:
            tools.close()
            logger.info("Tool resources released")

    routes = [
        Route(config.mcp_path, McpTransport),
        Route("/health", health_check, methods=["GET"]),
        *oauth.routes(),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "Mcp-Protocol-Version", SESSION_ID_HEADER],
            expose_headers=[SESSION_ID_HEADER, "WWW-Authenticate"],
        )
    ]

    app = Starlette(
        routes=routes,
        middleware=middleware,
        lifespan=lifespan,
        exception_handlers={
            OAuthError: oauth_error_response,
            AuthError: auth_error_response,
            StoreError: store_error_response,
        },
    )
    app.state.config = config
    app.state.store = store
    app.state.tools = tools
    app.state.oauth = oauth
    app.state.dispatcher = dispatcher
    app.state.authenticator = BearerAuthenticator(store)
    app.state.sessions = SessionManager(store, lifetime=config.session_lifetime)
    return app


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


def main() -> None:
    configure_logging(settings.log_level)
    logger.info(
        "Starting MCP gateway on %s:%d (store=%s, mcp_path=%s)",
        settings.host,
        settings.port,
        settings.store_backend,
        settings.mcp_path,
    )
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
