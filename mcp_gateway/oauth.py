"""
OAuth 2.1 authorization server for the MCP transport.

Routes:
    GET  /.well-known/oauth-protected-resource     RFC 9728 resource metadata
    GET  /.well-known/oauth-authorization-server   RFC 8414 server metadata
    POST /oauth/register                           RFC 7591 dynamic client registration
    GET  /oauth/authorize                          consent page (or redirect to host login)
    POST /oauth/authorize                          consent decision -> code or access_denied
    POST /oauth/token                              authorization_code grant, PKCE required

Security rules enforced here:
- Until the redirect_uri has been matched exactly against the client's
  registered URIs, errors are answered directly and never redirected, so the
  endpoint cannot be used as an open redirector.
- The consent POST re-validates every parameter; nothing is trusted just
  because it came back from the rendered form.
- The token endpoint consumes the code atomically before checking it, and
  answers every code problem (unknown, expired, redirect mismatch, PKCE
  failure) with the same invalid_grant so it leaks nothing to code probing.
"""

import html
import logging
import secrets
import time
from collections.abc import Mapping
from string import Template
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from mcp_gateway import pkce
from mcp_gateway.auth import resolve_login_identity
from mcp_gateway.clients import ClientRegistry, is_valid_redirect_uri
from mcp_gateway.config import Settings
from mcp_gateway.store import AccessToken, AuthorizationCode, Client, CredentialStore

logger = logging.getLogger("mcp-gateway.oauth")

DEFAULT_SCOPE = "mcp"
TOKEN_ENDPOINT_AUTH_METHODS = ("none", "client_secret_post")
INVALID_GRANT_DESCRIPTION = "Invalid or expired authorization code"


class OAuthError(Exception):
    """
    An OAuth protocol error, rendered as ``{"error": ..., "error_description": ...}``.

    Attributes:
        error: Machine-readable RFC 6749 error code (invalid_request, invalid_grant, ...)
        description: Human-readable explanation
        status_code: HTTP status code to return
    """

    def __init__(self, error: str, description: str, status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}")


async def oauth_error_response(request: Request, exc: OAuthError) -> Response:
    """Starlette exception handler for OAuthError."""
    return JSONResponse(
        {"error": exc.error, "error_description": exc.description},
        status_code=exc.status_code,
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


def public_base_url(request: Request, config: Settings) -> str:
    """Scheme + host (+ root path) under which clients reach the gateway."""
    if config.public_url:
        return config.public_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def add_query_params(uri: str, params: Mapping[str, str]) -> str:
    """Append params to a URI, keeping whatever query it already carries."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _string_params(source: Mapping[str, Any]) -> dict[str, str]:
    # Form data may contain uploads; only plain string fields are parameters.
    return {key: value for key, value in source.items() if isinstance(value, str)}


class AuthorizationRequest(BaseModel):
    """The parameters of /oauth/authorize, parsed once from query or form."""

    client_id: str = ""
    redirect_uri: str = ""
    response_type: str = ""
    code_challenge: str = ""
    code_challenge_method: str = "S256"
    state: str = ""
    scope: str = DEFAULT_SCOPE

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "AuthorizationRequest":
        fields = {name: params[name] for name in cls.model_fields if params.get(name)}
        return cls(**fields)

    def as_params(self) -> dict[str, str]:
        return self.model_dump()


_CONSENT_PAGE = Template(
    """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Authorize $client_name</title>
  <style>
    body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; padding: 20px; }
    .container { max-width: 500px; margin: 50px auto; background: white; padding: 30px; border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }
    .client-info { background: #f9f9f9; padding: 15px; border-radius: 4px; margin: 20px 0; }
    .permissions li { padding: 8px 0; border-bottom: 1px solid #eee; }
    .buttons { display: flex; gap: 10px; margin-top: 30px; }
    button { flex: 1; padding: 12px; border: none; border-radius: 4px; font-size: 16px; cursor: pointer; }
    .approve { background: #2271b1; color: white; }
    .deny { background: #ddd; color: #333; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorize Access</h1>
    <div class="client-info"><strong>$client_name</strong> wants to access your content</div>
    <p>Logged in as: <strong>$user_id</strong></p>
    <div class="permissions">
      <h3>This will allow $client_name to:</h3>
      <ul>
        <li>Read and manage your content</li>
        <li>Call the content REST API on your behalf</li>
        <li>Perform actions as your user account</li>
      </ul>
      <p>Requested scope: <code>$scope</code></p>
    </div>
    <form method="POST" action="$action">
$hidden_fields
      <div class="buttons">
        <button type="submit" name="action" value="deny" class="deny">Deny</button>
        <button type="submit" name="action" value="approve" class="approve">Authorize</button>
      </div>
    </form>
  </div>
</body>
</html>
"""
)


class OAuthServer:
    """The OAuth endpoints, wired to an injected store and client registry."""

    def __init__(self, config: Settings, store: CredentialStore, clients: ClientRegistry):
        self.config = config
        self.store = store
        self.clients = clients

    def routes(self) -> list[Route]:
        return [
            Route("/.well-known/oauth-protected-resource", self.protected_resource_metadata, methods=["GET"]),
            Route(
                "/.well-known/oauth-protected-resource/{resource_path:path}",
                self.protected_resource_metadata,
                methods=["GET"],
            ),
            Route("/.well-known/oauth-authorization-server", self.authorization_server_metadata, methods=["GET"]),
            Route("/oauth/register", self.register, methods=["POST"]),
            Route("/oauth/authorize", self.authorize, methods=["GET", "POST"]),
            Route("/oauth/token", self.token, methods=["POST"]),
        ]

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def resource_url(self, request: Request) -> str:
        return public_base_url(request, self.config) + self.config.mcp_path

    def resource_metadata_url(self, request: Request) -> str:
        return public_base_url(request, self.config) + "/.well-known/oauth-protected-resource"

    async def protected_resource_metadata(self, request: Request) -> Response:
        return JSONResponse(
            {
                "resource": self.resource_url(request),
                "authorization_servers": [public_base_url(request, self.config)],
                "bearer_methods_supported": ["header"],
                "scopes_supported": [DEFAULT_SCOPE],
            }
        )

    async def authorization_server_metadata(self, request: Request) -> Response:
        base_url = public_base_url(request, self.config)
        return JSONResponse(
            {
                "issuer": base_url,
                "authorization_endpoint": f"{base_url}/oauth/authorize",
                "token_endpoint": f"{base_url}/oauth/token",
                "registration_endpoint": f"{base_url}/oauth/register",
                "scopes_supported": [DEFAULT_SCOPE],
                "response_types_supported": ["code"],
                "response_modes_supported": ["query"],
                "grant_types_supported": ["authorization_code"],
                "token_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
                "code_challenge_methods_supported": list(pkce.SUPPORTED_METHODS),
                "resource_indicators_supported": True,
            }
        )

    # ------------------------------------------------------------------
    # Dynamic client registration
    # ------------------------------------------------------------------

    async def register(self, request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            raise OAuthError("invalid_client_metadata", "Request body must be a JSON object")
        if not isinstance(body, dict):
            raise OAuthError("invalid_client_metadata", "Request body must be a JSON object")

        client_name = body.get("client_name")
        redirect_uris = body.get("redirect_uris")
        auth_method = body.get("token_endpoint_auth_method") or "none"

        if not client_name or not isinstance(client_name, str):
            raise OAuthError("invalid_client_metadata", "client_name is required")

        if not redirect_uris or not isinstance(redirect_uris, list):
            raise OAuthError("invalid_redirect_uri", "redirect_uris must be a non-empty array")

        for uri in redirect_uris:
            if not is_valid_redirect_uri(uri):
                raise OAuthError("invalid_redirect_uri", f"Invalid redirect URI: {uri}")

        if auth_method not in TOKEN_ENDPOINT_AUTH_METHODS:
            raise OAuthError(
                "invalid_client_metadata",
                f"Unsupported token_endpoint_auth_method: {auth_method}",
            )

        registered = await run_in_threadpool(
            self.clients.register, client_name, redirect_uris, confidential=auth_method != "none"
        )

        payload: dict[str, Any] = {
            "client_id": registered.client_id,
            "client_id_issued_at": int(registered.client.created_at),
            "client_name": client_name,
            "redirect_uris": redirect_uris,
            "grant_types": ["authorization_code"],
            "response_types": ["code"],
            "token_endpoint_auth_method": auth_method,
        }
        if registered.client_secret:
            payload["client_secret"] = registered.client_secret
            payload["client_secret_expires_at"] = 0

        return JSONResponse(payload, status_code=201, headers={"Cache-Control": "no-store"})

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    def _check_redirect_target(self, params: AuthorizationRequest) -> Client:
        """Phase 1: failures here are answered directly, never redirected."""
        if not params.client_id:
            raise OAuthError("invalid_request", "Missing client_id")
        if not params.redirect_uri:
            raise OAuthError("invalid_request", "Missing redirect_uri")

        client = self.clients.get(params.client_id)
        if client is None:
            raise OAuthError("invalid_client", "Invalid client_id")
        if not self.clients.validate_redirect_uri(params.client_id, params.redirect_uri):
            raise OAuthError("invalid_request", "Invalid redirect_uri")
        return client

    @staticmethod
    def _check_request(params: AuthorizationRequest) -> None:
        """Phase 2: the redirect_uri is trusted now, so failures go back to the client."""
        if params.response_type != "code":
            raise OAuthError("unsupported_response_type", "Only code response type supported")
        if not params.code_challenge:
            raise OAuthError("invalid_request", "Missing code_challenge (PKCE required)")
        if params.code_challenge_method not in pkce.SUPPORTED_METHODS:
            raise OAuthError("invalid_request", "Invalid code_challenge_method")

    @staticmethod
    def _redirect(redirect_uri: str, params: dict[str, str]) -> Response:
        return RedirectResponse(add_query_params(redirect_uri, params), status_code=302)

    def _error_redirect(self, redirect_uri: str, error: OAuthError, state: str) -> Response:
        params = {"error": error.error, "error_description": error.description}
        if state:
            params["state"] = state
        return self._redirect(redirect_uri, params)

    async def authorize(self, request: Request) -> Response:
        if request.method == "GET":
            raw = _string_params(request.query_params)
        else:
            raw = _string_params(await request.form())
        params = AuthorizationRequest.from_params(raw)

        client = await run_in_threadpool(self._check_redirect_target, params)
        try:
            self._check_request(params)
        except OAuthError as e:
            logger.info(
                "Authorization request rejected",
                extra={"event_data": {"client_id": client.client_id, "error": e.error, "reason": e.description}},
            )
            return self._error_redirect(params.redirect_uri, e, params.state)

        user_id = resolve_login_identity(request.cookies.get(self.config.login_cookie_name), self.config)

        if request.method == "GET":
            if user_id is None:
                return self._login_redirect(request)
            return self._consent_page(request, client, params, user_id)

        if user_id is None:
            raise OAuthError("login_required", "User must be logged in", status_code=401)

        if raw.get("action") != "approve":
            logger.info(
                "Authorization denied by user",
                extra={"event_data": {"client_id": client.client_id, "user_id": user_id}},
            )
            return self._error_redirect(
                params.redirect_uri,
                OAuthError("access_denied", "User denied access"),
                params.state,
            )

        code = await run_in_threadpool(self._issue_authorization_code, params, user_id)
        redirect_params = {"code": code.code}
        if params.state:
            redirect_params["state"] = params.state
        return self._redirect(params.redirect_uri, redirect_params)

    def _login_redirect(self, request: Request) -> Response:
        # The host's login flow sends the user back to this exact URL,
        # query string included, once they are logged in.
        login_url = self.config.login_url
        if login_url.startswith("/"):
            login_url = public_base_url(request, self.config) + login_url
        target = add_query_params(login_url, {self.config.login_redirect_param: str(request.url)})
        return RedirectResponse(target, status_code=302)

    def _consent_page(
        self, request: Request, client: Client, params: AuthorizationRequest, user_id: str
    ) -> Response:
        hidden_fields = "\n".join(
            f'      <input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}">'
            for name, value in params.as_params().items()
        )
        page = _CONSENT_PAGE.substitute(
            client_name=html.escape(client.client_name),
            user_id=html.escape(user_id),
            scope=html.escape(params.scope),
            action=html.escape(request.url.path),
            hidden_fields=hidden_fields,
        )
        return HTMLResponse(page, headers={"Cache-Control": "no-store", "X-Frame-Options": "DENY"})

    def _issue_authorization_code(self, params: AuthorizationRequest, user_id: str) -> AuthorizationCode:
        now = time.time()
        code = AuthorizationCode(
            code=secrets.token_hex(32),
            client_id=params.client_id,
            user_id=user_id,
            redirect_uri=params.redirect_uri,
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
            scope=params.scope,
            expires_at=now + self.config.auth_code_lifetime,
            created_at=now,
        )
        self.store.put_authorization_code(code)
        logger.info(
            "Authorization code issued",
            extra={
                "event_data": {
                    "client_id": params.client_id,
                    "user_id": user_id,
                    "scope": params.scope,
                    "code_challenge_method": params.code_challenge_method,
                }
            },
        )
        return code

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    @staticmethod
    async def _token_params(request: Request) -> dict[str, str]:
        if request.headers.get("content-type", "").startswith("application/json"):
            try:
                body = await request.json()
            except ValueError:
                raise OAuthError("invalid_request", "Malformed JSON body")
            if not isinstance(body, dict):
                raise OAuthError("invalid_request", "Request body must be an object")
            return _string_params(body)
        return _string_params(await request.form())

    async def token(self, request: Request) -> Response:
        params = await self._token_params(request)

        grant_type = params.get("grant_type")
        code = params.get("code")
        redirect_uri = params.get("redirect_uri")
        client_id = params.get("client_id")
        client_secret = params.get("client_secret")
        code_verifier = params.get("code_verifier")

        if grant_type != "authorization_code":
            raise OAuthError("unsupported_grant_type", "Only authorization_code grant type is supported")

        if not code or not redirect_uri or not client_id or not code_verifier:
            raise OAuthError("invalid_request", "Missing required parameters")

        # Secret hashing and the store are blocking.
        payload = await run_in_threadpool(
            self._exchange_code, code, redirect_uri, client_id, client_secret, code_verifier
        )
        return JSONResponse(payload, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})

    def _exchange_code(
        self,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str | None,
        code_verifier: str,
    ) -> dict[str, Any]:
        if not self.clients.validate(client_id, client_secret):
            logger.warning("Token request with invalid client", extra={"event_data": {"client_id": client_id}})
            raise OAuthError("invalid_client", "Invalid client credentials", status_code=401)

        # Consume first: whatever happens next, this code can never be used again.
        record = self.store.consume_authorization_code(code, client_id)
        failure = self._grant_failure(record, redirect_uri, code_verifier)
        if failure is not None:
            logger.warning(
                "Token request rejected",
                extra={"event_data": {"client_id": client_id, "error": "invalid_grant", "reason": failure}},
            )
            raise OAuthError("invalid_grant", INVALID_GRANT_DESCRIPTION)

        now = time.time()
        access_token = AccessToken(
            token=secrets.token_hex(32),
            client_id=client_id,
            user_id=record.user_id,
            scope=record.scope,
            expires_at=now + self.config.access_token_lifetime,
            created_at=now,
        )
        self.store.put_access_token(access_token)

        logger.info(
            "Access token issued",
            extra={"event_data": {"client_id": client_id, "user_id": record.user_id, "scope": record.scope}},
        )
        return {
            "access_token": access_token.token,
            "token_type": "Bearer",
            "expires_in": self.config.access_token_lifetime,
            "scope": record.scope,
        }

    @staticmethod
    def _grant_failure(record: AuthorizationCode | None, redirect_uri: str, code_verifier: str) -> str | None:
        """Server-side reason a consumed code cannot be exchanged, or None if it can."""
        if record is None:
            return "code_not_found"
        if record.is_expired():
            return "code_expired"
        if record.redirect_uri != redirect_uri:
            return "redirect_uri_mismatch"
        if not pkce.verify(code_verifier, record.code_challenge, record.code_challenge_method):
            return "pkce_verification_failed"
        return None
