"""
Bearer token authentication and host login identity.

Two different identities meet in this module:

- **Bearer tokens** protect the MCP transport. They are opaque strings minted
  by our own token endpoint and looked up in the credential store on every
  request. A valid token resolves to a Principal (user, client, scopes) that
  travels with the request; nothing downstream looks the identity up again.

- **Login identity** is how the host platform tells the authorization
  endpoint which user is sitting at the browser. The host sets a signed JWT
  cookie (HS256 by default); we only verify it and read its "sub" claim.

Both paths fail closed: any validation problem means "not authenticated".
"""

import logging
from dataclasses import dataclass

import jwt

from mcp_gateway.config import Settings
from mcp_gateway.store import CredentialStore

logger = logging.getLogger("mcp-gateway.auth")


class AuthError(Exception):
    """
    Raised when bearer authentication fails for any reason.

    A single exception type covers missing header, bad format, unknown token
    and expired token. The detailed reason is logged server-side; clients only
    learn that the token was not accepted.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class Principal:
    """
    The identity a validated access token resolves to.

    Attributes:
        user_id: The host user who approved the authorization
        client_id: The OAuth client the token was issued to
        scopes: Granted scopes (space-separated in the token record)
    """

    user_id: str
    client_id: str
    scopes: list[str]


def extract_bearer_token(authorization_header: str | None) -> str:
    """
    Pull the token out of an ``Authorization: Bearer <token>`` header.

    The scheme is matched case-insensitively per RFC 6750.

    Raises:
        AuthError: If the header is missing or not a Bearer credential
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    return parts[1].strip()


class BearerAuthenticator:
    """Resolves bearer tokens issued by the token endpoint to a Principal."""

    def __init__(self, store: CredentialStore):
        self.store = store

    def authenticate(self, authorization_header: str | None, request_id: str = "-") -> Principal:
        """
        Validate a Bearer token from the Authorization header.

        1. Check that a header is present and uses the Bearer scheme
        2. Look the token up in the credential store
        3. Treat expired tokens as absent (the cleanup sweep removes them later)

        Raises:
            AuthError: If any validation step fails
        """
        try:
            token = extract_bearer_token(authorization_header)

            record = self.store.get_access_token(token)
            if record is None:
                raise AuthError("Unknown access token")
            if record.is_expired():
                raise AuthError("Access token has expired")
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "event_data": {
                        "request_id": request_id,
                        "decision": "denied",
                        "reason": e.message,
                    }
                },
            )
            raise

        principal = Principal(
            user_id=record.user_id,
            client_id=record.client_id,
            scopes=record.scope.split(),
        )
        logger.info(
            "Authentication succeeded",
            extra={
                "event_data": {
                    "request_id": request_id,
                    "user_id": principal.user_id,
                    "client_id": principal.client_id,
                    "decision": "allowed",
                }
            },
        )
        return principal


def validate_login_token(token: str | None, config: Settings) -> str:
    """
    Verify the host login cookie and return the user id it names.

    PyJWT verifies the signature and the "exp" claim; we additionally require
    a non-empty "sub".

    Raises:
        AuthError: If the cookie is missing, forged, expired or lacks a subject
    """
    if not token:
        raise AuthError("Missing login cookie")

    try:
        payload = jwt.decode(
            token,
            config.jwt_secret_key,
            algorithms=[config.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Login has expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid login token: {e}")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthError("Invalid login token: empty subject")
    return subject


def resolve_login_identity(cookie_value: str | None, config: Settings) -> str | None:
    """Return the logged-in user id, or None when the browser is not logged in."""
    try:
        return validate_login_token(cookie_value, config)
    except AuthError as e:
        if cookie_value:
            logger.info("Ignoring login cookie", extra={"event_data": {"reason": e.message}})
        return None
