"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables (prefixed with MCP_) or a local .env file.

Examples:
- MCP_PORT=9000 changes the listening port
- MCP_PUBLIC_URL=https://cms.example.com fixes the issuer/resource URLs
  instead of deriving them from each request
- MCP_JWT_SECRET_KEY signs and verifies the host login cookie
- MCP_DATABASE_PATH=/var/lib/mcp/gateway.db moves the credential store
"""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Gateway configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `host` reads from MCP_HOST, `auth_code_lifetime` reads
    from MCP_AUTH_CODE_LIFETIME.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # Externally visible base URL (scheme + host, no trailing slash).
    # When unset, it is derived from the incoming request.
    public_url: str | None = None

    # Path of the MCP transport route.
    mcp_path: str = "/mcp"

    # Origins allowed to call the gateway from a browser (MCP Inspector etc.)
    cors_allow_origins: list[str] = ["*"]

    # --- MCP server identity ---

    server_name: str = "mcp-content-gateway"
    server_version: str = "0.1.0"
    instructions: str = (
        "Gateway to a content-management backend. Use the tools to read and "
        "modify content on behalf of the authorized user."
    )

    # --- Storage ---

    # "sqlite" persists to database_path; "memory" keeps everything in-process
    # (single worker only, useful for development and tests).
    store_backend: Literal["sqlite", "memory"] = "sqlite"
    database_path: Path = Path("mcp_gateway.db")

    # --- OAuth lifetimes (seconds) ---

    auth_code_lifetime: int = 600
    access_token_lifetime: int = 3600
    session_lifetime: int = 86400

    # --- Host login identity ---

    # The host platform marks a logged-in browser with a signed JWT cookie.
    # Default is for local development only - NEVER use this in production.
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    login_cookie_name: str = "mcp_login"

    # Where users without a login identity are sent from /oauth/authorize,
    # and the query parameter that carries the URL to come back to.
    login_url: str = "/login"
    login_redirect_param: str = "redirect_to"

    # --- Content backend (used by the rest_api tool) ---

    backend_url: str = "http://localhost:8000"
    backend_token: str | None = None
    backend_timeout: float = 30.0

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton instance used by the entry points.
# Components receive settings explicitly through create_app().
settings = Settings()
