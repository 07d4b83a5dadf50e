"""
OAuth client registry (RFC 7591-style dynamic registration).

Clients are created once and never updated. A confidential client receives a
secret at registration time; only a salted PBKDF2 hash of it is stored, so the
plaintext cannot be recovered afterwards.
"""

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from urllib.parse import urlsplit

from mcp_gateway.store import Client, CredentialStore

logger = logging.getLogger("mcp-gateway.clients")

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

_HASH_ALGORITHM = "pbkdf2_sha256"
_HASH_ITERATIONS = 200_000


def hash_secret(secret: str, iterations: int = _HASH_ITERATIONS) -> str:
    """Return ``pbkdf2_sha256$<iterations>$<salt>$<hex digest>`` for a client secret."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{_HASH_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_secret(secret: str, stored_hash: str) -> bool:
    try:
        algorithm, iterations, salt, expected = stored_hash.split("$")
        rounds = int(iterations)
    except ValueError:
        logger.error("Unreadable client secret hash")
        return False
    if algorithm != _HASH_ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("ascii"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def is_valid_redirect_uri(uri: str) -> bool:
    """
    Registration-time check for a redirect URI.

    Accepts https URIs, and plain http only for loopback hosts (local
    development and native apps). Fragments are never allowed.
    """
    if not isinstance(uri, str) or not uri:
        return False
    try:
        parts = urlsplit(uri)
        hostname = parts.hostname
    except ValueError:
        return False
    if parts.fragment or not hostname:
        return False
    if parts.scheme == "https":
        return True
    return parts.scheme == "http" and hostname in LOOPBACK_HOSTS


@dataclass(frozen=True)
class RegisteredClient:
    """Result of a registration. ``client_secret`` is only ever available here."""

    client: Client
    client_secret: str | None

    @property
    def client_id(self) -> str:
        return self.client.client_id


class ClientRegistry:
    def __init__(self, store: CredentialStore):
        self.store = store

    def register(
        self,
        client_name: str,
        redirect_uris: list[str],
        confidential: bool = False,
    ) -> RegisteredClient:
        client_secret = secrets.token_hex(32) if confidential else None
        client = Client(
            client_id=secrets.token_hex(16),
            client_name=client_name,
            redirect_uris=tuple(redirect_uris),
            client_secret_hash=hash_secret(client_secret) if client_secret else None,
            confidential=confidential,
            created_at=time.time(),
        )
        self.store.put_client(client)

        logger.info(
            "OAuth client registered",
            extra={
                "event_data": {
                    "client_id": client.client_id,
                    "client_name": client_name,
                    "confidential": confidential,
                    "redirect_uris": list(redirect_uris),
                }
            },
        )
        return RegisteredClient(client=client, client_secret=client_secret)

    def get(self, client_id: str) -> Client | None:
        return self.store.get_client(client_id)

    def validate(self, client_id: str, client_secret: str | None = None) -> bool:
        """
        Validate client credentials.

        A client with a stored secret hash must present the matching secret.
        A client without one is public and is accepted on its id alone.
        """
        client = self.store.get_client(client_id)
        if client is None:
            return False

        if client.client_secret_hash is not None:
            if not client_secret:
                return False
            return verify_secret(client_secret, client.client_secret_hash)

        return True

    def validate_redirect_uri(self, client_id: str, redirect_uri: str) -> bool:
        """Exact string match against the registered set. No normalization."""
        client = self.store.get_client(client_id)
        if client is None:
            return False
        return redirect_uri in client.redirect_uris
