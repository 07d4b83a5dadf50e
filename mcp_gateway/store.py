"""
Durable storage for OAuth credentials and MCP sessions.

Two interchangeable backends implement the same interface:

- SQLiteStore: one SQLite file, a fresh connection per operation so that any
  worker thread may call it. Authorization-code consumption is a single
  ``DELETE ... RETURNING`` statement.
- MemoryStore: plain dicts guarded by a lock. Only suitable for a single
  process (development, tests).

The store exclusively owns the records; every other component goes through
these methods and never mutates a record itself (records are frozen
dataclasses).
"""

import json
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from mcp_gateway.config import Settings


class StoreError(Exception):
    """Raised when the underlying storage fails. Fatal to the current request only."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Client:
    """A registered OAuth client. Confidential clients always carry a secret hash."""

    client_id: str
    client_name: str
    redirect_uris: tuple[str, ...]
    client_secret_hash: str | None = None
    confidential: bool = False
    created_at: float = 0.0

    def __post_init__(self) -> None:
        if self.confidential != (self.client_secret_hash is not None):
            raise ValueError("confidential clients need a secret hash, public clients must not have one")


@dataclass(frozen=True)
class AuthorizationCode:
    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    scope: str
    expires_at: float
    created_at: float = 0.0

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)


@dataclass(frozen=True)
class AccessToken:
    token: str
    client_id: str
    user_id: str
    scope: str
    expires_at: float
    created_at: float = 0.0

    def is_expired(self, now: float | None = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)


@dataclass(frozen=True)
class Session:
    session_id: str
    created_at: float


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    def put_client(self, client: Client) -> None: ...

    def get_client(self, client_id: str) -> Client | None: ...

    def put_authorization_code(self, code: AuthorizationCode) -> None: ...

    def consume_authorization_code(self, code: str, client_id: str) -> AuthorizationCode | None:
        """Atomically fetch and delete a code. At most one caller ever gets the record."""
        ...

    def put_access_token(self, token: AccessToken) -> None: ...

    def get_access_token(self, token: str) -> AccessToken | None: ...

    def delete_access_token(self, token: str) -> None: ...

    def delete_expired_before(self, now: float) -> dict[str, int]: ...


class SessionStore(Protocol):
    def put_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Session | None: ...

    def delete_session(self, session_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS oauth_clients (
    client_id TEXT PRIMARY KEY,
    client_name TEXT NOT NULL,
    redirect_uris TEXT NOT NULL,
    client_secret_hash TEXT,
    confidential INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS oauth_codes (
    code TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    redirect_uri TEXT NOT NULL,
    code_challenge TEXT NOT NULL,
    code_challenge_method TEXT NOT NULL DEFAULT 'S256',
    scope TEXT NOT NULL DEFAULT '',
    expires_at REAL NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_oauth_codes_expires_at ON oauth_codes (expires_at);
CREATE TABLE IF NOT EXISTS oauth_tokens (
    token TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    scope TEXT NOT NULL DEFAULT '',
    expires_at REAL NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_oauth_tokens_expires_at ON oauth_tokens (expires_at);
CREATE TABLE IF NOT EXISTS mcp_sessions (
    session_id TEXT PRIMARY KEY,
    created_at REAL NOT NULL
);
"""

_CODE_COLUMNS = (
    "code, client_id, user_id, redirect_uri, code_challenge, "
    "code_challenge_method, scope, expires_at, created_at"
)


class SQLiteStore:
    """Credential and session store backed by a SQLite database file."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=30,
                isolation_level=None,  # autocommit: every statement is its own transaction
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StoreError(f"Could not open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Database operation failed: {e}") from e
        finally:
            conn.close()

    # --- clients ---

    def put_client(self, client: Client) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO oauth_clients "
                "(client_id, client_name, redirect_uris, client_secret_hash, confidential, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    client.client_id,
                    client.client_name,
                    json.dumps(list(client.redirect_uris)),
                    client.client_secret_hash,
                    int(client.confidential),
                    client.created_at,
                ),
            )

    def get_client(self, client_id: str) -> Client | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_clients WHERE client_id = ?", (client_id,)
            ).fetchone()
        if row is None:
            return None
        return Client(
            client_id=row["client_id"],
            client_name=row["client_name"],
            redirect_uris=tuple(json.loads(row["redirect_uris"])),
            client_secret_hash=row["client_secret_hash"],
            confidential=bool(row["confidential"]),
            created_at=row["created_at"],
        )

    # --- authorization codes ---

    def put_authorization_code(self, code: AuthorizationCode) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO oauth_codes ({_CODE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    code.code,
                    code.client_id,
                    code.user_id,
                    code.redirect_uri,
                    code.code_challenge,
                    code.code_challenge_method,
                    code.scope,
                    code.expires_at,
                    code.created_at,
                ),
            )

    def consume_authorization_code(self, code: str, client_id: str) -> AuthorizationCode | None:
        # One statement: SQLite's write lock guarantees that of two concurrent
        # callers only one sees the deleted row.
        with self._connect() as conn:
            rows = conn.execute(
                f"DELETE FROM oauth_codes WHERE code = ? AND client_id = ? RETURNING {_CODE_COLUMNS}",
                (code, client_id),
            ).fetchall()
        if not rows:
            return None
        return AuthorizationCode(**dict(rows[0]))

    # --- access tokens ---

    def put_access_token(self, token: AccessToken) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO oauth_tokens (token, client_id, user_id, scope, expires_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    token.token,
                    token.client_id,
                    token.user_id,
                    token.scope,
                    token.expires_at,
                    token.created_at,
                ),
            )

    def get_access_token(self, token: str) -> AccessToken | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token, client_id, user_id, scope, expires_at, created_at "
                "FROM oauth_tokens WHERE token = ?",
                (token,),
            ).fetchone()
        return AccessToken(**dict(row)) if row is not None else None

    def delete_access_token(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM oauth_tokens WHERE token = ?", (token,))

    def delete_expired_before(self, now: float) -> dict[str, int]:
        with self._connect() as conn:
            codes = conn.execute("DELETE FROM oauth_codes WHERE expires_at < ?", (now,)).rowcount
            tokens = conn.execute("DELETE FROM oauth_tokens WHERE expires_at < ?", (now,)).rowcount
        return {"authorization_codes": codes, "access_tokens": tokens}

    # --- sessions ---

    def put_session(self, session: Session) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO mcp_sessions (session_id, created_at) VALUES (?, ?)",
                (session.session_id, session.created_at),
            )

    def get_session(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT session_id, created_at FROM mcp_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return Session(**dict(row)) if row is not None else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM mcp_sessions WHERE session_id = ?", (session_id,)
            ).rowcount
        return deleted > 0


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStore:
    """
    Process-local store.

    Dicts have no delete-and-return primitive that is atomic across threads,
    so every operation takes the same lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: dict[str, Client] = {}
        self._codes: dict[str, AuthorizationCode] = {}
        self._tokens: dict[str, AccessToken] = {}
        self._sessions: dict[str, Session] = {}

    def put_client(self, client: Client) -> None:
        with self._lock:
            if client.client_id in self._clients:
                raise StoreError(f"Client {client.client_id} already exists")
            self._clients[client.client_id] = client

    def get_client(self, client_id: str) -> Client | None:
        with self._lock:
            return self._clients.get(client_id)

    def put_authorization_code(self, code: AuthorizationCode) -> None:
        with self._lock:
            self._codes[code.code] = code

    def consume_authorization_code(self, code: str, client_id: str) -> AuthorizationCode | None:
        with self._lock:
            record = self._codes.get(code)
            if record is None or record.client_id != client_id:
                return None
            del self._codes[code]
            return record

    def put_access_token(self, token: AccessToken) -> None:
        with self._lock:
            self._tokens[token.token] = token

    def get_access_token(self, token: str) -> AccessToken | None:
        with self._lock:
            return self._tokens.get(token)

    def delete_access_token(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def delete_expired_before(self, now: float) -> dict[str, int]:
        with self._lock:
            expired_codes = [c for c, rec in self._codes.items() if rec.expires_at < now]
            expired_tokens = [t for t, rec in self._tokens.items() if rec.expires_at < now]
            for c in expired_codes:
                del self._codes[c]
            for t in expired_tokens:
                del self._tokens[t]
        return {"authorization_codes": len(expired_codes), "access_tokens": len(expired_tokens)}

    def put_session(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


def create_store(config: Settings) -> SQLiteStore | MemoryStore:
    """Build the store selected by ``config.store_backend``."""
    if config.store_backend == "memory":
        return MemoryStore()
    return SQLiteStore(config.database_path)
