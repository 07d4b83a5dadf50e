"""
MCP session management.

A session is a transport-level handle created when a client completes
``initialize``. It carries no permissions (every request still needs its own
bearer token); its only purpose is to let a client terminate the
conversation explicitly with ``DELETE``.

The session id travels in the ``mcp_session_id`` cookie. The
``Mcp-Session-Id`` header is still set and read for older clients.
"""

import logging
import time
import uuid

from starlette.requests import Request
from starlette.responses import Response

from mcp_gateway.store import Session, SessionStore

logger = logging.getLogger("mcp-gateway.sessions")

SESSION_COOKIE_NAME = "mcp_session_id"
SESSION_ID_HEADER = "Mcp-Session-Id"


class SessionManager:
    def __init__(self, store: SessionStore, lifetime: int = 86400):
        self.store = store
        self.lifetime = lifetime

    def create(self) -> Session:
        session = Session(session_id=str(uuid.uuid4()), created_at=time.time())
        self.store.put_session(session)
        logger.info("Session created", extra={"event_data": {"session_id": session.session_id}})
        return session

    def lookup(self, session_id: str) -> Session | None:
        if not session_id:
            return None
        return self.store.get_session(session_id)

    def terminate(self, session_id: str) -> bool:
        deleted = self.store.delete_session(session_id)
        if deleted:
            logger.info("Session terminated", extra={"event_data": {"session_id": session_id}})
        return deleted

    # --- HTTP helpers ---

    @staticmethod
    def session_id_from_request(request: Request) -> str:
        """Cookie first, header as fallback. Empty string when neither is present."""
        cookie_value = request.cookies.get(SESSION_COOKIE_NAME)
        if cookie_value:
            return cookie_value
        return request.headers.get(SESSION_ID_HEADER, "")

    def attach(self, response: Response, session: Session, secure: bool) -> None:
        """Hand the session id to the client as cookie and header."""
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session.session_id,
            max_age=self.lifetime,
            expires=self.lifetime,
            path="/",
            secure=secure,
            httponly=True,
            samesite="Lax",
        )
        response.headers[SESSION_ID_HEADER] = session.session_id

    @staticmethod
    def clear(response: Response) -> None:
        response.delete_cookie(SESSION_COOKIE_NAME, path="/", httponly=True, samesite="Lax")
