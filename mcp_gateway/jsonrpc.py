"""
JSON-RPC 2.0 message model and dispatcher.

Inbound bodies are parsed once into one of four message types:

    Request       {"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {...}}
    Notification  {"jsonrpc": "2.0", "method": "notifications/initialized"}
    Response      {"jsonrpc": "2.0", "id": 1, "result": {...}}
    Error         {"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "..."}}

The Dispatcher routes Requests and Notifications to registered handlers.
Every Request gets exactly one Response or Error echoing its id verbatim;
Notifications never get a reply. Batches (JSON arrays) are rejected.

Handlers are plain callables ``handler(params, context)``. When a handler is
registered with a pydantic params model, ``params`` is an instance of that
model, validated before the handler runs.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from mcp.shared.exceptions import McpError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ErrorData,
)
from pydantic import BaseModel, ValidationError

from mcp_gateway.auth import Principal

logger = logging.getLogger("mcp-gateway.jsonrpc")

JSONRPC_VERSION = "2.0"

RequestId = str | int


@dataclass(frozen=True)
class Request:
    id: RequestId
    method: str
    params: dict[str, Any] | None = None


@dataclass(frozen=True)
class Notification:
    method: str
    params: dict[str, Any] | None = None


@dataclass(frozen=True)
class Response:
    id: RequestId | None
    result: Any

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.result, BaseModel):
            result = self.result.model_dump(by_alias=True, exclude_none=True, mode="json")
        elif self.result is None:
            result = {}
        else:
            result = self.result
        return {"jsonrpc": JSONRPC_VERSION, "id": self.id, "result": result}


@dataclass(frozen=True)
class Error:
    id: RequestId | None
    error: ErrorData

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "error": self.error.model_dump(exclude_none=True, mode="json"),
        }


Message = Request | Notification | Response | Error


@dataclass
class RequestContext:
    """Per-call context handed to every handler."""

    principal: Principal | None = None
    session_id: str | None = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])


class InvalidMessage(Exception):
    """The body is not a JSON-RPC message we can dispatch."""

    def __init__(self, code: int, message: str, request_id: RequestId | None = None):
        self.code = code
        self.message = message
        self.request_id = request_id
        super().__init__(message)


def _valid_id(value: Any) -> bool:
    # bool is a subclass of int but is not a legal id
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def parse_message(payload: Any) -> Message:
    """
    Classify a decoded JSON body.

    Raises:
        InvalidMessage: For batches, non-objects, wrong version or envelopes
            that are neither request, notification, response nor error.
    """
    if isinstance(payload, list):
        raise InvalidMessage(INVALID_REQUEST, "Batch requests are not supported")
    if not isinstance(payload, dict):
        raise InvalidMessage(INVALID_REQUEST, "Invalid JSON-RPC message structure.")

    raw_id = payload.get("id")
    request_id = raw_id if _valid_id(raw_id) else None

    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise InvalidMessage(INVALID_REQUEST, "jsonrpc must be exactly \"2.0\"", request_id)

    if "method" in payload:
        method = payload["method"]
        if not isinstance(method, str) or not method:
            raise InvalidMessage(INVALID_REQUEST, "method must be a non-empty string", request_id)

        params = payload.get("params")
        if "id" in payload:
            if request_id is None:
                raise InvalidMessage(INVALID_REQUEST, "id must be a string or an integer")
            if params is not None and not isinstance(params, dict):
                raise InvalidMessage(INVALID_PARAMS, "params must be an object", request_id)
            return Request(id=request_id, method=method, params=params)

        if params is not None and not isinstance(params, dict):
            raise InvalidMessage(INVALID_REQUEST, "params must be an object")
        return Notification(method=method, params=params)

    if "error" in payload:
        error = payload["error"]
        if not isinstance(error, dict):
            raise InvalidMessage(INVALID_REQUEST, "error must be an object", request_id)
        try:
            error_data = ErrorData.model_validate(error)
        except ValidationError:
            raise InvalidMessage(INVALID_REQUEST, "error must carry a code and a message", request_id)
        return Error(id=request_id, error=error_data)

    if "result" in payload:
        return Response(id=request_id, result=payload["result"])

    raise InvalidMessage(INVALID_REQUEST, "Invalid JSON-RPC message structure.", request_id)


def decode_body(body: bytes) -> Any:
    """Decode a request body as JSON, mapping failures to a parse error."""
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidMessage(PARSE_ERROR, f"Parse error: {e}")


@dataclass(frozen=True)
class _Route:
    handler: Callable[..., Any]
    params_model: type[BaseModel] | None


class Dispatcher:
    """Method table for requests plus a separate table for notifications."""

    def __init__(self) -> None:
        self._handlers: dict[str, _Route] = {}
        self._notification_handlers: dict[str, Callable[..., Any]] = {}

    def register(
        self,
        method: str,
        handler: Callable[..., Any],
        params_model: type[BaseModel] | None = None,
    ) -> None:
        if method in self._handlers:
            raise ValueError(f"Handler for {method} is already registered")
        self._handlers[method] = _Route(handler=handler, params_model=params_model)

    def register_notification(self, method: str, handler: Callable[..., Any]) -> None:
        self._notification_handlers[method] = handler

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    def handle(self, payload: Any, context: RequestContext) -> Response | Error | None:
        """Parse and dispatch a decoded body. Returns None when no reply is due."""
        try:
            message = parse_message(payload)
        except InvalidMessage as e:
            logger.warning(
                "Rejected JSON-RPC message",
                extra={"event_data": {"request_id": context.request_id, "reason": e.message}},
            )
            return Error(id=e.request_id, error=ErrorData(code=e.code, message=e.message))
        return self.dispatch(message, context)

    def dispatch(self, message: Message, context: RequestContext) -> Response | Error | None:
        if isinstance(message, Request):
            return self._process_request(message, context)
        if isinstance(message, Notification):
            self._process_notification(message, context)
            return None

        # The server never sends requests, so it does not expect results or errors.
        logger.warning(
            "Received unexpected message type",
            extra={
                "event_data": {
                    "request_id": context.request_id,
                    "message_type": type(message).__name__,
                    "id": message.id,
                }
            },
        )
        return None

    def _process_request(self, request: Request, context: RequestContext) -> Response | Error:
        route = self._handlers.get(request.method)
        if route is None:
            logger.info(
                "Method not found",
                extra={"event_data": {"request_id": context.request_id, "method": request.method}},
            )
            return Error(
                id=request.id,
                error=ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )

        params: Any = request.params
        if route.params_model is not None:
            try:
                params = route.params_model.model_validate(request.params or {})
            except ValidationError as e:
                return Error(
                    id=request.id,
                    error=ErrorData(
                        code=INVALID_PARAMS,
                        message=f"Invalid params for {request.method}",
                        data=e.errors(include_url=False, include_context=False),
                    ),
                )

        try:
            result = route.handler(params, context)
        except McpError as e:
            return Error(id=request.id, error=e.error)
        except Exception as e:
            logger.error(
                "Error handling message",
                exc_info=True,
                extra={"event_data": {"request_id": context.request_id, "method": request.method}},
            )
            return Error(id=request.id, error=ErrorData(code=INTERNAL_ERROR, message=str(e)))

        logger.debug(
            "Request handled",
            extra={"event_data": {"request_id": context.request_id, "method": request.method}},
        )
        return Response(id=request.id, result=result)

    def _process_notification(self, notification: Notification, context: RequestContext) -> None:
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            logger.warning(
                "No handler registered for notification method",
                extra={"event_data": {"request_id": context.request_id, "method": notification.method}},
            )
            return
        try:
            handler(notification.params, context)
        except Exception:
            # the sender is not waiting for an answer, so the failure stays server-side
            logger.error(
                "Notification handler failed",
                exc_info=True,
                extra={"event_data": {"request_id": context.request_id, "method": notification.method}},
            )
