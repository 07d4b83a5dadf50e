"""
Tool registry and the content-backend tool.

The registry is the boundary between the MCP transport and the tools it
exposes. It offers two operations:

    list()                           -> [Tool(name, description, inputSchema, annotations)]
    call(name, arguments, context)   -> CallToolResult

Each tool declares a pydantic model for its arguments. The model provides the
JSON Schema advertised in tools/list and validates the arguments of
tools/call before the tool function runs.

Tool names and argument names must match ``^[a-zA-Z0-9_-]{1,64}$``; some LLM
providers refuse anything else.

Failure modes of tools/call:
- unknown tool or invalid arguments: McpError (-32602), the call never ran
- the tool raised: CallToolResult with isError=true, so the model can see
  what went wrong and react
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, CallToolResult, ErrorData, TextContent, Tool, ToolAnnotations
from pydantic import BaseModel, Field, ValidationError

from mcp_gateway.config import Settings
from mcp_gateway.jsonrpc import RequestContext

logger = logging.getLogger("mcp-gateway.tools")

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

ToolHandler = Callable[[Any, RequestContext], Any]


class ToolError(Exception):
    """A tool failed in a way the caller should see as a tool result."""


@dataclass(frozen=True)
class RegisteredTool:
    tool: Tool
    arguments_model: type[BaseModel]
    handler: ToolHandler


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._closers: list[Callable[[], None]] = []

    def register(
        self,
        name: str,
        description: str,
        arguments_model: type[BaseModel],
        handler: ToolHandler,
        annotations: ToolAnnotations | None = None,
    ) -> None:
        if not NAME_PATTERN.match(name):
            raise ValueError(f"Tool names should match pattern '{NAME_PATTERN.pattern}'. Received: '{name}'.")
        if name in self._tools:
            raise ValueError(f"Tool {name} is already registered")

        schema = arguments_model.model_json_schema()
        for prop in schema.get("properties", {}):
            if not NAME_PATTERN.match(prop):
                raise ValueError(
                    f"Property keys should match pattern '{NAME_PATTERN.pattern}'. "
                    f"Received: '{prop}' (tool: {name})."
                )

        self._tools[name] = RegisteredTool(
            tool=Tool(name=name, description=description, inputSchema=schema, annotations=annotations),
            arguments_model=arguments_model,
            handler=handler,
        )

    def tool(
        self,
        name: str,
        description: str,
        arguments_model: type[BaseModel],
        annotations: ToolAnnotations | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of register()."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(name, description, arguments_model, func, annotations)
            return func

        return decorator

    def on_close(self, closer: Callable[[], None]) -> None:
        """Register cleanup for resources the tools hold (HTTP clients, ...)."""
        self._closers.append(closer)

    def close(self) -> None:
        for closer in self._closers:
            closer()
        self._closers.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def list(self) -> list[Tool]:
        return [registered.tool for registered in self._tools.values()]

    def call(self, name: str, arguments: dict[str, Any] | None, context: RequestContext) -> CallToolResult:
        registered = self._tools.get(name)
        if registered is None:
            raise McpError(ErrorData(code=INVALID_PARAMS, message=f"Unknown tool: {name}"))

        try:
            parsed = registered.arguments_model.model_validate(arguments or {})
        except ValidationError as e:
            raise McpError(
                ErrorData(
                    code=INVALID_PARAMS,
                    message=f"Invalid arguments for tool {name}",
                    data=e.errors(include_url=False, include_context=False),
                )
            )

        user_id = context.principal.user_id if context.principal else None
        try:
            result = registered.handler(parsed, context)
        except ToolError as e:
            logger.warning(
                "Tool call failed",
                extra={"event_data": {"request_id": context.request_id, "tool": name, "user_id": user_id, "error": str(e)}},
            )
            return CallToolResult(content=[TextContent(type="text", text=str(e))], isError=True)

        logger.info(
            "Tool executed",
            extra={"event_data": {"request_id": context.request_id, "tool": name, "user_id": user_id}},
        )
        return _to_result(result)


def _to_result(result: Any) -> CallToolResult:
    if isinstance(result, CallToolResult):
        return result
    if isinstance(result, str):
        text = result
    else:
        text = json.dumps(result, indent=2, default=str)
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=False)


# ---------------------------------------------------------------------------
# Content backend
# ---------------------------------------------------------------------------


class RestApiArguments(BaseModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = Field(
        default="GET", description="HTTP method to use."
    )
    path: str = Field(description="Path relative to the REST API root, e.g. /wp/v2/posts.")
    body: dict[str, Any] | None = Field(default=None, description="JSON body for POST, PUT and PATCH.")


class BackendClient:
    """Thin httpx wrapper around the content backend's REST API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def request(self, method: str, path: str, user_id: str | None, body: dict[str, Any] | None = None) -> Any:
        if not path.startswith("/") or path.startswith("//") or "://" in path:
            raise ToolError(f"Path must be relative to the REST API root: {path}")

        headers = {"X-MCP-User": user_id} if user_id else {}
        try:
            response = self._client.request(
                method,
                path,
                json=body if method in ("POST", "PUT", "PATCH") else None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise ToolError(f"Backend request failed: {e}") from e

        if response.is_error:
            raise ToolError(f"Backend returned {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError:
            return response.text

    def close(self) -> None:
        self._client.close()


def register_rest_api_tool(registry: ToolRegistry, backend: BackendClient) -> None:
    def rest_api(args: RestApiArguments, context: RequestContext) -> Any:
        user_id = context.principal.user_id if context.principal else None
        return backend.request(args.method, args.path, user_id, args.body)

    registry.register(
        "rest_api",
        "Call the content backend's REST API on behalf of the authorized user.",
        RestApiArguments,
        rest_api,
        annotations=ToolAnnotations(
            title="REST API request",
            readOnlyHint=False,
            destructiveHint=True,
            openWorldHint=False,
        ),
    )


def create_tool_registry(config: Settings, transport: httpx.BaseTransport | None = None) -> ToolRegistry:
    """The default tool set: the content backend's REST API."""
    registry = ToolRegistry()
    backend = BackendClient(
        config.backend_url,
        token=config.backend_token,
        timeout=config.backend_timeout,
        transport=transport,
    )
    register_rest_api_tool(registry, backend)
    registry.on_close(backend.close)
    return registry
