"""MCP method handlers registered on the JSON-RPC dispatcher."""

import logging
from collections.abc import Callable
from typing import Any

from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    EmptyResult,
    ErrorData,
    Implementation,
    InitializeResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    ReadResourceResult,
    Resource,
    ResourcesCapability,
    ResourceTemplate,
    ServerCapabilities,
    TextResourceContents,
    ToolsCapability,
)
from pydantic import BaseModel, ConfigDict, Field

from mcp_gateway.jsonrpc import Dispatcher, RequestContext
from mcp_gateway.tools import ToolRegistry

logger = logging.getLogger("mcp-gateway.handlers")


class InitializeParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    protocolVersion: str | int | None = None
    capabilities: dict[str, Any] = Field(default_factory=dict)
    clientInfo: dict[str, Any] | None = None


class PaginatedParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    cursor: str | None = None


class CallToolParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    arguments: dict[str, Any] | None = None


class ReadResourceParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    uri: str


ResourceReader = Callable[[RequestContext], str]


class McpHandlers:
    """
    The MCP surface of the gateway.

    Tools come from the ToolRegistry. Resources are optional: nothing is
    registered by default, in which case resources/list is simply empty.
    """

    def __init__(
        self,
        tools: ToolRegistry,
        server_name: str,
        server_version: str,
        instructions: str | None = None,
    ):
        self.tools = tools
        self.server_name = server_name
        self.server_version = server_version
        self.instructions = instructions
        self._resources: dict[str, tuple[Resource, ResourceReader]] = {}
        self._resource_templates: dict[str, ResourceTemplate] = {}

    def register_resource(self, resource: Resource, reader: ResourceReader) -> None:
        self._resources[str(resource.uri)] = (resource, reader)

    def register_resource_template(self, template: ResourceTemplate) -> None:
        self._resource_templates[template.name] = template

    def install(self, dispatcher: Dispatcher) -> None:
        dispatcher.register("initialize", self.initialize, InitializeParams)
        dispatcher.register("ping", self.ping)
        dispatcher.register("tools/list", self.list_tools, PaginatedParams)
        dispatcher.register("tools/call", self.call_tool, CallToolParams)
        dispatcher.register("resources/list", self.list_resources, PaginatedParams)
        dispatcher.register("resources/read", self.read_resource, ReadResourceParams)
        dispatcher.register("resources/templates/list", self.list_resource_templates, PaginatedParams)
        dispatcher.register_notification("notifications/initialized", self.on_initialized)
        dispatcher.register_notification("notifications/cancelled", self.on_cancelled)

    # --- requests ---

    def initialize(self, params: InitializeParams, context: RequestContext) -> InitializeResult:
        requested = str(params.protocolVersion) if params.protocolVersion is not None else None
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION

        logger.info(
            "Client initializing",
            extra={
                "event_data": {
                    "request_id": context.request_id,
                    "client_info": params.clientInfo,
                    "requested_version": requested,
                    "negotiated_version": version,
                }
            },
        )
        return InitializeResult(
            protocolVersion=version,
            capabilities=ServerCapabilities(
                tools=ToolsCapability(listChanged=False),
                resources=ResourcesCapability(subscribe=False, listChanged=False),
            ),
            serverInfo=Implementation(name=self.server_name, version=self.server_version),
            instructions=self.instructions,
        )

    def ping(self, params: Any, context: RequestContext) -> EmptyResult:
        return EmptyResult()

    # Lists are returned whole; a cursor is accepted and ignored.
    def list_tools(self, params: PaginatedParams, context: RequestContext) -> ListToolsResult:
        return ListToolsResult(tools=self.tools.list())

    def call_tool(self, params: CallToolParams, context: RequestContext):
        return self.tools.call(params.name, params.arguments, context)

    def list_resources(self, params: PaginatedParams, context: RequestContext) -> ListResourcesResult:
        return ListResourcesResult(resources=[resource for resource, _ in self._resources.values()])

    def list_resource_templates(
        self, params: PaginatedParams, context: RequestContext
    ) -> ListResourceTemplatesResult:
        return ListResourceTemplatesResult(resourceTemplates=list(self._resource_templates.values()))

    def read_resource(self, params: ReadResourceParams, context: RequestContext) -> ReadResourceResult:
        entry = self._resources.get(params.uri)
        if entry is None:
            raise McpError(ErrorData(code=INVALID_PARAMS, message=f"Unknown resource: {params.uri}"))
        resource, reader = entry
        return ReadResourceResult(
            contents=[
                TextResourceContents(
                    uri=resource.uri,
                    mimeType=resource.mimeType or "text/plain",
                    text=reader(context),
                )
            ]
        )

    # --- notifications ---

    def on_initialized(self, params: dict[str, Any] | None, context: RequestContext) -> None:
        logger.debug("Client initialized", extra={"event_data": {"request_id": context.request_id}})

    def on_cancelled(self, params: dict[str, Any] | None, context: RequestContext) -> None:
        # Requests run to completion; there is nothing to cancel.
        logger.info(
            "Cancellation requested but not supported",
            extra={"event_data": {"request_id": context.request_id, "params": params}},
        )
