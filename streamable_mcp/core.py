import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Literal, get_args

import mcp.types as types
from mcp.server.fastmcp import FastMCP
from mcp.server.lowlevel import Server
from mcp.server.lowlevel.server import LifespanResultT
from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import AnyFunction, ContentBlock, Tool

__all__ = ["CLIENT_REQUEST_METHODS", "LogLevel", "StreamableMCP"]

logger = logging.getLogger(__name__)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _method_names(message_types: Any) -> frozenset[str]:
    names: set[str] = set()
    for message_type in get_args(message_types):
        names.update(get_args(message_type.model_fields["method"].annotation))
    return frozenset(names)


# Methods a client may call, known to the protocol models
CLIENT_REQUEST_METHODS = _method_names(types.ClientRequestType)


class StreamableMCP:
    """Registry of tools, resources and prompts served over streamable HTTP."""

    def __init__(
        self,
        name: str | None = None,
        version: str | None = None,
        instructions: str | None = None,
        debug: bool = False,
        log_level: LogLevel = "INFO",
        warn_on_duplicate_resources: bool = True,
        warn_on_duplicate_tools: bool = True,
        warn_on_duplicate_prompts: bool = True,
        lifespan: Callable[[FastMCP], AbstractAsyncContextManager[LifespanResultT]] | None = None,
    ) -> None:
        self._fastmcp = FastMCP(
            name=name,
            instructions=instructions,
            debug=debug,
            log_level=log_level,
            warn_on_duplicate_resources=warn_on_duplicate_resources,
            warn_on_duplicate_tools=warn_on_duplicate_tools,
            warn_on_duplicate_prompts=warn_on_duplicate_prompts,
            lifespan=lifespan,
        )
        if version is not None:
            self._fastmcp._mcp_server.version = version

    @property
    def server(self) -> Server[Any]:
        return self._fastmcp._mcp_server

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def version(self) -> str:
        return self.server.create_initialization_options().server_version

    def tool(self, name: str | None = None, description: str | None = None) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.tool(name, description=description)

    def resource(
        self,
        uri: str,
        *,
        name: str | None = None,
        description: str | None = None,
        mime_type: str | None = None,
    ) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.resource(uri, name=name, description=description, mime_type=mime_type)

    def prompt(self, name: str | None = None, description: str | None = None) -> Callable[[AnyFunction], AnyFunction]:
        return self._fastmcp.prompt(name, description=description)

    async def list_tools(self) -> list[Tool]:
        """List all available tools."""
        return await self._fastmcp.list_tools()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Sequence[ContentBlock] | dict[str, Any]:
        """Call a tool by name with arguments."""
        return await self._fastmcp.call_tool(name, arguments)

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator[Any]:
        """Enter the server lifespan. Yields the lifespan context handed to tools."""
        async with self.server.lifespan(self.server) as context:
            yield context

    def negotiate_protocol_version(self, requested: str) -> str:
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            return requested
        logger.info(
            "Client requested unsupported protocol version %s, offering %s", requested, types.LATEST_PROTOCOL_VERSION
        )
        return types.LATEST_PROTOCOL_VERSION

    def initialize_result(self, params: types.InitializeRequestParams) -> types.InitializeResult:
        options = self.server.create_initialization_options()
        return types.InitializeResult(
            protocolVersion=self.negotiate_protocol_version(params.protocolVersion),
            capabilities=options.capabilities,
            serverInfo=types.Implementation(
                name=options.server_name,
                version=options.server_version,
                websiteUrl=options.website_url,
                icons=options.icons,
            ),
            instructions=options.instructions,
        )

    def parse_request(self, request: types.JSONRPCRequest) -> types.ClientRequest:
        """Validate a raw JSON-RPC request into a typed client request.

        Raises:
            McpError: METHOD_NOT_FOUND for methods outside the protocol,
                INVALID_PARAMS for known methods with bad parameters.
        """
        if request.method not in CLIENT_REQUEST_METHODS:
            raise McpError(types.ErrorData(code=types.METHOD_NOT_FOUND, message=f"Method not found: {request.method}"))
        try:
            return types.ClientRequest.model_validate(request.model_dump(by_alias=True, mode="json", exclude_none=True))
        except ValueError as e:
            raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message=f"Invalid params: {e}")) from e

    async def handle_request(self, request: types.ClientRequest) -> types.ServerResult:
        handler = self.server.request_handlers.get(type(request.root))
        if handler is None:
            message = f"Method not found: {request.root.method}"
            raise McpError(types.ErrorData(code=types.METHOD_NOT_FOUND, message=message))
        return await handler(request.root)

    async def handle_notification(self, notification: types.ClientNotification) -> None:
        handler = self.server.notification_handlers.get(type(notification.root))
        if handler is None:
            logger.debug("No handler for notification %s", notification.root.method)
            return
        await handler(notification.root)
