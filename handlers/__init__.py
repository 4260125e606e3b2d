"""Tool handlers and the registry that attaches them to each session's server."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, CallToolResult, ErrorData, Resource, Tool
from pydantic import AnyUrl

from widget_bundler import WidgetBundler

from .greeting import GreetingHandler
from .saju import SAJU_API_URL, SajuHandler
from .widgets import WidgetHandler, error_result

logger = logging.getLogger("tool-registry")

__all__ = [
    "GreetingHandler",
    "SajuHandler",
    "ToolRegistry",
    "WidgetHandler",
    "default_registry",
]


class ToolRegistry:
    """Attach the tools and widget resources of several handlers to a server.

    ``register`` is called once for every new session, before the server is
    connected to its transport, so capability negotiation sees every handler.
    """

    def __init__(self, handlers: Sequence[WidgetHandler]) -> None:
        self.handlers = list(handlers)
        self._tool_owners: Dict[str, WidgetHandler] = {}
        for handler in self.handlers:
            for name in handler.tool_names():
                if name in self._tool_owners:
                    raise ValueError(f"Tool {name!r} registered by more than one handler")
                self._tool_owners[name] = handler

    def list_tools(self) -> List[Tool]:
        return [tool for handler in self.handlers for tool in handler.list_tools()]

    def list_resources(self) -> List[Resource]:
        return [resource for handler in self.handlers for resource in handler.list_resources()]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> CallToolResult:
        handler = self._tool_owners.get(name)
        if handler is None:
            return error_result(f"Unknown tool: {name}")
        return await handler.call_tool(name, arguments or {})

    async def read_resource(self, uri: str) -> ReadResourceContents:
        for handler in self.handlers:
            contents = await handler.read_resource(uri)
            if contents is not None:
                return contents
        raise McpError(ErrorData(code=INVALID_PARAMS, message=f"Unknown resource: {uri}"))

    async def register(self, server: Server) -> None:
        @server.list_tools()
        async def list_tools() -> List[Tool]:
            return self.list_tools()

        @server.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> CallToolResult:
            return await self.call_tool(name, arguments)

        @server.list_resources()
        async def list_resources() -> List[Resource]:
            return self.list_resources()

        @server.read_resource()
        async def read_resource(uri: AnyUrl) -> Iterable[ReadResourceContents]:
            return [await self.read_resource(str(uri))]

        logger.debug(
            "Registered %d tools and %d resources on %s",
            len(self._tool_owners),
            sum(len(handler.widgets) for handler in self.handlers),
            server.name,
        )


def default_registry(
    bundler: WidgetBundler,
    *,
    saju_api_url: str = SAJU_API_URL,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ToolRegistry:
    """Greeting, calculator and saju widgets, all served from ``bundler``'s source host."""
    return ToolRegistry(
        [
            GreetingHandler(bundler),
            SajuHandler(bundler, api_url=saju_api_url, client=http_client),
        ]
    )
