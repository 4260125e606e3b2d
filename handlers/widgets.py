"""Shared plumbing for tool handlers that render their results as widgets."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.types import (
    CallToolResult,
    EmbeddedResource,
    Resource,
    TextContent,
    TextResourceContents,
    Tool,
)
from pydantic import ValidationError

from widget_bundler import WidgetBundler

from .schemas import WIDGET_MIME_TYPE, WidgetDescriptor

logger = logging.getLogger("widget-handlers")


def error_result(message: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=message)], isError=True)


def validation_error_result(tool_name: str, exc: ValidationError) -> CallToolResult:
    """Turn a pydantic ValidationError into a tool-level failure."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
        for error in exc.errors()
    )
    logger.info("Rejected arguments for %s: %s", tool_name, problems)
    return error_result(f"Invalid arguments for {tool_name}: {problems}")


class WidgetHandler(ABC):
    """A group of widget-backed tools plus the template resources they render into.

    Subclasses set ``widgets`` and implement :meth:`list_tools` and
    :meth:`call_tool`. Template resources are served from the bundler without
    data; tool results embed a data-injected copy.
    """

    widgets: Sequence[WidgetDescriptor] = ()

    def __init__(self, bundler: WidgetBundler, *, widget_domain: Optional[str] = None) -> None:
        self.bundler = bundler
        self.widget_domain = widget_domain or bundler.source_base_url

    @abstractmethod
    def list_tools(self) -> List[Tool]:
        ...

    @abstractmethod
    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        ...

    def tool_names(self) -> List[str]:
        return [tool.name for tool in self.list_tools()]

    def widget(self, widget_id: str) -> WidgetDescriptor:
        for widget in self.widgets:
            if widget.id == widget_id:
                return widget
        raise KeyError(widget_id)

    # Metadata blocks ---------------------------------------------------------

    def widget_csp(self) -> Dict[str, List[str]]:
        return {
            "connect_domains": [self.widget_domain],
            "resource_domains": [self.widget_domain],
        }

    def tool_meta(self, widget: WidgetDescriptor) -> Dict[str, Any]:
        return {
            "openai/outputTemplate": widget.template_uri,
            "openai/toolInvocation/invoking": widget.invoking,
            "openai/toolInvocation/invoked": widget.invoked,
            "openai/widgetAccessible": widget.widget_accessible,
            "openai/resultCanProduceWidget": True,
        }

    def resource_meta(self, widget: WidgetDescriptor) -> Dict[str, Any]:
        return {
            "openai/widgetDescription": widget.description,
            "openai/widgetPrefersBorder": True,
            "openai/widgetCSP": self.widget_csp(),
        }

    # Resources ---------------------------------------------------------------

    def list_resources(self) -> List[Resource]:
        return [
            Resource(
                uri=widget.template_uri,
                name=widget.resource_name,
                title=widget.title,
                description=widget.description,
                mimeType=WIDGET_MIME_TYPE,
                _meta=self.resource_meta(widget),
            )
            for widget in self.widgets
        ]

    async def read_resource(self, uri: str) -> Optional[ReadResourceContents]:
        """Serve a widget template without data, or None if the URI is not ours."""
        widget = next((w for w in self.widgets if w.template_uri == uri), None)
        if widget is None:
            return None
        html = await self.bundler.bundle(widget.source_path, widget.locale)
        meta = dict(self.resource_meta(widget), **{"openai/widgetDomain": self.widget_domain})
        return ReadResourceContents(content=html, mime_type=WIDGET_MIME_TYPE, meta=meta)

    async def render_widget(
        self,
        widget: WidgetDescriptor,
        text: str,
        data: Dict[str, Any],
        *,
        locale: Optional[str] = None,
    ) -> CallToolResult:
        """Tool result carrying ``text`` and the widget bundled with ``data``."""
        html = await self.bundler.bundle(widget.source_path, locale or widget.locale, data)
        return CallToolResult(
            content=[
                TextContent(type="text", text=text),
                EmbeddedResource(
                    type="resource",
                    resource=TextResourceContents(
                        uri=widget.template_uri,
                        mimeType=WIDGET_MIME_TYPE,
                        text=html,
                    ),
                ),
            ],
            structuredContent=data,
            _meta=self.tool_meta(widget),
        )
