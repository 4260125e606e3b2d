"""
Saju (four pillars of destiny) analysis widgets.

The analysis itself is done by a separate backend (SAJU_API_URL); this
handler validates birth information, forwards it and hands the backend's
answer to the saju widget as structured content.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Type

import httpx
from mcp.types import CallToolResult, TextContent, Tool
from pydantic import ValidationError

from widget_bundler import WidgetBundler

from .schemas import SajuArgs, SajuEnArgs, WidgetDescriptor, input_schema, schema_to_description
from .widgets import WidgetHandler, error_result, validation_error_result

logger = logging.getLogger("saju")

SAJU_API_URL = os.environ.get("SAJU_API_URL", "http://localhost:8080/api/v1/saju")
SAJU_API_TIMEOUT = float(os.environ.get("SAJU_API_TIMEOUT", "10"))

SAJU_WIDGET_KO = WidgetDescriptor(
    id="saju-ko",
    resource_name="saju-widget-ko",
    title="사주 분석 (한국어)",
    description="생년월일/시간/성별/음력양력 기반으로 사주를 분석합니다",
    template_uri="ui://widget/saju-template-ko.html",
    source_path="/widgets/saju",
    locale="ko",
    invoking="사주 분석 중...",
    invoked="사주 분석 완료!",
    widget_accessible=True,
)

SAJU_WIDGET_EN = WidgetDescriptor(
    id="saju-en",
    resource_name="saju-widget-en",
    title="Saju analysis (English)",
    description="Analyze saju from birth info (solar/lunar, gender, time)",
    template_uri="ui://widget/saju-template-en.html",
    source_path="/widgets/saju",
    locale="en",
    invoking="Analyzing saju...",
    invoked="Saju analysis complete!",
    widget_accessible=True,
)

SUMMARIES = {
    "ko": "✅ 사주 위젯을 열었습니다.",
    "en": "✅ Saju widget is ready.",
}

_ARG_MODELS: Dict[str, Type[SajuArgs]] = {
    SAJU_WIDGET_KO.id: SajuArgs,
    SAJU_WIDGET_EN.id: SajuEnArgs,
}


class SajuHandler(WidgetHandler):
    widgets = (SAJU_WIDGET_KO, SAJU_WIDGET_EN)

    def __init__(
        self,
        bundler: WidgetBundler,
        *,
        widget_domain: Optional[str] = None,
        api_url: str = SAJU_API_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(bundler, widget_domain=widget_domain)
        self.api_url = api_url
        self._client = client

    def list_tools(self) -> List[Tool]:
        return [
            Tool(
                name=widget.id,
                title=widget.title,
                description=f"""{widget.description}

Arguments:
{schema_to_description(_ARG_MODELS[widget.id])}""",
                inputSchema=input_schema(_ARG_MODELS[widget.id]),
                _meta=self.tool_meta(widget),
            )
            for widget in self.widgets
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        logger.info(f"Tool called: {name} with args: {arguments}")
        model = _ARG_MODELS.get(name)
        if model is None:
            return error_result(f"Unknown tool: {name}")
        try:
            args = model.model_validate(arguments)
        except ValidationError as exc:
            return validation_error_result(name, exc)

        widget = self.widget(name)
        try:
            analysis = await self.analyze(args)
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception(f"Saju analysis failed for {name}")
            return error_result(f"Saju analysis failed: {exc}")

        structured = analysis if isinstance(analysis, dict) else {"result": analysis}
        return CallToolResult(
            content=[TextContent(type="text", text=SUMMARIES[args.language])],
            structuredContent=structured,
            _meta=self.tool_meta(widget),
        )

    async def analyze(self, args: SajuArgs) -> Any:
        """POST the birth information to the analysis backend and return its JSON."""
        payload = args.model_dump(by_alias=True)
        if self._client is not None:
            response = await self._client.post(self.api_url, json=payload, timeout=SAJU_API_TIMEOUT)
        else:
            async with httpx.AsyncClient(timeout=SAJU_API_TIMEOUT) as client:
                response = await client.post(self.api_url, json=payload)
        response.raise_for_status()
        return response.json()
