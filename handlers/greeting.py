"""
Greeting and calculator widgets.

Tools:
    greet-ko(name, language="ko")          -> greeting text + greeting widget
    calculate-ko(operation, a, b)          -> expression text + calculator widget
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from mcp.types import CallToolResult, Tool
from pydantic import ValidationError

from .schemas import (
    CalculateArgs,
    CalculationData,
    GreetArgs,
    GreetingData,
    WidgetDescriptor,
    input_schema,
    schema_to_description,
)
from .widgets import WidgetHandler, error_result, validation_error_result

logger = logging.getLogger("greeting")

GREET_WIDGET = WidgetDescriptor(
    id="greet-ko",
    resource_name="greet-widget-ko",
    title="인사하기 (한국어)",
    description="사용자에게 한국어로 인사를 합니다",
    template_uri="ui://widget/greet-template-ko.html",
    source_path="/widgets/greet",
    locale="ko",
    invoking="인사 준비 중...",
    invoked="인사 완료!",
)

CALCULATE_WIDGET = WidgetDescriptor(
    id="calculate-ko",
    resource_name="calculate-widget-ko",
    title="계산기 (한국어)",
    description="간단한 수학 계산을 수행합니다",
    template_uri="ui://widget/calculate-template-ko.html",
    source_path="/widgets/calculate",
    locale="ko",
    invoking="계산 중...",
    invoked="계산 완료!",
)

GREETINGS = {
    "ko": "안녕하세요, {name}님! 만나서 반갑습니다! 🎉",
    "en": "Hello, {name}! Nice to meet you! 🎉",
}

OPERATION_SYMBOLS = {
    "add": "+",
    "subtract": "-",
    "multiply": "×",
    "divide": "÷",
}

DIVISION_BY_ZERO_MESSAGE = "❌ 0으로 나눌 수 없습니다!"


def format_number(value: float) -> str:
    """Render 4.0 as '4' and 2.5 as '2.5'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _normalize(value: float) -> float:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def calculate(operation: str, a: float, b: float) -> float:
    if operation == "add":
        return a + b
    if operation == "subtract":
        return a - b
    if operation == "multiply":
        return a * b
    if operation == "divide":
        if b == 0:
            raise ZeroDivisionError(DIVISION_BY_ZERO_MESSAGE)
        return a / b
    raise ValueError(f"Unknown operation: {operation}")


class GreetingHandler(WidgetHandler):
    widgets = (GREET_WIDGET, CALCULATE_WIDGET)

    def list_tools(self) -> List[Tool]:
        return [
            Tool(
                name=GREET_WIDGET.id,
                title=GREET_WIDGET.title,
                description=f"""{GREET_WIDGET.description}

Widget data:
{schema_to_description(GreetingData)}""",
                inputSchema=input_schema(GreetArgs),
                _meta=self.tool_meta(GREET_WIDGET),
            ),
            Tool(
                name=CALCULATE_WIDGET.id,
                title=CALCULATE_WIDGET.title,
                description=f"""{CALCULATE_WIDGET.description}

Widget data:
{schema_to_description(CalculationData)}""",
                inputSchema=input_schema(CalculateArgs),
                _meta=self.tool_meta(CALCULATE_WIDGET),
            ),
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResult:
        logger.info(f"Tool called: {name} with args: {arguments}")
        if name == GREET_WIDGET.id:
            return await self.greet(arguments)
        if name == CALCULATE_WIDGET.id:
            return await self.calculate(arguments)
        return error_result(f"Unknown tool: {name}")

    async def greet(self, arguments: Dict[str, Any]) -> CallToolResult:
        try:
            args = GreetArgs.model_validate(arguments)
        except ValidationError as exc:
            return validation_error_result(GREET_WIDGET.id, exc)

        greeting = GREETINGS[args.language].format(name=args.name)
        data = GreetingData(name=args.name, language=args.language, greeting=greeting)
        # The widget page follows the requested language.
        return await self.render_widget(
            GREET_WIDGET,
            greeting,
            data.model_dump(by_alias=True),
            locale=args.language,
        )

    async def calculate(self, arguments: Dict[str, Any]) -> CallToolResult:
        try:
            args = CalculateArgs.model_validate(arguments)
        except ValidationError as exc:
            return validation_error_result(CALCULATE_WIDGET.id, exc)

        try:
            result = calculate(args.operation, args.a, args.b)
        except ZeroDivisionError:
            return error_result(DIVISION_BY_ZERO_MESSAGE)

        symbol = OPERATION_SYMBOLS[args.operation]
        expression = f"{format_number(args.a)} {symbol} {format_number(args.b)}"
        data = CalculationData(
            operation=args.operation,
            a=args.a,
            b=args.b,
            symbol=symbol,
            result=_normalize(result),
            expression=expression,
        )
        text = f"🧮 {expression} = {format_number(result)}"
        return await self.render_widget(CALCULATE_WIDGET, text, data.model_dump(by_alias=True))
