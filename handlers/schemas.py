"""
Pydantic schemas for widget tool arguments and widget payloads.

These schemas serve dual purposes:
1. Validation of tool arguments (a failed validation becomes an isError tool result)
2. Auto-generated documentation for LLMs via schema_to_description()

Field names are snake_case in Python and camelCase on the wire, matching what
the widget pages and the saju backend read:

    GreetingData(name="철수", ...).model_dump(by_alias=True)
    # {"toolType": "greet", "name": "철수", ...}
"""

from datetime import datetime, timezone
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

WIDGET_MIME_TYPE = "text/html+skybridge"

Number = Union[int, float]


class WireModel(BaseModel):
    """Base for models exchanged with widgets and backends in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2025-01-01T09:30:00.000Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


# =============================================================================
# Widget Descriptors
# =============================================================================

class WidgetDescriptor(BaseModel):
    """Static description of a widget template and the tool that renders it."""

    id: str = Field(description="Tool name that renders this widget")
    resource_name: str = Field(description="Name the template resource is listed under")
    title: str = Field(description="Human-readable title")
    description: str = Field(description="What the widget shows")
    template_uri: str = Field(description="ui:// URI of the widget template")
    source_path: str = Field(description="Page path on the widget source host, e.g. /widgets/greet")
    locale: str = Field(description="Locale prefix used when fetching the page")
    invoking: str = Field(description="Status text while the tool runs")
    invoked: str = Field(description="Status text once the tool finished")
    widget_accessible: bool = Field(False, description="Whether the widget may call tools itself")


# =============================================================================
# Greeting Schemas
# =============================================================================

class GreetArgs(WireModel):
    """Arguments of the greet-ko tool."""

    name: str = Field(min_length=1, description="인사할 사람의 이름")
    language: Literal["en", "ko"] = Field("ko", description="Greeting language")


class GreetingData(WireModel):
    """Greeting handed to the greeting widget."""

    tool_type: Literal["greet"] = Field("greet", description="Always 'greet'")
    name: str = Field(description="Name of the person greeted")
    language: str = Field(description="Greeting language: 'ko' or 'en'")
    greeting: str = Field(description="Rendered greeting sentence")
    timestamp: str = Field(default_factory=utc_timestamp, description="ISO-8601 UTC time of the call")


# =============================================================================
# Calculator Schemas
# =============================================================================

class CalculateArgs(WireModel):
    """Arguments of the calculate-ko tool."""

    operation: Literal["add", "subtract", "multiply", "divide"] = Field(description="Operation to perform")
    a: Number = Field(description="Left operand")
    b: Number = Field(description="Right operand")


class CalculationData(WireModel):
    """Calculation handed to the calculator widget."""

    tool_type: Literal["calculate"] = Field("calculate", description="Always 'calculate'")
    operation: str = Field(description="add, subtract, multiply or divide")
    a: Number = Field(description="Left operand")
    b: Number = Field(description="Right operand")
    symbol: str = Field(description="Operator symbol: + - × ÷")
    result: Number = Field(description="Result of the operation")
    expression: str = Field(description="Expression text like '3 × 4'")
    timestamp: str = Field(default_factory=utc_timestamp, description="ISO-8601 UTC time of the call")


# =============================================================================
# Saju Schemas
# =============================================================================

class SajuArgs(WireModel):
    """Birth information for a saju (four pillars) analysis."""

    birth_type: Literal["SOLAR", "LUNAR"] = Field(description="양력/음력 (SOLAR or LUNAR calendar)")
    birth_day: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$", description="Birth date as YYYY-MM-DD")
    time: str = Field(
        "00:00:00",
        pattern=r"^([01]\d|2[0-3]):([0-5]\d)(:([0-5]\d))?$",
        description="Birth time as HH:mm or HH:mm:ss",
    )
    gender: Literal["MALE", "FEMALE"] = Field(description="성별 (MALE or FEMALE)")
    language: Literal["ko", "en"] = Field("ko", description="Result language")

    @field_validator("time")
    @classmethod
    def _add_seconds(cls, value: str) -> str:
        return f"{value}:00" if len(value) == 5 else value


class SajuEnArgs(SajuArgs):
    """Birth information for a saju analysis, answered in English by default."""

    language: Literal["ko", "en"] = Field("en", description="Result language")


# =============================================================================
# Helpers
# =============================================================================

def input_schema(model: type[BaseModel]) -> dict:
    """JSON schema of an argument model, in the shape Tool.inputSchema expects."""
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.pop("description", None)
    return schema


def schema_to_description(model: type[BaseModel]) -> str:
    """
    Convert a Pydantic model to a human-readable description for tool documentation.

    Example:
        >>> print(schema_to_description(GreetingData))
        Greeting handed to the greeting widget.

        Fields:
          - toolType (string): Always 'greet'
          - name (string): Name of the person greeted
          ...
    """
    schema = model.model_json_schema()
    lines = [model.__doc__ or model.__name__, ""]
    lines.append("Fields:")

    for name, prop in schema.get("properties", {}).items():
        type_str = prop.get("type", "any")
        if "anyOf" in prop:
            types = [t.get("type", "null") for t in prop["anyOf"]]
            type_str = " | ".join(t for t in types if t != "null")
            if "null" in types:
                type_str += " (optional)"
        elif "enum" in prop:
            type_str = " | ".join(repr(v) for v in prop["enum"])
        desc = prop.get("description", "")
        lines.append(f"  - {name} ({type_str}): {desc}")

    return "\n".join(lines)
