"""Result formatting and naming helpers for MCP handlers."""

import json
import re
from collections.abc import Mapping
from typing import Any

from mcp import types

from cap_mcp.annotations.structures import ResourceAnnotation
from cap_mcp.errors import ToolErrorCode
from cap_mcp.mcp.constants import NEW_LINE

_NUMERIC_STRING = re.compile(r"^\d+$")


def to_text(value: Any) -> str:
    """Strings pass through, containers become indented JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2, default=str)
    return json.dumps(value, default=str)


def as_mcp_result(payload: Any) -> types.CallToolResult:
    """Format a handler payload as tool result content.

    A list becomes one text part per item (an empty list has no parts);
    anything else is a single text part.
    """
    if isinstance(payload, list):
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=to_text(item)) for item in payload]
        )
    return types.CallToolResult(content=[types.TextContent(type="text", text=to_text(payload))])


def text_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def tool_error(code: ToolErrorCode | str, message: str, **extra: Any) -> types.CallToolResult:
    """Structured failure payload: ``{"error": code, "message": ..., **extra}``."""
    code = code.value if isinstance(code, ToolErrorCode) else code
    payload = {"error": code, "message": message, **extra}
    return types.CallToolResult(
        isError=True,
        content=[types.TextContent(type="text", text=json.dumps(payload, default=str))],
    )


def apply_omission_filter(row: Any, resource: ResourceAnnotation) -> Any:
    """Copy of ``row`` without the resource's omitted fields.

    Non-mapping values (None, counts, scalars) pass through untouched.
    """
    if not isinstance(row, Mapping):
        return row
    return {k: v for k, v in row.items() if k not in resource.omitted_fields}


def coerce_numeric(value: Any) -> Any:
    """Turn digit-only strings into ints, leave everything else alone."""
    if isinstance(value, str) and _NUMERIC_STRING.match(value):
        return int(value)
    return value


def short_name(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def tool_name_for(service_name: str, target: str, mode: str) -> str:
    """``my.Catalog`` + ``Books`` + ``query`` -> ``Catalog_Books_query``."""
    return f"{short_name(service_name)}_{short_name(target)}_{mode}"


def construct_hint(resource: ResourceAnnotation, mode: str) -> str:
    hint = resource.wrap.hint if resource.wrap else None
    if not hint:
        return ""
    if isinstance(hint, str):
        return f" Hint: {hint}"
    mode_hint = hint.get(mode)
    return f" Hint: {mode_hint}" if mode_hint else ""


def describe_property(resource: ResourceAnnotation, name: str) -> str:
    """Field description used in wrapper tool schemas."""
    hint = resource.property_hints.get(name, "")
    if name in resource.foreign_keys:
        return f"Foreign key to {resource.foreign_keys[name]} on {name}. {hint}".strip()
    return f"Field {name}. {hint}".strip()


def write_odata_description(resource: ResourceAnnotation) -> str:
    """Resource description listing allowed OData options and properties."""
    options = resource.functionalities
    lines = [
        f"{resource.description}.",
        "Should be queried using OData v4 query style using the following allowed parameters.",
        "Parameters: ",
    ]
    if "filter" in options:
        lines.append("- filter: OData $filter syntax (e.g., \"$filter=author_ID eq 42\")")
    if "top" in options:
        lines.append("- top: OData $top syntax (e.g., $top=10)")
    if "skip" in options:
        lines.append("- skip: OData $skip syntax (e.g., $skip=10)")
    if "select" in options:
        lines.append("- select: OData $select syntax (e.g., $select=property1,property2, etc..)")
    if "orderby" in options:
        lines.append(
            "- orderby: OData $orderby syntax (e.g., \"$orderby=property1 asc\", or \"$orderby=property1 desc\")"
        )
    lines.append("")
    lines.append(f"Available properties on {resource.target}: ")
    for name, declared in resource.properties.items():
        if name in resource.omitted_fields:
            continue
        lines.append(f"- {name} -> value type = {declared} ")
    return NEW_LINE.join(lines) + NEW_LINE
