"""@mcp annotation parsing."""

from cap_mcp.annotations.parser import parse_definitions
from cap_mcp.annotations.structures import (
    Annotation,
    PromptAnnotation,
    PromptInput,
    PromptTemplate,
    ResourceAnnotation,
    Restriction,
    ToolAnnotation,
    WrapConfig,
)

__all__ = [
    "parse_definitions",
    "Annotation",
    "PromptAnnotation",
    "PromptInput",
    "PromptTemplate",
    "ResourceAnnotation",
    "Restriction",
    "ToolAnnotation",
    "WrapConfig",
]
