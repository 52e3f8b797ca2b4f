"""Map declared CDS types to Python/pydantic types.

The mapped types serve twice: as pydantic field annotations that validate
tool input, and (through ``model_json_schema``) as the JSON Schema each
tool advertises to clients.
"""

from datetime import date, datetime, time
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

from cap_mcp.annotations.constants import FOREIGN_KEY_MARKER
from cap_mcp.annotations.utils import get_marker, is_computed
from cap_mcp.log_config import get_logger
from cap_mcp.model import CsnModel, strip_cds_prefix

log = get_logger("annotations.schema")

SCALAR_TYPES: dict[str, Any] = {
    "String": str,
    "UUID": str,
    "Binary": str,
    "LargeBinary": str,
    "LargeString": str,
    "Integer": int,
    "Int16": int,
    "Int32": int,
    "Int64": int,
    "UInt8": int,
    "Decimal": float,
    "Double": float,
    "Timestamp": float,
    "Boolean": bool,
    "Date": date,
    "Time": time,
    "DateTime": datetime,
    "Map": dict[str, Any],
}

PERMISSIVE_OBJECT = dict[str, Any]


def map_type(
    declared: str,
    key: str | None = None,
    target: str | None = None,
    model: CsnModel | None = None,
) -> Any:
    """Python type for a declared CDS type name.

    Unknown scalars map to ``str``. ``Composition`` needs the owning
    element ``key``, the owning entity ``target`` and the ``model``; with
    any of them missing it maps to a permissive ``dict``.
    """
    if declared == "Composition":
        return _composition_type(key, target, model)
    if declared.endswith("Array") and declared != "Array":
        return list[map_type(declared[: -len("Array")])]
    return SCALAR_TYPES.get(declared, str)


def _composition_type(key: str | None, target: str | None, model: CsnModel | None) -> Any:
    if model is None or not key or not target:
        return PERMISSIVE_OBJECT

    element = model.elements(target).get(key)
    composed_name = element.get("target") if element else None
    composed = model.get(composed_name) if composed_name else None
    if composed is None:
        return PERMISSIVE_OBJECT

    composed_elements = composed.get("elements") or {}
    fields: dict[str, Any] = {}
    for name, el in composed_elements.items():
        declared = el.get("type")
        if not declared or is_computed(el):
            continue

        # The store fills the back-link to the parent on deep insert
        fk_of = get_marker(el, FOREIGN_KEY_MARKER)
        if fk_of and (composed_elements.get(fk_of) or {}).get("target") == target:
            continue

        declared = strip_cds_prefix(declared) if isinstance(declared, str) else model.resolve_typed_reference(declared)
        # Only one level of nesting
        if declared in ("Association", "Composition"):
            continue

        py_type = map_type(declared)
        if el.get("key") or el.get("notNull"):
            fields[name] = (py_type, ...)
        else:
            fields[name] = (Optional[py_type], None)

    item = create_model(composed_name.rsplit(".", 1)[-1], **fields)
    if element.get("cardinality") is not None:
        return list[item]
    return item


def elicit_schema_type(py_type: Any) -> str:
    """JSON type of a mapped type inside an elicitation form.

    Raises:
        ValueError: Elicitation forms only carry flat primitives
    """
    if py_type is bool:
        return "boolean"
    if py_type is str:
        return "string"
    if py_type in (int, float):
        return "number"
    raise ValueError("Unsupported elicitation input type")


def build_input_model(name: str, fields: dict[str, tuple[Any, Any]], strict: bool = False) -> type[BaseModel]:
    """Create a pydantic model for a tool's arguments.

    ``strict`` rejects unknown arguments instead of ignoring them.
    """
    config = ConfigDict(extra="forbid" if strict else "ignore")
    return create_model(name, __config__=config, **fields)


def optional_field(py_type: Any, description: str = "") -> tuple[Any, Any]:
    return (Optional[py_type], Field(default=None, description=description.strip() or None))


def required_field(py_type: Any, description: str = "") -> tuple[Any, Any]:
    return (py_type, Field(..., description=description.strip() or None))


def input_schema(model_cls: type[BaseModel]) -> dict[str, Any]:
    """JSON Schema advertised as a tool's ``inputSchema``."""
    schema = model_cls.model_json_schema()
    schema.setdefault("properties", {})
    schema["type"] = "object"
    return schema
