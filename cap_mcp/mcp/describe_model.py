"""Discovery tool describing services, entities and example wrapper calls."""

from typing import Any, Literal, Optional

from pydantic import ConfigDict, Field, ValidationError, create_model

from cap_mcp.errors import ToolErrorCode
from cap_mcp.mcp.constants import DESCRIBE_MODEL_TOOL
from cap_mcp.mcp.registry import InvocationContext, McpRegistry, RegisteredTool
from cap_mcp.mcp.schema import input_schema
from cap_mcp.mcp.utils import as_mcp_result, short_name, tool_error
from cap_mcp.model import CsnModel
from cap_mcp.runtime import RuntimeContext

DESCRIPTION = (
    "Describe CAP services/entities and their fields, keys, and example tool calls. "
    "Use this to guide LLMs how to call entity wrapper tools."
)

SAMPLE_TOP = 5

DescribeModelInput = create_model(
    "DescribeModelInput",
    __config__=ConfigDict(extra="forbid"),
    service=(Optional[str], None),
    entity=(Optional[str], None),
    format=(Literal["concise", "detailed"], Field("concise")),
)


def list_entities(model: CsnModel, service: str | None = None) -> dict[str, Any]:
    return {"entities": model.entities_of(service)}


def describe_entity(model: CsnModel, service: str | None, entity: str | None) -> dict[str, Any]:
    if not entity:
        return {"error": "Please provide 'entity'."}
    fqn = f"{service}.{entity}" if service and "." not in entity else entity
    definition = model.get(fqn) or model.get(entity)
    if definition is None or definition.get("kind") != "entity":
        suffix = f" (service {service})" if service else ""
        return {"error": f"Entity not found: {entity}{suffix}"}
    name = fqn if model.get(fqn) is not None else entity

    fields = []
    for element_name, element in (definition.get("elements") or {}).items():
        described = {
            "name": element_name,
            "type": element.get("type"),
            "key": bool(element.get("key")),
            "isArray": bool(element.get("items")),
        }
        if element.get("target"):
            described["target"] = element["target"]
        fields.append(described)

    keys = [f["name"] for f in fields if f["key"]]
    scalar = [f["name"] for f in fields if str(f["type"]).lower() != "cds.association"]
    service_part = short_name(service) if service else name.split(".")[0]
    entity_part = short_name(name)

    return {
        "service": service,
        "entity": name,
        "keys": keys,
        "fields": fields,
        "usage": {
            "rationale": (
                "Entity wrapper tools expose CRUD-like operations for LLMs. Prefer query/get globally; "
                "create/update must be explicitly enabled by the developer."
            ),
            "guidance": (
                "Use the *_query tool for retrieval with filters and projections. All fields in select/where "
                "are consistent. For associations, use foreign key fields (e.g., author_ID not author). Use "
                "*_get with keys for a single record; use *_create/*_update only if enabled and necessary."
            ),
        },
        "examples": {
            "list_tool": f"{service_part}_{entity_part}_query",
            "list_tool_payload": {"top": SAMPLE_TOP, "select": scalar[:5]},
            "get_tool": f"{service_part}_{entity_part}_get",
            "get_tool_payload": {keys[0]: "<value>"} if keys else {},
        },
    }


def register_describe_model_tool(registry: McpRegistry, runtime: RuntimeContext) -> None:
    async def handler(arguments: dict[str, Any], context: InvocationContext):
        try:
            args = DescribeModelInput.model_validate(arguments)
        except ValidationError as e:
            return tool_error(
                ToolErrorCode.INVALID_INPUT,
                f"{DESCRIBE_MODEL_TOOL} arguments failed validation",
                issues=e.errors(include_url=False, include_context=False),
            )

        model = runtime.model
        if not args.service and not args.entity:
            payload = {"services": runtime.service_names(), **list_entities(model)}
        elif args.service and not args.entity:
            payload = {"service": args.service, **list_entities(model, args.service)}
        else:
            payload = describe_entity(model, args.service, args.entity)
            if args.format == "concise" and "fields" in payload:
                payload["fields"] = [
                    {k: v for k, v in f.items() if k in ("name", "type", "key")} for f in payload["fields"]
                ]
        return as_mcp_result(payload)

    registry.add_tool(
        RegisteredTool(
            name=DESCRIBE_MODEL_TOOL,
            title=DESCRIBE_MODEL_TOOL,
            description=DESCRIPTION,
            input_schema=input_schema(DescribeModelInput),
            handler=handler,
        )
    )
