"""Functions and actions exposed as MCP tools.

Bound operations take the owning entity's keys plus their own parameters;
unbound operations take parameters only. With ``@mcp.elicit: ['input']``
the parameters are collected from the user instead of the tool arguments.
"""

from typing import Any

from pydantic import ValidationError

from cap_mcp.annotations.structures import ToolAnnotation
from cap_mcp.auth import get_access_rights
from cap_mcp.errors import ToolErrorCode
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.constants import ERR_MISSING_SERVICE
from cap_mcp.mcp.elicitation import build_elicit_requests, handle_elicit_requests, is_elicit_input
from cap_mcp.mcp.registry import InvocationContext, McpRegistry, RegisteredTool
from cap_mcp.mcp.schema import build_input_model, input_schema, map_type, required_field
from cap_mcp.mcp.utils import as_mcp_result, tool_error
from cap_mcp.runtime import RuntimeContext

log = get_logger("tools.operations")


def _parameter_types(parameters, model) -> dict[str, Any]:
    return {name: map_type(declared, model=model) for name, declared in (parameters or {}).items()}


def assign_tool(
    tool: ToolAnnotation,
    registry: McpRegistry,
    runtime: RuntimeContext,
    auth_enabled: bool,
    elicit_timeout: float | None = None,
) -> None:
    """Register ``tool`` on ``registry``.

    Raises:
        ValueError: Bound operation without keys, or an elicited parameter
            type that cannot be shown in a form
    """
    if tool.is_bound and not tool.key_type_map:
        log.error(f"Invalid tool assignment - missing key map for bound operation {tool.name}")
        raise ValueError("Bound operation cannot be assigned to tool list, missing keys")

    parameter_types = _parameter_types(tool.parameters, runtime.model)
    key_types = _parameter_types(tool.key_type_map, runtime.model)
    elicit_requests = build_elicit_requests(tool, parameter_types)
    elicit_input = is_elicit_input(tool.elicits)

    fields = {
        name: required_field(py_type, tool.property_hints.get(name, ""))
        for name, py_type in key_types.items()
    }
    if not elicit_input:
        for name, py_type in parameter_types.items():
            fields[name] = required_field(py_type, tool.property_hints.get(name, ""))
    input_model = build_input_model(f"{tool.name}_input", fields)

    async def handler(arguments: dict[str, Any], context: InvocationContext):
        service = runtime.resolve_service(tool.service_name)
        if service is None:
            log.error(f"Invalid CAP service {tool.service_name} - undefined")
            return tool_error(ToolErrorCode.ERR_MISSING_SERVICE, ERR_MISSING_SERVICE)

        try:
            args = input_model.model_validate(arguments).model_dump(mode="json", exclude_none=True)
        except ValidationError as e:
            return tool_error(
                ToolErrorCode.INVALID_INPUT,
                f"Arguments for {tool.name} failed validation",
                issues=e.errors(include_url=False, include_context=False),
            )

        outcome = await handle_elicit_requests(elicit_requests, context, elicit_timeout)
        if outcome.early_response is not None:
            return outcome.early_response

        user = get_access_rights(auth_enabled, context.user)
        try:
            if tool.is_bound:
                keys = {k: v for k, v in args.items() if k in key_types}
                data = outcome.data if outcome.data is not None else {
                    k: v for k, v in args.items() if k in parameter_types
                }
                log.debug(f"Sending bound {tool.target} on {tool.entity_key} with keys {keys}")
                response = await service.send(tool.target, data, user, entity=tool.entity_key, keys=keys)
            else:
                data = outcome.data if outcome.data is not None else args
                log.debug(f"Sending unbound {tool.target}")
                response = await service.send(tool.target, data, user)
        except LookupError as e:
            log.error(f"{tool.name}: {e}")
            return tool_error(ToolErrorCode.HANDLER_NOT_FOUND, str(e))
        except Exception as e:
            log.error(f"{tool.name} failed: {e}")
            return tool_error(ToolErrorCode.OPERATION_FAILED, f"OPERATION_FAILED: {e}")
        return as_mcp_result(response)

    registry.add_tool(
        RegisteredTool(
            name=tool.name,
            title=tool.name,
            description=tool.description,
            input_schema=input_schema(input_model),
            handler=handler,
        )
    )
