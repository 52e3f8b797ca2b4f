"""Interactive input and confirmation round-trips before running an operation."""

from dataclasses import dataclass
from typing import Any

import anyio
from mcp import types

from cap_mcp.annotations.structures import ToolAnnotation
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.registry import InvocationContext
from cap_mcp.mcp.schema import elicit_schema_type
from cap_mcp.mcp.utils import text_result

log = get_logger("tools.elicitation")

INPUT_MESSAGE = "Please fill out the required parameters"
DECLINED_MESSAGE = "Action was declined."
CANCELLED_MESSAGE = "Action was cancelled"
TIMED_OUT_MESSAGE = "Action timed out waiting for user response"


@dataclass(frozen=True)
class ElicitRequest:
    kind: str  # input | confirm
    message: str
    requested_schema: dict[str, Any]


@dataclass
class ElicitOutcome:
    """Either an early result to return, or the data to run with (input only)."""

    early_response: types.CallToolResult | None = None
    data: dict[str, Any] | None = None


def is_elicit_input(elicits: tuple[str, ...] | None) -> bool:
    return bool(elicits) and "input" in elicits


def build_input_request(parameter_types: dict[str, Any]) -> ElicitRequest:
    properties = {
        key: {"type": elicit_schema_type(py_type), "title": key, "description": key}
        for key, py_type in parameter_types.items()
    }
    return ElicitRequest(
        kind="input",
        message=INPUT_MESSAGE,
        requested_schema={"type": "object", "properties": properties, "required": list(properties)},
    )


def build_confirm_request(tool: ToolAnnotation) -> ElicitRequest:
    return ElicitRequest(
        kind="confirm",
        message=f"Please confirm that you want to perform action '{tool.description}'",
        requested_schema={
            "type": "object",
            "properties": {
                "confirm": {
                    "type": "boolean",
                    "title": "Confirmation",
                    "description": "Please confirm the action",
                }
            },
            "required": ["confirm"],
        },
    )


def build_elicit_requests(tool: ToolAnnotation, parameter_types: dict[str, Any]) -> list[ElicitRequest]:
    """One request per declared elicit kind, in declared order.

    Raises:
        ValueError: A parameter type that elicitation forms cannot carry
    """
    requests = []
    for kind in tool.elicits or ():
        if kind == "input":
            requests.append(build_input_request(parameter_types))
        elif kind == "confirm":
            requests.append(build_confirm_request(tool))
        else:
            raise ValueError("Invalid elicitation type")
    return requests


def _early_response(result: types.ElicitResult, request: ElicitRequest) -> types.CallToolResult | None:
    if result.action == "accept":
        # An accepted form that says "no" is still a refusal
        if request.kind == "confirm" and not (result.content or {}).get("confirm"):
            return text_result(DECLINED_MESSAGE)
        return None
    if result.action == "decline":
        return text_result(DECLINED_MESSAGE)
    if result.action == "cancel":
        return text_result(CANCELLED_MESSAGE)
    raise ValueError("Invalid elicit response received")


async def handle_elicit_requests(
    requests: list[ElicitRequest],
    context: InvocationContext,
    timeout_seconds: float | None = None,
) -> ElicitOutcome:
    """Run the requests one after another, stopping at the first refusal."""
    if not requests:
        return ElicitOutcome()
    if context.elicit is None:
        raise RuntimeError("Elicitation requested outside of an MCP request")

    data = None
    for request in requests:
        log.debug(f"Eliciting {request.kind} from user {context.user.id}")
        if timeout_seconds is None:
            result = await context.elicit(request.message, request.requested_schema)
        else:
            with anyio.move_on_after(timeout_seconds) as scope:
                result = await context.elicit(request.message, request.requested_schema)
            if scope.cancelled_caught:
                log.warning(f"Elicitation {request.kind} timed out after {timeout_seconds}s")
                return ElicitOutcome(early_response=text_result(TIMED_OUT_MESSAGE))

        early = _early_response(result, request)
        if early is not None:
            log.info(f"Elicitation {request.kind} ended with {result.action}")
            return ElicitOutcome(early_response=early)
        if request.kind == "input":
            data = dict(result.content or {})

    return ElicitOutcome(data=data)
