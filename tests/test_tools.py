"""Tests for function/action tools and elicitation."""

import json
from unittest.mock import AsyncMock

import anyio
import pytest
from mcp import types

from cap_mcp.annotations.structures import ToolAnnotation
from cap_mcp.mcp.elicitation import (
    CANCELLED_MESSAGE,
    DECLINED_MESSAGE,
    INPUT_MESSAGE,
    TIMED_OUT_MESSAGE,
    build_elicit_requests,
)
from cap_mcp.mcp.registry import InvocationContext
from cap_mcp.mcp.tools import assign_tool
from cap_mcp.runtime import AppRuntime


def text(result):
    return result.content[0].text


def accept(**content):
    return types.ElicitResult(action="accept", content=content)


class TestOperationTools:
    """Bound and unbound operations dispatch to the service."""

    @pytest.mark.asyncio
    async def test_bound_action(self, annotations, registry, runtime, context):
        assign_tool(annotations["CatalogService.Books.restock"], registry, runtime, False)
        result = await registry.call_tool("restock_book", {"ID": 201, "quantity": 3}, context)
        assert json.loads(text(result)) == {"ID": 201, "stock": 15}

    def test_bound_schema_has_keys_and_parameters(self, annotations, registry, runtime):
        assign_tool(annotations["CatalogService.Books.restock"], registry, runtime, False)
        schema = registry.tools["restock_book"].input_schema
        assert set(schema["required"]) == {"ID", "quantity"}
        assert schema["properties"]["quantity"]["description"] == "Units to add"

    @pytest.mark.asyncio
    async def test_unbound_function(self, annotations, registry, runtime, context):
        assign_tool(annotations["CatalogService.getBookCount"], registry, runtime, False)
        result = await registry.call_tool("get_book_count", {"minStock": 12}, context)
        assert text(result) == "2"

    @pytest.mark.asyncio
    async def test_missing_parameter(self, annotations, registry, runtime, context):
        assign_tool(annotations["CatalogService.getBookCount"], registry, runtime, False)
        result = await registry.call_tool("get_book_count", {}, context)
        assert result.isError
        assert json.loads(text(result))["error"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_missing_service(self, annotations, registry, model, context):
        assign_tool(annotations["CatalogService.getBookCount"], registry, AppRuntime(model), False)
        result = await registry.call_tool("get_book_count", {"minStock": 1}, context)
        assert json.loads(text(result))["error"] == "ERR_MISSING_SERVICE"

    @pytest.mark.asyncio
    async def test_missing_handler_is_structured_error(self, annotations, registry, runtime, context):
        runtime.resolve_service("CatalogService").handlers.pop("getBookCount")
        assign_tool(annotations["CatalogService.getBookCount"], registry, runtime, False)
        result = await registry.call_tool("get_book_count", {"minStock": 1}, context)
        assert result.isError
        assert json.loads(text(result)) == {
            "error": "HANDLER_NOT_FOUND",
            "message": "No handler registered for getBookCount",
        }

    @pytest.mark.asyncio
    async def test_raising_handler_is_structured_error(self, annotations, registry, runtime, context):
        async def broken(req):
            raise RuntimeError("stock ledger offline")

        runtime.resolve_service("CatalogService").on("restock", broken, entity="Books")
        assign_tool(annotations["CatalogService.Books.restock"], registry, runtime, False)
        result = await registry.call_tool("restock_book", {"ID": 201, "quantity": 3}, context)
        assert result.isError
        payload = json.loads(text(result))
        assert payload["error"] == "OPERATION_FAILED"
        assert "stock ledger offline" in payload["message"]

    def test_bound_tool_without_keys(self, registry, runtime):
        tool = ToolAnnotation(name="go", description="d", target="go", service_name="S", entity_key="E")
        with pytest.raises(ValueError, match="missing keys"):
            assign_tool(tool, registry, runtime, False)


class TestElicitation:
    """Input and confirmation round-trips."""

    @pytest.fixture
    def order_tool(self, annotations, registry, runtime):
        assign_tool(annotations["CatalogService.submitOrder"], registry, runtime, False)
        return registry

    def test_elicited_parameters_leave_the_schema(self, order_tool):
        assert order_tool.tools["submit_order"].input_schema["properties"] == {}

    def test_requests_follow_declared_order(self, annotations):
        tool = annotations["CatalogService.submitOrder"]
        requests = build_elicit_requests(tool, {"book": int, "quantity": int})
        assert [r.kind for r in requests] == ["input", "confirm"]
        assert requests[0].requested_schema["properties"]["book"]["type"] == "number"
        assert requests[0].requested_schema["required"] == ["book", "quantity"]
        assert "Order copies of a book" in requests[1].message

    @pytest.mark.asyncio
    async def test_accepted_input_and_confirmation(self, order_tool, context):
        context.elicit.side_effect = [accept(book=201, quantity=2), accept(confirm=True)]
        result = await order_tool.call_tool("submit_order", {}, context)
        assert json.loads(text(result)) == {"book": 201, "quantity": 2, "status": "submitted"}
        first_call = context.elicit.await_args_list[0]
        assert first_call.args[0] == INPUT_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,expected",
        [
            (types.ElicitResult(action="decline"), DECLINED_MESSAGE),
            (types.ElicitResult(action="cancel"), CANCELLED_MESSAGE),
        ],
    )
    async def test_refused_input(self, order_tool, context, response, expected):
        context.elicit.side_effect = [response]
        result = await order_tool.call_tool("submit_order", {}, context)
        assert text(result) == expected
        assert context.elicit.await_count == 1

    @pytest.mark.asyncio
    async def test_confirmation_answered_no(self, order_tool, context):
        context.elicit.side_effect = [accept(book=201, quantity=2), accept(confirm=False)]
        result = await order_tool.call_tool("submit_order", {}, context)
        assert text(result) == DECLINED_MESSAGE

    @pytest.mark.asyncio
    async def test_timeout(self, annotations, registry, runtime, context):
        assign_tool(annotations["CatalogService.submitOrder"], registry, runtime, False, elicit_timeout=0.05)

        async def never_answers(message, schema):
            await anyio.sleep(5)

        context.elicit = AsyncMock(side_effect=never_answers)
        result = await registry.call_tool("submit_order", {}, context)
        assert text(result) == TIMED_OUT_MESSAGE

    @pytest.mark.asyncio
    async def test_without_elicitation_channel(self, order_tool, context):
        no_channel = InvocationContext(user=context.user)
        result = await order_tool.call_tool("submit_order", {}, no_channel)
        assert result.isError
        assert "Elicitation requested outside of an MCP request" in text(result)
