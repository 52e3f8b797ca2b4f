"""Tests for the entity wrapper tools (query/get/create/update/delete)."""

import asyncio
import json
from unittest.mock import patch

import pytest

from cap_mcp.annotations.structures import ResourceAnnotation
from cap_mcp.auth import FULL_ACCESS, WrapAccess
from cap_mcp.mcp.entity_tools import extract_keys, register_entity_wrappers, scalar_fields
from cap_mcp.model import CsnModel
from cap_mcp.runtime import AppRuntime
from cap_mcp.store import SqliteService

ALL_MODES = ("query", "get", "create", "update", "delete")

SHOP_CSN = {
    "definitions": {
        "Shop": {"kind": "service"},
        "Shop.Orders": {
            "kind": "entity",
            "elements": {
                "ID": {"key": True, "type": "cds.UUID"},
                "note": {"type": "cds.String"},
                "items": {"type": "cds.Composition", "target": "Shop.OrderItems", "cardinality": {"max": "*"}},
            },
        },
        "Shop.OrderItems": {
            "kind": "entity",
            "elements": {
                "ID": {"key": True, "type": "cds.Integer"},
                "up__ID": {"type": "cds.UUID"},
            },
        },
    }
}


def payload(result):
    return json.loads(result.content[0].text)


def rows(result):
    return [json.loads(part.text) for part in result.content]


def error_code(result):
    assert result.isError
    return payload(result)["error"]


@pytest.fixture
def books(annotations):
    return annotations["CatalogService.Books"]


@pytest.fixture
def wrapped(books, registry, runtime):
    register_entity_wrappers(books, registry, runtime, False, ALL_MODES, FULL_ACCESS)
    return registry


class SlowService:
    name = "CatalogService"

    async def run(self, query, user):
        await asyncio.sleep(1)

    def tx(self, user):
        raise NotImplementedError

    async def send(self, event, data, user, entity=None, keys=None):
        raise NotImplementedError


class FailingService(SlowService):
    async def run(self, query, user):
        raise RuntimeError("boom")


class StalledTransaction:
    """Store transaction whose statements stall after they run."""

    def __init__(self, inner, failing_rollback=False):
        self.inner = inner
        self.failing_rollback = failing_rollback

    async def run(self, query):
        result = await self.inner.run(query)
        await asyncio.sleep(1)
        return result

    async def commit(self):
        await self.inner.commit()

    async def rollback(self):
        if self.failing_rollback:
            self.inner._finish(self._broken_rollback)
        else:
            await self.inner.rollback()

    def _broken_rollback(self):
        self.inner.service.conn.rollback()
        raise RuntimeError("rollback failed")


class StalledService:
    def __init__(self, inner, failing_rollback=False):
        self.inner = inner
        self.name = inner.name
        self.failing_rollback = failing_rollback

    async def run(self, query, user):
        return await self.inner.run(query, user)

    def tx(self, user):
        return StalledTransaction(self.inner.tx(user), self.failing_rollback)

    async def send(self, event, data, user, entity=None, keys=None):
        return await self.inner.send(event, data, user, entity=entity, keys=keys)


class TestRegistration:
    """Which wrapper tools exist."""

    def test_all_modes(self, wrapped):
        assert set(wrapped.tools) == {f"CatalogService_Books_{m}" for m in ALL_MODES}

    def test_accesses_limit_modes(self, books, registry, runtime):
        names = register_entity_wrappers(
            books, registry, runtime, True, ALL_MODES, WrapAccess(can_read=True)
        )
        assert names == ["CatalogService_Books_query", "CatalogService_Books_get"]

    def test_entity_modes_extend_requested_modes(self, books, registry, runtime):
        names = register_entity_wrappers(books, registry, runtime, False, ("query",), FULL_ACCESS)
        assert len(names) == 5

    def test_hint_only_on_matching_mode(self, wrapped):
        assert "Hint: Use for listing books" in wrapped.tools["CatalogService_Books_query"].description
        assert "Hint:" not in wrapped.tools["CatalogService_Books_get"].description

    def test_query_description_points_to_foreign_keys(self, wrapped):
        description = wrapped.tools["CatalogService_Books_query"].description
        assert "author_ID" in description

    def test_query_schema_excludes_omitted_fields(self, wrapped):
        schema = json.dumps(wrapped.tools["CatalogService_Books_query"].input_schema)
        assert "secret" not in schema
        assert "title" in schema


class TestQueryTool:
    """Structured queries against the seeded store."""

    @pytest.mark.asyncio
    async def test_where_and_orderby(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query",
            {
                "where": [{"field": "stock", "op": "ge", "value": 12}],
                "orderby": [{"field": "stock", "dir": "desc"}],
            },
            context,
        )
        data = rows(result)
        assert [r["ID"] for r in data] == [251, 201]
        assert all("secret" not in r for r in data)
        assert data[0]["available"] is False

    @pytest.mark.asyncio
    async def test_select_and_paging(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query",
            {"select": ["title"], "orderby": [{"field": "ID"}], "top": 1, "skip": 1},
            context,
        )
        assert rows(result) == [{"title": "Jane Eyre"}]

    @pytest.mark.asyncio
    async def test_quick_search(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_query", {"q": "Eyre"}, context)
        assert [r["ID"] for r in rows(result)] == [207]

    @pytest.mark.asyncio
    async def test_in_operator(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query",
            {"where": [{"field": "ID", "op": "in", "value": [201, 251]}], "orderby": [{"field": "ID"}]},
            context,
        )
        assert [r["ID"] for r in rows(result)] == [201, 251]

    @pytest.mark.asyncio
    async def test_count_ignores_skip(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query",
            {"where": [{"field": "available", "op": "eq", "value": True}], "return": "count", "skip": 5},
            context,
        )
        assert payload(result) == {"count": 2}

    @pytest.mark.asyncio
    async def test_aggregate(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query",
            {"return": "aggregate", "aggregate": [{"field": "stock", "fn": "sum"}]},
            context,
        )
        assert payload(result) == {"sum_stock": 356}

    @pytest.mark.asyncio
    async def test_aggregate_without_functions(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_query", {"return": "aggregate"}, context)
        assert result.content == []

    @pytest.mark.asyncio
    async def test_explain(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query",
            {"where": [{"field": "stock", "op": "ge", "value": 12}], "explain": True},
            context,
        )
        explained = payload(result)
        assert explained["plan"] == "SELECT from Books where stock >= 12 limit 25"
        assert len(explained["data"]) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "arguments",
        [
            {"select": ["secret"]},
            {"where": [{"field": "author", "op": "eq", "value": 101}]},
            {"top": 500},
            {"unexpected": 1},
            {"return": "everything"},
        ],
    )
    async def test_invalid_arguments(self, wrapped, context, arguments):
        result = await wrapped.call_tool("CatalogService_Books_query", arguments, context)
        assert error_code(result) == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_uncompilable_where(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_query", {"where": [{"field": "ID", "op": "in", "value": []}]}, context
        )
        assert error_code(result) == "FILTER_PARSE_ERROR"

    @pytest.mark.asyncio
    async def test_store_failure(self, books, registry, model, context):
        runtime = AppRuntime(model, services={"CatalogService": FailingService()})
        register_entity_wrappers(books, registry, runtime, False, ("query",), FULL_ACCESS)
        result = await registry.call_tool("CatalogService_Books_query", {}, context)
        assert error_code(result) == "QUERY_FAILED"
        assert "boom" in payload(result)["message"]

    @pytest.mark.asyncio
    async def test_timeout(self, books, registry, model, context):
        runtime = AppRuntime(model, services={"CatalogService": SlowService()})
        register_entity_wrappers(books, registry, runtime, False, ("query",), FULL_ACCESS)
        with patch("cap_mcp.mcp.entity_tools.TOOL_TIMEOUT_MS", 20):
            result = await registry.call_tool("CatalogService_Books_query", {}, context)
        assert error_code(result) == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_missing_service(self, books, registry, model, context):
        register_entity_wrappers(books, registry, AppRuntime(model), False, ("query",), FULL_ACCESS)
        result = await registry.call_tool("CatalogService_Books_query", {}, context)
        assert error_code(result) == "ERR_MISSING_SERVICE"


class TestGetTool:
    """Single-row reads by key."""

    @pytest.mark.asyncio
    async def test_by_key(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_get", {"ID": 201}, context)
        book = payload(result)
        assert book["title"] == "Wuthering Heights"
        assert "secret" not in book

    @pytest.mark.asyncio
    async def test_value_shorthand_and_numeric_string(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_get", {"value": "207"}, context)
        assert payload(result)["ID"] == 207

    @pytest.mark.asyncio
    async def test_key_name_is_case_insensitive(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_get", {"id": 251}, context)
        assert payload(result)["title"] == "The Raven"

    @pytest.mark.asyncio
    async def test_missing_key(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_get", {}, context)
        assert error_code(result) == "MISSING_KEY"

    @pytest.mark.asyncio
    async def test_not_found_is_empty_success(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_get", {"ID": 999}, context)
        assert not result.isError
        assert payload(result) is None


class TestWriteTools:
    """create / update / delete run in transactions."""

    @pytest.mark.asyncio
    async def test_create(self, wrapped, context):
        result = await wrapped.call_tool(
            "CatalogService_Books_create",
            {"ID": 300, "title": "Villette", "stock": 4, "author_ID": "107", "secret": "hidden"},
            context,
        )
        created = payload(result)
        assert created["ID"] == 300
        assert created["author_ID"] == 107
        assert "secret" not in created

        fetched = await wrapped.call_tool("CatalogService_Books_get", {"ID": 300}, context)
        assert payload(fetched)["title"] == "Villette"

    @pytest.mark.asyncio
    async def test_create_invalid_type(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_create", {"ID": 301, "stock": "many"}, context)
        assert error_code(result) == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_create_failure_rolls_back_and_releases(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_create", {"ID": 201, "title": "Dup"}, context)
        assert error_code(result) == "CREATE_FAILED"

        # The store is usable again afterwards
        after = await wrapped.call_tool("CatalogService_Books_get", {"ID": 201}, context)
        assert payload(after)["title"] == "Wuthering Heights"

    @pytest.mark.asyncio
    async def test_update_returns_updated_row(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_update", {"ID": 201, "stock": 99}, context)
        assert payload(result)["stock"] == 99

    @pytest.mark.asyncio
    async def test_update_without_fields(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_update", {"ID": 201}, context)
        assert error_code(result) == "NO_FIELDS"

    @pytest.mark.asyncio
    async def test_update_missing_key(self, wrapped, context):
        result = await wrapped.call_tool("CatalogService_Books_update", {"stock": 1}, context)
        assert error_code(result) == "MISSING_KEY"

    @pytest.mark.asyncio
    async def test_delete(self, wrapped, context):
        first = await wrapped.call_tool("CatalogService_Books_delete", {"ID": 251}, context)
        assert payload(first) == {"deleted": True}

        second = await wrapped.call_tool("CatalogService_Books_delete", {"ID": 251}, context)
        assert payload(second) == {"deleted": False}


class TestWriteTimeouts:
    """Timed-out writes roll back and leave the store unlocked."""

    @pytest.fixture(params=[False, True], ids=["rollback", "failing_rollback"])
    def stalled(self, request, books, registry, model, catalog_service):
        service = StalledService(catalog_service, failing_rollback=request.param)
        runtime = AppRuntime(model, services={"CatalogService": service})
        register_entity_wrappers(books, registry, runtime, False, ALL_MODES, FULL_ACCESS)
        return registry

    async def _call(self, registry, name, arguments, context):
        with patch("cap_mcp.mcp.entity_tools.TOOL_TIMEOUT_MS", 20):
            return await registry.call_tool(name, arguments, context)

    @pytest.mark.asyncio
    async def test_create(self, stalled, catalog_service, context):
        result = await self._call(stalled, "CatalogService_Books_create", {"ID": 300, "title": "Villette"}, context)
        assert error_code(result) == "TIMEOUT"
        assert not catalog_service._lock.locked()

        fetched = await stalled.call_tool("CatalogService_Books_get", {"ID": 300}, context)
        assert payload(fetched) is None

    @pytest.mark.asyncio
    async def test_update(self, stalled, catalog_service, context):
        result = await self._call(stalled, "CatalogService_Books_update", {"ID": 201, "stock": 0}, context)
        assert error_code(result) == "TIMEOUT"
        assert not catalog_service._lock.locked()

        fetched = await stalled.call_tool("CatalogService_Books_get", {"ID": 201}, context)
        assert payload(fetched)["stock"] == 12

    @pytest.mark.asyncio
    async def test_delete(self, stalled, catalog_service, context):
        result = await self._call(stalled, "CatalogService_Books_delete", {"ID": 251}, context)
        assert error_code(result) == "TIMEOUT"
        assert not catalog_service._lock.locked()

        fetched = await stalled.call_tool("CatalogService_Books_get", {"ID": 251}, context)
        assert payload(fetched)["title"] == "The Raven"


class TestExtractKeys:
    """Key extraction from loosely shaped arguments."""

    def test_bare_value(self, books):
        assert extract_keys(books, "42") == ({"ID": 42}, None)

    def test_missing(self, books):
        assert extract_keys(books, {"title": "x"}) == (None, "ID")

    def test_none_counts_as_missing(self, books):
        assert extract_keys(books, {"ID": None}) == (None, "ID")


class TestCompositionFields:
    """Compositions are writable for deep insert but never queried as columns."""

    @pytest.fixture
    def orders(self):
        return ResourceAnnotation(
            name="orders",
            description="Orders",
            target="Orders",
            service_name="Shop",
            properties={"ID": "UUID", "note": "String", "items": "Composition"},
            resource_keys={"ID": "UUID"},
        )

    @pytest.fixture
    def shop(self, orders, registry):
        model = CsnModel(SHOP_CSN)
        service = SqliteService("Shop", model)
        register_entity_wrappers(orders, registry, AppRuntime(model, services={"Shop": service}),
                                 False, ("query",), FULL_ACCESS)
        yield registry
        service.close()

    def test_composition_is_not_queryable(self, orders):
        assert orders.queryable_properties() == {"ID": "UUID", "note": "String"}
        assert scalar_fields(orders) == ["ID", "note"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "arguments",
        [
            {"select": ["items"]},
            {"where": [{"field": "items", "op": "eq", "value": "items"}]},
            {"orderby": [{"field": "items"}]},
        ],
    )
    async def test_composition_arguments_are_rejected(self, shop, context, arguments):
        result = await shop.call_tool("Shop_Orders_query", arguments, context)
        assert error_code(result) == "INVALID_INPUT"
