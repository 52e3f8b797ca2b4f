"""Tests for per-caller server construction and the describe tool."""

import json
from dataclasses import replace

import pytest

from cap_mcp.auth import ANONYMOUS_USER
from cap_mcp.config import CapabilityFlags
from cap_mcp.mcp.constants import DESCRIBE_MODEL_TOOL
from cap_mcp.mcp.factory import (
    create_mcp_server,
    initialization_options,
    wrap_modes,
    wrapping_enabled,
)


def payload(result):
    return json.loads(result.content[0].text)


@pytest.fixture
def auth_config(config):
    return replace(config, auth="inherit")


class TestRegistrations:
    """What one caller gets to see."""

    def test_auth_disabled_registers_everything(self, config, annotations, runtime, reader):
        server, registry = create_mcp_server(config, annotations, runtime, reader)
        assert server.name == "bookshop-mcp"
        assert set(registry.tools) == {
            DESCRIBE_MODEL_TOOL,
            "restock_book",
            "get_book_count",
            "submit_order",
            "CatalogService_Books_query",
            "CatalogService_Books_get",
            "CatalogService_Books_create",
            "CatalogService_Books_update",
            "CatalogService_Books_delete",
            "CatalogService_Authors_query",
            "CatalogService_Authors_get",
        }
        assert set(registry.resources) == {"books", "authors", "genres"}
        assert set(registry.prompts) == {"summarize_book"}

    def test_reader_sees_read_access_only(self, auth_config, annotations, runtime, reader):
        _, registry = create_mcp_server(auth_config, annotations, runtime, reader)
        assert "submit_order" not in registry.tools
        assert "authors" in registry.resources
        assert "CatalogService_Authors_query" in registry.tools
        assert registry.user is reader

    def test_anonymous_loses_restricted_entities(self, auth_config, annotations, runtime):
        _, registry = create_mcp_server(auth_config, annotations, runtime, None)
        assert registry.user is ANONYMOUS_USER
        assert "authors" not in registry.resources
        assert not any(name.startswith("CatalogService_Authors") for name in registry.tools)
        assert "books" in registry.resources

    def test_admin_gets_restricted_tools(self, auth_config, annotations, runtime, admin):
        _, registry = create_mcp_server(auth_config, annotations, runtime, admin)
        assert "submit_order" in registry.tools

    def test_global_wrap_switch(self, config, annotations, runtime):
        config = replace(config, wrap_entities_to_actions=True)
        _, registry = create_mcp_server(config, annotations, runtime)
        assert {"CatalogService_Genres_query", "CatalogService_Genres_get"} <= set(registry.tools)

    def test_no_annotations(self, config, runtime):
        _, registry = create_mcp_server(config, {}, runtime)
        assert registry.tools == {}
        assert registry.resources == {}

    def test_instructions(self, config, annotations, runtime):
        server, _ = create_mcp_server(replace(config, instructions="Use the books tools"), annotations, runtime)
        assert server.instructions == "Use the books tools"


class TestWrapSettings:
    """Entity wrapping follows the entity first, then the configuration."""

    def test_entity_flag_wins(self, config, annotations):
        assert wrapping_enabled(annotations["CatalogService.Books"], config)
        assert not wrapping_enabled(annotations["CatalogService.Genres"], config)

    def test_modes_fall_back_to_configuration(self, config, annotations):
        assert wrap_modes(annotations["CatalogService.Books"], config) == (
            "query", "get", "create", "update", "delete",
        )
        assert wrap_modes(annotations["CatalogService.Authors"], config) == ("query", "get")
        assert wrap_modes(annotations["CatalogService.Authors"], replace(config, wrap_entity_modes=[])) == (
            "query",
            "get",
        )


class TestInitializationOptions:
    def test_capabilities_follow_configuration(self, config, annotations, runtime):
        config.capabilities.tools = CapabilityFlags(list_changed=False)
        server, _ = create_mcp_server(config, annotations, runtime)
        options = initialization_options(server, config)
        assert options.server_name == "bookshop-mcp"
        assert options.server_version == "1.2.3"
        assert options.capabilities.tools.listChanged is False
        assert options.capabilities.resources.listChanged is True
        assert options.capabilities.prompts.listChanged is True


class TestDescribeModel:
    """The discovery tool."""

    @pytest.fixture
    def registry_with_describe(self, config, annotations, runtime):
        return create_mcp_server(config, annotations, runtime)[1]

    @pytest.mark.asyncio
    async def test_overview(self, registry_with_describe, context):
        result = await registry_with_describe.call_tool(DESCRIBE_MODEL_TOOL, {}, context)
        data = payload(result)
        assert data["services"] == ["CatalogService"]
        assert "CatalogService.Books" in data["entities"]

    @pytest.mark.asyncio
    async def test_service_entities(self, registry_with_describe, context):
        result = await registry_with_describe.call_tool(DESCRIBE_MODEL_TOOL, {"service": "CatalogService"}, context)
        data = payload(result)
        assert data["service"] == "CatalogService"
        assert set(data["entities"]) == {
            "CatalogService.Books",
            "CatalogService.Authors",
            "CatalogService.Genres",
        }

    @pytest.mark.asyncio
    async def test_entity_detailed(self, registry_with_describe, context):
        result = await registry_with_describe.call_tool(
            DESCRIBE_MODEL_TOOL,
            {"service": "CatalogService", "entity": "Books", "format": "detailed"},
            context,
        )
        data = payload(result)
        assert data["entity"] == "CatalogService.Books"
        assert data["keys"] == ["ID"]
        author = next(f for f in data["fields"] if f["name"] == "author")
        assert author["target"] == "CatalogService.Authors"
        assert data["examples"]["list_tool"] == "CatalogService_Books_query"
        assert data["examples"]["get_tool_payload"] == {"ID": "<value>"}
        assert "author" not in data["examples"]["list_tool_payload"]["select"]

    @pytest.mark.asyncio
    async def test_entity_concise(self, registry_with_describe, context):
        result = await registry_with_describe.call_tool(
            DESCRIBE_MODEL_TOOL, {"service": "CatalogService", "entity": "Books"}, context
        )
        assert set(payload(result)["fields"][0]) == {"name", "type", "key"}

    @pytest.mark.asyncio
    async def test_unknown_entity(self, registry_with_describe, context):
        result = await registry_with_describe.call_tool(
            DESCRIBE_MODEL_TOOL, {"service": "CatalogService", "entity": "Nope"}, context
        )
        assert payload(result) == {"error": "Entity not found: Nope (service CatalogService)"}

    @pytest.mark.asyncio
    async def test_invalid_format(self, registry_with_describe, context):
        result = await registry_with_describe.call_tool(DESCRIBE_MODEL_TOOL, {"format": "verbose"}, context)
        assert result.isError
        assert payload(result)["error"] == "INVALID_INPUT"
