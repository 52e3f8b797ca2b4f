"""Config tests for cap-mcp.

Tests critical configuration pathways:
- Defaults and environment variable overrides (sanitized)
- Merging the host application's mcp section (dict or JSON string)
- Instructions resolution
"""

import json
import os
from unittest.mock import patch

import pytest

from cap_mcp.config import (
    DEFAULT_NAME,
    McpConfig,
    get_config,
    get_mcp_instructions,
    get_safe_env_var,
    load_configuration,
    parse_json_configuration,
    reset_config,
    set_config,
)
from cap_mcp.errors import JsonConfigError, JsonParseErrorType

VALID_JSON = json.dumps(
    {
        "name": "json-server",
        "version": "2.0.0",
        "auth": "none",
        "capabilities": {"tools": {"listChanged": False}, "resources": {}, "prompts": {}},
    }
)


class TestConfigDefaults:
    """Test that config has expected default values."""

    def test_defaults(self):
        """Without overrides the server is named and authorized by default."""
        with patch.dict(os.environ, {}, clear=True):
            config = McpConfig()
        assert config.name == DEFAULT_NAME
        assert config.version == "1.0.0"
        assert config.auth == "inherit"
        assert config.auth_enabled
        assert config.wrap_entities_to_actions is False
        assert config.wrap_entity_modes == ["query", "get", "create", "update"]
        assert config.json_response is True
        assert config.elicit_timeout_seconds is None

    def test_capabilities_default_to_list_changed(self):
        """Every feature advertises listChanged, never subscribe."""
        config = McpConfig()
        for feature in (config.capabilities.tools, config.capabilities.resources, config.capabilities.prompts):
            assert feature.list_changed is True
            assert feature.subscribe is False

    def test_auth_none_disables_authorization(self):
        """Only an explicit "none" turns authorization off."""
        assert not McpConfig(auth="none").auth_enabled


class TestConfigEnvironmentOverrides:
    """Test environment variable overrides for config."""

    def test_name_override(self):
        """Server name should be overridable via env var."""
        with patch.dict(os.environ, {"CAP_MCP_NAME": "bookshop"}):
            assert McpConfig().name == "bookshop"

    def test_dangerous_characters_are_stripped(self):
        """Shell metacharacters are removed before validation."""
        with patch.dict(os.environ, {"CAP_MCP_NAME": "books;$(rm)"}):
            assert get_safe_env_var("CAP_MCP_NAME") == "booksrm"

    def test_invalid_values_fall_back(self):
        """Values failing their pattern fall back to the default."""
        with patch.dict(os.environ, {"CAP_MCP_VERSION": "latest", "CAP_MCP_AUTH": "sometimes"}):
            config = McpConfig()
        assert config.version == "1.0.0"
        assert config.auth == "inherit"

    def test_wrap_modes_drop_unknown_entries(self):
        """Unknown wrapper modes are ignored."""
        with patch.dict(os.environ, {"CAP_MCP_WRAP_MODES": "query, delete, upsert"}):
            assert McpConfig().wrap_entity_modes == ["query", "delete"]

    def test_boolean_and_numeric_overrides(self):
        """Booleans accept true/1/yes and timeouts must be numeric."""
        with patch.dict(
            os.environ,
            {"CAP_MCP_WRAP_ENTITIES": "yes", "CAP_MCP_ENABLE_JSON": "false", "CAP_MCP_ELICIT_TIMEOUT": "2.5"},
        ):
            config = McpConfig()
        assert config.wrap_entities_to_actions is True
        assert config.json_response is False
        assert config.elicit_timeout_seconds == 2.5

    def test_non_numeric_timeout_is_ignored(self):
        with patch.dict(os.environ, {"CAP_MCP_ELICIT_TIMEOUT": "soon"}):
            assert McpConfig().elicit_timeout_seconds is None


class TestLoadConfiguration:
    """Merging the host's mcp section."""

    def test_none_keeps_defaults(self):
        """No section means environment defaults."""
        assert load_configuration(None) == McpConfig()

    def test_dict_section(self):
        """A dict section only needs the keys it overrides."""
        config = load_configuration(
            {
                "name": "dict-server",
                "wrap_entities_to_actions": True,
                "wrap_entity_modes": ["query"],
                "capabilities": {"prompts": {"listChanged": False}},
                "unrelated": 1,
            }
        )
        assert config.name == "dict-server"
        assert config.wrap_entities_to_actions is True
        assert config.wrap_entity_modes == ["query"]
        assert config.capabilities.prompts.list_changed is False
        assert config.capabilities.tools.list_changed is True

    def test_invalid_dict_section_is_ignored(self):
        """A section of the wrong shape is logged and ignored."""
        config = load_configuration({"name": "x", "auth": "sometimes"})
        assert config == McpConfig()

    def test_json_string(self):
        """A JSON string must identify the server completely."""
        config = load_configuration(VALID_JSON)
        assert config.name == "json-server"
        assert config.version == "2.0.0"
        assert not config.auth_enabled
        assert config.capabilities.tools.list_changed is False

    def test_incomplete_json_string_is_ignored(self):
        """Missing required keys fall back to defaults."""
        assert load_configuration('{"name": "partial"}') == McpConfig()


class TestParseJsonConfiguration:
    """Failure categories of JSON configuration strings."""

    @pytest.mark.parametrize(
        "raw,error_type",
        [
            (42, JsonParseErrorType.INVALID_INPUT),
            ("   ", JsonParseErrorType.INVALID_INPUT),
            ("{not json", JsonParseErrorType.PARSE_ERROR),
            ("{}", JsonParseErrorType.VALIDATION_ERROR),
            ('{"name": "x", "version": "1", "auth": "maybe", "capabilities": {}}', JsonParseErrorType.VALIDATION_ERROR),
        ],
    )
    def test_errors(self, raw, error_type):
        with pytest.raises(JsonConfigError) as exc:
            parse_json_configuration(raw)
        assert exc.value.error_type is error_type

    def test_valid(self):
        parsed = parse_json_configuration(VALID_JSON)
        assert parsed["name"] == "json-server"
        assert parsed["capabilities"]["tools"]["list_changed"] is False


class TestInstructions:
    """Instructions are a string or a markdown file."""

    def test_string(self):
        assert get_mcp_instructions(McpConfig(instructions="Be brief")) == "Be brief"

    def test_unset(self):
        assert get_mcp_instructions(McpConfig(instructions=None)) is None

    def test_markdown_file(self, tmp_path):
        path = tmp_path / "instructions.md"
        path.write_text("# Use the catalog", encoding="utf-8")
        assert get_mcp_instructions(McpConfig(instructions={"file": str(path)})) == "# Use the catalog"

    def test_wrong_file_type(self, tmp_path):
        path = tmp_path / "instructions.txt"
        path.write_text("x", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid file type"):
            get_mcp_instructions(McpConfig(instructions={"file": str(path)}))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="not found"):
            get_mcp_instructions(McpConfig(instructions={"file": str(tmp_path / "nope.md")}))


class TestGlobalConfig:
    def test_singleton(self):
        """get_config returns one instance until reset."""
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first

    def test_set_config(self):
        custom = McpConfig(name="custom")
        set_config(custom)
        assert get_config() is custom
