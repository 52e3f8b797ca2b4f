"""Configuration for cap-mcp.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables with CAP_MCP_ prefix, or merge the
host application's ``mcp`` section (a dict or a JSON string) on top with
``load_configuration``.
"""

import json
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cap_mcp.errors import JsonConfigError, JsonParseErrorType
from cap_mcp.log_config import get_logger

log = get_logger("config")

# Look for .env in the working directory and the package parent
_pkg_dir = Path(__file__).parent.parent
_env_loaded = load_dotenv(Path.cwd() / ".env") or load_dotenv(_pkg_dir / ".env")
log.debug(f"Loaded .env file: {_env_loaded}")

DEFAULT_NAME = "cap-mcp-server"
DEFAULT_VERSION = "1.0.0"
DEFAULT_WRAP_MODES = ("query", "get", "create", "update")
WRAP_MODES = ("query", "get", "create", "update", "delete")

# Shell metacharacters stripped from every environment value
_DANGEROUS_CHARS = re.compile(r"[;&|`$()<>!]")

_VALIDATION_PATTERNS: dict[str, re.Pattern] = {
    "CAP_MCP_NAME": re.compile(r"^[a-zA-Z0-9\-_@/\.]+$"),
    "CAP_MCP_VERSION": re.compile(r"^\d+\.\d+\.\d+(-[a-zA-Z0-9\-\.]+)?(\+[a-zA-Z0-9\-\.]+)?$"),
    "CAP_MCP_AUTH": re.compile(r"^(inherit|none)$"),
}


def get_safe_env_var(key: str, default: str = "") -> str:
    """Read an environment variable with dangerous characters removed.

    Values of keys with a known pattern fall back to ``default`` when the
    sanitized value does not match it.
    """
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default

    sanitized = _DANGEROUS_CHARS.sub("", raw).strip()
    if sanitized != raw:
        log.warning(f"Environment variable '{key}' contained potentially dangerous characters and was sanitized")

    pattern = _VALIDATION_PATTERNS.get(key)
    if pattern is not None and not pattern.match(sanitized):
        log.warning(f"Using default value for invalid environment variable '{key}'")
        return default
    return sanitized


def _get_env(key: str, default: str) -> str:
    """Get sanitized environment variable with CAP_MCP_ prefix."""
    return get_safe_env_var(f"CAP_MCP_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable."""
    val = os.getenv(f"CAP_MCP_{key}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _get_env_list(key: str, default: tuple[str, ...]) -> list[str]:
    """Get comma separated environment variable as a list."""
    val = _get_env(key, "")
    if not val:
        return list(default)
    return [item.strip() for item in val.split(",") if item.strip()]


def _get_env_float(key: str) -> float | None:
    val = _get_env(key, "")
    if not val:
        return None
    try:
        return float(val)
    except ValueError:
        log.warning(f"Ignoring non-numeric CAP_MCP_{key}={val!r}")
        return None


@dataclass
class CapabilityFlags:
    """Capability switches advertised for one MCP feature."""

    list_changed: bool = True
    subscribe: bool = False


@dataclass
class Capabilities:
    tools: CapabilityFlags = field(default_factory=CapabilityFlags)
    resources: CapabilityFlags = field(default_factory=CapabilityFlags)
    prompts: CapabilityFlags = field(default_factory=CapabilityFlags)


@dataclass
class McpConfig:
    """cap-mcp server configuration.

    Attributes:
        name: Server name reported on initialize (default: cap-mcp-server)
        version: Server version reported on initialize (default: 1.0.0)
        auth: "inherit" uses the host identity provider, "none" runs privileged
        capabilities: listChanged/subscribe flags per MCP feature
        wrap_entities_to_actions: Expose CRUD wrapper tools for every resource
        wrap_entity_modes: Wrapper modes used when an entity declares none
        instructions: Instructions string, or {"file": "path.md"}
        json_response: Answer POSTs with plain JSON instead of SSE streams
        prompt_strict_placeholders: Fail prompt rendering on missing inputs
        elicit_timeout_seconds: Give up on unanswered elicitations (None waits forever)
        host: Bind address for ``cap-mcp serve``
        port: Bind port for ``cap-mcp serve``
    """

    name: str = field(default_factory=lambda: _get_env("NAME", DEFAULT_NAME))
    version: str = field(default_factory=lambda: _get_env("VERSION", DEFAULT_VERSION))
    auth: Literal["inherit", "none"] = field(default_factory=lambda: _get_env("AUTH", "inherit"))  # type: ignore[assignment]
    capabilities: Capabilities = field(default_factory=Capabilities)
    wrap_entities_to_actions: bool = field(
        default_factory=lambda: _get_env_bool("WRAP_ENTITIES", False)
    )
    wrap_entity_modes: list[str] = field(
        default_factory=lambda: _get_env_list("WRAP_MODES", DEFAULT_WRAP_MODES)
    )
    instructions: str | dict[str, str] | None = field(
        default_factory=lambda: _get_env("INSTRUCTIONS", "") or None
    )
    json_response: bool = field(default_factory=lambda: _get_env_bool("ENABLE_JSON", True))
    prompt_strict_placeholders: bool = field(
        default_factory=lambda: _get_env_bool("STRICT_PROMPTS", False)
    )
    elicit_timeout_seconds: float | None = field(default_factory=lambda: _get_env_float("ELICIT_TIMEOUT"))
    host: str = field(default_factory=lambda: _get_env("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(_get_env("PORT", "4004")))

    def __post_init__(self):
        """Drop unknown wrapper modes and log the effective configuration."""
        unknown = [m for m in self.wrap_entity_modes if m not in WRAP_MODES]
        if unknown:
            log.warning(f"Ignoring unknown wrap_entity_modes: {unknown}")
            self.wrap_entity_modes = [m for m in self.wrap_entity_modes if m in WRAP_MODES]

        log.debug(f"name={self.name}, version={self.version}, auth={self.auth}")
        log.debug(f"wrap_entities_to_actions={self.wrap_entities_to_actions}, wrap_entity_modes={self.wrap_entity_modes}")
        log.debug(f"json_response={self.json_response}, strict_prompts={self.prompt_strict_placeholders}")

    @property
    def auth_enabled(self) -> bool:
        """Anything but an explicit "none" keeps authorization on."""
        return self.auth != "none"


class _CapabilityFlagsSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    list_changed: bool | None = Field(default=None, alias="listChanged")
    subscribe: bool | None = None


class _CapabilitiesSchema(BaseModel):
    tools: _CapabilityFlagsSchema | None = None
    resources: _CapabilityFlagsSchema | None = None
    prompts: _CapabilityFlagsSchema | None = None


class _ConfigOverrides(BaseModel):
    """Shape of the host application's ``mcp`` configuration section."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    version: str | None = None
    auth: Literal["inherit", "none"] | None = None
    capabilities: _CapabilitiesSchema | None = None
    wrap_entities_to_actions: bool | None = None
    wrap_entity_modes: list[Literal["query", "get", "create", "update", "delete"]] | None = None
    instructions: str | dict[str, str] | None = None
    json_response: bool | None = None
    prompt_strict_placeholders: bool | None = None
    elicit_timeout_seconds: float | None = None


class _JsonConfiguration(_ConfigOverrides):
    """A JSON-string configuration must at least identify the server."""

    name: str
    version: str
    auth: Literal["inherit", "none"]
    capabilities: _CapabilitiesSchema


def parse_json_configuration(raw: Any) -> dict[str, Any]:
    """Parse and validate a JSON configuration string.

    Raises:
        JsonConfigError: With the failure category in ``error_type``
    """
    if not isinstance(raw, str):
        raise JsonConfigError(JsonParseErrorType.INVALID_INPUT, f"Input must be a string, got {type(raw).__name__}")
    trimmed = raw.strip()
    if not trimmed:
        raise JsonConfigError(JsonParseErrorType.INVALID_INPUT, "Input is empty or contains only whitespace")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as e:
        raise JsonConfigError(JsonParseErrorType.PARSE_ERROR, f"JSON parsing failed: {e.msg}") from e
    try:
        validated = _JsonConfiguration.model_validate(parsed)
    except ValidationError as e:
        raise JsonConfigError(
            JsonParseErrorType.VALIDATION_ERROR,
            f"JSON does not match expected schema ({e.error_count()} errors)",
        ) from e
    return validated.model_dump(exclude_none=True, by_alias=False)


def _merge_capabilities(base: Capabilities, overrides: dict[str, Any]) -> Capabilities:
    merged = {}
    for feature in ("tools", "resources", "prompts"):
        current: CapabilityFlags = getattr(base, feature)
        flags = overrides.get(feature) or {}
        merged[feature] = replace(current, **{k: v for k, v in flags.items() if v is not None})
    return Capabilities(**merged)


def load_configuration(raw: dict[str, Any] | str | None = None) -> McpConfig:
    """Build the effective configuration.

    Environment defaults come first; ``raw`` (the host's ``mcp`` section)
    overrides them. An invalid JSON string or section is logged and ignored.
    """
    config = McpConfig()
    if raw is None:
        return config

    try:
        if isinstance(raw, str):
            overrides = parse_json_configuration(raw)
        else:
            overrides = _ConfigOverrides.model_validate(raw).model_dump(exclude_none=True)
    except JsonConfigError as e:
        log.warning(f"Invalid CAP configuration ({e.error_type.value}): {e.message}. Using defaults")
        return config
    except ValidationError as e:
        log.warning(f"Invalid mcp configuration section ({e.error_count()} errors). Using defaults")
        return config

    capabilities = overrides.pop("capabilities", None)
    config = replace(config, **overrides)
    if capabilities:
        config.capabilities = _merge_capabilities(config.capabilities, capabilities)
    log.info(f"Configuration loaded: name={config.name}, version={config.version}, auth={config.auth}")
    return config


def get_mcp_instructions(config: McpConfig) -> str | None:
    """Resolve the instructions text sent to clients on initialize.

    Raises:
        ValueError: When an instructions file is not markdown or missing
    """
    if not config.instructions:
        return None
    if isinstance(config.instructions, str):
        return config.instructions
    path = config.instructions.get("file")
    if not path:
        return None
    return read_instructions_file(path)


def read_instructions_file(path: str | Path) -> str:
    path = Path(path)
    if path.suffix != ".md":
        raise ValueError("Invalid file type provided for instructions")
    if not path.exists():
        raise ValueError("Instructions file not found")
    return path.read_text(encoding="utf-8")


# Global config instance
_config: McpConfig | None = None


def get_config() -> McpConfig:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = McpConfig()
    return _config


def set_config(config: McpConfig) -> None:
    """Install ``config`` as the global instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset config for testing."""
    global _config
    _config = None
