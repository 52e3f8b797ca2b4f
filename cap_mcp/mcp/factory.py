"""Build one MCP server for one caller from the parsed annotations."""

from collections.abc import Mapping

from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from cap_mcp.annotations.structures import (
    Annotation,
    PromptAnnotation,
    ResourceAnnotation,
    ToolAnnotation,
)
from cap_mcp.auth import User, get_access_rights, get_wrap_accesses, has_tool_operation_access
from cap_mcp.config import McpConfig, get_mcp_instructions
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.describe_model import register_describe_model_tool
from cap_mcp.mcp.entity_tools import register_entity_wrappers
from cap_mcp.mcp.prompts import assign_prompts
from cap_mcp.mcp.registry import McpRegistry
from cap_mcp.mcp.resources import assign_resource
from cap_mcp.mcp.tools import assign_tool
from cap_mcp.runtime import RuntimeContext

log = get_logger("sessions.factory")

FALLBACK_WRAP_MODES = ("query", "get")


def wrapping_enabled(resource: ResourceAnnotation, config: McpConfig) -> bool:
    """The entity's own ``wrap.tools`` wins; unset falls back to the global switch."""
    local = resource.wrap.tools if resource.wrap else None
    return local is True or (local is None and config.wrap_entities_to_actions)


def wrap_modes(resource: ResourceAnnotation, config: McpConfig) -> tuple[str, ...]:
    local = resource.wrap.modes if resource.wrap else None
    return tuple(local or config.wrap_entity_modes or FALLBACK_WRAP_MODES)


def create_mcp_server(
    config: McpConfig,
    annotations: Mapping[str, Annotation] | None,
    runtime: RuntimeContext,
    user: User | None = None,
) -> tuple[Server, McpRegistry]:
    """Create a server whose registrations are filtered for ``user``.

    Returns:
        The low-level server with handlers bound, and its registry
    """
    log.debug("Creating MCP server instance")
    server = Server(config.name, version=config.version, instructions=get_mcp_instructions(config))
    auth_enabled = config.auth_enabled
    caller = get_access_rights(auth_enabled, user)
    registry = McpRegistry(caller)

    if not annotations:
        log.debug("No annotations provided, skipping registration")
        registry.bind(server)
        return server, registry

    register_describe_model_tool(registry, runtime)

    for entry in annotations.values():
        if isinstance(entry, ToolAnnotation):
            if not has_tool_operation_access(caller, entry.restrictions):
                log.debug(f"Skipping tool {entry.name}: no access for {caller.id}")
                continue
            assign_tool(entry, registry, runtime, auth_enabled, config.elicit_timeout_seconds)
        elif isinstance(entry, ResourceAnnotation):
            accesses = get_wrap_accesses(caller, entry.restrictions)
            if accesses.can_read:
                assign_resource(entry, registry, runtime, auth_enabled)
            if wrapping_enabled(entry, config):
                register_entity_wrappers(entry, registry, runtime, auth_enabled, wrap_modes(entry, config), accesses)
        elif isinstance(entry, PromptAnnotation):
            assign_prompts(entry, registry, strict=config.prompt_strict_placeholders)
        else:
            log.warning("Invalid annotation entry - cannot be registered, skipping")

    log.info(
        f"MCP server ready for {caller.id}: {len(registry.tools)} tools, "
        f"{len(registry.resources)} resources, {len(registry.prompts)} prompts"
    )
    registry.bind(server)
    return server, registry


def initialization_options(server: Server, config: McpConfig) -> InitializationOptions:
    capabilities = config.capabilities
    return server.create_initialization_options(
        notification_options=NotificationOptions(
            prompts_changed=capabilities.prompts.list_changed,
            resources_changed=capabilities.resources.list_changed,
            tools_changed=capabilities.tools.list_changed,
        )
    )
