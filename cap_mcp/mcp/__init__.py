"""MCP layer: server factory, registrations and session handling.

Architecture:
    annotations -> factory (filtered per caller) -> registry -> low-level Server
    HTTP /mcp -> session manager -> streamable-HTTP transport per session
"""

from cap_mcp.mcp.factory import create_mcp_server
from cap_mcp.mcp.registry import InvocationContext, McpRegistry
from cap_mcp.mcp.session_manager import McpSession, McpSessionManager

__all__ = [
    "create_mcp_server",
    "InvocationContext",
    "McpRegistry",
    "McpSession",
    "McpSessionManager",
]
