"""FastAPI application exposing the MCP endpoint."""

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from cap_mcp.annotations import Annotation, parse_definitions
from cap_mcp.auth import IdentityProvider, MockedIdentityProvider, NoAuthIdentityProvider, User
from cap_mcp.config import McpConfig, get_config
from cap_mcp.mcp.factory import create_mcp_server
from cap_mcp.mcp.http import McpHttpEndpoint
from cap_mcp.mcp.session_manager import McpSessionManager
from cap_mcp.model import CsnModel
from cap_mcp.runtime import AppRuntime, Service

log = logging.getLogger("cap_mcp.app")


def _log_auth_mode(config: McpConfig, identity_provider: IdentityProvider) -> None:
    if not config.auth_enabled:
        log.warning("=" * 70)
        log.warning("  AUTH DISABLED (auth: none) - EVERY CALLER IS PRIVILEGED")
        log.warning("=" * 70)
    else:
        log.info("Authorization enabled via %s", type(identity_provider).__name__)


def create_app(
    model: CsnModel,
    services: Mapping[str, Service] | None = None,
    config: McpConfig | None = None,
    identity_provider: IdentityProvider | None = None,
    annotations: Mapping[str, Annotation] | None = None,
) -> FastAPI:
    """Create the FastAPI application serving ``/mcp``.

    Args:
        model: Resolved model the annotations are parsed from
        services: Served services by name
        config: Defaults to the process-wide configuration
        identity_provider: Defaults to anonymous access with auth enabled
        annotations: Already parsed annotations (parsed from ``model`` otherwise)

    Raises:
        AnnotationError: The model carries a malformed annotation
    """
    config = config or get_config()
    if annotations is None:
        annotations = parse_definitions(model)
    runtime = AppRuntime(model, dict(services or {}))
    if identity_provider is None:
        identity_provider = (
            MockedIdentityProvider({}, require_login=False) if config.auth_enabled else NoAuthIdentityProvider()
        )

    def server_factory(cfg: McpConfig, entries: Mapping[str, Annotation] | None, user: User | None):
        return create_mcp_server(cfg, entries, runtime, user)

    manager = McpSessionManager(server_factory, json_response=config.json_response)
    endpoint = McpHttpEndpoint(manager, config, annotations, identity_provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Run the session manager for the lifetime of the application."""
        _log_auth_mode(config, identity_provider)
        async with manager.run():
            yield
            log.info("Gracefully shutting down MCP server (%d sessions)", len(manager.sessions))

    app = FastAPI(
        title=config.name,
        description="MCP endpoint for annotated CDS services",
        version=config.version,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.runtime = runtime
    app.state.annotations = annotations
    app.state.session_manager = manager

    @app.get("/mcp/health")
    async def health_check() -> dict:
        """Health check endpoint for load balancers."""
        return {"status": "UP"}

    app.add_route("/mcp", endpoint, methods=["GET", "POST", "DELETE"])
    return app
