"""Live MCP sessions and their lifecycle.

Each session pairs a server built for its creating caller with a
streamable-HTTP transport. The server loop of every session runs in the
task group owned by ``McpSessionManager.run()``.

Lifecycle:
    absent -> active (initialize without session id)
    active -> active (requests routed by session id)
    active -> closed (explicit close, or transport close in streaming mode)

In JSON-response mode every HTTP exchange is short-lived, so a closed
connection never ends the session.
"""

from collections.abc import Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.types import Receive, Scope, Send

from cap_mcp.annotations.structures import Annotation
from cap_mcp.auth import User
from cap_mcp.config import McpConfig
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.factory import initialization_options
from cap_mcp.mcp.registry import McpRegistry

log = get_logger("sessions.manager")

ServerFactory = Callable[[McpConfig, Mapping[str, Annotation] | None, User | None], tuple[Server, McpRegistry]]
TransportFactory = Callable[[str, bool], StreamableHTTPServerTransport]


def default_transport(session_id: str, json_response: bool) -> StreamableHTTPServerTransport:
    return StreamableHTTPServerTransport(mcp_session_id=session_id, is_json_response_enabled=json_response)


@dataclass
class McpSession:
    """One server/transport pair owned by a single client."""

    session_id: str
    server: Server
    transport: StreamableHTTPServerTransport
    registry: McpRegistry
    user: User | None = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    cancel_scope: anyio.CancelScope | None = None

    def owned_by(self, user: User | None) -> bool:
        if self.user is None or user is None:
            return self.user is user
        return self.user.id == user.id


class McpSessionManager:
    """Creates, routes to and tears down MCP sessions."""

    def __init__(
        self,
        server_factory: ServerFactory,
        json_response: bool = True,
        transport_factory: TransportFactory | None = None,
    ):
        """Initialize the session manager.

        Args:
            server_factory: Builds a ``(server, registry)`` pair for a caller
            json_response: Short-lived JSON responses instead of SSE streams
            transport_factory: Builds the transport for a new session id
        """
        self.server_factory = server_factory
        self.json_response = json_response
        self.transport_factory = transport_factory or default_transport
        self.sessions: dict[str, McpSession] = {}
        self._task_group: TaskGroup | None = None

    @asynccontextmanager
    async def run(self) -> AsyncIterator["McpSessionManager"]:
        """Own the task group session loops run in; close everything on exit."""
        if self._task_group is not None:
            raise RuntimeError("Session manager is already running")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            log.info(f"Session manager started (json_response={self.json_response})")
            try:
                yield self
            finally:
                await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                log.info("Session manager stopped")

    @property
    def running(self) -> bool:
        return self._task_group is not None

    def get_sessions(self) -> dict[str, McpSession]:
        return self.sessions

    def has_session(self, session_id: str | None) -> bool:
        return session_id is not None and session_id in self.sessions

    def get_session(self, session_id: str | None) -> McpSession | None:
        if session_id is None:
            return None
        return self.sessions.get(session_id)

    async def create_session(
        self,
        config: McpConfig,
        annotations: Mapping[str, Annotation] | None,
        user: User | None = None,
    ) -> McpSession:
        """Build a server for ``user``, pair it with a transport and start it.

        Returns once the transport streams are connected.

        Raises:
            RuntimeError: The manager is not running
        """
        if self._task_group is None:
            raise RuntimeError("Session manager is not running; use 'async with manager.run()'")
        log.debug("Initialize session request received")

        session_id = uuid4().hex
        server, registry = self.server_factory(config, annotations, user)
        transport = self.transport_factory(session_id, self.json_response)
        session = McpSession(session_id=session_id, server=server, transport=transport, registry=registry, user=user)
        options = initialization_options(server, config)

        self.sessions[session_id] = session
        try:
            await self._task_group.start(self._run_session, session, options)
        except Exception:
            self.sessions.pop(session_id, None)
            raise
        log.info(f"Session initialized with ID: {session_id}")
        return session

    async def _run_session(
        self,
        session: McpSession,
        options: InitializationOptions,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        started = False
        crashed = False
        with anyio.CancelScope() as scope:
            session.cancel_scope = scope
            try:
                async with session.transport.connect() as streams:
                    read_stream, write_stream = streams
                    started = True
                    task_status.started()
                    await session.server.run(read_stream, write_stream, options, stateless=False)
            except Exception:
                if not started:
                    raise
                crashed = True
                log.exception(f"Session {session.session_id} crashed")
            finally:
                if crashed or getattr(session.transport, "is_terminated", False):
                    self._forget(session.session_id)
                elif started:
                    self.on_transport_closed(session.session_id)

    def on_transport_closed(self, session_id: str) -> None:
        """Transport reported its connection closed.

        Only ends the session in streaming mode.
        """
        if self.json_response:
            log.debug(f"Ignoring transport close for {session_id} in JSON response mode")
            return
        self._forget(session_id)

    def _forget(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        if session.cancel_scope is not None:
            session.cancel_scope.cancel()
        log.info(f"Session {session_id} removed")

    async def handle_request(self, session: McpSession, scope: Scope, receive: Receive, send: Send) -> None:
        await session.transport.handle_request(scope, receive, send)

    async def close_session(self, session_id: str | None) -> bool:
        """Terminate the transport, stop the server loop and drop the session.

        Returns:
            False when no such session exists
        """
        session = self.sessions.pop(session_id, None) if session_id else None
        if session is None:
            return False
        try:
            await session.transport.terminate()
        except Exception as e:
            log.warning(f"Failed to terminate transport of session {session_id}: {e}")
        if session.cancel_scope is not None:
            session.cancel_scope.cancel()
        log.info(f"Session {session_id} closed")
        return True

    async def close_all(self) -> None:
        log.debug(f"Closing {len(self.sessions)} MCP sessions")
        for session_id in list(self.sessions):
            await self.close_session(session_id)
