"""Streamable-HTTP entry point routing ``/mcp`` requests to sessions.

POST without a session id must carry an initialize request and creates a
session; every other request is routed by the ``mcp-session-id`` header.
"""

import json
from collections.abc import Mapping
from time import perf_counter
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

from cap_mcp.annotations.structures import Annotation
from cap_mcp.auth import AuthenticationError, IdentityProvider, User
from cap_mcp.config import McpConfig
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.constants import MCP_SESSION_HEADER, RPC_BAD_REQUEST, RPC_INTERNAL_ERROR, RPC_UNAUTHORIZED
from cap_mcp.mcp.session_manager import McpSession, McpSessionManager

log = get_logger("sessions.http")

INVALID_SESSION_MESSAGE = "Bad Request: No valid sessions ID provided"
TRANSPORT_FAILED_MESSAGE = "Internal Error: Transport failed"


def rpc_error(status_code: int, code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message, "id": None}},
        status_code=status_code,
        headers=headers,
    )


def is_initialize_request(payload: Any) -> bool:
    """True for an initialize message, alone or inside a batch."""
    if isinstance(payload, list):
        return any(is_initialize_request(item) for item in payload)
    return isinstance(payload, dict) and payload.get("method") == "initialize"


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """A receive channel that yields the already-read body first."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class McpHttpEndpoint:
    """ASGI app mounted at ``/mcp``."""

    def __init__(
        self,
        manager: McpSessionManager,
        config: McpConfig,
        annotations: Mapping[str, Annotation] | None,
        identity_provider: IdentityProvider,
    ):
        self.manager = manager
        self.config = config
        self.annotations = annotations
        self.identity_provider = identity_provider

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        try:
            user = self.identity_provider.authenticate(request)
        except AuthenticationError as e:
            log.warning(f"Rejected unauthenticated {request.method} /mcp: {e}")
            response = rpc_error(401, RPC_UNAUTHORIZED, "Unauthorized", {"WWW-Authenticate": 'Basic realm="Users"'})
            await response(scope, receive, send)
            return
        # Handlers read the caller back from the request state
        request.state.user = user

        method = request.method
        if method == "POST":
            await self._handle_post(request, user, scope, receive, send)
        elif method in ("GET", "DELETE"):
            session = self._lookup(request, user)
            if isinstance(session, JSONResponse):
                await session(scope, receive, send)
            elif method == "GET":
                await self._forward(session, scope, receive, send)
            else:
                await self.manager.close_session(session.session_id)
                await JSONResponse({"jsonrpc": "2.0", "result": {"closed": True}})(scope, receive, send)
        else:
            await rpc_error(405, RPC_BAD_REQUEST, "Method not allowed")(scope, receive, send)

    def _lookup(self, request: Request, user: User) -> McpSession | JSONResponse:
        session_id = request.headers.get(MCP_SESSION_HEADER)
        session = self.manager.get_session(session_id)
        if session is None:
            log.error(f"Invalid session ID {session_id!r}")
            return rpc_error(400, RPC_BAD_REQUEST, INVALID_SESSION_MESSAGE)
        if not session.owned_by(user):
            log.warning(f"User {user.id} attempted to use session {session_id} of another user")
            return rpc_error(403, RPC_UNAUTHORIZED, "Forbidden")
        return session

    async def _handle_post(self, request: Request, user: User, scope: Scope, receive: Receive, send: Send) -> None:
        body = await request.body()
        try:
            payload = json.loads(body) if body else None
        except json.JSONDecodeError:
            payload = None

        session_id = request.headers.get(MCP_SESSION_HEADER)
        log.debug(
            f"MCP request received (has_session_id={bool(session_id)}, "
            f"initialize={is_initialize_request(payload)}, content_type={request.headers.get('content-type')})"
        )

        if not session_id and is_initialize_request(payload):
            session: McpSession | JSONResponse = await self.manager.create_session(
                self.config, self.annotations, user
            )
        else:
            session = self._lookup(request, user)
        if isinstance(session, JSONResponse):
            await session(scope, receive, send)
            return

        await self._forward(session, scope, _replay_body(body, receive), send)

    async def _forward(self, session: McpSession, scope: Scope, receive: Receive, send: Send) -> None:
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        start = perf_counter()
        try:
            await self.manager.handle_request(session, scope, receive, tracking_send)
        except Exception:
            log.exception(f"Transport failed for session {session.session_id}")
            if not response_started:
                await rpc_error(500, RPC_INTERNAL_ERROR, TRANSPORT_FAILED_MESSAGE)(scope, receive, send)
            return
        log.debug(f"MCP request handled in {(perf_counter() - start) * 1000:.1f}ms")
