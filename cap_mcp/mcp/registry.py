"""Registered tools, resources and prompts of one MCP server.

The registry is the per-session catalogue the factory fills in. ``bind``
installs request handlers on a low-level MCP ``Server`` that dispatch into
it, resolving the caller for each request from the HTTP request state.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from mcp import types
from mcp.server.lowlevel import Server
from mcp.shared.exceptions import McpError

from cap_mcp.auth import User
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.uri_template import UriTemplate
from cap_mcp.mcp.utils import text_result

log = get_logger("tools.registry")

ElicitFn = Callable[[str, dict[str, Any]], Awaitable[types.ElicitResult]]


@dataclass
class InvocationContext:
    """Who is calling, and how to ask them for more input."""

    user: User
    elicit: ElicitFn | None = None


ToolHandler = Callable[[dict[str, Any], InvocationContext], Awaitable[types.CallToolResult]]
ResourceHandler = Callable[[str, dict[str, str], InvocationContext], Awaitable[str]]
PromptHandler = Callable[[dict[str, str], InvocationContext], Awaitable[types.GetPromptResult]]


@dataclass
class RegisteredTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    title: str | None = None

    def to_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            title=self.title or self.name,
            description=self.description,
            inputSchema=self.input_schema,
        )


@dataclass
class RegisteredResource:
    """A static resource or a resource template (``uri`` with ``{?...}``)."""

    name: str
    uri: UriTemplate
    title: str
    description: str
    handler: ResourceHandler
    mime_type: str = "application/json"
    # Static resources are listed by base URI but still accept ?top=
    static: bool = False

    @property
    def is_template(self) -> bool:
        return not self.static

    def to_resource(self) -> types.Resource:
        return types.Resource(
            name=self.name,
            title=self.title,
            uri=self.uri.base_uri,
            description=self.description,
            mimeType=self.mime_type,
        )

    def to_template(self) -> types.ResourceTemplate:
        return types.ResourceTemplate(
            name=self.name,
            title=self.title,
            uriTemplate=str(self.uri),
            description=self.description,
            mimeType=self.mime_type,
        )


@dataclass
class RegisteredPrompt:
    name: str
    title: str
    description: str
    handler: PromptHandler
    arguments: list[types.PromptArgument] = field(default_factory=list)

    def to_prompt(self) -> types.Prompt:
        return types.Prompt(
            name=self.name,
            title=self.title,
            description=self.description,
            arguments=self.arguments or None,
        )


class McpRegistry:
    def __init__(self, user: User):
        # Identity the registrations were filtered for
        self.user = user
        self.tools: dict[str, RegisteredTool] = {}
        self.resources: dict[str, RegisteredResource] = {}
        self.prompts: dict[str, RegisteredPrompt] = {}

    def add_tool(self, tool: RegisteredTool) -> None:
        if tool.name in self.tools:
            raise ValueError(f"Tool {tool.name} is already registered")
        log.debug(f"Registered tool {tool.name}")
        self.tools[tool.name] = tool

    def add_resource(self, resource: RegisteredResource) -> None:
        if resource.name in self.resources:
            raise ValueError(f"Resource {resource.name} is already registered")
        log.debug(f"Registered resource {resource.uri}")
        self.resources[resource.name] = resource

    def add_prompt(self, prompt: RegisteredPrompt) -> None:
        if prompt.name in self.prompts:
            raise ValueError(f"Prompt {prompt.name} is already registered")
        log.debug(f"Registered prompt {prompt.name}")
        self.prompts[prompt.name] = prompt

    def list_tools(self) -> list[types.Tool]:
        return [t.to_tool() for t in self.tools.values()]

    def list_resources(self) -> list[types.Resource]:
        return [r.to_resource() for r in self.resources.values() if not r.is_template]

    def list_resource_templates(self) -> list[types.ResourceTemplate]:
        return [r.to_template() for r in self.resources.values() if r.is_template]

    def list_prompts(self) -> list[types.Prompt]:
        return [p.to_prompt() for p in self.prompts.values()]

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None, context: InvocationContext
    ) -> types.CallToolResult:
        tool = self.tools.get(name)
        if tool is None:
            return types.CallToolResult(
                isError=True, content=[types.TextContent(type="text", text=f"Unknown tool: {name}")]
            )
        try:
            return await tool.handler(arguments or {}, context)
        except Exception as e:
            # Handlers convert their own failures; this only catches bugs
            log.exception(f"Tool {name} raised unexpectedly")
            result = text_result(f"Tool {name} failed: {e}")
            result.isError = True
            return result

    def find_resource(self, uri: str) -> tuple[RegisteredResource, dict[str, str]] | None:
        for resource in self.resources.values():
            variables = resource.uri.match(uri)
            if variables is not None:
                return resource, variables
        return None

    async def read_resource(self, uri: str, context: InvocationContext) -> types.ReadResourceResult:
        found = self.find_resource(uri)
        if found is None:
            raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message=f"Resource {uri} not found"))
        resource, variables = found
        text = await resource.handler(uri, variables, context)
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, text=text, mimeType=resource.mime_type)]
        )

    async def get_prompt(
        self, name: str, arguments: dict[str, str] | None, context: InvocationContext
    ) -> types.GetPromptResult:
        prompt = self.prompts.get(name)
        if prompt is None:
            raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message=f"Prompt {name} not found"))
        return await prompt.handler(arguments or {}, context)

    def bind(self, server: Server) -> Server:
        """Install handlers on ``server`` that dispatch into this registry."""

        def current_context() -> InvocationContext:
            ctx = server.request_context
            user = None
            if ctx.request is not None:
                user = getattr(ctx.request.state, "user", None)

            async def elicit(message: str, schema: dict[str, Any]) -> types.ElicitResult:
                return await ctx.session.elicit(message=message, requestedSchema=schema)

            return InvocationContext(user=user or self.user, elicit=elicit)

        @server.list_tools()
        async def handle_list_tools() -> list[types.Tool]:
            return self.list_tools()

        async def handle_call_tool(req: types.CallToolRequest) -> types.ServerResult:
            result = await self.call_tool(req.params.name, req.params.arguments, current_context())
            return types.ServerResult(result)

        # Installed directly: results carry isError and the arguments are
        # validated by each handler against its own pydantic model
        server.request_handlers[types.CallToolRequest] = handle_call_tool

        @server.list_resources()
        async def handle_list_resources() -> list[types.Resource]:
            return self.list_resources()

        @server.list_resource_templates()
        async def handle_list_resource_templates() -> list[types.ResourceTemplate]:
            return self.list_resource_templates()

        async def handle_read_resource(req: types.ReadResourceRequest) -> types.ServerResult:
            result = await self.read_resource(str(req.params.uri), current_context())
            return types.ServerResult(result)

        server.request_handlers[types.ReadResourceRequest] = handle_read_resource

        @server.list_prompts()
        async def handle_list_prompts() -> list[types.Prompt]:
            return self.list_prompts()

        @server.get_prompt()
        async def handle_get_prompt(name: str, arguments: dict[str, str] | None) -> types.GetPromptResult:
            return await self.get_prompt(name, arguments, current_context())

        return server
