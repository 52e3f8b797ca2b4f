"""Annotation vocabulary recognized by the parser."""

MCP_ANNOTATION_KEY = "@mcp"

# Source annotation key -> destination field path in ParsedAnnotations
MCP_ANNOTATION_MAPPING: dict[str, str] = {
    "@mcp.name": "name",
    "@mcp.description": "description",
    "@mcp.resource": "resource",
    "@mcp.tool": "tool",
    "@mcp.prompts": "prompts",
    "@mcp.wrap": "wrap",
    "@mcp.wrap.tools": "wrap.tools",
    "@mcp.wrap.modes": "wrap.modes",
    "@mcp.wrap.hint": "wrap.hint",
    "@mcp.wrap.hint.get": "wrap.hint.get",
    "@mcp.wrap.hint.query": "wrap.hint.query",
    "@mcp.wrap.hint.create": "wrap.hint.create",
    "@mcp.wrap.hint.update": "wrap.hint.update",
    "@mcp.wrap.hint.delete": "wrap.hint.delete",
    "@mcp.elicit": "elicit",
    "@requires": "requires",
    "@restrict": "restrict",
}

DEFAULT_ALL_RESOURCE_OPTIONS = frozenset({"filter", "orderby", "top", "skip", "select"})
# Stable ordering for resource templates
RESOURCE_OPTION_ORDER = ("filter", "orderby", "top", "skip", "select")

ELICIT_KINDS = frozenset({"input", "confirm"})
PROMPT_ROLES = frozenset({"user", "assistant"})

MCP_HINT_ELEMENT = "@mcp.hint"
MCP_OMIT_PROP_KEY = "@mcp.omit"
FOREIGN_KEY_MARKER = "@odata.foreignKey4"
COMPUTED_MARKER = "@core.computed"

# @restrict grant shorthands
GRANT_EXPANSIONS: dict[str, tuple[str, ...]] = {
    "CHANGE": ("UPDATE",),
    "WRITE": ("CREATE", "UPDATE", "DELETE"),
    "*": ("CREATE", "READ", "UPDATE", "DELETE"),
}

# Pseudo roles
AUTHENTICATED_USER = "authenticated-user"
ANY_ROLE = "any"
