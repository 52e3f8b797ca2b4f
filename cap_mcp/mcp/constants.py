"""Constants shared by the MCP layer."""

# Clients send this header on every request after initialize
MCP_SESSION_HEADER = "mcp-session-id"

NEW_LINE = "\n"

ERR_MISSING_SERVICE = "Error: Service could not be found"

# Wrapper tools
TOOL_TIMEOUT_MS = 10_000
WRAPPER_MAX_TOP = 200
WRAPPER_DEFAULT_TOP = 25

# Resource reads
RESOURCE_DEFAULT_TOP = 100

DESCRIBE_MODEL_TOOL = "cap_describe_model"

# JSON-RPC error codes of the HTTP surface
RPC_UNAUTHORIZED = 10
RPC_BAD_REQUEST = -32000
RPC_INTERNAL_ERROR = -32603
