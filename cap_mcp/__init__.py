"""cap-mcp - Expose annotated CDS models over the Model Context Protocol.

Reads @mcp annotations from a resolved CDS model and serves them as:
- Resources (OData-style queryable entities)
- Tools (functions, actions and CRUD wrappers around entities)
- Prompts (service-level templates)
over a streamable-HTTP endpoint with one session per client.
"""

__version__ = "0.1.0"

from cap_mcp.annotations import parse_definitions
from cap_mcp.config import McpConfig, get_config, load_configuration
from cap_mcp.model import CsnModel, load_model

__all__ = [
    "McpConfig",
    "get_config",
    "load_configuration",
    "CsnModel",
    "load_model",
    "parse_definitions",
]
