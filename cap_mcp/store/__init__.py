"""Reference backing stores."""

from cap_mcp.store.sqlite import ActionRequest, SqliteService, SqliteTransaction

__all__ = ["ActionRequest", "SqliteService", "SqliteTransaction"]
