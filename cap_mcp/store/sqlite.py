"""SQLite-backed reference implementation of the ``Service`` protocol.

One ``SqliteService`` serves one CDS service: every entity of the service
namespace becomes a table, CQL where expressions are translated to SQL,
and functions/actions are dispatched to handlers registered with ``on``.

Meant for development, the CLI and tests; not a production store.
"""

import asyncio
import json
import re
import sqlite3
import uuid
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cap_mcp.auth import User
from cap_mcp.cqn import Delete, Insert, Query, Select, Update
from cap_mcp.log_config import get_logger
from cap_mcp.model import CsnModel, strip_cds_prefix

log = get_logger("store.sqlite")

_INTEGER_TYPES = {"Integer", "Int16", "Int32", "Int64", "UInt8", "Boolean"}
_REAL_TYPES = {"Decimal", "Double", "DecimalFloat"}
_ASSOCIATION_TYPES = {"Association", "Composition"}

_IDENTIFIER = re.compile(r"^[A-Za-z_]\w*$")
_ORDER_CLAUSE = re.compile(r"^([A-Za-z_]\w*)(?:\s+(asc|desc))?$", re.IGNORECASE)
_COLUMN_EXPR = re.compile(r"^([A-Za-z_]\w*)\((1|[A-Za-z_]\w*)\)\s+as\s+([A-Za-z_]\w*)$", re.IGNORECASE)
_CQL_TOKEN = re.compile(
    r"('(?:[^']|'')*')"
    r"|(\d+(?:\.\d+)?)"
    r"|(!=|<>|>=|<=|=|<|>)"
    r"|([A-Za-z_]\w*)"
    r"|([(),])"
    r"|(\s+)"
)

_AGGREGATES = {"count", "sum", "avg", "min", "max"}
_KEYWORDS = {"and": "AND", "or": "OR", "not": "NOT", "in": "IN"}


def _contains(value, search):
    if value is None or search is None:
        return None
    return int(str(search) in str(value))


def _startswith(value, prefix):
    if value is None or prefix is None:
        return None
    return int(str(value).startswith(str(prefix)))


def _endswith(value, suffix):
    if value is None or suffix is None:
        return None
    return int(str(value).endswith(str(suffix)))


def _indexof(value, search):
    if value is None or search is None:
        return None
    return str(value).find(str(search))


def _substring(value, start, length=None):
    # Zero-based like OData, unlike SQLite's substr
    if value is None:
        return None
    text = str(value)
    start = int(start)
    return text[start:] if length is None else text[start:start + int(length)]


def _tolower(value):
    return None if value is None else str(value).lower()


def _toupper(value):
    return None if value is None else str(value).upper()


_FUNCTIONS: dict[str, tuple[int, Callable]] = {
    "contains": (2, _contains),
    "startswith": (2, _startswith),
    "endswith": (2, _endswith),
    "indexof": (2, _indexof),
    "substring": (-1, _substring),
    "tolower": (1, _tolower),
    "toupper": (1, _toupper),
}
# length and trim are SQLite built-ins with the same meaning
_SQL_FUNCTIONS = set(_FUNCTIONS) | {"length", "trim"}


def _quote_identifier(name: str, columns: Collection[str] | None = None) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    # SQLite reads an unknown double-quoted identifier as a string literal
    if columns is not None and name not in columns:
        raise ValueError(f"Unknown column: {name}")
    return f'"{name}"'


def translate_where(expression: str, columns: Collection[str] | None = None) -> str:
    """Translate a CQL where expression to an SQLite expression.

    When ``columns`` is given, every identifier must be one of them.

    Raises:
        ValueError: Unknown function or column, or unexpected characters
    """
    matches = list(_CQL_TOKEN.finditer(expression))
    if "".join(m.group(0) for m in matches) != expression:
        raise ValueError(f"Cannot translate where expression: {expression!r}")

    tokens = [m for m in matches if not m.group(6)]
    out: list[str] = []
    for i, match in enumerate(tokens):
        text = match.group(0)
        if match.group(1) or match.group(2) or match.group(5):
            out.append(text)
        elif match.group(3):
            out.append("!=" if text == "<>" else text)
        else:
            lowered = text.lower()
            following = tokens[i + 1].group(0) if i + 1 < len(tokens) else ""
            if following == "(" and lowered not in _KEYWORDS:
                if lowered not in _SQL_FUNCTIONS:
                    raise ValueError(f"Unsupported function in where expression: {text}")
                out.append(lowered)
            elif lowered in _KEYWORDS:
                out.append(_KEYWORDS[lowered])
            elif lowered in ("true", "false"):
                out.append("1" if lowered == "true" else "0")
            elif lowered == "null":
                if out and out[-1] == "=":
                    out[-1] = "IS"
                elif out and out[-1] == "!=":
                    out[-1] = "IS NOT"
                out.append("NULL")
            else:
                out.append(_quote_identifier(text, columns))
    return " ".join(out)


def translate_column(column: str, columns: Collection[str] | None = None) -> str:
    """``name`` or ``fn(field) as alias`` to SQL."""
    column = column.strip()
    if _IDENTIFIER.match(column):
        return _quote_identifier(column, columns)
    match = _COLUMN_EXPR.match(column)
    if not match or match.group(1).lower() not in _AGGREGATES:
        raise ValueError(f"Unsupported column expression: {column!r}")
    fn, arg, alias = match.groups()
    arg_sql = "1" if arg == "1" else _quote_identifier(arg, columns)
    return f"{fn.lower()}({arg_sql}) AS {_quote_identifier(alias)}"


def _sql_type(element: dict[str, Any]) -> str:
    declared = strip_cds_prefix(str(element.get("type", "String")))
    if declared in _INTEGER_TYPES:
        return "INTEGER"
    if declared in _REAL_TYPES:
        return "REAL"
    return "TEXT"


@dataclass
class EntityTable:
    """Storage layout of one entity."""

    entity: str
    table: str
    columns: dict[str, dict[str, Any]]
    keys: list[str]
    compositions: dict[str, str]

    def boolean_columns(self) -> set[str]:
        return {n for n, e in self.columns.items() if strip_cds_prefix(str(e.get("type", ""))) == "Boolean"}


@dataclass
class ActionRequest:
    """What an action/function handler receives."""

    event: str
    data: dict[str, Any]
    user: User
    service: "SqliteService"
    entity: str | None = None
    keys: dict[str, Any] | None = None


ActionHandler = Callable[[ActionRequest], Awaitable[Any]]


class SqliteTransaction:
    """Explicit transaction holding the service lock until commit/rollback."""

    def __init__(self, service: "SqliteService", user: User):
        self.service = service
        self.user = user
        self._holding = False
        self._done = False

    async def run(self, query: Query) -> Any:
        if self._done:
            raise RuntimeError("Transaction already finished")
        if not self._holding:
            await self.service._lock.acquire()
            self._holding = True
        return self.service._execute(query)

    async def commit(self) -> None:
        self._finish(self.service.conn.commit)

    async def rollback(self) -> None:
        self._finish(self.service.conn.rollback)

    def _finish(self, action: Callable[[], None]) -> None:
        if self._done:
            return
        self._done = True
        if not self._holding:
            return
        try:
            action()
        finally:
            self._holding = False
            self.service._lock.release()


class SqliteService:
    """A CDS service whose entities live in SQLite tables."""

    def __init__(self, name: str, model: CsnModel, db_path: Path | str = ":memory:"):
        """Initialize the service and create its tables.

        Args:
            name: Qualified service name (e.g. CatalogService)
            model: Model providing the entity definitions
            db_path: SQLite file, in-memory by default
        """
        self.name = name
        self.model = model
        self.db_path = str(db_path)
        self.tables: dict[str, EntityTable] = {}
        self.handlers: dict[str, ActionHandler] = {}
        self._lock = asyncio.Lock()

        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        for fn_name, (narg, fn) in _FUNCTIONS.items():
            self.conn.create_function(fn_name, narg, fn, deterministic=True)
        self._create_schema()

    def _create_schema(self) -> None:
        for qualified in self.model.entities_of(self.name):
            local = qualified[len(self.name) + 1:]
            if "." in local:
                continue
            elements = self.model.elements(qualified)
            columns = {
                n: e for n, e in elements.items()
                if strip_cds_prefix(str(e.get("type", ""))) not in _ASSOCIATION_TYPES and not e.get("items")
            }
            compositions = {
                n: e["target"] for n, e in elements.items()
                if strip_cds_prefix(str(e.get("type", ""))) == "Composition" and e.get("target")
            }
            keys = [n for n, e in columns.items() if e.get("key")]
            table = EntityTable(qualified, qualified.replace(".", "_"), columns, keys, compositions)
            self.tables[local] = table

            definitions = [f"{_quote_identifier(n)} {_sql_type(e)}" for n, e in columns.items()]
            if keys:
                definitions.append(f"PRIMARY KEY ({', '.join(_quote_identifier(k) for k in keys)})")
            self.conn.execute(f"CREATE TABLE IF NOT EXISTS {_quote_identifier(table.table)} ({', '.join(definitions)})")
        self.conn.commit()
        log.debug(f"Service {self.name}: created tables {sorted(self.tables)}")

    def table_for(self, entity: str) -> EntityTable:
        """Look up by local or qualified entity name.

        Raises:
            KeyError: The entity does not belong to this service
        """
        if entity in self.tables:
            return self.tables[entity]
        for table in self.tables.values():
            if table.entity == entity:
                return table
        raise KeyError(f"Entity {entity} is not served by {self.name}")

    def on(self, event: str, handler: ActionHandler, entity: str | None = None) -> None:
        """Register the handler of a function or action (bound when ``entity`` is given)."""
        self.handlers[f"{entity}.{event}" if entity else event] = handler

    async def run(self, query: Query, user: User) -> Any:
        async with self._lock:
            try:
                result = self._execute(query)
                self.conn.commit()
                return result
            except Exception:
                self.conn.rollback()
                raise

    def tx(self, user: User) -> SqliteTransaction:
        return SqliteTransaction(self, user)

    async def send(
        self,
        event: str,
        data: dict[str, Any],
        user: User,
        entity: str | None = None,
        keys: dict[str, Any] | None = None,
    ) -> Any:
        """Dispatch a function/action to its registered handler.

        Raises:
            LookupError: No handler registered for the operation
        """
        handler = self.handlers.get(f"{entity}.{event}" if entity else event)
        if handler is None:
            raise LookupError(f"No handler registered for {event}" + (f" on {entity}" if entity else ""))
        log.debug(f"Dispatching {event} for user {user.id}")
        return await handler(ActionRequest(event=event, data=data, user=user, service=self, entity=entity, keys=keys))

    def seed(self, data: dict[str, list[dict[str, Any]]]) -> None:
        """Insert initial rows, keyed by local or qualified entity name."""
        for entity, rows in data.items():
            try:
                table = self.table_for(entity)
            except KeyError:
                continue
            for row in rows:
                self._insert(table, dict(row))
        self.conn.commit()
        log.info(f"Seeded {self.name} with {sum(len(r) for r in data.values())} rows")

    def seed_file(self, path: Path | str) -> None:
        with Path(path).open(encoding="utf-8") as f:
            self.seed(json.load(f))

    def close(self) -> None:
        self.conn.close()

    def _execute(self, query: Query) -> Any:
        if isinstance(query, Select):
            return self._select(query)
        if isinstance(query, Insert):
            table = self.table_for(query.entity)
            keys = self._insert(table, dict(query.entries))
            return self._select(Select(entity=query.entity, keys=keys, one=True))
        if isinstance(query, Update):
            return self._update(query)
        if isinstance(query, Delete):
            table = self.table_for(query.entity)
            where, params = self._key_condition(table, query.keys)
            cursor = self.conn.execute(f"DELETE FROM {_quote_identifier(table.table)} WHERE {where}", params)
            return cursor.rowcount
        raise TypeError(f"Unsupported query type: {type(query).__name__}")

    def _key_condition(self, table: EntityTable, keys: dict[str, Any]) -> tuple[str, list[Any]]:
        if not keys:
            raise ValueError(f"Keys required for {table.entity}")
        unknown = [k for k in keys if k not in table.columns]
        if unknown:
            raise ValueError(f"Unknown key(s) for {table.entity}: {', '.join(unknown)}")
        return " AND ".join(f"{_quote_identifier(k)} = ?" for k in keys), list(keys.values())

    def _select(self, query: Select) -> Any:
        table = self.table_for(query.entity)
        columns = ", ".join(translate_column(c, table.columns) for c in query.columns) if query.columns else "*"
        sql = f"SELECT {columns} FROM {_quote_identifier(table.table)}"

        conditions = [f"({translate_where(w, table.columns)})" for w in query.where]
        params: list[Any] = []
        if query.keys:
            key_sql, params = self._key_condition(table, query.keys)
            conditions.append(key_sql)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)

        if query.order_by:
            clauses = []
            for clause in query.order_by:
                match = _ORDER_CLAUSE.match(clause.strip())
                if not match:
                    raise ValueError(f"Invalid order by clause: {clause!r}")
                clauses.append(f"{_quote_identifier(match.group(1), table.columns)} {(match.group(2) or 'asc').upper()}")
            sql += " ORDER BY " + ", ".join(clauses)

        if query.one:
            sql += " LIMIT 1"
        elif query.limit is not None or query.offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([query.limit if query.limit is not None else -1, query.offset or 0])

        log.trace(f"SQL: {sql} {params}")
        rows = [self._to_dict(table, row) for row in self.conn.execute(sql, params).fetchall()]
        if query.one:
            return rows[0] if rows else None
        return rows

    def _to_dict(self, table: EntityTable, row: sqlite3.Row) -> dict[str, Any]:
        booleans = table.boolean_columns()
        return {k: (bool(row[k]) if k in booleans and row[k] is not None else row[k]) for k in row.keys()}

    def _insert(self, table: EntityTable, entries: dict[str, Any]) -> dict[str, Any]:
        nested = {name: entries.pop(name) for name in list(entries) if name in table.compositions}
        for key in table.keys:
            if entries.get(key) is None and strip_cds_prefix(str(table.columns[key].get("type", ""))) == "UUID":
                entries[key] = str(uuid.uuid4())

        ignored = [k for k in entries if k not in table.columns]
        if ignored:
            log.warning(f"Ignoring unknown fields for {table.entity}: {ignored}")
        values = {k: v for k, v in entries.items() if k in table.columns}
        names = list(values)
        cursor = self.conn.execute(
            f"INSERT INTO {_quote_identifier(table.table)} ({', '.join(_quote_identifier(n) for n in names)}) "
            f"VALUES ({', '.join('?' for _ in names)})",
            [json.dumps(v) if isinstance(v, (dict, list)) else v for v in values.values()],
        )

        keys = {k: values.get(k) for k in table.keys}
        if len(table.keys) == 1 and keys[table.keys[0]] is None:
            keys[table.keys[0]] = cursor.lastrowid
        for name, children in nested.items():
            self._insert_children(table, name, keys, children)
        return keys

    def _insert_children(self, parent: EntityTable, composition: str, parent_keys: dict[str, Any], children: Any) -> None:
        """Deep insert of a composition, one level only."""
        child = self.table_for(parent.compositions[composition])
        back_link = next(
            (
                n for n, e in self.model.elements(child.entity).items()
                if strip_cds_prefix(str(e.get("type", ""))) == "Association" and e.get("target") == parent.entity
            ),
            None,
        )
        for entry in children if isinstance(children, list) else [children]:
            entry = dict(entry)
            if back_link:
                for key, value in parent_keys.items():
                    fk = f"{back_link}_{key}"
                    if fk in child.columns:
                        entry.setdefault(fk, value)
            self._insert(child, entry)

    def _update(self, query: Update) -> int:
        table = self.table_for(query.entity)
        data = {k: v for k, v in query.data.items() if k in table.columns and k not in table.keys}
        if not data:
            return 0
        where, params = self._key_condition(table, query.keys)
        assignments = ", ".join(f"{_quote_identifier(k)} = ?" for k in data)
        cursor = self.conn.execute(
            f"UPDATE {_quote_identifier(table.table)} SET {assignments} WHERE {where}",
            [*data.values(), *params],
        )
        return cursor.rowcount
