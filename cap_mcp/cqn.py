"""Backing-store query objects.

Small, explicit stand-ins for CDS query notation. Where conditions are
CQL expression strings that were either produced by the OData validator
or compiled from structured where clauses, never raw caller input.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Union


def quote_literal(value: Any) -> str:
    """Render a value as a CQL literal.

    Strings are single-quoted with embedded quotes doubled. Floats are
    written in positional notation; NaN and infinities have no literal.

    Raises:
        ValueError: A non-finite float
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return repr(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Cannot use {value} as a literal")
        return format(Decimal(repr(value)), "f")
    return "'" + str(value).replace("'", "''") + "'"


@dataclass
class Select:
    entity: str
    columns: list[str] = field(default_factory=list)
    where: list[str] = field(default_factory=list)
    order_by: list[str] = field(default_factory=list)
    limit: int | None = None
    offset: int = 0
    keys: dict[str, Any] | None = None
    one: bool = False

    def to_cql(self) -> str:
        """Readable form of the query, used for ``explain`` output."""
        parts = [f"SELECT from {self.entity}"]
        if self.columns:
            parts.append("{ " + ", ".join(self.columns) + " }")
        conditions = list(self.where)
        if self.keys:
            conditions.extend(f"{k} = {quote_literal(v)}" for k, v in self.keys.items())
        if conditions:
            parts.append("where " + " and ".join(f"({c})" if len(conditions) > 1 else c for c in conditions))
        if self.order_by:
            parts.append("order by " + ", ".join(self.order_by))
        if self.limit is not None:
            parts.append(f"limit {self.limit}")
            if self.offset:
                parts.append(f"offset {self.offset}")
        return " ".join(parts)


@dataclass
class Insert:
    entity: str
    entries: dict[str, Any]


@dataclass
class Update:
    entity: str
    data: dict[str, Any]
    keys: dict[str, Any]


@dataclass
class Delete:
    entity: str
    keys: dict[str, Any]


Query = Union[Select, Insert, Update, Delete]
