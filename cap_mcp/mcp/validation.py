"""OData query option validation and translation to CQL expressions.

Every identifier that reaches the backing store has been checked against
the entity's whitelist (scalar and foreign-key properties), and every
literal is re-emitted in escaped single-quoted form.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from cap_mcp.cqn import quote_literal
from cap_mcp.errors import ODataValidationError
from cap_mcp.log_config import get_logger

log = get_logger("tools.validation")

MAX_TOP = 1000
MAX_SELECT_LENGTH = 500
MAX_ORDERBY_LENGTH = 200
MAX_FILTER_LENGTH = 1000

ALLOWED_OPERATORS = frozenset({
    "eq", "ne", "gt", "ge", "lt", "le",
    "and", "or", "not",
    "contains", "startswith", "endswith",
    "indexof", "length", "substring", "tolower", "toupper", "trim",
})

LITERAL_KEYWORDS = frozenset({"true", "false", "null"})

SYMBOL_OPERATORS = frozenset({"=", "!=", "<>", ">", ">=", "<", "<="})

ODATA_TO_CQL_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "ge": ">=",
    "lt": "<",
    "le": "<=",
}

TEXT_PREDICATES = ("contains", "startswith", "endswith")

# Checked against the whole filter string before tokenizing
FORBIDDEN_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r";",                       # statement terminator
        r"--",                      # line comment
        r"/\*",                     # block comment start
        r"\*/",                     # block comment end
        r"xp_",                     # extended procedures
        r"sp_",                     # stored procedures
        r"exec",
        r"union",
        r"insert",
        r"update",
        r"delete",
        r"drop",
        r"create",
        r"alter",
        r"script",
        r"javascript",
        r"eval",
        r"expression",
        r"\bor\s+\d+\s*=\s*\d+",    # OR 1=1
        r"\band\s+\d+\s*=\s*\d+",   # AND 1=1
    )
)

_SELECT_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_,\s]*$")
_ORDERBY_RE = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_]*(?:\s+(asc|desc))?(?:\s*,\s*[a-zA-Z_][a-zA-Z0-9_]*(?:\s+(asc|desc))?)*$",
    re.IGNORECASE,
)
_TOKEN_RE = re.compile(
    r"(\b(?:eq|ne|gt|ge|lt|le|contains|startswith|endswith)\b)"
    r"|('(?:[^']|'')*'|\"[^\"]*\"|\d+(?:\.\d+)?)"
    r"|([<>=!]+)"
    r"|(\b(?:and|or|not)\b)"
    r"|(\(|\))"
    r"|(,)"
    r"|(\w+)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class FilterToken:
    type: str  # operator | literal | logical | paren | comma | property
    value: str


class ODataQueryValidator:
    """Validate OData query options for one entity.

    Args:
        properties: Whitelisted property name -> declared type. Callers pass
            scalar and foreign-key properties only, so bare association
            names are rejected here.
    """

    def __init__(self, properties: Mapping[str, str]):
        self.allowed_properties = list(properties)
        self.allowed_types = dict(properties)
        self._allowed = frozenset(properties)

    def _allowed_list(self) -> str:
        return ", ".join(self.allowed_properties)

    def validate_top(self, value: Any) -> int:
        number = _parse_integer(value, "top")
        if not 1 <= number <= MAX_TOP:
            raise ODataValidationError(
                f"Invalid top parameter: {value}. Must be between 1 and {MAX_TOP}", "top", value
            )
        return number

    def validate_skip(self, value: Any) -> int:
        number = _parse_integer(value, "skip")
        if number < 0:
            raise ODataValidationError(f"Invalid skip parameter: {value}. Must be >= 0", "skip", value)
        return number

    def validate_select(self, value: str) -> list[str]:
        decoded = unquote(value).strip()
        if not decoded or len(decoded) > MAX_SELECT_LENGTH or not _SELECT_RE.match(decoded):
            raise ODataValidationError(f"Invalid select parameter: {value}", "select", value)

        columns = [c.strip() for c in decoded.split(",") if c.strip()]
        for column in columns:
            if column not in self._allowed:
                raise ODataValidationError(
                    f"Invalid select column: {column}. Allowed columns: {self._allowed_list()}",
                    "select",
                    value,
                )
        return columns

    def validate_orderby(self, value: str) -> list[str]:
        """Returns normalized ``"<property> <asc|desc>"`` clauses."""
        decoded = unquote(value).strip()
        if not decoded or len(decoded) > MAX_ORDERBY_LENGTH or not _ORDERBY_RE.match(decoded):
            raise ODataValidationError(f"Invalid orderby parameter: {value}", "orderby", value)

        clauses = []
        for clause in decoded.split(","):
            parts = clause.split()
            prop = parts[0]
            if prop not in self._allowed:
                raise ODataValidationError(
                    f"Invalid orderby property: {prop}. Allowed properties: {self._allowed_list()}",
                    "orderby",
                    value,
                )
            direction = parts[1].lower() if len(parts) > 1 else "asc"
            clauses.append(f"{prop} {direction}")
        return clauses

    def validate_filter(self, value: str) -> str:
        """Validate an OData $filter and translate it to a CQL expression.

        Raises:
            ODataValidationError: Empty, too long, deny-listed content,
                unknown identifiers or operators, or unparseable text
        """
        raw = value or ""
        for prefix in ("$filter=", "filter="):
            if raw.startswith(prefix):
                raw = raw[len(prefix):]
        if not raw.strip():
            raise ODataValidationError("Filter parameter cannot be empty", "filter", value)

        decoded = unquote(raw)
        if len(decoded) > MAX_FILTER_LENGTH:
            raise ODataValidationError(
                f"Filter parameter exceeds {MAX_FILTER_LENGTH} characters", "filter", value
            )

        for pattern in FORBIDDEN_PATTERNS:
            if pattern.search(decoded):
                log.warning(f"Potentially malicious filter pattern detected: {pattern.pattern}")
                raise ODataValidationError("Filter contains forbidden patterns", "filter", value)

        tokens = self.tokenize_filter(decoded)
        self.validate_filter_tokens(tokens)
        return self.convert_to_cql(tokens)

    def tokenize_filter(self, text: str) -> list[FilterToken]:
        tokens: list[FilterToken] = []
        position = 0
        for match in _TOKEN_RE.finditer(text):
            gap = text[position:match.start()]
            if gap.strip():
                raise ODataValidationError(f"Invalid filter syntax near '{gap.strip()}'", "filter", text)
            position = match.end()

            token = match.group(0)
            if match.group(1):
                tokens.append(FilterToken("operator", token.lower()))
            elif match.group(2):
                tokens.append(FilterToken("literal", token))
            elif match.group(3):
                tokens.append(FilterToken("operator", token))
            elif match.group(4):
                tokens.append(FilterToken("logical", token.lower()))
            elif match.group(5):
                tokens.append(FilterToken("paren", token))
            elif match.group(6):
                tokens.append(FilterToken("comma", token))
            else:
                tokens.append(FilterToken("property", token))

        if text[position:].strip():
            raise ODataValidationError(f"Invalid filter syntax near '{text[position:].strip()}'", "filter", text)
        return tokens

    def validate_filter_tokens(self, tokens: list[FilterToken]) -> None:
        depth = 0
        for token in tokens:
            if token.type == "property":
                lowered = token.value.lower()
                if lowered in ALLOWED_OPERATORS or lowered in LITERAL_KEYWORDS:
                    continue
                if token.value not in self._allowed:
                    raise ODataValidationError(
                        f"Invalid property in filter: {token.value}. Allowed properties: {self._allowed_list()}",
                        "filter",
                        token.value,
                    )
            elif token.type == "operator":
                if token.value not in SYMBOL_OPERATORS and token.value.lower() not in ALLOWED_OPERATORS:
                    raise ODataValidationError(f"Invalid operator: {token.value}", "filter", token.value)
            elif token.type == "paren":
                depth += 1 if token.value == "(" else -1
                if depth < 0:
                    raise ODataValidationError("Unbalanced parentheses in filter", "filter", token.value)
        if depth != 0:
            raise ODataValidationError("Unbalanced parentheses in filter", "filter", None)

    def convert_to_cql(self, tokens: list[FilterToken]) -> str:
        parts: list[str] = []
        for token in tokens:
            if token.type == "operator":
                text = ODATA_TO_CQL_OPERATORS.get(token.value.lower(), token.value)
            elif token.type == "literal" and token.value.startswith('"'):
                text = quote_literal(token.value[1:-1])
            elif token.type == "property" and token.value.lower() in LITERAL_KEYWORDS | ALLOWED_OPERATORS:
                text = token.value.lower()
            else:
                text = token.value

            if parts and (text in (")", ",") or parts[-1].endswith("(")):
                parts[-1] += text
            elif parts and parts[-1].endswith(",") and text != ",":
                parts[-1] += " " + text
            elif parts and text == "(" and parts[-1] in ALLOWED_OPERATORS - {"and", "or", "not"}:
                parts[-1] += text
            else:
                parts.append(text)
        return " ".join(parts)


def _parse_integer(value: Any, parameter: str) -> int:
    if isinstance(value, bool):
        raise ODataValidationError(f"Invalid {parameter} parameter: {value}", parameter, value)
    if isinstance(value, int):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ODataValidationError(f"Invalid {parameter} parameter: {value}", parameter, value) from None
    if not number.is_integer():
        raise ODataValidationError(f"Invalid {parameter} parameter: {value}", parameter, value)
    return int(number)


def compile_where_clause(field: str, op: str, value: Any) -> str:
    """Compile one structured where clause to a CQL expression.

    ``field`` must already be whitelisted (the input schema enumerates it).
    """
    if op == "in":
        values = value if isinstance(value, list) else [value]
        if not values:
            raise ValueError(f"Operator 'in' on '{field}' requires at least one value")
        return f"{field} in ({', '.join(quote_literal(v) for v in values)})"
    if isinstance(value, list):
        raise ValueError(f"Operator '{op}' on '{field}' does not accept a list value")

    literal = quote_literal(value)
    if op in TEXT_PREDICATES:
        return f"{op}({field}, {literal})"
    if op not in ODATA_TO_CQL_OPERATORS:
        raise ValueError(f"Unsupported operator '{op}'")
    return f"{field} {ODATA_TO_CQL_OPERATORS[op]} {literal}"


def quick_search_expression(q: str, properties: Mapping[str, str], exclude: Iterable[str] = ()) -> str | None:
    """OR of ``contains(field, q)`` across string-typed properties."""
    excluded = set(exclude)
    fields = [
        name for name, declared in properties.items()
        if "string" in declared.lower() and name not in excluded
    ]
    if not fields:
        return None
    literal = quote_literal(q)
    return " or ".join(f"(contains({f}, {literal}))" for f in fields)
