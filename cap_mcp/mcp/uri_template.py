"""URI templates with one grouped query expression: ``base{?a,b,c}``.

Matching is strict. A URI carrying a parameter the template does not
declare, or a malformed ``key=value`` pair, does not match at all.
"""

import re
from urllib.parse import quote, unquote, urlsplit

_GROUPED_QUERY = re.compile(r"^([^{]+)\{\?([^}]+)\}$")


def _normalize_base(uri: str) -> tuple[str, str, str]:
    parts = urlsplit(uri)
    return parts.scheme.lower(), parts.netloc.lower(), parts.path


class UriTemplate:
    def __init__(self, template: str):
        self.template = template
        match = _GROUPED_QUERY.match(template)
        if match:
            self.base_uri = match.group(1)
            self.query_params = [p.strip() for p in match.group(2).split(",") if p.strip()]
        else:
            self.base_uri = template
            self.query_params = []

    def __str__(self) -> str:
        return self.template

    def __repr__(self) -> str:
        return f"UriTemplate({self.template!r})"

    @property
    def variable_names(self) -> list[str]:
        return list(self.query_params)

    def match(self, uri: str) -> dict[str, str] | None:
        """Extract query variables from ``uri``, or None when it does not match.

        Scheme and host compare case-insensitively, the path exactly.
        """
        base, _, query = uri.partition("?")
        if _normalize_base(base) != _normalize_base(self.base_uri):
            return None
        if not query.strip():
            return {}
        if not self.query_params:
            return None

        variables: dict[str, str] = {}
        for pair in query.split("&"):
            if not pair.strip():
                continue
            key, sep, value = pair.partition("=")
            if not sep or not key:
                return None
            key = unquote(key)
            if key not in self.query_params:
                return None
            variables[key] = unquote(value)
        return variables

    def expand(self, variables: dict[str, str | int | None]) -> str:
        pairs = [
            f"{quote(name, safe='')}={quote(str(variables[name]), safe='')}"
            for name in self.query_params
            if variables.get(name) not in (None, "")
        ]
        if not pairs:
            return self.base_uri
        return f"{self.base_uri}?{'&'.join(pairs)}"
