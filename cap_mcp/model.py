"""Access to a resolved CDS definition tree (CSN)."""

import json
from pathlib import Path
from typing import Any, Iterator

from cap_mcp.errors import AnnotationError
from cap_mcp.log_config import get_logger

log = get_logger("model")

# Typed references are followed at most this many hops
MAX_REFERENCE_DEPTH = 8


class CsnModel:
    """Read-only view over ``{"definitions": {...}}``.

    The tree is expected to be fully resolved already (the output of the
    CDS compiler for the served services). Nothing here mutates it.
    """

    def __init__(self, csn: dict[str, Any]):
        if not isinstance(csn, dict) or not isinstance(csn.get("definitions"), dict):
            raise AnnotationError("Cannot parse model without valid definitions")
        self._csn = csn

    @property
    def definitions(self) -> dict[str, dict[str, Any]]:
        return self._csn["definitions"]

    def get(self, name: str) -> dict[str, Any] | None:
        return self.definitions.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.definitions

    def __iter__(self) -> Iterator[str]:
        return iter(self.definitions)

    def of_kind(self, kind: str) -> list[str]:
        """Names of all definitions of ``kind``, sorted."""
        return sorted(name for name, d in self.definitions.items() if d.get("kind") == kind)

    def service_names(self) -> list[str]:
        return self.of_kind("service")

    def entities_of(self, service: str | None = None) -> list[str]:
        """Entity names, optionally restricted to one service namespace.

        Internal ``cds.*`` entities are never listed.
        """
        names = [n for n in self.of_kind("entity") if not n.startswith("cds.")]
        if service:
            names = [n for n in names if n.startswith(service + ".")]
        return names

    def elements(self, name: str) -> dict[str, dict[str, Any]]:
        definition = self.get(name) or {}
        return definition.get("elements") or {}

    def resolve_typed_reference(self, type_ref: Any, depth: int = 0) -> str:
        """Follow ``{"ref": [definition, element]}`` to its scalar type name.

        Returns the type without the ``cds.`` prefix.

        Raises:
            AnnotationError: Unresolvable reference, or the chain is longer
                than MAX_REFERENCE_DEPTH (which also covers cycles)
        """
        if depth >= MAX_REFERENCE_DEPTH:
            raise AnnotationError(
                f"Typed reference exceeds maximum depth {MAX_REFERENCE_DEPTH}: {type_ref!r}"
            )
        if not isinstance(type_ref, dict) or not type_ref.get("ref"):
            raise AnnotationError("Failed to parse nested type reference")

        ref = type_ref["ref"]
        definition = self.get(ref[0])
        if definition is None or len(ref) < 2:
            raise AnnotationError(f"Failed to resolve type reference {ref!r}")
        element = (definition.get("elements") or {}).get(ref[1])
        if element is None:
            raise AnnotationError(f"Failed to resolve type reference {ref!r}")

        referenced = element.get("type")
        if isinstance(referenced, str):
            return strip_cds_prefix(referenced)
        return self.resolve_typed_reference(referenced, depth + 1)


def strip_cds_prefix(type_name: str) -> str:
    return type_name.replace("cds.", "", 1) if type_name.startswith("cds.") else type_name


def load_model(path: str | Path) -> CsnModel:
    """Load a compiled CSN JSON file."""
    path = Path(path)
    log.debug(f"Loading model from {path}")
    with path.open(encoding="utf-8") as f:
        return CsnModel(json.load(f))
