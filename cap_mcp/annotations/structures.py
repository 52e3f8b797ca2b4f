"""Parsed annotation records.

One immutable record per annotated definition. ``Annotation`` is the
tagged union every consumer dispatches on.
"""

from dataclasses import dataclass, field
from typing import Literal, Mapping, Union

Operation = Literal["CREATE", "READ", "UPDATE", "DELETE"]
ALL_OPERATIONS: tuple[Operation, ...] = ("CREATE", "READ", "UPDATE", "DELETE")


@dataclass(frozen=True)
class Restriction:
    """Role gate derived from @requires / @restrict.

    ``operations`` is None for a role-only restriction (everything allowed
    once the role matches).
    """

    role: str
    operations: tuple[Operation, ...] | None = None


@dataclass(frozen=True)
class WrapConfig:
    """Per-entity wrapper tool settings from @mcp.wrap."""

    tools: bool | None = None
    modes: tuple[str, ...] | None = None
    hint: str | Mapping[str, str] | None = None


@dataclass(frozen=True)
class PromptInput:
    key: str
    type: str


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    title: str
    template: str
    role: Literal["user", "assistant"]
    description: str = ""
    inputs: tuple[PromptInput, ...] = ()


@dataclass(frozen=True)
class ResourceAnnotation:
    """An entity exposed as a queryable resource."""

    name: str
    description: str
    target: str
    service_name: str
    functionalities: frozenset[str] = frozenset()
    properties: Mapping[str, str] = field(default_factory=dict)
    resource_keys: Mapping[str, str] = field(default_factory=dict)
    foreign_keys: Mapping[str, str] = field(default_factory=dict)
    computed_fields: frozenset[str] = frozenset()
    omitted_fields: frozenset[str] = frozenset()
    wrap: WrapConfig | None = None
    restrictions: tuple[Restriction, ...] = ()
    property_hints: Mapping[str, str] = field(default_factory=dict)

    @property
    def qualified_target(self) -> str:
        return f"{self.service_name}.{self.target}"

    def is_association(self, prop: str) -> bool:
        return "association" in self.properties.get(prop, "").lower()

    def is_composition(self, prop: str) -> bool:
        return "composition" in self.properties.get(prop, "").lower()

    def queryable_properties(self) -> dict[str, str]:
        """Scalar and foreign-key properties: no associations or compositions."""
        return {
            k: v for k, v in self.properties.items()
            if not self.is_association(k) and not self.is_composition(k)
        }


@dataclass(frozen=True)
class ToolAnnotation:
    """A function or action exposed as a tool.

    ``entity_key`` names the owning entity for bound operations; those
    always carry a non-empty ``key_type_map``.
    """

    name: str
    description: str
    target: str
    service_name: str
    operation_kind: Literal["function", "action"] = "action"
    parameters: Mapping[str, str] | None = None
    entity_key: str | None = None
    key_type_map: Mapping[str, str] | None = None
    elicits: tuple[Literal["input", "confirm"], ...] | None = None
    restrictions: tuple[Restriction, ...] = ()
    property_hints: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_bound(self) -> bool:
        return bool(self.entity_key)


@dataclass(frozen=True)
class PromptAnnotation:
    """Prompt templates declared on a service."""

    name: str
    description: str
    service_name: str
    prompts: tuple[PromptTemplate, ...] = ()
    restrictions: tuple[Restriction, ...] = ()
    property_hints: Mapping[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return self.service_name


Annotation = Union[ResourceAnnotation, ToolAnnotation, PromptAnnotation]
