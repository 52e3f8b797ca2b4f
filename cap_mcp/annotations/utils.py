"""Helpers for turning raw CSN annotation values into typed records."""

from types import MappingProxyType
from typing import Any

from cap_mcp.annotations.constants import (
    AUTHENTICATED_USER,
    COMPUTED_MARKER,
    DEFAULT_ALL_RESOURCE_OPTIONS,
    ELICIT_KINDS,
    FOREIGN_KEY_MARKER,
    GRANT_EXPANSIONS,
    MCP_ANNOTATION_KEY,
    MCP_HINT_ELEMENT,
    MCP_OMIT_PROP_KEY,
    PROMPT_ROLES,
)
from cap_mcp.annotations.structures import (
    ALL_OPERATIONS,
    PromptInput,
    PromptTemplate,
    Restriction,
)
from cap_mcp.errors import AnnotationError
from cap_mcp.log_config import get_logger
from cap_mcp.model import CsnModel, strip_cds_prefix

log = get_logger("annotations.utils")


def split_definition_name(name: str) -> tuple[str, str]:
    """Split ``my.Service.Books`` into (``my.Service``, ``Books``)."""
    if not name:
        raise AnnotationError("Invalid definition name. Cannot be split")
    service_name, _, target = name.rpartition(".")
    if not service_name:
        return target, ""
    return service_name, target


def contains_mcp_annotation(definition: dict[str, Any]) -> bool:
    return any(MCP_ANNOTATION_KEY in key for key in definition)


def get_marker(element: dict[str, Any], marker: str) -> Any:
    """Read an element annotation with a case-insensitive key."""
    lowered = marker.lower()
    for key, value in element.items():
        if key.lower() == lowered:
            return value
    return None


def is_computed(element: dict[str, Any]) -> bool:
    return get_marker(element, COMPUTED_MARKER) is True


def freeze(mapping: dict[str, str]) -> MappingProxyType:
    return MappingProxyType(dict(mapping))


def determine_resource_options(resource: Any, target: str) -> frozenset[str]:
    """``true`` enables every option, a list enables exactly those."""
    if not isinstance(resource, list):
        return DEFAULT_ALL_RESOURCE_OPTIONS
    for option in resource:
        if option not in DEFAULT_ALL_RESOURCE_OPTIONS:
            raise AnnotationError(f"Invalid annotation '{target}' - Invalid resource option: {option}")
    return frozenset(resource)


def validate_elicits(elicit: Any, target: str) -> tuple[str, ...] | None:
    if elicit is None:
        return None
    if isinstance(elicit, str):
        elicit = [elicit]
    if not elicit:
        raise AnnotationError(f"Invalid annotation '{target}' - Incomplete elicited user input")
    for kind in elicit:
        if kind not in ELICIT_KINDS:
            raise AnnotationError(f"Invalid annotation '{target}' - Invalid elicitation type '{kind}'")
    return tuple(elicit)


def _element_type(element: dict[str, Any], model: CsnModel) -> str:
    declared = element.get("type")
    if isinstance(declared, str):
        return strip_cds_prefix(declared)
    if declared is None:
        return "String"
    return model.resolve_typed_reference(declared)


def parse_resource_elements(
    definition: dict[str, Any], model: CsnModel
) -> tuple[dict[str, str], dict[str, str], dict[str, str]]:
    """Collect (properties, resource_keys, property_hints) of an entity.

    Array elements (those with ``items``) get an ``Array`` suffix. An
    association is never a resource key.
    """
    properties: dict[str, str] = {}
    resource_keys: dict[str, str] = {}
    hints: dict[str, str] = {}

    for name, element in (definition.get("elements") or {}).items():
        if element.get(MCP_HINT_ELEMENT):
            hints[name] = element[MCP_HINT_ELEMENT]

        if element.get("items"):
            declared = _element_type(element["items"], model) + "Array"
        else:
            declared = _element_type(element, model)
        properties[name] = declared

        if element.get("key") and declared != "Association":
            resource_keys[name] = declared

    return properties, resource_keys, hints


def parse_foreign_keys(definition: dict[str, Any]) -> dict[str, str]:
    return {
        name: get_marker(element, FOREIGN_KEY_MARKER)
        for name, element in (definition.get("elements") or {}).items()
        if get_marker(element, FOREIGN_KEY_MARKER) is not None
    }


def parse_computed_fields(definition: dict[str, Any]) -> frozenset[str]:
    return frozenset(
        name for name, element in (definition.get("elements") or {}).items() if is_computed(element)
    )


def parse_omitted_fields(definition: dict[str, Any]) -> frozenset[str]:
    return frozenset(
        name for name, element in (definition.get("elements") or {}).items() if element.get(MCP_OMIT_PROP_KEY)
    )


def parse_operation_elements(
    definition: dict[str, Any], model: CsnModel
) -> tuple[dict[str, str] | None, dict[str, str]]:
    """Collect (parameters, property_hints) of a function or action."""
    params = definition.get("params") or {}
    hints: dict[str, str] = {}
    if not params:
        return None, hints

    parameters: dict[str, str] = {}
    for name, param in params.items():
        if param.get(MCP_HINT_ELEMENT):
            hints[name] = param[MCP_HINT_ELEMENT]
        if param.get("items"):
            parameters[name] = _element_type(param["items"], model) + "Array"
        else:
            parameters[name] = _element_type(param, model)
    return parameters, hints


def parse_entity_keys(definition: dict[str, Any]) -> dict[str, str]:
    keys: dict[str, str] = {}
    for name, element in (definition.get("elements") or {}).items():
        if not element.get("key"):
            continue
        declared = element.get("type")
        if not isinstance(declared, str) or not declared:
            raise AnnotationError(f"Invalid key type found for bound operation on key '{name}'")
        keys[name] = strip_cds_prefix(declared)
    return keys


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _map_grants(grant: Any) -> tuple[str, ...]:
    grants = _as_list(grant)
    if not grants:
        return ALL_OPERATIONS

    operations: list[str] = []
    for g in grants:
        expanded = GRANT_EXPANSIONS.get(g, (g,))
        for op in expanded:
            if op not in ALL_OPERATIONS:
                # Custom event grants (action names) do not map to CRUD access
                log.debug(f"Ignoring non-CRUD grant '{op}'")
                continue
            if op not in operations:
                operations.append(op)
    return tuple(operations)


def parse_cds_restrictions(restrict: Any, requires: Any) -> tuple[Restriction, ...]:
    """Expand @requires / @restrict into a flat restriction list.

    @requires yields one role-only restriction per role. Each @restrict
    entry expands its grants (CHANGE, WRITE and * shorthands) and fans out
    over its ``to`` roles, defaulting to ``authenticated-user``.
    """
    result: list[Restriction] = [Restriction(role=role) for role in _as_list(requires)]

    for entry in _as_list(restrict):
        if not isinstance(entry, dict):
            raise AnnotationError(f"Invalid @restrict entry: {entry!r}")
        operations = _map_grants(entry.get("grant"))
        roles = _as_list(entry.get("to")) or [AUTHENTICATED_USER]
        result.extend(Restriction(role=role, operations=operations) for role in roles)

    return tuple(result)


def parse_prompt_templates(prompts: Any, target: str) -> tuple[PromptTemplate, ...]:
    if not prompts or not isinstance(prompts, list):
        raise AnnotationError(f"Invalid annotation '{target}' - Missing prompts annotations")

    templates = []
    for prompt in prompts:
        if not prompt.get("template"):
            raise AnnotationError(f"Invalid annotation '{target}' - Missing valid template")
        if not prompt.get("name"):
            raise AnnotationError(f"Invalid annotation '{target}' - Missing valid name")
        if not prompt.get("title"):
            raise AnnotationError(f"Invalid annotation '{target}' - Missing valid title")
        if prompt.get("role") not in PROMPT_ROLES:
            raise AnnotationError(f"Invalid annotation '{target}' - Role must be 'user' or 'assistant'")

        inputs = []
        for item in prompt.get("inputs") or []:
            if not item.get("key"):
                raise AnnotationError(f"Invalid annotation '{target}' - missing input key")
            if not item.get("type"):
                raise AnnotationError(f"Invalid annotation '{target}' - missing input type")
            inputs.append(PromptInput(key=item["key"], type=strip_cds_prefix(item["type"])))

        templates.append(
            PromptTemplate(
                name=prompt["name"],
                title=prompt["title"],
                template=prompt["template"],
                role=prompt["role"],
                description=prompt.get("description") or "",
                inputs=tuple(inputs),
            )
        )
    return tuple(templates)
