"""Single-pass parser from CSN definitions to annotation records.

Result keys:
- ``<service>.<entity>`` for resources
- ``<service>.<operation>`` for unbound functions/actions
- ``<service>.<entity>.<operation>`` for bound functions/actions
- ``<service>`` for prompt templates
"""

from dataclasses import dataclass, field
from typing import Any

from cap_mcp.annotations.constants import MCP_ANNOTATION_MAPPING
from cap_mcp.annotations.structures import (
    Annotation,
    PromptAnnotation,
    ResourceAnnotation,
    ToolAnnotation,
    WrapConfig,
)
from cap_mcp.annotations.utils import (
    contains_mcp_annotation,
    determine_resource_options,
    freeze,
    parse_cds_restrictions,
    parse_computed_fields,
    parse_entity_keys,
    parse_foreign_keys,
    parse_omitted_fields,
    parse_operation_elements,
    parse_prompt_templates,
    parse_resource_elements,
    split_definition_name,
    validate_elicits,
)
from cap_mcp.config import WRAP_MODES
from cap_mcp.errors import AnnotationError
from cap_mcp.log_config import get_logger, log_timing
from cap_mcp.model import CsnModel

log = get_logger("annotations.parser")


@dataclass
class ParsedWrap:
    tools: bool | None = None
    modes: list[str] | None = None
    hint: str | dict[str, str] | None = None


@dataclass
class ParsedAnnotations:
    """Raw annotation values of one definition, one field per vocabulary key."""

    definition: dict[str, Any]
    target: str = ""
    name: str | None = None
    description: str | None = None
    resource: bool | list[str] | None = None
    tool: bool | None = None
    prompts: list[dict[str, Any]] | None = None
    elicit: list[str] | str | None = None
    requires: str | list[str] | None = None
    restrict: list[dict[str, Any]] | None = None
    wrap: ParsedWrap | None = None

    @property
    def kind(self) -> str | None:
        return self.definition.get("kind")


def _assign_wrap(parsed: ParsedAnnotations, path: list[str], value: Any) -> None:
    wrap = parsed.wrap or ParsedWrap()
    parsed.wrap = wrap

    if not path:
        # Object-valued @mcp.wrap: merge each member
        if not isinstance(value, dict):
            raise AnnotationError(f"Invalid annotation '{parsed.target}' - @mcp.wrap must be an object")
        for member, member_value in value.items():
            _assign_wrap(parsed, [member], member_value)
        return

    head, rest = path[0], path[1:]
    if head == "tools":
        wrap.tools = value
    elif head == "modes":
        wrap.modes = value
    elif head == "hint" and not rest:
        if isinstance(value, dict) and isinstance(wrap.hint, dict):
            wrap.hint = {**wrap.hint, **value}
        else:
            wrap.hint = value
    elif head == "hint":
        hints = wrap.hint if isinstance(wrap.hint, dict) else {}
        hints[rest[0]] = value
        wrap.hint = hints


def map_annotations(definition: dict[str, Any], target: str) -> ParsedAnnotations:
    """Copy recognized annotation keys into a ParsedAnnotations record."""
    parsed = ParsedAnnotations(definition=definition, target=target)
    for key, value in definition.items():
        destination = MCP_ANNOTATION_MAPPING.get(key)
        if destination is None:
            continue
        path = destination.split(".")
        if path[0] == "wrap":
            _assign_wrap(parsed, path[1:], value)
        else:
            setattr(parsed, path[0], value)
    return parsed


def _require_name_and_description(parsed: ParsedAnnotations) -> None:
    if parsed.kind == "service":
        return
    if not parsed.name:
        raise AnnotationError(f"Invalid annotation '{parsed.target}' - Missing required property 'name'")
    if not parsed.description:
        raise AnnotationError(f"Invalid annotation '{parsed.target}' - Missing required property 'description'")


def _build_wrap(parsed: ParsedAnnotations) -> WrapConfig | None:
    if parsed.wrap is None:
        return None
    wrap = parsed.wrap

    modes = None
    if wrap.modes is not None:
        modes = tuple([wrap.modes] if isinstance(wrap.modes, str) else wrap.modes)
        unknown = [m for m in modes if m not in WRAP_MODES]
        if unknown:
            raise AnnotationError(f"Invalid annotation '{parsed.target}' - Unknown wrap modes: {unknown}")

    hint = wrap.hint
    if hint is not None and not isinstance(hint, (str, dict)):
        raise AnnotationError(f"Unparseable hint provided for entity: {parsed.name}")
    if isinstance(hint, dict):
        hint = freeze(hint)

    return WrapConfig(tools=wrap.tools, modes=modes, hint=hint)


def _construct_resource(
    model: CsnModel, service_name: str, target: str, parsed: ParsedAnnotations
) -> ResourceAnnotation:
    if parsed.resource is None or parsed.resource is False:
        raise AnnotationError(f"Invalid annotation '{parsed.target}' - Missing required flag 'resource'")

    definition = parsed.definition
    properties, resource_keys, hints = parse_resource_elements(definition, model)
    return ResourceAnnotation(
        name=parsed.name,
        description=parsed.description,
        target=target,
        service_name=service_name,
        functionalities=determine_resource_options(parsed.resource, parsed.target),
        properties=freeze(properties),
        resource_keys=freeze(resource_keys),
        foreign_keys=freeze(parse_foreign_keys(definition)),
        computed_fields=parse_computed_fields(definition),
        omitted_fields=parse_omitted_fields(definition),
        wrap=_build_wrap(parsed),
        restrictions=parse_cds_restrictions(parsed.restrict, parsed.requires),
        property_hints=freeze(hints),
    )


def _construct_tool(
    model: CsnModel,
    service_name: str,
    target: str,
    parsed: ParsedAnnotations,
    entity_key: str | None = None,
    key_type_map: dict[str, str] | None = None,
) -> ToolAnnotation:
    if not parsed.tool:
        raise AnnotationError(f"Invalid annotation '{parsed.target}' - Missing required flag 'tool'")
    if entity_key and not key_type_map:
        raise AnnotationError(
            f"Invalid annotation '{parsed.target}' - Bound operation on '{entity_key}' requires an entity with keys"
        )

    parameters, hints = parse_operation_elements(parsed.definition, model)
    return ToolAnnotation(
        name=parsed.name,
        description=parsed.description,
        target=target,
        service_name=service_name,
        operation_kind=parsed.kind,
        parameters=freeze(parameters) if parameters is not None else None,
        entity_key=entity_key,
        key_type_map=freeze(key_type_map) if key_type_map else None,
        elicits=validate_elicits(parsed.elicit, parsed.target),
        restrictions=parse_cds_restrictions(parsed.restrict, parsed.requires),
        property_hints=freeze(hints),
    )


def _construct_prompts(service_name: str, parsed: ParsedAnnotations) -> PromptAnnotation:
    return PromptAnnotation(
        name=parsed.name or service_name,
        description=parsed.description or "",
        service_name=service_name,
        prompts=parse_prompt_templates(parsed.prompts, parsed.target),
        restrictions=parse_cds_restrictions(parsed.restrict, parsed.requires),
    )


def _parse_bound_operations(
    model: CsnModel,
    service_name: str,
    entity: str,
    definition: dict[str, Any],
    result: dict[str, Annotation],
) -> None:
    actions = definition.get("actions")
    if definition.get("kind") != "entity" or not actions:
        return

    key_type_map: dict[str, str] | None = None
    for op_name, op_def in actions.items():
        if op_def.get("kind") not in ("function", "action"):
            continue
        if not contains_mcp_annotation(op_def):
            continue

        parsed = map_annotations(op_def, f"{service_name}.{entity}.{op_name}")
        _require_name_and_description(parsed)
        validate_elicits(parsed.elicit, parsed.target)

        if key_type_map is None:
            key_type_map = parse_entity_keys(definition)
        result[f"{service_name}.{entity}.{op_name}"] = _construct_tool(
            model, service_name, op_name, parsed, entity_key=entity, key_type_map=key_type_map
        )


def parse_definitions(model: CsnModel | dict[str, Any]) -> dict[str, Annotation]:
    """Parse every @mcp-annotated definition of ``model``.

    Raises:
        AnnotationError: On the first malformed annotation. Authoring
            mistakes abort instead of registering a half-configured entry.
    """
    if not isinstance(model, CsnModel):
        model = CsnModel(model)

    result: dict[str, Annotation] = {}
    with log_timing("parse definitions", log):
        for name, definition in model.definitions.items():
            service_name, target = split_definition_name(name)

            # Bound operations count even when their entity is not annotated
            _parse_bound_operations(model, service_name, target, definition, result)

            if not contains_mcp_annotation(definition):
                continue

            parsed = map_annotations(definition, name)
            _require_name_and_description(parsed)
            validate_elicits(parsed.elicit, parsed.target)

            kind = parsed.kind
            if kind == "entity":
                result[f"{service_name}.{target}"] = _construct_resource(model, service_name, target, parsed)
            elif kind in ("function", "action"):
                result[f"{service_name}.{target}"] = _construct_tool(model, service_name, target, parsed)
            elif kind == "service":
                # A service definition's own name is its service name
                result[name] = _construct_prompts(name, parsed)
            else:
                log.debug(f"Ignoring annotated definition {name} of kind {kind}")

    log.info(f"Parsed {len(result)} MCP annotations")
    return result
