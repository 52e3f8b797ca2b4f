"""Entities exposed as MCP resources under ``odata://<service>/<name>``.

A resource with query options becomes a template
``odata://<service>/<name>{?filter,orderby,top,skip,select}``; one without
becomes a static resource that only honours ``top``.
"""

import json

from cap_mcp.annotations.constants import RESOURCE_OPTION_ORDER
from cap_mcp.annotations.structures import ResourceAnnotation
from cap_mcp.auth import get_access_rights
from cap_mcp.cqn import Select
from cap_mcp.errors import ODataValidationError
from cap_mcp.log_config import get_logger
from cap_mcp.mcp.constants import RESOURCE_DEFAULT_TOP
from cap_mcp.mcp.entity_tools import scalar_fields
from cap_mcp.mcp.registry import InvocationContext, McpRegistry, RegisteredResource
from cap_mcp.mcp.uri_template import UriTemplate
from cap_mcp.mcp.utils import apply_omission_filter, write_odata_description
from cap_mcp.mcp.validation import ODataQueryValidator
from cap_mcp.runtime import RuntimeContext

log = get_logger("tools.resources")

INVALID_PARAMETER_PREFIX = "ERROR: Invalid query parameter - "
UNEXPECTED_ERROR = "ERROR: Failed to find data due to unexpected error"


def resource_uri(resource: ResourceAnnotation) -> str:
    base = f"odata://{resource.service_name}/{resource.name}"
    options = [o for o in RESOURCE_OPTION_ORDER if o in resource.functionalities]
    if not options:
        return base
    return f"{base}{{?{','.join(options)}}}"


def build_resource_query(
    resource: ResourceAnnotation, validator: ODataQueryValidator, variables: dict[str, str]
) -> Select:
    """Validate the URI query variables and compile them to a ``Select``.

    Options the resource does not enable are ignored.

    Raises:
        ODataValidationError: Any option fails validation
    """
    enabled = resource.functionalities
    top = variables.get("top", "").strip()
    skip = variables.get("skip", "").strip()
    query = Select(
        entity=resource.target,
        limit=validator.validate_top(top) if top else RESOURCE_DEFAULT_TOP,
        offset=validator.validate_skip(skip) if skip and "skip" in enabled else 0,
    )

    for option in RESOURCE_OPTION_ORDER:
        value = variables.get(option)
        if option not in enabled or not value or not value.strip():
            continue
        if option == "filter":
            query.where.append(validator.validate_filter(value))
        elif option == "select":
            query.columns = validator.validate_select(value)
        elif option == "orderby":
            query.order_by = validator.validate_orderby(value)
    return query


def assign_resource(
    resource: ResourceAnnotation,
    registry: McpRegistry,
    runtime: RuntimeContext,
    auth_enabled: bool,
) -> None:
    is_static = not resource.functionalities
    template = UriTemplate(resource_uri(resource) + ("{?top}" if is_static else ""))
    # Omitted fields cannot be selected, filtered or sorted on
    validator = ODataQueryValidator(
        {name: resource.properties[name] for name in scalar_fields(resource)}
    )

    async def handler(uri: str, variables: dict[str, str], context: InvocationContext) -> str:
        service = runtime.resolve_service(resource.service_name)
        if service is None:
            log.error(f"Invalid service found for service '{resource.service_name}'")
            return UNEXPECTED_ERROR

        try:
            if is_static:
                top = (variables.get("top") or "").strip()
                query = Select(
                    entity=resource.target,
                    limit=validator.validate_top(top) if top else RESOURCE_DEFAULT_TOP,
                )
            else:
                query = build_resource_query(resource, validator, variables)
        except ODataValidationError as e:
            log.warning(f"OData query validation failed for {resource.target}: {e.message}")
            return f"{INVALID_PARAMETER_PREFIX}{e.message}"

        try:
            rows = await service.run(query, get_access_rights(auth_enabled, context.user))
        except Exception as e:
            log.error(f"Failed to retrieve resource data for {resource.target}: {e}")
            return UNEXPECTED_ERROR

        if rows is None:
            return ""
        return json.dumps([apply_omission_filter(row, resource) for row in rows], default=str)

    registry.add_resource(
        RegisteredResource(
            name=resource.name,
            uri=template,
            title=resource.target,
            description=resource.description if is_static else write_odata_description(resource),
            handler=handler,
            static=is_static,
        )
    )
