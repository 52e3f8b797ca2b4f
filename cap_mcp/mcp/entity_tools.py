"""CRUD-style wrapper tools generated for annotated entities.

Example tool names (explicit naming is easier for LLM callers):
    CatalogService_Books_query, CatalogService_Books_get,
    CatalogService_Books_create, CatalogService_Books_update,
    CatalogService_Books_delete

Every handler converts its failures into a structured tool error; nothing
raised by validation or by the backing store escapes to the caller.
"""

import anyio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from cap_mcp.annotations.structures import ResourceAnnotation
from cap_mcp.auth import User, WrapAccess, get_access_rights
from cap_mcp.cqn import Delete, Insert, Select, Update
from cap_mcp.errors import ToolErrorCode, ToolTimeoutError
from cap_mcp.log_config import get_logger, log_timing
from cap_mcp.mcp.constants import DESCRIBE_MODEL_TOOL, TOOL_TIMEOUT_MS, WRAPPER_DEFAULT_TOP, WRAPPER_MAX_TOP
from cap_mcp.mcp.registry import InvocationContext, McpRegistry, RegisteredTool
from cap_mcp.mcp.schema import build_input_model, input_schema, map_type, optional_field, required_field
from cap_mcp.mcp.utils import (
    apply_omission_filter,
    as_mcp_result,
    coerce_numeric,
    construct_hint,
    describe_property,
    tool_error,
    tool_name_for,
)
from cap_mcp.mcp.validation import compile_where_clause, quick_search_expression
from cap_mcp.runtime import RuntimeContext, Service, Transaction

log = get_logger("tools.entities")

WHERE_OPERATORS = ("eq", "ne", "gt", "ge", "lt", "le", "contains", "startswith", "endswith", "in")
AGGREGATE_FUNCTIONS = ("sum", "avg", "min", "max", "count")

_MISSING = object()


async def with_timeout(
    awaitable: Awaitable[Any],
    timeout_ms: int,
    label: str,
    on_timeout: Callable[[], Awaitable[Any]] | None = None,
) -> Any:
    """Await ``awaitable`` for at most ``timeout_ms``.

    On expiry the operation is cancelled and ``on_timeout`` runs. Its own
    failure is logged and never replaces the timeout.

    Raises:
        ToolTimeoutError: The time limit ran out
    """
    try:
        with anyio.fail_after(timeout_ms / 1000):
            return await awaitable
    except TimeoutError:
        if on_timeout is not None:
            try:
                await on_timeout()
            except Exception as e:
                log.warning(f"Cleanup after timeout of {label} failed: {e}")
        raise ToolTimeoutError(label, timeout_ms) from None


async def _safe_rollback(tx: Transaction, label: str) -> None:
    try:
        await tx.rollback()
    except Exception as e:
        log.warning(f"Rollback for {label} failed: {e}")


async def run_in_transaction(
    service: Service,
    user: User,
    label: str,
    work: Callable[[Transaction], Awaitable[Any]],
) -> Any:
    """Run ``work`` in one transaction: commit on success, roll back otherwise."""
    tx = service.tx(user)
    try:
        result = await with_timeout(work(tx), TOOL_TIMEOUT_MS, label, on_timeout=tx.rollback)
        await tx.commit()
        return result
    except ToolTimeoutError:
        raise
    except Exception:
        await _safe_rollback(tx, label)
        raise


def _missing_service(runtime: RuntimeContext, resource: ResourceAnnotation):
    msg = f"Service not found: {resource.service_name}. Available: {', '.join(runtime.service_names())}"
    log.error(msg)
    return tool_error(ToolErrorCode.ERR_MISSING_SERVICE, msg)


def _associations(resource: ResourceAnnotation) -> list[str]:
    return [name for name in resource.properties if resource.is_association(name)]


def foreign_key_for(resource: ResourceAnnotation, association: str) -> str:
    for fk, assoc in resource.foreign_keys.items():
        if assoc == association:
            return fk
    return f"{association}_ID"


def scalar_fields(resource: ResourceAnnotation) -> list[str]:
    """Fields callers may select, filter, sort and aggregate on."""
    return [
        name for name in resource.queryable_properties()
        if name not in resource.omitted_fields
    ]


def _writable_fields(resource: ResourceAnnotation, include_keys: bool = True) -> list[str]:
    return [
        name for name in resource.properties
        if not resource.is_association(name)
        and name not in resource.computed_fields
        and (include_keys or name not in resource.resource_keys)
    ]


def _lookup(args: Mapping[str, Any], key: str) -> Any:
    if args.get(key) is not None:
        return args[key]
    lowered = key.lower()
    for name, value in args.items():
        if str(name).lower() == lowered and value is not None:
            return value
    return _MISSING


def extract_keys(resource: ResourceAnnotation, args: Any) -> tuple[dict[str, Any] | None, str | None]:
    """Pull key values out of ``args``.

    Accepts a bare value or ``{"value": ...}`` for single-key entities and
    matches key names case-insensitively. Digit-only strings become ints.

    Returns:
        (keys, None) on success, (None, missing_key) otherwise
    """
    key_names = list(resource.resource_keys)
    if len(key_names) == 1:
        only = key_names[0]
        if not isinstance(args, Mapping):
            args = {only: args}
        elif _lookup(args, only) is _MISSING and args.get("value") is not None:
            args = {**args, only: args["value"]}
    if not isinstance(args, Mapping):
        args = {}

    keys: dict[str, Any] = {}
    for name in key_names:
        provided = _lookup(args, name)
        if provided is _MISSING:
            return None, name
        keys[name] = coerce_numeric(provided)
    return keys, None


def _validation_error(tool_name: str, error: ValidationError):
    return tool_error(
        ToolErrorCode.INVALID_INPUT,
        f"{tool_name} arguments failed validation",
        issues=error.errors(include_url=False, include_context=False),
    )


def build_query_description(resource: ResourceAnnotation) -> str:
    associations = _associations(resource)
    fks = [foreign_key_for(resource, a) for a in associations]
    description = (
        f"Resource description: {resource.description}. "
        f"Query {resource.target} with structured filters, select, orderby, top/skip."
    )
    if associations:
        description += (
            f" IMPORTANT: For associations, always use foreign key fields ({', '.join(fks)})"
            " - never use association names directly."
            f" CRITICAL: Use foreign key fields (e.g., {fks[0]}) for associations"
            f" - association names (e.g., {associations[0]}) won't work in filters."
        )
    return description + construct_hint(resource, "query")


def build_query_input_model(resource: ResourceAnnotation, tool_name: str) -> type[BaseModel]:
    fields = scalar_fields(resource)
    field_list = ", ".join(fields)
    # A resource without scalar fields still gets a (never matching) enum
    FieldName = Literal[tuple(fields)] if fields else Literal["__none__"]

    associations = _associations(resource)
    where_help = f"FILTERABLE FIELDS: {field_list}."
    if associations:
        where_help += (
            f" For associations use foreign key ({foreign_key_for(resource, associations[0])}),"
            f" NOT association name ({associations[0]})."
        )

    strict = ConfigDict(extra="forbid")
    OrderBy = create_model(
        f"{tool_name}_orderby",
        __config__=strict,
        field=(FieldName, ...),
        dir=(Literal["asc", "desc"], "asc"),
    )
    Where = create_model(
        f"{tool_name}_where",
        __config__=strict,
        field=(FieldName, Field(..., description=where_help)),
        op=(Literal[WHERE_OPERATORS], ...),
        value=(Union[str, bool, int, float, list[Union[str, int, float]]], ...),
    )
    Aggregate = create_model(
        f"{tool_name}_aggregate",
        __config__=strict,
        field=(FieldName, ...),
        fn=(Literal[AGGREGATE_FUNCTIONS], ...),
    )
    return create_model(
        f"{tool_name}_input",
        __config__=ConfigDict(extra="forbid", populate_by_name=True),
        top=(int, Field(WRAPPER_DEFAULT_TOP, ge=1, le=WRAPPER_MAX_TOP, description="Rows (default 25)")),
        skip=(int, Field(0, ge=0, description="Offset")),
        select=(
            Optional[list[FieldName]],
            Field(None, description=f"Select/orderby allow only scalar fields: {field_list}"),
        ),
        orderby=(Optional[list[OrderBy]], None),
        where=(Optional[list[Where]], None),
        q=(Optional[str], Field(None, description="Quick text search")),
        return_=(Literal["rows", "count", "aggregate"], Field("rows", alias="return")),
        aggregate=(Optional[list[Aggregate]], None),
        explain=(Optional[bool], None),
    )


def build_query(args: BaseModel, resource: ResourceAnnotation) -> Select:
    """Compile validated query arguments to a ``Select``.

    Raises:
        ValueError: A where clause that cannot be compiled
    """
    query = Select(entity=resource.target, limit=args.top, offset=args.skip)
    if not scalar_fields(resource):
        return query

    if args.select:
        query.columns = list(args.select)
    if args.orderby:
        query.order_by = [f"{o.field} {o.dir}" for o in args.orderby]
    if args.q:
        search = quick_search_expression(
            args.q, resource.queryable_properties(), exclude=resource.omitted_fields
        )
        if search:
            query.where.append(search)
    for clause in args.where or []:
        query.where.append(compile_where_clause(clause.field, clause.op, clause.value))
    return query


async def execute_query(service: Service, args: BaseModel, query: Select, user: User) -> Any:
    """Run ``query`` in the requested return mode (rows, count or aggregate)."""
    if args.return_ == "count":
        # skip would page past the single count row
        count_query = replace(query, columns=["count(1) as count"], offset=0)
        result = await service.run(count_query, user)
        row = result[0] if isinstance(result, list) and result else result
        return {"count": (row or {}).get("count", 0)}
    if args.return_ == "aggregate":
        if not args.aggregate:
            return []
        columns = [f"{a.fn}({a.field}) as {a.fn}_{a.field}" for a in args.aggregate]
        return await service.run(replace(query, columns=columns, offset=0), user)
    return await service.run(query, user)


def _register_query_tool(resource, registry, runtime, auth_enabled) -> None:
    tool_name = tool_name_for(resource.service_name, resource.target, "query")
    input_model = build_query_input_model(resource, tool_name)

    async def handler(arguments: dict[str, Any], context: InvocationContext):
        try:
            args = input_model.model_validate(arguments)
        except ValidationError as e:
            return tool_error(
                ToolErrorCode.INVALID_INPUT,
                "Query arguments failed validation",
                issues=e.errors(include_url=False, include_context=False),
            )

        service = runtime.resolve_service(resource.service_name)
        if service is None:
            return _missing_service(runtime, resource)

        try:
            query = build_query(args, resource)
        except ValueError as e:
            return tool_error(ToolErrorCode.FILTER_PARSE_ERROR, str(e))

        user = get_access_rights(auth_enabled, context.user)
        try:
            with log_timing(f"{tool_name} ({args.return_})", log):
                response = await with_timeout(
                    execute_query(service, args, query, user), TOOL_TIMEOUT_MS, tool_name
                )
        except ToolTimeoutError as e:
            log.error(str(e))
            return tool_error(ToolErrorCode.TIMEOUT, str(e))
        except Exception as e:
            msg = f"QUERY_FAILED: {e}"
            log.error(msg)
            return tool_error(ToolErrorCode.QUERY_FAILED, msg)

        if isinstance(response, list):
            response = [apply_omission_filter(row, resource) for row in response]
        if args.explain:
            return as_mcp_result({"data": response, "plan": query.to_cql()})
        return as_mcp_result(response)

    registry.add_tool(
        RegisteredTool(
            name=tool_name,
            title=tool_name,
            description=build_query_description(resource),
            input_schema=input_schema(input_model),
            handler=handler,
        )
    )


def _key_fields(resource: ResourceAnnotation, model) -> dict[str, tuple[Any, Any]]:
    return {
        name: required_field(map_type(declared, model=model), f"Key {name}. {resource.property_hints.get(name, '')}")
        for name, declared in resource.resource_keys.items()
    }


def _data_fields(resource: ResourceAnnotation, model, include_keys: bool) -> dict[str, tuple[Any, Any]]:
    return {
        name: optional_field(
            map_type(
                resource.properties[name],
                key=name,
                target=resource.qualified_target,
                model=model,
            ),
            describe_property(resource, name),
        )
        for name in _writable_fields(resource, include_keys=include_keys)
    }


def _collect_data(
    resource: ResourceAnnotation,
    data_model: type[BaseModel],
    arguments: dict[str, Any],
) -> dict[str, Any]:
    """Validated write payload. Associations are only accepted as ``<assoc>_ID``.

    Raises:
        ValidationError: A field does not fit its declared type
    """
    validated = data_model.model_validate(arguments)
    data = validated.model_dump(mode="json", exclude_unset=True)
    for association in _associations(resource):
        fk = f"{association}_ID"
        if fk not in data and arguments.get(fk) is not None:
            data[fk] = coerce_numeric(arguments[fk])
    return data


def _register_get_tool(resource, registry, runtime, auth_enabled) -> None:
    tool_name = tool_name_for(resource.service_name, resource.target, "get")
    schema_model = build_input_model(f"{tool_name}_input", _key_fields(resource, runtime.model))
    key_list = ", ".join(resource.resource_keys)

    async def handler(arguments: Any, context: InvocationContext):
        service = runtime.resolve_service(resource.service_name)
        if service is None:
            return _missing_service(runtime, resource)

        keys, missing = extract_keys(resource, arguments)
        if keys is None:
            log.warning(f"{tool_name} missing required key {missing}")
            return tool_error(ToolErrorCode.MISSING_KEY, f"Missing key '{missing}'")

        user = get_access_rights(auth_enabled, context.user)
        query = Select(entity=resource.target, keys=keys, one=True)
        try:
            with log_timing(tool_name, log):
                response = await with_timeout(service.run(query, user), TOOL_TIMEOUT_MS, tool_name)
        except ToolTimeoutError as e:
            log.error(str(e))
            return tool_error(ToolErrorCode.TIMEOUT, str(e))
        except Exception as e:
            msg = f"GET_FAILED: {e}"
            log.error(msg)
            return tool_error(ToolErrorCode.GET_FAILED, msg)

        # A miss is a successful empty result
        return as_mcp_result(apply_omission_filter(response, resource) if response else None)

    registry.add_tool(
        RegisteredTool(
            name=tool_name,
            title=tool_name,
            description=(
                f"Resource description: {resource.description}. Get one {resource.target} by key(s): "
                f"{key_list}. For fields & examples call {DESCRIBE_MODEL_TOOL}."
                f"{construct_hint(resource, 'get')}"
            ),
            input_schema=input_schema(schema_model),
            handler=handler,
        )
    )


def _register_create_tool(resource, registry, runtime, auth_enabled) -> None:
    tool_name = tool_name_for(resource.service_name, resource.target, "create")
    data_model = build_input_model(f"{tool_name}_input", _data_fields(resource, runtime.model, include_keys=True))

    async def handler(arguments: dict[str, Any], context: InvocationContext):
        service = runtime.resolve_service(resource.service_name)
        if service is None:
            return _missing_service(runtime, resource)

        try:
            data = _collect_data(resource, data_model, arguments)
        except ValidationError as e:
            return _validation_error(tool_name, e)

        user = get_access_rights(auth_enabled, context.user)

        async def work(tx: Transaction) -> Any:
            return await tx.run(Insert(entity=resource.target, entries=data))

        try:
            response = await run_in_transaction(service, user, tool_name, work)
        except ToolTimeoutError as e:
            log.error(str(e))
            return tool_error(ToolErrorCode.TIMEOUT, str(e))
        except Exception as e:
            msg = f"CREATE_FAILED: {e}"
            log.error(msg)
            return tool_error(ToolErrorCode.CREATE_FAILED, msg)

        log.info(f"{tool_name} created entry for user {user.id}")
        return as_mcp_result(apply_omission_filter(response, resource) or {})

    registry.add_tool(
        RegisteredTool(
            name=tool_name,
            title=tool_name,
            description=(
                f"Resource description: {resource.description}. Create a new {resource.target}. "
                f"Provide fields; service applies defaults.{construct_hint(resource, 'create')}"
            ),
            input_schema=input_schema(data_model),
            handler=handler,
        )
    )


def _register_update_tool(resource, registry, runtime, auth_enabled) -> None:
    tool_name = tool_name_for(resource.service_name, resource.target, "update")
    data_fields = _data_fields(resource, runtime.model, include_keys=False)
    data_model = build_input_model(f"{tool_name}_data", data_fields)
    schema_model = build_input_model(
        f"{tool_name}_input", {**_key_fields(resource, runtime.model), **data_fields}
    )
    key_list = ", ".join(resource.resource_keys)

    async def handler(arguments: dict[str, Any], context: InvocationContext):
        service = runtime.resolve_service(resource.service_name)
        if service is None:
            return _missing_service(runtime, resource)

        keys, missing = extract_keys(resource, arguments)
        if keys is None:
            return tool_error(ToolErrorCode.MISSING_KEY, f"Missing key '{missing}'")

        try:
            updates = _collect_data(resource, data_model, arguments)
        except ValidationError as e:
            return _validation_error(tool_name, e)
        if not updates:
            return tool_error(ToolErrorCode.NO_FIELDS, "No fields provided to update")

        user = get_access_rights(auth_enabled, context.user)

        async def work(tx: Transaction) -> Any:
            await tx.run(Update(entity=resource.target, data=updates, keys=keys))
            return await tx.run(Select(entity=resource.target, keys=keys, one=True))

        try:
            response = await run_in_transaction(service, user, tool_name, work)
        except ToolTimeoutError as e:
            log.error(str(e))
            return tool_error(ToolErrorCode.TIMEOUT, str(e))
        except Exception as e:
            msg = f"UPDATE_FAILED: {e}"
            log.error(msg)
            return tool_error(ToolErrorCode.UPDATE_FAILED, msg)

        return as_mcp_result(apply_omission_filter(response, resource) if response else None)

    registry.add_tool(
        RegisteredTool(
            name=tool_name,
            title=tool_name,
            description=(
                f"Resource description: {resource.description}. Update {resource.target} by key(s): "
                f"{key_list}. Provide fields to update.{construct_hint(resource, 'update')}"
            ),
            input_schema=input_schema(schema_model),
            handler=handler,
        )
    )


def _register_delete_tool(resource, registry, runtime, auth_enabled) -> None:
    tool_name = tool_name_for(resource.service_name, resource.target, "delete")
    schema_model = build_input_model(f"{tool_name}_input", _key_fields(resource, runtime.model))
    key_list = ", ".join(resource.resource_keys)

    async def handler(arguments: Any, context: InvocationContext):
        service = runtime.resolve_service(resource.service_name)
        if service is None:
            return _missing_service(runtime, resource)

        keys, missing = extract_keys(resource, arguments)
        if keys is None:
            log.warning(f"{tool_name} missing required key {missing}")
            return tool_error(ToolErrorCode.MISSING_KEY, f"Missing key '{missing}'")

        user = get_access_rights(auth_enabled, context.user)

        async def work(tx: Transaction) -> Any:
            return await tx.run(Delete(entity=resource.target, keys=keys))

        try:
            response = await run_in_transaction(service, user, tool_name, work)
        except ToolTimeoutError as e:
            log.error(str(e))
            return tool_error(ToolErrorCode.TIMEOUT, str(e))
        except Exception as e:
            msg = f"DELETE_FAILED: {e}"
            log.error(msg)
            return tool_error(ToolErrorCode.DELETE_FAILED, msg)

        if response is None:
            return as_mcp_result({"deleted": True})
        if isinstance(response, int) and not isinstance(response, bool):
            return as_mcp_result({"deleted": response > 0})
        return as_mcp_result(response)

    registry.add_tool(
        RegisteredTool(
            name=tool_name,
            title=tool_name,
            description=(
                f"Resource description: {resource.description}. Delete {resource.target} by key(s): "
                f"{key_list}. This operation cannot be undone.{construct_hint(resource, 'delete')}"
            ),
            input_schema=input_schema(schema_model),
            handler=handler,
        )
    )


def register_entity_wrappers(
    resource: ResourceAnnotation,
    registry: McpRegistry,
    runtime: RuntimeContext,
    auth_enabled: bool,
    modes: list[str] | tuple[str, ...],
    accesses: WrapAccess,
) -> list[str]:
    """Register the wrapper tools ``accesses`` allows for ``resource``.

    Returns:
        Names of the registered tools
    """
    requested = set(modes) | set((resource.wrap.modes if resource.wrap else None) or ())
    has_keys = bool(resource.resource_keys)
    before = set(registry.tools)

    if "query" in requested and accesses.can_read:
        _register_query_tool(resource, registry, runtime, auth_enabled)
    if "get" in requested and has_keys and accesses.can_read:
        _register_get_tool(resource, registry, runtime, auth_enabled)
    if "create" in requested and accesses.can_create:
        _register_create_tool(resource, registry, runtime, auth_enabled)
    if "update" in requested and has_keys and accesses.can_update:
        _register_update_tool(resource, registry, runtime, auth_enabled)
    if "delete" in requested and has_keys and accesses.can_delete:
        _register_delete_tool(resource, registry, runtime, auth_enabled)

    registered = [name for name in registry.tools if name not in before]
    log.debug(f"Entity wrappers for {resource.qualified_target}: {registered}")
    return registered
