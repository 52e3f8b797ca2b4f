"""Host runtime seams: backing services and the runtime context.

The MCP layer never reaches for global framework state. Everything it
needs from the host (model, services) comes through a ``RuntimeContext``
handed to the server factory, and the current caller travels with each
invocation.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from cap_mcp.auth import User
from cap_mcp.cqn import Query
from cap_mcp.log_config import get_logger
from cap_mcp.model import CsnModel

log = get_logger("runtime")


@runtime_checkable
class Transaction(Protocol):
    """One unit of work against a backing service."""

    async def run(self, query: Query) -> Any: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


@runtime_checkable
class Service(Protocol):
    """A served CDS service able to execute queries and operations."""

    name: str

    async def run(self, query: Query, user: User) -> Any:
        """Execute ``query`` in its own short transaction."""
        ...

    def tx(self, user: User) -> Transaction:
        """Open an explicit transaction acting as ``user``."""
        ...

    async def send(
        self,
        event: str,
        data: dict[str, Any],
        user: User,
        entity: str | None = None,
        keys: dict[str, Any] | None = None,
    ) -> Any:
        """Invoke a function or action, bound to ``entity``/``keys`` when given."""
        ...


class RuntimeContext(Protocol):
    model: CsnModel

    def resolve_service(self, name: str) -> Service | None: ...

    def service_names(self) -> list[str]: ...


@dataclass
class AppRuntime:
    """Default ``RuntimeContext``: a model plus the services serving it."""

    model: CsnModel
    services: dict[str, Service] = field(default_factory=dict)

    def serve(self, service: Service) -> Service:
        self.services[service.name] = service
        log.debug(f"Serving service {service.name}")
        return service

    def resolve_service(self, name: str) -> Service | None:
        """Look up a served service by name.

        Tries the exact name, then a case-insensitive match, then the last
        segment of a namespaced name. Never connects anything new.
        """
        if name in self.services:
            return self.services[name]
        lowered = name.lower()
        for key, service in self.services.items():
            if key.lower() == lowered:
                return service
        short = lowered.rsplit(".", 1)[-1]
        for key, service in self.services.items():
            if key.lower().rsplit(".", 1)[-1] == short:
                return service
        return None

    def service_names(self) -> list[str]:
        return sorted(self.services)
