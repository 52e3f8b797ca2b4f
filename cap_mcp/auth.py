"""Caller identity and role-based access evaluation.

This module never authenticates on its own; it authorizes a ``User``
handed to it by an ``IdentityProvider`` against restrictions parsed from
@requires / @restrict.
"""

import base64
import binascii
import secrets
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from starlette.requests import HTTPConnection

from cap_mcp.annotations.constants import ANY_ROLE, AUTHENTICATED_USER
from cap_mcp.annotations.structures import Operation, Restriction
from cap_mcp.log_config import get_logger

log = get_logger("auth")


@dataclass(frozen=True)
class User:
    """A caller and the roles it holds.

    Privileged users hold every role. Every non-anonymous user holds
    ``authenticated-user``; everyone holds ``any``.
    """

    id: str
    roles: frozenset[str] = frozenset()
    privileged: bool = False
    anonymous: bool = False

    def has_role(self, role: str) -> bool:
        if self.privileged or role == ANY_ROLE:
            return True
        if role == AUTHENTICATED_USER:
            return not self.anonymous
        return role in self.roles


PRIVILEGED_USER = User(id="privileged", privileged=True)
ANONYMOUS_USER = User(id="anonymous", anonymous=True)


@dataclass(frozen=True)
class WrapAccess:
    """Capabilities the caller has on one entity."""

    can_read: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False


FULL_ACCESS = WrapAccess(True, True, True, True)


def is_auth_enabled(auth: str | None) -> bool:
    """Only an explicit "none" disables authorization."""
    return auth != "none"


def get_access_rights(auth_enabled: bool, user: User | None) -> User:
    """The identity store calls run as.

    With auth disabled everything runs privileged; otherwise the caller's
    own identity (anonymous when none was established).
    """
    if not auth_enabled:
        return PRIVILEGED_USER
    return user or ANONYMOUS_USER


def has_access(
    user: User,
    restrictions: Iterable[Restriction],
    operation: Operation | None = None,
) -> bool:
    """Check whether ``user`` may perform ``operation`` (any, when None)."""
    restrictions = tuple(restrictions)
    if not restrictions:
        return True
    for restriction in restrictions:
        if not user.has_role(restriction.role):
            continue
        if operation is None or restriction.operations is None:
            return True
        if operation in restriction.operations:
            return True
    return False


def has_tool_operation_access(user: User, restrictions: Iterable[Restriction]) -> bool:
    """Tools are granted as soon as any restriction role matches."""
    return has_access(user, restrictions)


def get_wrap_accesses(user: User, restrictions: Iterable[Restriction]) -> WrapAccess:
    """Union of the capabilities granted by every matching restriction."""
    restrictions = tuple(restrictions)
    if not restrictions:
        return FULL_ACCESS

    granted: set[str] = set()
    for restriction in restrictions:
        if not user.has_role(restriction.role):
            continue
        if restriction.operations is None:
            return FULL_ACCESS
        granted.update(restriction.operations)

    return WrapAccess(
        can_read="READ" in granted,
        can_create="CREATE" in granted,
        can_update="UPDATE" in granted,
        can_delete="DELETE" in granted,
    )


class AuthenticationError(Exception):
    """Credentials were missing or did not match."""


class IdentityProvider(Protocol):
    def authenticate(self, connection: HTTPConnection) -> User:
        """Return the caller, or raise AuthenticationError."""
        ...


@dataclass
class MockedUser:
    password: str
    roles: list[str] = field(default_factory=list)


class MockedIdentityProvider:
    """HTTP Basic authentication against a fixed user table.

    Mirrors the "mocked" auth kind used during development. Requests
    without credentials are anonymous unless ``require_login`` is set.
    """

    def __init__(self, users: dict[str, MockedUser], require_login: bool = True):
        self.users = users
        self.require_login = require_login

    def authenticate(self, connection: HTTPConnection) -> User:
        header = connection.headers.get("authorization")
        if not header:
            if self.require_login:
                raise AuthenticationError("Missing credentials")
            return ANONYMOUS_USER

        scheme, _, encoded = header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            raise AuthenticationError("Unsupported authorization scheme")
        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise AuthenticationError("Malformed basic credentials") from e

        user_id, _, password = decoded.partition(":")
        known = self.users.get(user_id)
        # Constant-time comparison to prevent timing attacks
        if known is None or not secrets.compare_digest(password.encode(), known.password.encode()):
            log.warning(f"Rejected credentials for user '{user_id}'")
            raise AuthenticationError("Invalid credentials")
        return User(id=user_id, roles=frozenset(known.roles))


class NoAuthIdentityProvider:
    """Used with ``auth: none``: every caller is privileged."""

    def authenticate(self, connection: HTTPConnection) -> User:
        return PRIVILEGED_USER
