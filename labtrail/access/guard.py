"""
Access guard: the role gate every protected operation passes before any
business logic runs.

Fail-closed for declared operations, open for undeclared ones.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from labtrail.access.identity import Identity
from labtrail.errors import NotAuthenticated, NotAuthorized


class DenyKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    NOT_AUTHORIZED = "not_authorized"


@dataclass(frozen=True)
class Allow:
    allowed = True


@dataclass(frozen=True)
class Deny:
    kind: DenyKind
    reason: str
    allowed = False


Decision = Union[Allow, Deny]

ALLOW = Allow()


def _role_value(role) -> str:
    return getattr(role, "value", str(role))


def authorize(allowed_roles: Optional[Iterable], identity: Optional[Identity]) -> Decision:
    """
    Decide whether `identity` may invoke an operation declared with `allowed_roles`.

    - No roles declared: Allow, even without an identity (public operation)
    - Roles declared, no identity: Deny (not authenticated)
    - Identity role not among the declared roles: Deny, naming both sides
    """
    roles = tuple(allowed_roles or ())
    if not roles:
        return ALLOW

    if identity is None:
        return Deny(DenyKind.NOT_AUTHENTICATED, "User not authenticated")

    if identity.role not in roles:
        required = ", ".join(_role_value(r) for r in roles)
        return Deny(
            DenyKind.NOT_AUTHORIZED,
            f"Access denied. Required roles: {required}. User role: {_role_value(identity.role)}",
        )

    return ALLOW


def require(allowed_roles: Optional[Iterable], identity: Optional[Identity]) -> Optional[Identity]:
    """Raise NotAuthenticated / NotAuthorized on Deny, otherwise hand back the identity."""
    decision = authorize(allowed_roles, identity)
    if isinstance(decision, Deny):
        if decision.kind == DenyKind.NOT_AUTHENTICATED:
            raise NotAuthenticated(decision.reason)
        raise NotAuthorized(decision.reason)
    return identity
