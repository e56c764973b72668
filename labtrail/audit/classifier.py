"""
Request classifier: turns raw method + path into the (action, resource type,
resource id) triple recorded in the audit trail.

Classification is total. Anything it does not recognise falls back to the
method-derived action and the `auth` resource type, which keeps older audit
categories stable.
"""
import re
from dataclasses import dataclass
from typing import List, Optional

from labtrail.models.enums import AuditAction, ResourceType, Role

METHOD_ACTIONS = {
    "POST": AuditAction.CREATE,
    "GET": AuditAction.READ,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

RESOURCE_SEGMENTS = {
    "auth": ResourceType.AUTH,
    "users": ResourceType.USER,
    "lab-orders": ResourceType.LAB_ORDER,
    "results": ResourceType.RESULT,
    "audit-logs": ResourceType.AUDIT_LOG,
}

# Sub-routes that sit where an id would and must never be taken for one
SUB_ROUTE_KEYWORDS = frozenset({
    "assign", "pending", "in-review", "in-progress", "completed", "lab",
    "lab-order", "me", "user", "resource", "date-range", "action", "recent",
    "login", "register", "profile", "download",
})

_INTEGER_ID = re.compile(r"^\d+$")
_UUID_ID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


@dataclass(frozen=True)
class Classification:
    action: AuditAction
    resource_type: ResourceType
    resource_id: Optional[str] = None


def tokenize(path) -> List[str]:
    """Split a request path into non-empty segments, ignoring query string and fragment."""
    text = path if isinstance(path, str) else ""
    text = text.split("#", 1)[0].split("?", 1)[0]
    return [segment for segment in text.split("/") if segment]


def is_identifier(segment: str) -> bool:
    if segment.lower() in SUB_ROUTE_KEYWORDS:
        return False
    return bool(_INTEGER_ID.match(segment) or _UUID_ID.match(segment))


def classify(method, path, role: Optional[Role] = None) -> Classification:
    """
    Classify a request for the audit trail.

    The caller's role is accepted for the audit context but does not change
    the outcome: the same request classifies the same way for every role.
    """
    verb = method.upper() if isinstance(method, str) else ""
    action = METHOD_ACTIONS.get(verb, AuditAction.READ)
    segments = tokenize(path)

    # Nearest recognised resource segment, reading left to right
    position = next(
        (i for i, segment in enumerate(segments) if segment.lower() in RESOURCE_SEGMENTS),
        None,
    )
    if position is None:
        return Classification(action, ResourceType.AUTH)

    resource_type = RESOURCE_SEGMENTS[segments[position].lower()]
    tail = [segment.lower() for segment in segments[position + 1:]]

    resource_id = None
    if position + 1 < len(segments) and is_identifier(segments[position + 1]):
        resource_id = segments[position + 1]

    if resource_type == ResourceType.AUTH:
        if verb == "POST" and "login" in tail:
            action = AuditAction.LOGIN
        elif verb == "POST" and "register" in tail:
            action = AuditAction.REGISTER
        return Classification(action, resource_type)

    if verb == "POST" and resource_id is not None and "assign" in tail[1:]:
        action = AuditAction.ASSIGN
    elif resource_type == ResourceType.RESULT:
        if verb == "POST":
            action = AuditAction.UPLOAD
        elif verb == "GET" and "download" in tail:
            action = AuditAction.DOWNLOAD

    return Classification(action, resource_type, resource_id)


def describe(method, path) -> str:
    """Human-readable summary used as the audit entry description."""
    verb = method.upper() if isinstance(method, str) else "?"
    return f"{verb} {path if isinstance(path, str) else ''}".rstrip()
