"""
Ownership filter: which records a role may see or touch.

Each resource type has one OwnershipRule. The same rule answers two
questions:

- scoped_list(identity): a SQL predicate restricting a collection query
- check(identity, record): may this identity act on this fetched record

Single-record access is always fetch-then-check, never filter-only, so the
caller can tell "missing" from "not yours" internally while both still
read as "not found" from the outside.

Ownership by role (not symmetric):

| Resource  | Clinician              | Lab                  | Patient                    |
|-----------|------------------------|----------------------|----------------------------|
| LabOrder  | orders they created    | orders assigned      | orders about them          |
| Result    | results on their orders| results they wrote   | results on orders about them |
| AuditLog  | all                    | none                 | none                       |
| User      | all                    | all                  | own record                 |
"""
from typing import Dict, Iterable

from sqlalchemy import false, true

from labtrail.access.guard import ALLOW, Decision, Deny, DenyKind
from labtrail.access.identity import Identity
from labtrail.errors import NotAuthorized, NotFound, OwnershipDenied
from labtrail.models.domain import LabOrder, Result, User
from labtrail.models.enums import ResourceType, Role


class OwnershipRule:
    """Base rule: nobody owns anything."""
    resource_type: ResourceType
    label = "Resource"

    def owns(self, identity: Identity, record) -> bool:
        return False

    def scoped_list(self, identity: Identity):
        return false()

    def check(self, identity: Identity, record) -> Decision:
        if self.owns(identity, record):
            return ALLOW
        return Deny(DenyKind.NOT_AUTHORIZED, f"{self.label} is not accessible to this {identity.role.value}")

    def ensure(self, identity: Identity, record, record_id=None):
        """
        Fetch-then-authorize: return `record` if the identity may act on it.

        Raises NotFound when the record is missing and OwnershipDenied (which
        reads the same to the caller) when it belongs to someone else.
        """
        if record is None:
            raise NotFound.for_resource(self.label, record_id)
        if isinstance(self.check(identity, record), Deny):
            raise OwnershipDenied.for_resource(self.label, record_id if record_id is not None else record.id)
        return record


class LabOrderOwnership(OwnershipRule):
    resource_type = ResourceType.LAB_ORDER
    label = "Lab order"

    def owns(self, identity, record):
        if identity.role == Role.CLINICIAN:
            return record.doctor_id == identity.id
        if identity.role == Role.LAB:
            return record.lab_id is not None and record.lab_id == identity.id
        if identity.role == Role.PATIENT:
            return record.patient_id == identity.id
        return False

    def scoped_list(self, identity):
        if identity.role == Role.CLINICIAN:
            return LabOrder.doctor_id == identity.id
        if identity.role == Role.LAB:
            return LabOrder.lab_id == identity.id
        if identity.role == Role.PATIENT:
            return LabOrder.patient_id == identity.id
        return false()


class ResultOwnership(OwnershipRule):
    resource_type = ResourceType.RESULT
    label = "Result"

    def owns(self, identity, record):
        if identity.role == Role.LAB:
            return record.lab_id == identity.id
        order = record.lab_order
        if order is None:
            return False
        if identity.role == Role.CLINICIAN:
            return order.doctor_id == identity.id
        if identity.role == Role.PATIENT:
            return order.patient_id == identity.id
        return False

    def scoped_list(self, identity):
        if identity.role == Role.LAB:
            return Result.lab_id == identity.id
        if identity.role == Role.CLINICIAN:
            return Result.lab_order.has(LabOrder.doctor_id == identity.id)
        if identity.role == Role.PATIENT:
            return Result.lab_order.has(LabOrder.patient_id == identity.id)
        return false()


class UserOwnership(OwnershipRule):
    """
    Clinicians and labs may look up any user (a lab needs the patient on an
    order it was assigned). Patients see only their own record.

    Listing the directory is still clinician-only at the policy level.
    """
    resource_type = ResourceType.USER
    label = "User"

    def owns(self, identity, record):
        if identity.role in (Role.CLINICIAN, Role.LAB):
            return True
        return record.id == identity.id

    def scoped_list(self, identity):
        if identity.role in (Role.CLINICIAN, Role.LAB):
            return true()
        return User.id == identity.id


class PrivilegedOwnership(OwnershipRule):
    """Clinicians see every record of the type; other roles see none."""

    def __init__(self, resource_type: ResourceType, label: str):
        self.resource_type = resource_type
        self.label = label

    def owns(self, identity, record):
        return identity.role == Role.CLINICIAN

    def scoped_list(self, identity):
        return true() if identity.role == Role.CLINICIAN else false()


RULES: Dict[ResourceType, OwnershipRule] = {
    ResourceType.LAB_ORDER: LabOrderOwnership(),
    ResourceType.RESULT: ResultOwnership(),
    ResourceType.AUDIT_LOG: PrivilegedOwnership(ResourceType.AUDIT_LOG, "Audit log"),
    ResourceType.USER: UserOwnership(),
}


def get_rule(resource_type: ResourceType) -> OwnershipRule:
    return RULES[resource_type]


def require_capability(identity: Identity, roles: Iterable[Role], message: str) -> None:
    """
    Role-level capability for mutations, checked on top of ownership.

    Owning a record is not enough to change it: e.g. a patient owns their
    lab orders but may never delete one.
    """
    if identity.role not in tuple(roles):
        raise NotAuthorized(message)
