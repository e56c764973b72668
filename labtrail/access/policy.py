"""
Role policy table: which roles may invoke which operation.

Operations missing from the table are public. Anything that needs
protection must be listed here with at least one role.
"""
from typing import Dict, Tuple

from labtrail.models.enums import Role

CLINICIAN_ONLY = (Role.CLINICIAN,)
LAB_ONLY = (Role.LAB,)
ALL_ROLES = (Role.CLINICIAN, Role.LAB, Role.PATIENT)

ROLE_POLICY: Dict[str, Tuple[Role, ...]] = {
    # Users directory
    "users.create": CLINICIAN_ONLY,
    "users.list": CLINICIAN_ONLY,
    "users.get": (Role.CLINICIAN, Role.LAB),
    "users.update": CLINICIAN_ONLY,
    "users.delete": CLINICIAN_ONLY,
    "users.profile": ALL_ROLES,

    # Lab orders
    "lab_orders.create": CLINICIAN_ONLY,
    "lab_orders.list": ALL_ROLES,
    "lab_orders.get": ALL_ROLES,
    "lab_orders.update": CLINICIAN_ONLY,
    "lab_orders.delete": CLINICIAN_ONLY,
    "lab_orders.assign": CLINICIAN_ONLY,
    "lab_orders.pending": LAB_ONLY,
    "lab_orders.in_review": LAB_ONLY,

    # Results
    "results.create": LAB_ONLY,
    "results.list": ALL_ROLES,
    "results.get": ALL_ROLES,
    "results.update": LAB_ONLY,
    "results.delete": LAB_ONLY,
    "results.by_lab_order": ALL_ROLES,
    "results.pending": LAB_ONLY,
    "results.completed": LAB_ONLY,

    # Audit trail: privileged to clinicians
    "audit_logs.get": CLINICIAN_ONLY,
    "audit_logs.list": CLINICIAN_ONLY,
    "audit_logs.mine": CLINICIAN_ONLY,
    "audit_logs.by_resource": CLINICIAN_ONLY,
    "audit_logs.by_date_range": CLINICIAN_ONLY,
    "audit_logs.by_action": CLINICIAN_ONLY,
    "audit_logs.recent": CLINICIAN_ONLY,
}

AUDIT_READ_ROLES = CLINICIAN_ONLY


def allowed_roles(operation: str) -> Tuple[Role, ...]:
    """Roles declared for an operation; empty when it is public."""
    return ROLE_POLICY.get(operation, ())
