"""
Error taxonomy shared by the access layer, the services and the audit trail.

Every error a caller can see carries an HTTP status code so the audit
recorder can record the outcome without knowing the error's type.
"""
from typing import Optional


class LabTrailError(Exception):
    """Base class for errors surfaced to the caller."""
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class NotAuthenticated(LabTrailError):
    status_code = 401


class NotAuthorized(LabTrailError):
    """Role or capability failure. The message enumerates the roles involved."""
    status_code = 403


class NotFound(LabTrailError):
    status_code = 404

    @classmethod
    def for_resource(cls, label: str, record_id=None) -> "NotFound":
        if record_id is None:
            return cls(f"{label} not found")
        return cls(f"{label} with ID {record_id} not found")


class OwnershipDenied(NotFound):
    """
    The record exists but belongs to someone else.

    Reads exactly like NotFound to the caller so record existence does not
    leak across tenants. Only the class name, kept in audit metadata,
    tells the two apart.
    """


class Conflict(LabTrailError):
    status_code = 409


class ValidationFailed(LabTrailError):
    status_code = 400


class AuditWriteFailure(Exception):
    """Internal only: an audit entry could not be persisted. Never raised to callers."""


class AuditImmutableError(Exception):
    """Raised when something tries to edit or delete a persisted audit entry."""
