"""Enums for LabTrail - these define the valid values for roles, states and audit categories."""
from enum import Enum


class Role(str, Enum):
    """The three roles a caller can hold. No other roles exist."""
    CLINICIAN = "clinician"
    LAB = "lab"
    PATIENT = "patient"


class LabOrderStatus(str, Enum):
    """Lifecycle of a lab order. Completed and Cancelled are terminal."""
    PENDING = "pending"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ResultStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TestType(str, Enum):
    """Kinds of test a clinician can order."""
    __test__ = False  # not a pytest test class

    BLOOD_TEST = "blood_test"
    URINE_TEST = "urine_test"
    X_RAY = "x_ray"
    MRI = "mri"
    CT_SCAN = "ct_scan"
    ULTRASOUND = "ultrasound"
    ECG = "ecg"
    OTHER = "other"


class AuditAction(str, Enum):
    """What a classified request did."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    REGISTER = "register"
    ASSIGN = "assign"
    UPLOAD = "upload"
    DOWNLOAD = "download"


class ResourceType(str, Enum):
    """What kind of record a classified request touched."""
    USER = "user"
    LAB_ORDER = "lab_order"
    RESULT = "result"
    AUDIT_LOG = "audit_log"
    AUTH = "auth"


TERMINAL_ORDER_STATES = (LabOrderStatus.COMPLETED, LabOrderStatus.CANCELLED)
