"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from labtrail.models.enums import (
    AuditAction,
    LabOrderStatus,
    ResourceType,
    ResultStatus,
    Role,
    TestType
)


# User schemas
class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: Role = Role.PATIENT


class UserUpdate(BaseModel):
    email: Optional[str] = Field(None, min_length=3, max_length=320)
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# LabOrder schemas
class LabOrderCreate(BaseModel):
    patient_id: str
    test_type: TestType
    notes: Optional[str] = None
    scheduled_date: Optional[datetime] = None


class LabOrderUpdate(BaseModel):
    test_type: Optional[TestType] = None
    notes: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    status: Optional[LabOrderStatus] = None


class LabOrderAssign(BaseModel):
    lab_id: str


class LabOrderResponse(BaseModel):
    id: int
    patient_id: str
    doctor_id: str
    lab_id: Optional[str]
    test_type: TestType
    notes: Optional[str]
    status: LabOrderStatus
    scheduled_date: Optional[datetime]
    completed_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Result schemas
class ResultCreate(BaseModel):
    lab_order_id: int
    result_text: str = Field(..., min_length=1)
    comments: Optional[str] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    attachments: Optional[Any] = None


class ResultUpdate(BaseModel):
    result_text: Optional[str] = Field(None, min_length=1)
    comments: Optional[str] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    attachments: Optional[Any] = None


class ResultResponse(BaseModel):
    id: int
    lab_order_id: int
    lab_id: str
    result_text: str
    comments: Optional[str]
    findings: Optional[str]
    recommendations: Optional[str]
    attachments: Optional[Any]
    status: ResultStatus
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Audit schemas
class AuditLogResponse(BaseModel):
    id: int
    actor_id: str
    actor_role: Role
    action: AuditAction
    resource_type: ResourceType
    resource_id: Optional[str]
    description: Optional[str]
    metadata_json: Optional[dict]
    ip_address: Optional[str]
    user_agent: Optional[str]
    endpoint: Optional[str]
    method: Optional[str]
    status_code: Optional[int]
    response_time_ms: Optional[int]
    timestamp: datetime

    class Config:
        from_attributes = True


# Error response
class ErrorResponse(BaseModel):
    """Body of every error the API returns."""
    detail: str
