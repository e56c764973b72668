"""
API routes for users, lab orders, results and the audit trail.

Every route builds an OperationDescriptor and hands its business call to the
pipeline, which runs the access guard first and records the audit entry
afterwards. Identity is passed explicitly into every service call.
"""
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from labtrail.access.identity import Identity
from labtrail.access.policy import allowed_roles
from labtrail.api.auth import get_identity
from labtrail.api.schemas import (
    AuditLogResponse,
    ErrorResponse,
    LabOrderAssign,
    LabOrderCreate,
    LabOrderResponse,
    LabOrderUpdate,
    ResultCreate,
    ResultResponse,
    ResultUpdate,
    UserCreate,
    UserResponse,
    UserUpdate
)
from labtrail.audit.recorder import NetworkContext
from labtrail.config import AUDIT_RECENT_DEFAULT, AUDIT_RECENT_MAX
from labtrail.database import get_db
from labtrail.models.enums import AuditAction, ResourceType
from labtrail.pipeline import OperationDescriptor, Pipeline
from labtrail.services.lab_orders import LabOrderService
from labtrail.services.results import ResultService
from labtrail.services.users import UserService

ERRORS = {
    401: {"model": ErrorResponse, "description": "Not authenticated"},
    403: {"model": ErrorResponse, "description": "Role not permitted"},
    404: {"model": ErrorResponse, "description": "Not found, or not yours"},
}

router = APIRouter(responses=ERRORS)


def get_pipeline(request: Request) -> Pipeline:
    """Dependency for the application's pipeline (built once at startup)."""
    return request.app.state.pipeline


def describe_operation(
    request: Request,
    identity: Optional[Identity],
    operation: str,
    body: Any = None,
) -> OperationDescriptor:
    """Everything the pipeline needs to know about the inbound request."""
    endpoint = request.url.path
    if request.url.query:
        endpoint = f"{endpoint}?{request.url.query}"
    return OperationDescriptor(
        method=request.method,
        path=request.url.path,
        identity=identity,
        body=body,
        allowed_roles=allowed_roles(operation),
        network=NetworkContext(
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            endpoint=endpoint,
            method=request.method,
        ),
    )


def _no_content() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Auth
@router.get("/auth/profile", response_model=UserResponse)
def get_profile(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """The caller's own user record."""
    return pipeline.run(
        describe_operation(request, identity, "users.profile"),
        lambda: UserService(db).profile(identity),
    )


# User endpoints
@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED,
             responses={409: {"model": ErrorResponse, "description": "Email already registered"}})
def create_user(
    user_data: UserCreate,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "users.create", user_data),
        lambda: UserService(db).create(user_data.model_dump(), identity),
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/users", response_model=List[UserResponse])
def list_users(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "users.list"),
        lambda: UserService(db).list(identity),
    )


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    user_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "users.get"),
        lambda: UserService(db).get(user_id, identity),
    )


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: str,
    changes: UserUpdate,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "users.update", changes),
        lambda: UserService(db).update(user_id, changes.model_dump(exclude_unset=True), identity),
    )


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_user(
    user_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    pipeline.run(
        describe_operation(request, identity, "users.delete"),
        lambda: UserService(db).delete(user_id, identity),
        status_code=status.HTTP_204_NO_CONTENT,
    )
    return _no_content()


# LabOrder endpoints
@router.post("/lab-orders", response_model=LabOrderResponse, status_code=status.HTTP_201_CREATED)
def create_lab_order(
    order_data: LabOrderCreate,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Create a pending lab order; the caller becomes the ordering clinician."""
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.create", order_data),
        lambda: LabOrderService(db).create(order_data.model_dump(), identity),
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/lab-orders", response_model=List[LabOrderResponse])
def list_lab_orders(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Lab orders visible to the caller: their own, their assigned, or about them."""
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.list"),
        lambda: LabOrderService(db).list(identity),
    )


@router.get("/lab-orders/lab/pending", response_model=List[LabOrderResponse])
def list_pending_lab_orders(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.pending"),
        lambda: LabOrderService(db).pending_for_lab(identity),
    )


@router.get("/lab-orders/lab/in-review", response_model=List[LabOrderResponse])
def list_in_review_lab_orders(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.in_review"),
        lambda: LabOrderService(db).in_review_for_lab(identity),
    )


@router.get("/lab-orders/{order_id}", response_model=LabOrderResponse)
def get_lab_order(
    order_id: int,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.get"),
        lambda: LabOrderService(db).get(order_id, identity),
    )


@router.patch("/lab-orders/{order_id}", response_model=LabOrderResponse)
def update_lab_order(
    order_id: int,
    changes: LabOrderUpdate,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.update", changes),
        lambda: LabOrderService(db).update(order_id, changes.model_dump(exclude_unset=True), identity),
    )


@router.delete("/lab-orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_lab_order(
    order_id: int,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    pipeline.run(
        describe_operation(request, identity, "lab_orders.delete"),
        lambda: LabOrderService(db).delete(order_id, identity),
        status_code=status.HTTP_204_NO_CONTENT,
    )
    return _no_content()


@router.post("/lab-orders/{order_id}/assign", response_model=LabOrderResponse,
             responses={409: {"model": ErrorResponse, "description": "Order already completed or cancelled"}})
def assign_lab_order(
    order_id: int,
    assignment: LabOrderAssign,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Assign a lab order to a lab.
    Side effect: the order moves to In Review.
    """
    return pipeline.run(
        describe_operation(request, identity, "lab_orders.assign", assignment),
        lambda: LabOrderService(db).assign(order_id, assignment.lab_id, identity),
    )


# Result endpoints
@router.post("/results", response_model=ResultResponse, status_code=status.HTTP_201_CREATED,
             responses={409: {"model": ErrorResponse, "description": "Lab order already has a result"}})
def create_result(
    result_data: ResultCreate,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Post the result for a lab order assigned to the calling lab.
    Side effect: the lab order is completed. WILL REFUSE a second result.
    """
    return pipeline.run(
        describe_operation(request, identity, "results.create", result_data),
        lambda: ResultService(db).create(result_data.model_dump(), identity),
        status_code=status.HTTP_201_CREATED,
    )


@router.get("/results", response_model=List[ResultResponse])
def list_results(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "results.list"),
        lambda: ResultService(db).list(identity),
    )


@router.get("/results/lab/pending", response_model=List[ResultResponse])
def list_pending_results(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "results.pending"),
        lambda: ResultService(db).pending_for_lab(identity),
    )


@router.get("/results/lab/completed", response_model=List[ResultResponse])
def list_completed_results(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "results.completed"),
        lambda: ResultService(db).completed_for_lab(identity),
    )


@router.get("/results/lab-order/{order_id}", response_model=List[ResultResponse])
def list_results_for_lab_order(
    order_id: int,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "results.by_lab_order"),
        lambda: ResultService(db).for_lab_order(order_id, identity),
    )


@router.get("/results/{result_id}", response_model=ResultResponse)
def get_result(
    result_id: int,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "results.get"),
        lambda: ResultService(db).get(result_id, identity),
    )


@router.patch("/results/{result_id}", response_model=ResultResponse)
def update_result(
    result_id: int,
    changes: ResultUpdate,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.run(
        describe_operation(request, identity, "results.update", changes),
        lambda: ResultService(db).update(result_id, changes.model_dump(exclude_unset=True), identity),
    )


@router.delete("/results/{result_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_result(
    result_id: int,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    pipeline.run(
        describe_operation(request, identity, "results.delete"),
        lambda: ResultService(db).delete(result_id, identity),
        status_code=status.HTTP_204_NO_CONTENT,
    )
    return _no_content()


# Audit log endpoints (clinicians only; the recorder re-checks on every read)
@router.get("/audit-logs", response_model=List[AuditLogResponse])
def list_audit_logs(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.list"),
        lambda: recorder.list_all(identity),
    )


@router.get("/audit-logs/recent", response_model=List[AuditLogResponse])
def list_recent_audit_logs(
    request: Request,
    limit: int = Query(AUDIT_RECENT_DEFAULT, ge=1, le=AUDIT_RECENT_MAX),
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.recent"),
        lambda: recorder.recent(identity, limit),
    )


@router.get("/audit-logs/user/me", response_model=List[AuditLogResponse])
def list_my_audit_logs(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.mine"),
        lambda: recorder.by_actor(identity, identity.id),
    )


@router.get("/audit-logs/date-range", response_model=List[AuditLogResponse])
def list_audit_logs_by_date_range(
    request: Request,
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.by_date_range"),
        lambda: recorder.by_date_range(identity, start_date, end_date),
    )


@router.get("/audit-logs/action/{action}", response_model=List[AuditLogResponse])
def list_audit_logs_by_action(
    action: AuditAction,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.by_action"),
        lambda: recorder.by_action(identity, action),
    )


@router.get("/audit-logs/resource/{resource_type}/{resource_id}", response_model=List[AuditLogResponse])
def list_audit_logs_by_resource(
    resource_type: ResourceType,
    resource_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Entries for one record. The record itself may no longer exist."""
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.by_resource"),
        lambda: recorder.by_resource(identity, resource_type, resource_id),
    )


@router.get("/audit-logs/{entry_id}", response_model=AuditLogResponse)
def get_audit_log(
    entry_id: int,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    pipeline: Pipeline = Depends(get_pipeline),
):
    recorder = pipeline.recorder
    return pipeline.run(
        describe_operation(request, identity, "audit_logs.get"),
        lambda: recorder.get(identity, entry_id),
    )
