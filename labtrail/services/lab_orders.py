"""
Lab order service.

Every single-record operation is fetch, then ownership check, then (for
mutations) capability check, and only then the change itself.
"""
from datetime import datetime
from typing import List

from labtrail.access.identity import Identity
from labtrail.access.ownership import get_rule, require_capability
from labtrail.errors import Conflict, ValidationFailed
from labtrail.models.domain import LabOrder, User
from labtrail.models.enums import LabOrderStatus, ResourceType, Role, TERMINAL_ORDER_STATES
from labtrail.services.base import RecordService

UPDATABLE_FIELDS = ("test_type", "notes", "scheduled_date", "status")


class LabOrderService(RecordService):
    rule = get_rule(ResourceType.LAB_ORDER)

    def _user_with_role(self, user_id: str, role: Role, label: str) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None or user.role != role or not user.is_active:
            raise ValidationFailed(f"{label} {user_id} does not exist or is not an active {role.value}")
        return user

    def create(self, data: dict, identity: Identity) -> LabOrder:
        """Create a pending order with the calling clinician as ordering doctor."""
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can create lab orders")
        self._user_with_role(data["patient_id"], Role.PATIENT, "Patient")

        lab_order = LabOrder(
            patient_id=data["patient_id"],
            doctor_id=identity.id,
            test_type=data["test_type"],
            notes=data.get("notes"),
            scheduled_date=data.get("scheduled_date"),
            status=LabOrderStatus.PENDING,
        )
        self.db.add(lab_order)
        self.commit("Lab order could not be created")
        self.db.refresh(lab_order)
        return lab_order

    def list(self, identity: Identity) -> List[LabOrder]:
        return (
            self.db.query(LabOrder)
            .filter(self.rule.scoped_list(identity))
            .order_by(LabOrder.created_at.desc(), LabOrder.id.desc())
            .all()
        )

    def get(self, order_id: int, identity: Identity) -> LabOrder:
        lab_order = self.db.query(LabOrder).filter(LabOrder.id == order_id).first()
        return self.rule.ensure(identity, lab_order, order_id)

    def update(self, order_id: int, changes: dict, identity: Identity) -> LabOrder:
        """
        Update order details.

        Status can only move to Cancelled here; In Review comes from assign()
        and Completed from posting a result.
        """
        lab_order = self.get(order_id, identity)
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can update lab orders")

        status = changes.get("status")
        if status is not None and status != lab_order.status:
            if lab_order.status in TERMINAL_ORDER_STATES:
                raise Conflict(f"Lab order {order_id} is already {lab_order.status.value}")
            if status != LabOrderStatus.CANCELLED:
                raise ValidationFailed(
                    "Lab order status can only be changed to cancelled; "
                    "assign the order or post a result to move it forward"
                )

        for key in UPDATABLE_FIELDS:
            if changes.get(key) is not None:
                setattr(lab_order, key, changes[key])

        self.commit(f"Lab order {order_id} was modified concurrently")
        self.db.refresh(lab_order)
        return lab_order

    def delete(self, order_id: int, identity: Identity) -> None:
        lab_order = self.get(order_id, identity)
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can delete lab orders")
        self.db.delete(lab_order)
        self.commit(f"Lab order {order_id} was modified concurrently")

    def assign(self, order_id: int, lab_id: str, identity: Identity) -> LabOrder:
        """
        Hand the order to a lab.

        Side effect: status becomes In Review in the same commit.
        """
        lab_order = self.get(order_id, identity)
        require_capability(identity, (Role.CLINICIAN,), "Only clinicians can assign lab orders to labs")

        if lab_order.status in TERMINAL_ORDER_STATES:
            raise Conflict(f"Lab order {order_id} is already {lab_order.status.value}")
        self._user_with_role(lab_id, Role.LAB, "Lab")

        lab_order.lab_id = lab_id
        lab_order.status = LabOrderStatus.IN_REVIEW
        lab_order.updated_at = datetime.utcnow()

        self.commit(f"Lab order {order_id} was modified concurrently")
        self.db.refresh(lab_order)
        return lab_order

    def _for_lab_with_status(self, identity: Identity, status: LabOrderStatus) -> List[LabOrder]:
        require_capability(identity, (Role.LAB,), "Only labs can view their work queue")
        return (
            self.db.query(LabOrder)
            .filter(self.rule.scoped_list(identity), LabOrder.status == status)
            .order_by(LabOrder.created_at.asc(), LabOrder.id.asc())
            .all()
        )

    def pending_for_lab(self, identity: Identity) -> List[LabOrder]:
        return self._for_lab_with_status(identity, LabOrderStatus.PENDING)

    def in_review_for_lab(self, identity: Identity) -> List[LabOrder]:
        return self._for_lab_with_status(identity, LabOrderStatus.IN_REVIEW)
