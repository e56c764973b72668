"""
Result service.

Posting a result completes its lab order: both rows change in one commit,
and a lab order never gets a second result.
"""
from datetime import datetime
from typing import List

from labtrail.access.identity import Identity
from labtrail.access.ownership import get_rule, require_capability
from labtrail.errors import Conflict
from labtrail.models.domain import LabOrder, Result
from labtrail.models.enums import LabOrderStatus, ResourceType, ResultStatus, Role
from labtrail.services.base import RecordService

RESULT_FIELDS = ("result_text", "comments", "findings", "recommendations", "attachments")
DUPLICATE_RESULT = "Result already exists for this lab order"


class ResultService(RecordService):
    rule = get_rule(ResourceType.RESULT)
    order_rule = get_rule(ResourceType.LAB_ORDER)

    def create(self, data: dict, identity: Identity) -> Result:
        """
        Post the result for a lab order assigned to the calling lab.

        Invariants:
        - The order must be assigned to this lab (otherwise it reads as not found)
        - One result per order: a second attempt is a Conflict and changes nothing
        - The result is Completed and its order is Completed, with completion time set
        """
        require_capability(identity, (Role.LAB,), "Only labs can create results")

        order_id = data["lab_order_id"]
        lab_order = self.db.query(LabOrder).filter(LabOrder.id == order_id).first()
        self.order_rule.ensure(identity, lab_order, order_id)

        existing = self.db.query(Result).filter(Result.lab_order_id == lab_order.id).first()
        if existing is not None or lab_order.status == LabOrderStatus.COMPLETED:
            raise Conflict(DUPLICATE_RESULT)
        if lab_order.status == LabOrderStatus.CANCELLED:
            raise Conflict(f"Lab order {order_id} has been cancelled")

        now = datetime.utcnow()
        result = Result(
            lab_order_id=lab_order.id,
            lab_id=identity.id,
            status=ResultStatus.COMPLETED,
            completed_at=now,
            **{key: data.get(key) for key in RESULT_FIELDS},
        )
        self.db.add(result)

        lab_order.status = LabOrderStatus.COMPLETED
        lab_order.completed_date = now
        lab_order.updated_at = now

        # Unique lab_order_id + the order's version counter settle concurrent submissions
        self.commit(DUPLICATE_RESULT)
        self.db.refresh(result)
        return result

    def list(self, identity: Identity) -> List[Result]:
        return (
            self.db.query(Result)
            .filter(self.rule.scoped_list(identity))
            .order_by(Result.created_at.desc(), Result.id.desc())
            .all()
        )

    def get(self, result_id: int, identity: Identity) -> Result:
        result = self.db.query(Result).filter(Result.id == result_id).first()
        return self.rule.ensure(identity, result, result_id)

    def update(self, result_id: int, changes: dict, identity: Identity) -> Result:
        result = self.get(result_id, identity)
        require_capability(identity, (Role.LAB,), "Only labs can update results")

        for key in RESULT_FIELDS:
            if changes.get(key) is not None:
                setattr(result, key, changes[key])
        self.commit(f"Result {result_id} was modified concurrently")
        self.db.refresh(result)
        return result

    def delete(self, result_id: int, identity: Identity) -> None:
        result = self.get(result_id, identity)
        require_capability(identity, (Role.LAB,), "Only labs can delete results")
        self.db.delete(result)
        self.commit(f"Result {result_id} was modified concurrently")

    def for_lab_order(self, order_id: int, identity: Identity) -> List[Result]:
        """Results of one order, after checking the caller may see the order itself."""
        lab_order = self.db.query(LabOrder).filter(LabOrder.id == order_id).first()
        self.order_rule.ensure(identity, lab_order, order_id)
        return (
            self.db.query(Result)
            .filter(Result.lab_order_id == order_id)
            .order_by(Result.created_at.desc())
            .all()
        )

    def _for_lab_with_status(self, identity: Identity, status: ResultStatus) -> List[Result]:
        require_capability(identity, (Role.LAB,), "Only labs can view their results queue")
        return (
            self.db.query(Result)
            .filter(self.rule.scoped_list(identity), Result.status == status)
            .order_by(Result.created_at.desc())
            .all()
        )

    def pending_for_lab(self, identity: Identity) -> List[Result]:
        return self._for_lab_with_status(identity, ResultStatus.PENDING)

    def completed_for_lab(self, identity: Identity) -> List[Result]:
        return self._for_lab_with_status(identity, ResultStatus.COMPLETED)
