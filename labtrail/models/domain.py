"""Domain models - users, lab orders and results."""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from labtrail.database import Base
from labtrail.models.enums import LabOrderStatus, ResultStatus, Role, TestType


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    A person who can act in the system: a clinician, a lab or a patient.

    Credentials live with the identity provider, not here.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_user_id)
    email = Column(String, nullable=False, unique=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    role = Column(SQLEnum(Role), nullable=False, default=Role.PATIENT)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class LabOrder(Base):
    """
    A test ordered by a clinician for a patient.

    Progresses: Pending → In Review (assigned to a lab) → Completed (result posted).

    Invariants:
    - doctor_id is the ordering clinician and never changes
    - status Completed implies completed_date is set; at most one Result exists
    - every update bumps `version`; a concurrent writer holding a stale copy fails
    """
    __tablename__ = "lab_orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    patient_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    lab_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    test_type = Column(SQLEnum(TestType), nullable=False)
    notes = Column(Text, nullable=True)
    status = Column(SQLEnum(LabOrderStatus), nullable=False, default=LabOrderStatus.PENDING)

    scheduled_date = Column(DateTime, nullable=True)
    completed_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic lock: single-row updates are serialised per order
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    lab = relationship("User", foreign_keys=[lab_id])
    results = relationship("Result", back_populates="lab_order", cascade="all, delete-orphan")


class Result(Base):
    """
    The outcome a lab posts for a lab order.

    Invariants:
    - At most one Result per LabOrder (unique lab_order_id)
    - lab_id is the authoring lab
    - Created in Completed state; its LabOrder is Completed in the same transaction
    """
    __tablename__ = "results"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    lab_order_id = Column(Integer, ForeignKey("lab_orders.id"), nullable=False, unique=True, index=True)
    lab_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    result_text = Column(Text, nullable=False)
    comments = Column(Text, nullable=True)
    findings = Column(Text, nullable=True)
    recommendations = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=True)

    status = Column(SQLEnum(ResultStatus), nullable=False, default=ResultStatus.PENDING)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    lab_order = relationship("LabOrder", back_populates="results")
    lab = relationship("User", foreign_keys=[lab_id])
