"""
Audit trail model - one row per classified, identity-bearing request.

This model exists to provide an immutable, append-only record of who did
what to which record, and how it turned out.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text, event

from labtrail.database import Base
from labtrail.errors import AuditImmutableError
from labtrail.models.enums import AuditAction, ResourceType, Role


class AuditLog(Base):
    """
    Immutable audit entry.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - resource_id is free text with no foreign key: it may name a record
      that has since been deleted
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who
    actor_id = Column(String(36), nullable=False, index=True)
    actor_role = Column(SQLEnum(Role), nullable=False)

    # What
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    resource_type = Column(SQLEnum(ResourceType), nullable=False)
    resource_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)

    # Network context
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    endpoint = Column(String, nullable=True)
    method = Column(String(10), nullable=True)

    # Outcome
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)

    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
    )


@event.listens_for(AuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditImmutableError(f"IMMUTABILITY VIOLATION: audit entry {target.id} cannot be edited")


@event.listens_for(AuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditImmutableError(f"IMMUTABILITY VIOLATION: audit entry {target.id} cannot be deleted")
