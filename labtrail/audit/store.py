"""
Persistence for the audit trail. Append and query only.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from labtrail.models.audit import AuditLog
from labtrail.models.enums import AuditAction, ResourceType


@dataclass(frozen=True)
class AuditQuery:
    """Filter for audit reads. Unset fields do not filter."""
    entry_id: Optional[int] = None
    actor_id: Optional[str] = None
    resource_type: Optional[ResourceType] = None
    resource_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    action: Optional[AuditAction] = None
    limit: Optional[int] = None


class SqlAuditStore:
    """
    Audit store backed by the application database.

    Each call opens its own session, so appends can run on worker threads
    independently of the request's session.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def append(self, fields: Dict[str, Any]) -> AuditLog:
        session: Session = self.session_factory()
        try:
            entry = AuditLog(**fields)
            session.add(entry)
            session.commit()
            session.refresh(entry)
            session.expunge(entry)
            return entry
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def query(self, criteria: AuditQuery) -> List[AuditLog]:
        session: Session = self.session_factory()
        try:
            query = session.query(AuditLog)

            if criteria.entry_id is not None:
                query = query.filter(AuditLog.id == criteria.entry_id)
            if criteria.actor_id is not None:
                query = query.filter(AuditLog.actor_id == criteria.actor_id)
            if criteria.resource_type is not None:
                query = query.filter(AuditLog.resource_type == criteria.resource_type)
            if criteria.resource_id is not None:
                query = query.filter(AuditLog.resource_id == criteria.resource_id)
            if criteria.start is not None:
                query = query.filter(AuditLog.timestamp >= criteria.start)
            if criteria.end is not None:
                query = query.filter(AuditLog.timestamp <= criteria.end)
            if criteria.action is not None:
                query = query.filter(AuditLog.action == criteria.action)

            query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            if criteria.limit is not None:
                query = query.limit(criteria.limit)

            entries = query.all()
            session.expunge_all()
            return entries
        finally:
            session.close()
