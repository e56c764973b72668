"""Shared plumbing for the record services."""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from labtrail.errors import Conflict

logger = logging.getLogger(__name__)


class RecordService:
    """A service bound to one request's database session."""

    def __init__(self, db: Session):
        self.db = db

    def commit(self, conflict_message: str) -> None:
        """
        Commit the unit of work.

        A unique-constraint hit or a stale optimistic version means another
        writer got there first: roll back and report a Conflict.
        """
        try:
            self.db.commit()
        except (IntegrityError, StaleDataError) as exc:
            self.db.rollback()
            logger.info("Concurrent write rejected: %s (%s)", conflict_message, type(exc).__name__)
            raise Conflict(conflict_message) from exc
