"""
Audit recorder: observes each identity-bearing operation and appends one
immutable AuditLog entry for it, on success or on failure.

The write never sits on the caller's response path. Entries are handed to a
worker pool and the caller moves on; if the write fails, the failure is
logged here and goes no further. Delivery is at-most-once.

The recorder also serves the privileged audit reads. Each read re-runs the
access guard, whatever the route in front of it already checked.
"""
import hashlib
import json
import logging
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from labtrail.access.guard import require
from labtrail.access.identity import Identity
from labtrail.access.ownership import get_rule
from labtrail.access.policy import AUDIT_READ_ROLES
from labtrail.audit.classifier import Classification, classify, describe
from labtrail.audit.store import AuditQuery
from labtrail.config import AUDIT_RECENT_DEFAULT, AUDIT_RECENT_MAX, AUDIT_WORKERS
from labtrail.errors import AuditWriteFailure, ValidationFailed
from labtrail.models.audit import AuditLog
from labtrail.models.enums import AuditAction, ResourceType

logger = logging.getLogger(__name__)

FALLBACK_ERROR_STATUS = 500


@dataclass(frozen=True)
class NetworkContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None


@dataclass
class AuditCycle:
    """Everything captured when an operation starts."""
    identity: Identity
    classification: Classification
    description: str
    network: NetworkContext
    started: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int(round((time.monotonic() - self.started) * 1000))


def _plain(value):
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _plain(item) for key, item in value.items()}
    if hasattr(value, "__table__"):
        return {column.name: getattr(value, column.name) for column in value.__table__.columns}
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return value


def summarize(payload) -> Dict[str, Any]:
    """
    Short, non-identifying summary of a response payload.

    Records shape and a digest rather than the body itself, so the audit
    trail does not become a second copy of clinical data.
    """
    if payload is None:
        return {"type": None}

    if isinstance(payload, (list, tuple)):
        summary: Dict[str, Any] = {"type": "list", "count": len(payload)}
    else:
        summary = {"type": type(payload).__name__}
        record_id = payload.get("id") if isinstance(payload, dict) else getattr(payload, "id", None)
        if record_id is not None:
            summary["id"] = str(record_id)

    try:
        encoded = json.dumps(_plain(payload), sort_keys=True, default=str)
        summary["sha256"] = hashlib.sha256(encoded.encode("utf-8")).hexdigest()
    except (TypeError, ValueError) as exc:
        summary["digest_error"] = str(exc)
    return summary


def error_metadata(error: BaseException) -> Dict[str, Any]:
    return {
        "error": error_message(error),
        "error_type": type(error).__name__,
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }


def error_message(error: BaseException) -> str:
    return getattr(error, "message", None) or str(error) or type(error).__name__


def error_status(error: BaseException) -> int:
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else FALLBACK_ERROR_STATUS


def as_naive_utc(value: datetime) -> datetime:
    """Audit timestamps are stored as naive UTC; bring a query bound onto the same clock."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AuditRecorder:
    """Writes audit entries off the request path and serves privileged audit reads."""
    rule = get_rule(ResourceType.AUDIT_LOG)

    def __init__(self, store, executor: Optional[ThreadPoolExecutor] = None, max_workers: int = AUDIT_WORKERS):
        self.store = store
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="audit-writer",
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def begin(
        self,
        identity: Optional[Identity],
        method: str,
        path: str,
        network: Optional[NetworkContext] = None,
    ) -> Optional[AuditCycle]:
        """Start observing an operation. Operations without an identity are not audited."""
        if identity is None:
            return None
        return AuditCycle(
            identity=identity,
            classification=classify(method, path, identity.role),
            description=describe(method, path),
            network=network or NetworkContext(endpoint=path, method=method),
        )

    def record_success(self, cycle: Optional[AuditCycle], status_code: int, payload=None) -> Optional[Future]:
        if cycle is None:
            return None
        try:
            fields = self._fields(
                cycle,
                status_code=status_code,
                description=cycle.description,
                metadata={"response": summarize(payload)},
            )
        except Exception:
            logger.exception("Failed to build audit entry for %s", cycle.description)
            return None
        return self._submit(fields)

    def record_failure(self, cycle: Optional[AuditCycle], error: BaseException) -> Optional[Future]:
        if cycle is None:
            return None
        try:
            fields = self._fields(
                cycle,
                status_code=error_status(error),
                description=f"{cycle.description} - ERROR: {error_message(error)}",
                metadata=error_metadata(error),
            )
        except Exception:
            logger.exception("Failed to build audit entry for %s", cycle.description)
            return None
        return self._submit(fields)

    def _fields(self, cycle: AuditCycle, status_code: int, description: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        classification = cycle.classification
        return {
            "actor_id": cycle.identity.id,
            "actor_role": cycle.identity.role,
            "action": classification.action,
            "resource_type": classification.resource_type,
            "resource_id": classification.resource_id,
            "description": description,
            "metadata_json": metadata,
            "ip_address": cycle.network.ip_address,
            "user_agent": cycle.network.user_agent,
            "endpoint": cycle.network.endpoint,
            "method": cycle.network.method,
            "status_code": status_code,
            "response_time_ms": cycle.elapsed_ms(),
        }

    def _submit(self, fields: Dict[str, Any]) -> Optional[Future]:
        try:
            future = self.executor.submit(self._write, fields)
        except RuntimeError:
            # Executor already shut down (process exiting): the entry is lost
            logger.exception(
                "Failed to schedule audit entry for %s %s",
                fields.get("method"), fields.get("endpoint"),
            )
            return None

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _write(self, fields: Dict[str, Any]) -> Optional[AuditLog]:
        """Runs on a worker thread. Never raises."""
        try:
            return self.store.append(fields)
        except Exception as exc:
            failure = AuditWriteFailure(f"{type(exc).__name__}: {exc}")
            logger.error(
                "Failed to log audit entry (%s %s by %s): %s",
                fields.get("method"), fields.get("endpoint"), fields.get("actor_id"), failure,
                exc_info=exc,
            )
            return None

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for writes already submitted. True when none are left pending."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self.executor.shutdown(wait=wait_for_pending)

    # ------------------------------------------------------------------
    # Privileged reads
    # ------------------------------------------------------------------

    def _read(self, identity: Optional[Identity], criteria: AuditQuery) -> List[AuditLog]:
        require(AUDIT_READ_ROLES, identity)
        return [entry for entry in self.store.query(criteria) if self.rule.owns(identity, entry)]

    def get(self, identity: Optional[Identity], entry_id: int) -> AuditLog:
        entries = self._read(identity, AuditQuery(entry_id=entry_id))
        return self.rule.ensure(identity, entries[0] if entries else None, entry_id)

    def list_all(self, identity: Optional[Identity]) -> List[AuditLog]:
        return self._read(identity, AuditQuery())

    def by_actor(self, identity: Optional[Identity], actor_id: str) -> List[AuditLog]:
        return self._read(identity, AuditQuery(actor_id=actor_id))

    def by_resource(self, identity: Optional[Identity], resource_type: ResourceType, resource_id: str) -> List[AuditLog]:
        # resource_id is not a foreign key: entries for deleted records still match
        return self._read(identity, AuditQuery(resource_type=resource_type, resource_id=str(resource_id)))

    def by_date_range(self, identity: Optional[Identity], start: datetime, end: datetime) -> List[AuditLog]:
        require(AUDIT_READ_ROLES, identity)
        start, end = as_naive_utc(start), as_naive_utc(end)
        if start > end:
            raise ValidationFailed("startDate must not be after endDate")
        return self._read(identity, AuditQuery(start=start, end=end))

    def by_action(self, identity: Optional[Identity], action: AuditAction) -> List[AuditLog]:
        return self._read(identity, AuditQuery(action=action))

    def recent(self, identity: Optional[Identity], limit: int = AUDIT_RECENT_DEFAULT) -> List[AuditLog]:
        limit = max(1, min(int(limit), AUDIT_RECENT_MAX))
        return self._read(identity, AuditQuery(limit=limit))
