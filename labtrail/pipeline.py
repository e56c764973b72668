"""
Operation pipeline: the one path every routed operation takes.

    descriptor -> audit begin -> access guard -> handler -> audit record

The guard runs before the handler, so a denied caller never reaches
business logic. The audit write is submitted, not awaited, on both the
success and the error path; errors are re-raised unchanged.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

from labtrail.access.guard import require
from labtrail.access.identity import Identity
from labtrail.audit.recorder import AuditRecorder, NetworkContext
from labtrail.models.enums import Role


@dataclass(frozen=True)
class OperationDescriptor:
    """What the routing layer knows about an inbound operation."""
    method: str
    path: str
    identity: Optional[Identity] = None
    body: Any = None
    allowed_roles: Tuple[Role, ...] = ()
    network: NetworkContext = field(default_factory=NetworkContext)


class Pipeline:
    def __init__(self, recorder: AuditRecorder):
        self.recorder = recorder

    def run(self, descriptor: OperationDescriptor, handler: Callable[[], Any], status_code: int = 200):
        cycle = self.recorder.begin(
            descriptor.identity,
            descriptor.method,
            descriptor.path,
            descriptor.network,
        )
        try:
            require(descriptor.allowed_roles, descriptor.identity)
            payload = handler()
        except Exception as exc:
            self.recorder.record_failure(cycle, exc)
            raise
        except BaseException as exc:
            # Cancelled or interrupted upstream: still try to leave a trace
            self.recorder.record_failure(cycle, exc)
            raise

        self.recorder.record_success(cycle, status_code, payload)
        return payload
