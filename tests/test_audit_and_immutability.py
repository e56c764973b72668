"""
Tests for the audit trail and its immutability.

These tests prove:
- Every identity-bearing operation leaves exactly one entry, success or failure
- Anonymous operations leave none
- A failing audit store never changes the caller's outcome
- Audit reads are clinician-only, re-checked on every read
- Persisted entries cannot be edited or deleted
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import identity_of
from labtrail.access.identity import Identity
from labtrail.audit.recorder import as_naive_utc, summarize
from labtrail.audit.store import AuditQuery
from labtrail.errors import (
    AuditImmutableError,
    Conflict,
    NotAuthenticated,
    NotAuthorized,
    NotFound,
    OwnershipDenied,
    ValidationFailed
)
from labtrail.models.audit import AuditLog
from labtrail.models.enums import AuditAction, ResourceType, Role
from labtrail.pipeline import OperationDescriptor, Pipeline


def _entries(recorder, audit_store, **criteria):
    assert recorder.drain(timeout=5.0)
    return audit_store.query(AuditQuery(**criteria))


class TestAuditOnSuccess:

    def test_success_records_one_entry(self, recorder, audit_store, clinician):
        """
        INVARIANT: one classified entry per identity-bearing operation.
        """
        pipeline = Pipeline(recorder)
        descriptor = OperationDescriptor(
            method="PATCH",
            path="/api/lab-orders/42",
            identity=identity_of(clinician),
            allowed_roles=(Role.CLINICIAN,),
        )

        payload = pipeline.run(descriptor, lambda: {"id": 42, "status": "cancelled"})

        assert payload == {"id": 42, "status": "cancelled"}
        entries = _entries(recorder, audit_store)
        assert len(entries) == 1

        entry = entries[0]
        assert entry.actor_id == clinician.id
        assert entry.actor_role == Role.CLINICIAN
        assert entry.action == AuditAction.UPDATE
        assert entry.resource_type == ResourceType.LAB_ORDER
        assert entry.resource_id == "42"
        assert entry.status_code == 200
        assert entry.description == "PATCH /api/lab-orders/42"
        assert entry.response_time_ms is not None and entry.response_time_ms >= 0
        assert entry.metadata_json["response"]["id"] == "42"

    def test_status_code_is_taken_from_the_route(self, recorder, audit_store, clinician):
        pipeline = Pipeline(recorder)
        descriptor = OperationDescriptor("POST", "/api/lab-orders", identity_of(clinician))

        pipeline.run(descriptor, lambda: None, status_code=201)

        [entry] = _entries(recorder, audit_store)
        assert entry.status_code == 201
        assert entry.action == AuditAction.CREATE
        assert entry.metadata_json["response"] == {"type": None}

    def test_summary_does_not_copy_the_body(self):
        summary = summarize([{"id": 1, "result_text": "HbA1c 9.1%"}, {"id": 2}])

        assert summary["type"] == "list"
        assert summary["count"] == 2
        assert len(summary["sha256"]) == 64
        assert "HbA1c" not in str(summary)


class TestAuditOnFailure:

    def test_failure_is_recorded_and_reraised(self, recorder, audit_store, clinician):
        """
        INVARIANT: the error path records one entry and the caller still gets the error.
        """
        pipeline = Pipeline(recorder)
        descriptor = OperationDescriptor("POST", "/api/results", identity_of(clinician))

        def handler():
            raise Conflict("Result already exists for this lab order")

        with pytest.raises(Conflict):
            pipeline.run(descriptor, handler)

        [entry] = _entries(recorder, audit_store)
        assert entry.status_code == 409
        assert entry.action == AuditAction.UPLOAD
        assert entry.description == "POST /api/results - ERROR: Result already exists for this lab order"
        assert entry.metadata_json["error"] == "Result already exists for this lab order"
        assert entry.metadata_json["error_type"] == "Conflict"
        assert "Traceback" in entry.metadata_json["stack"]

    def test_unknown_error_defaults_to_500(self, recorder, audit_store, lab):
        pipeline = Pipeline(recorder)
        descriptor = OperationDescriptor("GET", "/api/results/3", identity_of(lab))

        def handler():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            pipeline.run(descriptor, handler)

        [entry] = _entries(recorder, audit_store)
        assert entry.status_code == 500
        assert entry.metadata_json["error_type"] == "KeyError"

    def test_guard_denial_is_audited_and_handler_never_runs(self, recorder, audit_store, patient):
        """
        INVARIANT: a denied caller never reaches the handler, and the denial is audited.
        """
        pipeline = Pipeline(recorder)
        calls = []
        descriptor = OperationDescriptor(
            "DELETE", "/api/lab-orders/7", identity_of(patient), allowed_roles=(Role.CLINICIAN,)
        )

        with pytest.raises(NotAuthorized):
            pipeline.run(descriptor, lambda: calls.append("ran"))

        assert calls == []
        [entry] = _entries(recorder, audit_store)
        assert entry.status_code == 403
        assert entry.action == AuditAction.DELETE
        assert "Required roles: clinician. User role: patient" in entry.description

    def test_ownership_denial_keeps_its_class_in_metadata(self, recorder, audit_store, sample_lab_order, other_patient):
        from labtrail.access.ownership import get_rule

        pipeline = Pipeline(recorder)
        descriptor = OperationDescriptor(
            "GET", f"/api/lab-orders/{sample_lab_order.id}", identity_of(other_patient)
        )
        rule = get_rule(ResourceType.LAB_ORDER)

        with pytest.raises(NotFound):
            pipeline.run(descriptor, lambda: rule.ensure(identity_of(other_patient), sample_lab_order))

        [entry] = _entries(recorder, audit_store)
        assert entry.status_code == 404
        assert entry.metadata_json["error_type"] == "OwnershipDenied"


class TestAnonymousOperations:

    def test_anonymous_public_operation_is_not_audited(self, recorder, audit_store):
        pipeline = Pipeline(recorder)

        assert pipeline.run(OperationDescriptor("GET", "/health"), lambda: "ok") == "ok"
        assert _entries(recorder, audit_store) == []

    def test_anonymous_denial_is_not_audited(self, recorder, audit_store):
        pipeline = Pipeline(recorder)
        descriptor = OperationDescriptor("GET", "/api/lab-orders", allowed_roles=(Role.CLINICIAN,))

        with pytest.raises(NotAuthenticated):
            pipeline.run(descriptor, lambda: [])

        assert _entries(recorder, audit_store) == []


class TestAuditFailureIsolation:
    """A broken audit store must never change what the caller sees."""

    def test_success_survives_failing_store(self, failing_recorder, failing_store, clinician):
        pipeline = Pipeline(failing_recorder)
        descriptor = OperationDescriptor("GET", "/api/lab-orders", identity_of(clinician))

        assert pipeline.run(descriptor, lambda: ["order"]) == ["order"]
        assert failing_recorder.drain(timeout=5.0)
        assert failing_store.attempts == 1

    def test_error_survives_failing_store_unchanged(self, failing_recorder, failing_store, clinician):
        pipeline = Pipeline(failing_recorder)
        descriptor = OperationDescriptor("POST", "/api/users", identity_of(clinician))
        original = Conflict("User with email 'a@b.test' already exists")

        def handler():
            raise original

        with pytest.raises(Conflict) as exc_info:
            pipeline.run(descriptor, handler)

        assert exc_info.value is original
        assert failing_recorder.drain(timeout=5.0)
        assert failing_store.attempts == 1

    def test_write_failure_is_logged(self, failing_recorder, clinician, caplog):
        pipeline = Pipeline(failing_recorder)
        pipeline.run(OperationDescriptor("GET", "/api/users", identity_of(clinician)), lambda: [])
        failing_recorder.drain(timeout=5.0)

        assert "Failed to log audit entry" in caplog.text

    def test_shut_down_executor_does_not_raise(self, failing_recorder, clinician):
        failing_recorder.shutdown()
        pipeline = Pipeline(failing_recorder)

        assert pipeline.run(OperationDescriptor("GET", "/api/users", identity_of(clinician)), lambda: 1) == 1


class TestAuditReads:

    def _seed(self, audit_store, actor, action=AuditAction.READ, resource_type=ResourceType.LAB_ORDER,
              resource_id=None, timestamp=None):
        fields = {
            "actor_id": actor.id,
            "actor_role": actor.role,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return audit_store.append(fields)

    @pytest.mark.parametrize("role", [Role.LAB, Role.PATIENT])
    def test_non_clinicians_are_refused_on_every_read(self, recorder, role):
        """
        INVARIANT: audit reads re-run the guard, whatever the route checked.
        """
        identity = Identity(id="x", role=role)
        reads = [
            lambda: recorder.list_all(identity),
            lambda: recorder.get(identity, 1),
            lambda: recorder.by_actor(identity, "x"),
            lambda: recorder.by_resource(identity, ResourceType.RESULT, "1"),
            lambda: recorder.by_date_range(identity, datetime(2024, 1, 1), datetime(2024, 1, 2)),
            lambda: recorder.by_action(identity, AuditAction.READ),
            lambda: recorder.recent(identity),
        ]
        for read in reads:
            with pytest.raises(NotAuthorized):
                read()

    def test_anonymous_read_is_not_authenticated(self, recorder):
        with pytest.raises(NotAuthenticated):
            recorder.list_all(None)

    def test_recent_is_newest_first_and_limited(self, recorder, audit_store, clinician):
        base = datetime(2025, 3, 1, 12, 0, 0)
        for minutes in range(5):
            self._seed(audit_store, clinician, resource_id=str(minutes), timestamp=base + timedelta(minutes=minutes))

        entries = recorder.recent(identity_of(clinician), limit=3)

        assert [e.resource_id for e in entries] == ["4", "3", "2"]

    def test_recent_clamps_limit(self, recorder, audit_store, clinician):
        self._seed(audit_store, clinician)

        assert len(recorder.recent(identity_of(clinician), limit=0)) == 1
        assert len(recorder.recent(identity_of(clinician), limit=10_000)) == 1

    def test_date_range_is_inclusive(self, recorder, audit_store, clinician):
        start = datetime(2025, 1, 1)
        end = datetime(2025, 1, 31, 23, 59, 59)
        self._seed(audit_store, clinician, resource_id="before", timestamp=start - timedelta(seconds=1))
        self._seed(audit_store, clinician, resource_id="first", timestamp=start)
        self._seed(audit_store, clinician, resource_id="last", timestamp=end)
        self._seed(audit_store, clinician, resource_id="after", timestamp=end + timedelta(seconds=1))

        entries = recorder.by_date_range(identity_of(clinician), start, end)

        assert sorted(e.resource_id for e in entries) == ["first", "last"]

    def test_reversed_date_range_is_rejected(self, recorder, clinician):
        with pytest.raises(ValidationFailed):
            recorder.by_date_range(identity_of(clinician), datetime(2025, 2, 1), datetime(2025, 1, 1))

    def test_mixed_offset_bounds_compare_on_one_clock(self, recorder, audit_store, clinician):
        self._seed(audit_store, clinician, resource_id="inside", timestamp=datetime(2025, 1, 15))

        entries = recorder.by_date_range(
            identity_of(clinician),
            datetime(2025, 1, 1, tzinfo=timezone.utc),
            datetime(2025, 1, 31),
        )

        assert [e.resource_id for e in entries] == ["inside"]

    def test_offset_bounds_are_shifted_to_utc(self, recorder, audit_store, clinician):
        """
        INVARIANT: a +02:00 bound selects the same instant in the naive-UTC trail.
        """
        plus_two = timezone(timedelta(hours=2))
        self._seed(audit_store, clinician, resource_id="09:30Z", timestamp=datetime(2025, 6, 1, 9, 30))
        self._seed(audit_store, clinician, resource_id="10:30Z", timestamp=datetime(2025, 6, 1, 10, 30))

        # 12:00+02:00 to 13:00+02:00 is 10:00Z to 11:00Z
        entries = recorder.by_date_range(
            identity_of(clinician),
            datetime(2025, 6, 1, 12, 0, tzinfo=plus_two),
            datetime(2025, 6, 1, 13, 0, tzinfo=plus_two),
        )

        assert [e.resource_id for e in entries] == ["10:30Z"]

    def test_as_naive_utc(self):
        naive = datetime(2025, 1, 1, 8, 0)
        assert as_naive_utc(naive) is naive
        assert as_naive_utc(datetime(2025, 1, 1, 8, 0, tzinfo=timezone(timedelta(hours=-5)))) == datetime(2025, 1, 1, 13, 0)

    def test_resource_lookup_outlives_the_record(self, recorder, audit_store, clinician):
        """
        INVARIANT: entries for a deleted record are still returned.
        """
        self._seed(audit_store, clinician, action=AuditAction.DELETE, resource_id="9999")

        entries = recorder.by_resource(identity_of(clinician), ResourceType.LAB_ORDER, 9999)

        assert len(entries) == 1
        assert entries[0].action == AuditAction.DELETE

    def test_by_actor_and_by_action(self, recorder, audit_store, clinician, lab):
        self._seed(audit_store, clinician, action=AuditAction.ASSIGN)
        self._seed(audit_store, lab, action=AuditAction.UPLOAD, resource_type=ResourceType.RESULT)

        reader = identity_of(clinician)
        assert [e.actor_id for e in recorder.by_actor(reader, lab.id)] == [lab.id]
        assert [e.action for e in recorder.by_action(reader, AuditAction.ASSIGN)] == [AuditAction.ASSIGN]

    def test_reads_apply_the_audit_log_rule(self, recorder, audit_store, clinician, lab, monkeypatch):
        """
        INVARIANT: even a caller past the role gate only sees entries the audit-log rule allows.
        """
        entry = self._seed(audit_store, clinician)
        monkeypatch.setattr("labtrail.audit.recorder.AUDIT_READ_ROLES", (Role.CLINICIAN, Role.LAB))

        assert recorder.list_all(identity_of(lab)) == []
        with pytest.raises(OwnershipDenied):
            recorder.get(identity_of(lab), entry.id)
        assert recorder.get(identity_of(clinician), entry.id).id == entry.id

    def test_get_missing_entry(self, recorder, clinician):
        with pytest.raises(NotFound) as exc_info:
            recorder.get(identity_of(clinician), 12345)
        assert exc_info.value.message == "Audit log with ID 12345 not found"


class TestImmutability:
    """Persisted audit entries cannot be changed through the ORM."""

    def _persisted(self, db_session, clinician):
        entry = AuditLog(
            actor_id=clinician.id,
            actor_role=Role.CLINICIAN,
            action=AuditAction.READ,
            resource_type=ResourceType.RESULT,
            resource_id="1",
            description="GET /api/results/1",
        )
        db_session.add(entry)
        db_session.commit()
        db_session.refresh(entry)
        return entry

    def test_cannot_edit(self, db_session, clinician):
        entry = self._persisted(db_session, clinician)
        entry.description = "something else"

        with pytest.raises(AuditImmutableError, match="IMMUTABILITY VIOLATION"):
            db_session.commit()
        db_session.rollback()

        assert db_session.get(AuditLog, entry.id).description == "GET /api/results/1"

    def test_cannot_delete(self, db_session, clinician):
        entry = self._persisted(db_session, clinician)
        db_session.delete(entry)

        with pytest.raises(AuditImmutableError, match="IMMUTABILITY VIOLATION"):
            db_session.commit()
        db_session.rollback()

        assert db_session.query(AuditLog).count() == 1

    def test_store_exposes_no_mutation(self, audit_store):
        assert not hasattr(audit_store, "update")
        assert not hasattr(audit_store, "delete")
