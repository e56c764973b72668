"""Pytest configuration and shared fixtures."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from labtrail.access.identity import Identity
from labtrail.api.auth import create_access_token
from labtrail.api.routes import get_pipeline
from labtrail.audit.recorder import AuditRecorder
from labtrail.audit.store import SqlAuditStore
from labtrail.database import Base, build_engine, get_db
from labtrail.main import app
from labtrail.models.domain import LabOrder, User
from labtrail.models.enums import LabOrderStatus, Role, TestType
from labtrail.pipeline import Pipeline


class FailingAuditStore:
    """Audit store whose writes always fail."""

    def __init__(self):
        self.attempts = 0

    def append(self, fields):
        self.attempts += 1
        raise RuntimeError("audit database unavailable")

    def query(self, criteria):
        return []


@pytest.fixture
def session_factory(tmp_path):
    """
    Fresh file-backed SQLite database for each test.

    File-backed rather than in-memory so audit writes on worker threads get
    their own connection to the same data.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'labtrail-test.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def audit_store(session_factory):
    return SqlAuditStore(session_factory)


@pytest.fixture
def recorder(audit_store):
    recorder = AuditRecorder(audit_store, max_workers=2)
    yield recorder
    recorder.shutdown()


@pytest.fixture
def failing_store():
    return FailingAuditStore()


@pytest.fixture
def failing_recorder(failing_store):
    recorder = AuditRecorder(failing_store, max_workers=1)
    yield recorder
    recorder.shutdown()


def _make_user(session, email, role, first_name="Test", last_name="User"):
    user = User(email=email, first_name=first_name, last_name=last_name, role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def clinician(db_session):
    return _make_user(db_session, "house@clinic.test", Role.CLINICIAN, "Gregory", "House")


@pytest.fixture
def other_clinician(db_session):
    return _make_user(db_session, "wilson@clinic.test", Role.CLINICIAN, "James", "Wilson")


@pytest.fixture
def lab(db_session):
    return _make_user(db_session, "lab-l@clinic.test", Role.LAB, "Lab", "L")


@pytest.fixture
def other_lab(db_session):
    return _make_user(db_session, "lab-m@clinic.test", Role.LAB, "Lab", "M")


@pytest.fixture
def patient(db_session):
    return _make_user(db_session, "patient-p@clinic.test", Role.PATIENT, "Pat", "P")


@pytest.fixture
def other_patient(db_session):
    return _make_user(db_session, "patient-q@clinic.test", Role.PATIENT, "Quinn", "Q")


def identity_of(user) -> Identity:
    return Identity(id=user.id, role=user.role)


@pytest.fixture
def sample_lab_order(db_session, clinician, patient):
    """A pending blood test ordered by `clinician` for `patient`."""
    lab_order = LabOrder(
        patient_id=patient.id,
        doctor_id=clinician.id,
        test_type=TestType.BLOOD_TEST,
        notes="Fasting glucose",
        status=LabOrderStatus.PENDING,
    )
    db_session.add(lab_order)
    db_session.commit()
    db_session.refresh(lab_order)
    return lab_order


@pytest.fixture
def client(session_factory, recorder):
    """TestClient wired to the per-test database and recorder."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    pipeline = Pipeline(recorder)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    token = create_access_token(identity_of(user))
    return {"Authorization": f"Bearer {token}"}
