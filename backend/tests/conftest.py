import os, tempfile, uuid

_fd, TEST_DB_PATH = tempfile.mkstemp(suffix=".db")
os.close(_fd)
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["ADMIN_API_KEY"] = "test-key"
# TestClient connects from "testclient"; treat it as the proxy so tests can vary X-Forwarded-For
os.environ["TRUSTED_PROXIES"] = "testclient"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from main import app, get_rate_limiter
from db import Base, get_db
from assessment import AssessmentSpec, get_assessment_spec
from email_service import EmailSender, get_email_sender
from errors import EmailDeliveryFailed
from rate_limit import RateLimiter

@pytest.fixture(scope="session")
def test_engine():
    url = f"sqlite:///{TEST_DB_PATH}"
    engine = create_engine(url, connect_args={"check_same_thread": False})

    # SQLite force foreign key constraints
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    return engine

@pytest.fixture(scope="session")
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture(scope="session", autouse=True)
def override_db(TestingSessionLocal):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db

@pytest.fixture
def db_session(TestingSessionLocal):
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

class RecordingEmailSender(EmailSender):
    """Keeps every message in memory; set ``fail`` to simulate a delivery outage."""

    def __init__(self):
        self.magic_links = []
        self.confirmations = []
        self.fail = False

    def send_magic_link(self, to, token, expiry, survey_count):
        if self.fail:
            raise EmailDeliveryFailed()
        self.magic_links.append({"to": to, "token": token, "expiry": expiry, "survey_count": survey_count})

    def send_retrieval_confirmation(self, to, survey_id, token):
        if self.fail:
            raise EmailDeliveryFailed()
        self.confirmations.append({"to": to, "survey_id": survey_id, "token": token})

@pytest.fixture
def limiter():
    return RateLimiter()

@pytest.fixture
def sender():
    return RecordingEmailSender()

@pytest.fixture
def small_spec():
    # d1: one checkboxes question, option weights sum to 10
    # d2: zero-weight dimension with an optional scale table
    return AssessmentSpec.model_validate({
        "version": "test",
        "language": "en",
        "dimensions": [
            {"id": "d1", "name": "Strategy"},
            {"id": "d2", "name": "Technology", "weight": 0},
        ],
        "questions": [
            {
                "id": "q1", "dimension_id": "d1", "type": "checkboxes", "title": "Pick practices",
                "options": [
                    {"id": "a", "label": "A", "weight": 1},
                    {"id": "b", "label": "B", "weight": 2},
                    {"id": "c", "label": "C", "weight": 3},
                    {"id": "d", "label": "D", "weight": 4},
                ],
            },
            {
                "id": "q2", "dimension_id": "d2", "type": "scale-table", "title": "Rate tools", "required": False,
                "rows": [{"id": "r1", "label": "R1"}, {"id": "r2", "label": "R2"}],
            },
        ],
    })

@pytest.fixture
def client(limiter, sender, small_spec):
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_email_sender] = lambda: sender
    app.dependency_overrides[get_assessment_spec] = lambda: small_spec
    yield TestClient(app)
    for dep in (get_rate_limiter, get_email_sender, get_assessment_spec):
        app.dependency_overrides.pop(dep, None)

COMPANY = {"company_name": "Fjord Tools AS", "company_size": "small", "nace": "C25", "region": "Vestland"}
SIXTY_PERCENT = {"q1": {"type": "checkboxes", "selected": ["b", "d"]}}

@pytest.fixture
def unique_email():
    return f"owner-{uuid.uuid4().hex[:8]}@example.no"

@pytest.fixture
def make_survey(client):
    """Factory: create a survey, optionally complete and upgrade it. Returns (survey_id, token)."""
    def _make(complete=False, email=None, ip=None):
        headers = {"X-Forwarded-For": ip or f"10.0.{uuid.uuid4().int % 250}.{uuid.uuid4().int % 250}"}
        r = client.post("/api/surveys", json={"company_details": COMPANY}, headers=headers)
        assert r.status_code == 201, r.text
        sid, token = r.json()["survey_id"], r.json()["retrieval_token"]
        auth = {**headers, "Authorization": f"Bearer {token}"}
        if complete or email:
            r = client.post(f"/api/surveys/{sid}/complete", json={"answers": SIXTY_PERCENT}, headers=auth)
            assert r.status_code == 200, r.text
        if email:
            r = client.post(f"/api/surveys/{sid}/upgrade", json={"user_details": {"email": email}}, headers=auth)
            assert r.status_code == 200, r.text
        return sid, token
    return _make
