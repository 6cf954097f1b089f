import os, tempfile, uuid
from datetime import datetime, timedelta, timezone
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from main import app
from db import Base, get_db, configure_sqlite
from security import verify_admin

@pytest.fixture(scope="session")
def tmp_db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return path

@pytest.fixture(scope="session")
def test_engine(tmp_db_path):
    url = f"sqlite:///{tmp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    # foreign keys + BEGIN IMMEDIATE for ledger units, same as the app engine
    configure_sqlite(engine)
    Base.metadata.create_all(bind=engine)
    return engine

@pytest.fixture(scope="session")
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

@pytest.fixture(scope="session", autouse=True)
def override_di(TestingSessionLocal):
    def _get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()
    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[verify_admin] = lambda: None

@pytest.fixture
def client():
    os.environ["ADMIN_API_KEY"] = "test-key"
    return TestClient(app)

# ------------------------
# helpers shared by the API tests
# ------------------------
def in_days(days: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()

def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}@example.com"

@pytest.fixture
def register(client):
    def _register(name="Test User", email=None, referral_code=None):
        r = client.post("/respondents", json={
            "fullName": name,
            "email": email or unique_email(),
            "phone": "0240000000",
            "referralCode": referral_code,
        })
        assert r.status_code == 201, r.text
        return r.json()
    return _register

@pytest.fixture
def paid_survey(client):
    def _paid_survey(reward=2.5, max_respondents=10, expires_in_days=7, questions=None):
        r = client.post("/admin/surveys", json={
            "title": "Paid Survey",
            "description": "desc",
            "reward": reward,
            "maxRespondents": max_respondents,
            "expiresAt": in_days(expires_in_days),
            "questions": questions or [
                {"text": "Do you like it?", "type": "yes-no"},
                {"text": "Pick colours", "type": "multiple-choice", "options": ["Red", "Green", "Blue"]},
                {"text": "Anything else?", "type": "text", "required": False},
            ],
        })
        assert r.status_code == 201, r.text
        return r.json()
    return _paid_survey
