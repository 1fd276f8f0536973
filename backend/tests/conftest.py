"""
Pytest configuration for the CELTS API tests
"""
import os
import tempfile

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-celts-tests")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_BASE_DIR"] = tempfile.mkdtemp(prefix="celts-uploads-")

import pytest
from fastapi.testclient import TestClient

from celts.core.database import Base, SessionLocal, engine
from celts.core.security import create_access_token, get_password_hash
from celts.main import app
from celts.middleware.rate_limiting import rate_limit_store
from celts.models.test_set import TestQuestion, TestSet
from celts.models.user import User, UserRole
from celts.services.timer_service import exam_timer_service

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
}


@pytest.fixture(autouse=True)
def setup_database():
    from celts import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield
    exam_timer_service.shutdown()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limit_store.clear()
    yield
    rate_limit_store.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def make_user(db, email, role=UserRole.STUDENT, can_edit_scores=False, full_name=None):
    user = User(
        email=email,
        full_name=full_name or email.split("@")[0].title(),
        system_id=f"SYS-{email.split('@')[0]}",
        role=role,
        can_edit_scores=can_edit_scores,
        hashed_password=get_password_hash("password123"),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user):
    token = create_access_token({"sub": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}", **BROWSER_HEADERS}


@pytest.fixture
def student(db):
    return make_user(db, "student@example.com")


@pytest.fixture
def other_student(db):
    return make_user(db, "other@example.com")


@pytest.fixture
def faculty(db):
    return make_user(db, "faculty@example.com", role=UserRole.FACULTY)


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
def student_headers(student):
    return auth_headers(student)


@pytest.fixture
def faculty_headers(faculty):
    return auth_headers(faculty)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


def make_test_set(db, creator, skill="reading", time_limit_minutes=60, published=True, **fields):
    test_set = TestSet(
        title=fields.pop("title", f"{skill.title()} practice"),
        type=skill,
        time_limit_minutes=time_limit_minutes,
        published=published,
        created_by=creator.id,
        reading_sections=[{"id": "p1", "passage": "Some passage"}] if skill == "reading" else [],
        listening_sections=[{"id": "a1", "audioUrl": "/audio/a1.mp3"}] if skill == "listening" else [],
        **fields,
    )
    if skill in ("reading", "listening"):
        test_set.questions = [
            TestQuestion(position=0, question_type="mcq", prompt="Q1", options=["a", "b", "c"], correct_index=0, marks=1),
            TestQuestion(position=1, question_type="mcq", prompt="Q2", options=["a", "b", "c"], correct_index=1, marks=1),
            TestQuestion(position=2, question_type="mcq", prompt="Q3", options=["a", "b", "c"], correct_index=2, marks=2),
        ]
    elif skill == "writing":
        test_set.questions = [
            TestQuestion(position=0, question_type="writing", prompt="Describe the chart", writing_type="task1", marks=4),
            TestQuestion(position=1, question_type="writing", prompt="Discuss both views", writing_type="task2", marks=5),
        ]
    else:
        test_set.questions = [
            TestQuestion(position=0, question_type="speaking", prompt="Describe your hometown", record_limit_seconds=120),
        ]
    db.add(test_set)
    db.commit()
    db.refresh(test_set)
    return test_set


@pytest.fixture
def reading_test(db, faculty):
    return make_test_set(db, faculty, "reading")


@pytest.fixture
def writing_test(db, faculty):
    return make_test_set(db, faculty, "writing")


@pytest.fixture
def speaking_test(db, faculty):
    return make_test_set(db, faculty, "speaking")


def start_exam(client, headers, test_id, sections=None):
    """Opens a device session and starts a proctored exam; returns (session_token, attempt_id)."""
    session = client.post("/api/v1/security/session/start", json={"testId": test_id}, headers=headers)
    assert session.status_code == 200, session.text
    token = session.json()["sessionToken"]

    body = {"testId": test_id, "sessionToken": token}
    if sections is not None:
        body["sections"] = sections
    exam = client.post("/api/v1/security/exam/start", json=body, headers=headers)
    assert exam.status_code == 200, exam.text
    return token, exam.json()["attemptId"]
