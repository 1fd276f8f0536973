"""
Tests for the server-side exam timer service
"""
from datetime import timedelta

import pytest

from celts.core.database import SessionLocal
from celts.models.device_session import DeviceSession, SessionStatus
from celts.models.exam_security import ExamSecurity, SecurityStatus
from celts.models.test_attempt import AttemptStatus, TestAttempt
from celts.services.timer_service import ExamTimerService, effective_time_limit_minutes
from celts.utils.timezone import utcnow

from conftest import make_test_set


@pytest.fixture
def timer():
    service = ExamTimerService(session_factory=SessionLocal)
    yield service
    service.shutdown()


def make_attempt(db, student, test_set, started_minutes_ago=0, deadline_in_minutes=None, with_security=True):
    started_at = utcnow() - timedelta(minutes=started_minutes_ago)
    attempt = TestAttempt(
        student_id=student.id,
        test_set_id=test_set.id,
        attempt_number=1,
        status=AttemptStatus.STARTED,
        started_at=started_at,
        violations=[],
        deadline_at=utcnow() + timedelta(minutes=deadline_in_minutes) if deadline_in_minutes is not None else None,
    )
    db.add(attempt)
    db.flush()
    if with_security:
        db.add(ExamSecurity(attempt_id=attempt.id, student_id=student.id, test_set_id=test_set.id))
    db.add(DeviceSession(
        user_id=student.id,
        test_set_id=test_set.id,
        session_token=f"token-{attempt.id}",
        is_exam_session=True,
        exam_start_time=started_at,
    ))
    db.commit()
    db.refresh(attempt)
    return attempt


class TestTimeLimit:

    def test_explicit_limit(self, db, faculty):
        test_set = make_test_set(db, faculty, time_limit_minutes=45)
        assert effective_time_limit_minutes(test_set) == 45

    def test_default_limit(self, db, faculty):
        test_set = make_test_set(db, faculty, time_limit_minutes=0)
        assert effective_time_limit_minutes(test_set) == 120
        assert effective_time_limit_minutes(None) == 120


class TestStartTimer:

    def test_start_persists_deadline(self, timer, db, student, reading_test):
        attempt = make_attempt(db, student, reading_test)

        result = timer.start_exam_timer(db, attempt)

        assert result["success"] is True
        assert result["totalTimeLimit"] == 60 * 60
        assert attempt.deadline_at == attempt.started_at + timedelta(minutes=60)
        assert attempt.id in timer.active_timers

    def test_sections_are_cumulative_and_capped(self, timer, db, student, faculty):
        test_set = make_test_set(db, faculty, time_limit_minutes=30)
        attempt = make_attempt(db, student, test_set)

        timer.start_exam_timer(db, attempt, [
            {"sectionId": "a", "timeLimit": 20},
            {"sectionId": "b", "timeLimit": 20},
            {"sectionId": "skipped", "timeLimit": 0},
        ])

        sections = timer.section_timers[attempt.id]
        assert [s["sectionId"] for s in sections] == ["a", "b"]
        assert sections[0]["endTime"] == attempt.started_at + timedelta(minutes=20)
        assert sections[1]["endTime"] == attempt.deadline_at
        assert attempt.security.section_timings[1]["endTime"].endswith("Z")

    def test_finished_attempt_rejected(self, timer, db, student, reading_test):
        attempt = make_attempt(db, student, reading_test)
        attempt.status = AttemptStatus.COMPLETED
        db.commit()

        assert timer.start_exam_timer(db, attempt)["success"] is False


class TestAutoSubmit:

    def test_time_expiry_completes_attempt(self, timer, db, student, reading_test):
        attempt = make_attempt(db, student, reading_test)
        timer.start_exam_timer(db, attempt)

        result = timer.auto_submit_exam(attempt.id, "time_expired")

        assert result["success"] is True
        db.expire_all()
        attempt = db.get(TestAttempt, attempt.id)
        assert attempt.status == AttemptStatus.COMPLETED
        assert attempt.exit_reason == "time_expired"
        security = attempt.security
        assert security.security_status == SecurityStatus.COMPLETED
        assert security.reattempt_blocked is True
        assert security.submission_locked is False
        assert security.auto_submissions[0]["reason"] == "time_expired"
        assert attempt.id not in timer.active_timers

        session = db.query(DeviceSession).filter(DeviceSession.session_token == f"token-{attempt.id}").one()
        assert session.status == SessionStatus.TERMINATED

    def test_violation_auto_submit_locks_submissions(self, timer, db, student, reading_test):
        attempt = make_attempt(db, student, reading_test)

        timer.auto_submit_exam(attempt.id, "security_violation", db=db)

        assert attempt.security.submission_locked is True

    def test_expiry_callback_fires(self, timer, db, student, reading_test):
        attempt = make_attempt(db, student, reading_test)

        timer._on_expiry(attempt.id)

        db.expire_all()
        assert db.get(TestAttempt, attempt.id).status == AttemptStatus.COMPLETED

    def test_finished_attempt_is_not_resubmitted(self, timer, db, student, reading_test):
        attempt = make_attempt(db, student, reading_test)
        attempt.status = AttemptStatus.ABANDONED
        db.commit()

        assert timer.auto_submit_exam(attempt.id, "time_expired")["success"] is False

    def test_unknown_attempt(self, timer):
        assert timer.auto_submit_exam(12345)["success"] is False


class TestRecovery:

    def test_expire_overdue_attempts(self, timer, db, student, other_student, reading_test):
        overdue = make_attempt(db, student, reading_test, started_minutes_ago=90, deadline_in_minutes=-30)
        running = make_attempt(db, other_student, reading_test, deadline_in_minutes=30)

        assert timer.expire_overdue_attempts(db) == 1

        assert overdue.status == AttemptStatus.COMPLETED
        assert running.status == AttemptStatus.STARTED

    def test_recover_timers(self, timer, db, student, other_student, reading_test):
        make_attempt(db, student, reading_test, started_minutes_ago=90, deadline_in_minutes=-30)
        running = make_attempt(db, other_student, reading_test, deadline_in_minutes=30)

        result = timer.recover_timers(db)

        assert result == {"rearmed": 1, "expired": 1}
        assert running.id in timer.active_timers
        remaining = timer.get_remaining_time(running.id)["remaining"]
        assert 1790 < remaining <= 1800

    def test_cleanup_expired_timers(self, timer):
        timer._arm(1, 1, 1, utcnow() + timedelta(minutes=5))
        timer.active_timers[1]["endTime"] = utcnow() - timedelta(seconds=1)
        timer.section_timers[1] = [{"sectionId": "a", "endTime": utcnow()}]

        assert timer.cleanup_expired_timers() == 1
        assert timer.active_count() == 0
        assert 1 not in timer.section_timers

    def test_remaining_without_timer(self, timer):
        assert timer.get_remaining_time(42) == {"remaining": 0, "endTime": None}
