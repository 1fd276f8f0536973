"""
Tests for the Celery maintenance and grading tasks, run in-process
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from celts.core.config import settings
from celts.core.exceptions import NotFoundError
from celts.models.device_session import DeviceSession, SessionStatus
from celts.models.exam_security import ExamSecurity
from celts.models.student_stats import StudentStats
from celts.models.submission import Submission, SubmissionStatus
from celts.models.test_attempt import AttemptStatus, TestAttempt
from celts.tasks.grading import grade_submission
from celts.tasks.maintenance import cleanup_stale_attempts, expire_idle_sessions, expire_overdue_attempts
from celts.utils.openai_service import EvaluationError, openai_service
from celts.utils.timezone import utcnow


def writing_response(test_set):
    questions = sorted(test_set.questions, key=lambda q: q.position)
    return {str(questions[0].id): {"text": "First essay"}, str(questions[1].id): {"text": "Second essay"}}


def make_attempt(db, student, test_set, started_minutes_ago=0, deadline_in_minutes=None):
    attempt = TestAttempt(
        student_id=student.id,
        test_set_id=test_set.id,
        attempt_number=1,
        status=AttemptStatus.STARTED,
        started_at=utcnow() - timedelta(minutes=started_minutes_ago),
        violations=[],
        deadline_at=utcnow() + timedelta(minutes=deadline_in_minutes) if deadline_in_minutes is not None else None,
    )
    db.add(attempt)
    db.flush()
    db.add(ExamSecurity(attempt_id=attempt.id, student_id=student.id, test_set_id=test_set.id))
    db.commit()
    return attempt


def make_session(db, user, token, last_activity_minutes_ago=0, exam_started_hours_ago=None):
    session = DeviceSession(
        user_id=user.id,
        session_token=token,
        last_activity=utcnow() - timedelta(minutes=last_activity_minutes_ago),
        is_exam_session=exam_started_hours_ago is not None,
        exam_start_time=(
            utcnow() - timedelta(hours=exam_started_hours_ago) if exam_started_hours_ago is not None else None
        ),
    )
    db.add(session)
    db.commit()
    return session


class TestExpireOverdueAttempts:

    def test_overdue_attempt_is_auto_submitted(self, db, student, other_student, reading_test):
        overdue = make_attempt(db, student, reading_test, started_minutes_ago=90, deadline_in_minutes=-30)
        running = make_attempt(db, other_student, reading_test, deadline_in_minutes=30)

        assert expire_overdue_attempts() == {"expired": 1}

        db.expire_all()
        assert db.get(TestAttempt, overdue.id).status == AttemptStatus.COMPLETED
        assert db.get(TestAttempt, overdue.id).exit_reason == "time_expired"
        assert db.get(TestAttempt, running.id).status == AttemptStatus.STARTED

    def test_nothing_to_expire(self, db, student, reading_test):
        make_attempt(db, student, reading_test, deadline_in_minutes=30)

        assert expire_overdue_attempts() == {"expired": 0}


class TestCleanupStaleAttempts:

    def test_stale_attempts_are_abandoned(self, db, student, other_student, reading_test):
        stale_minutes = (settings.stale_attempt_hours + 1) * 60
        stale = make_attempt(db, student, reading_test, started_minutes_ago=stale_minutes)
        fresh = make_attempt(db, other_student, reading_test, started_minutes_ago=10)

        assert cleanup_stale_attempts() == {"cleanedAttempts": 1, "students": 1}

        db.expire_all()
        abandoned = db.get(TestAttempt, stale.id)
        assert abandoned.status == AttemptStatus.ABANDONED
        assert abandoned.exit_reason == "stale"
        assert abandoned.completed_at is not None
        assert db.get(TestAttempt, fresh.id).status == AttemptStatus.STARTED

    def test_no_stale_attempts(self, db, student, reading_test):
        make_attempt(db, student, reading_test, started_minutes_ago=10)

        assert cleanup_stale_attempts() == {"cleanedAttempts": 0, "students": 0}


class TestExpireIdleSessions:

    def test_idle_and_overlong_sessions_expire(self, db, student, other_student):
        idle = make_session(db, student, "idle-token", last_activity_minutes_ago=settings.session_inactivity_minutes + 5)
        overlong = make_session(
            db, other_student, "exam-token", exam_started_hours_ago=settings.exam_session_max_hours + 1
        )
        active = make_session(db, other_student, "active-token")

        assert expire_idle_sessions() == {"expired": 2}

        db.expire_all()
        for session_id in (idle.id, overlong.id):
            session = db.get(DeviceSession, session_id)
            assert session.status == SessionStatus.EXPIRED
            assert session.termination_reason == "expired"
            assert session.terminated_at is not None
        assert db.get(DeviceSession, overlong.id).exam_end_time is not None
        assert db.get(DeviceSession, active.id).status == SessionStatus.ACTIVE

    def test_exam_sessions_use_longer_inactivity_window(self, db, student):
        session = make_session(
            db,
            student,
            "exam-token",
            last_activity_minutes_ago=settings.session_inactivity_minutes + 5,
            exam_started_hours_ago=1,
        )

        assert expire_idle_sessions() == {"expired": 0}

        db.expire_all()
        assert db.get(DeviceSession, session.id).status == SessionStatus.ACTIVE


class TestGradeSubmissionTask:

    @pytest.fixture
    def task_state(self):
        with patch("celts.tasks.grading.current_task") as task:
            yield task

    def make_submission(self, db, student, writing_test):
        submission = Submission(
            student_id=student.id,
            test_set_id=writing_test.id,
            skill="writing",
            response=writing_response(writing_test),
            status=SubmissionStatus.PENDING,
        )
        db.add(submission)
        db.commit()
        return submission

    def test_grades_and_reports_progress(self, db, student, writing_test, task_state):
        submission = self.make_submission(db, student, writing_test)
        evaluation = {"band_score": 7, "examiner_summary": "Well organised."}

        with patch.object(openai_service, "grade_writing", AsyncMock(return_value=evaluation)):
            result = grade_submission(submission.id)

        assert result == {"submissionId": submission.id, "status": SubmissionStatus.GRADED, "bandScore": 7.0}
        task_state.update_state.assert_called_once_with(
            state="PROGRESS",
            meta={"submission_id": submission.id, "status": "Grading submission..."},
        )

        db.expire_all()
        assert db.get(Submission, submission.id).status == SubmissionStatus.GRADED
        assert db.query(StudentStats).filter(StudentStats.student_id == student.id).one().writing_band == 7.0

    def test_failure_is_reraised(self, db, student, writing_test, task_state):
        submission = self.make_submission(db, student, writing_test)

        failing = AsyncMock(side_effect=EvaluationError("model unavailable"))
        with patch.object(openai_service, "grade_writing", failing):
            with pytest.raises(EvaluationError):
                grade_submission(submission.id)

        db.expire_all()
        failed = db.get(Submission, submission.id)
        assert failed.status == SubmissionStatus.FAILED
        assert failed.grading_error == "model unavailable"

    def test_unknown_submission_is_reraised(self, task_state):
        with pytest.raises(NotFoundError):
            grade_submission(999)
