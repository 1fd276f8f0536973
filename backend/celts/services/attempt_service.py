import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import AuthorizationError, BadRequestError, NotFoundError
from ..models.device_session import DeviceSession, SessionStatus
from ..models.submission import Submission, SubmissionStatus
from ..models.test_attempt import TestAttempt, AttemptStatus
from ..models.test_set import TestSet, test_set_students
from ..models.user import User
from ..utils.timezone import utcnow, to_iso
from .timer_service import ExamTimerService, exam_timer_service

logger = logging.getLogger(__name__)

EXIT_STATUS_MAP = {
    "completed": AttemptStatus.COMPLETED,
    "fullscreen_exit": AttemptStatus.VIOLATION_EXIT,
    "tab_switch": AttemptStatus.VIOLATION_EXIT,
    "time_expired": AttemptStatus.COMPLETED,
    "violation": AttemptStatus.VIOLATION_EXIT,
    "manual_exit": AttemptStatus.ABANDONED,
}


def serialize_attempt(attempt: TestAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id,
        "attemptNumber": attempt.attempt_number,
        "status": attempt.status,
        "startedAt": to_iso(attempt.started_at),
        "completedAt": to_iso(attempt.completed_at),
        "exitReason": attempt.exit_reason,
        "isRetryAllowed": bool(attempt.is_retry_allowed),
    }


class AttemptService:
    def __init__(self, db: Session, timer: Optional[ExamTimerService] = None):
        self.db = db
        self.timer = timer or exam_timer_service

    def _attempts_query(self, student_id: int, test_id: int):
        return self.db.query(TestAttempt).filter(
            TestAttempt.student_id == student_id, TestAttempt.test_set_id == test_id
        )

    def get_started_attempt(self, student_id: int, test_id: Optional[int]) -> Optional[TestAttempt]:
        if test_id is None:
            return None
        return (
            self._attempts_query(student_id, test_id)
            .filter(TestAttempt.status == AttemptStatus.STARTED)
            .order_by(TestAttempt.attempt_number.desc())
            .first()
        )

    def latest_finished_attempt(self, student_id: int, test_id: int) -> Optional[TestAttempt]:
        return (
            self._attempts_query(student_id, test_id)
            .filter(TestAttempt.status.in_(AttemptStatus.FINISHED))
            .order_by(TestAttempt.attempt_number.desc())
            .first()
        )

    def next_attempt_number(self, student_id: int, test_id: int) -> int:
        last = self._attempts_query(student_id, test_id).order_by(TestAttempt.attempt_number.desc()).first()
        return (last.attempt_number or 0) + 1 if last else 1

    def ensure_can_reattempt(self, student_id: int, test_id: int):
        """A finished attempt blocks a new one unless an admin allowed a retry."""
        finished = self.latest_finished_attempt(student_id, test_id)
        if finished is None or finished.is_retry_allowed:
            return

        security = finished.security
        if security is not None and security.reattempt_blocked:
            raise AuthorizationError(
                "This exam has been secured and locked. No further attempts are allowed.",
                code="EXAM_LOCKED",
                lockTimestamp=to_iso(security.lock_timestamp),
            )
        raise BadRequestError(
            "You have already attempted this test. Contact admin for retry permission.",
            code="RETRY_NOT_ALLOWED",
        )

    def _get_test_set(self, test_id: int) -> TestSet:
        test_set = self.db.get(TestSet, test_id)
        if test_set is None:
            raise NotFoundError("Test not found")
        return test_set

    def _ensure_schedule_open(self, test_set: TestSet):
        now = utcnow()
        if test_set.start_time and now < test_set.start_time - timedelta(minutes=10):
            raise AuthorizationError("Not allowed to start/submit this test now (timing rules)")
        if test_set.end_time and now > test_set.end_time:
            raise AuthorizationError("Not allowed to start/submit this test now (timing rules)")

    # ------------------------------------------------------------------
    # student views

    def list_tests_for_student(self, student: User) -> List[Dict[str, Any]]:
        assigned_ids = select(test_set_students.c.test_set_id).where(
            test_set_students.c.student_id == student.id
        )
        tests = (
            self.db.query(TestSet)
            .filter(or_(TestSet.id.in_(assigned_ids), TestSet.published.is_(True)))
            .order_by(TestSet.created_at.desc())
            .all()
        )
        if not tests:
            return []

        test_ids = [t.id for t in tests]
        attempts = (
            self.db.query(TestAttempt)
            .filter(TestAttempt.student_id == student.id, TestAttempt.test_set_id.in_(test_ids))
            .order_by(TestAttempt.attempt_number)
            .all()
        )
        latest_attempt: Dict[int, TestAttempt] = {}
        for attempt in attempts:
            latest_attempt[attempt.test_set_id] = attempt

        submissions = (
            self.db.query(Submission)
            .filter(Submission.student_id == student.id, Submission.test_set_id.in_(test_ids))
            .all()
        )
        submission_statuses: Dict[int, List[str]] = {}
        for submission in submissions:
            submission_statuses.setdefault(submission.test_set_id, []).append(submission.status)

        result = []
        for test_set in tests:
            attempt = latest_attempt.get(test_set.id)
            attempt_status = None
            evaluation_status = None
            if attempt is not None:
                if attempt.status == AttemptStatus.STARTED:
                    attempt_status = "in-progress"
                else:
                    attempt_status = "attempted"
                    statuses = submission_statuses.get(test_set.id, [])
                    if SubmissionStatus.PENDING in statuses:
                        evaluation_status = "under_evaluation"
                    elif statuses and all(s == SubmissionStatus.GRADED for s in statuses):
                        evaluation_status = "evaluated"
                    elif SubmissionStatus.FAILED in statuses:
                        evaluation_status = "evaluation_failed"

            result.append(
                {
                    "id": test_set.id,
                    "title": test_set.title,
                    "type": test_set.type,
                    "timeLimitMinutes": test_set.time_limit_minutes or 0,
                    "scheduledDate": to_iso(test_set.start_time or test_set.created_at),
                    "attemptStatus": attempt_status,
                    "attemptInfo": serialize_attempt(attempt) if attempt else None,
                    "evaluationStatus": evaluation_status,
                }
            )
        return result

    def get_attempt_eligibility(self, student: User, test_id: int) -> Dict[str, Any]:
        finished = self.latest_finished_attempt(student.id, test_id)
        if finished is not None and not finished.is_retry_allowed:
            return {
                "canAttempt": False,
                "attemptInfo": {
                    "hasAttempted": True,
                    "lastAttemptStatus": finished.status,
                    "lastAttemptDate": to_iso(finished.completed_at or finished.created_at),
                    "exitReason": finished.exit_reason,
                    "canRetry": False,
                    "message": "You have already attempted this test. Contact admin if you need to retake it.",
                },
            }

        if finished is None:
            submitted = (
                self.db.query(Submission)
                .filter(
                    Submission.student_id == student.id,
                    Submission.test_set_id == test_id,
                    Submission.status.in_([SubmissionStatus.GRADED, SubmissionStatus.PENDING]),
                )
                .first()
            )
            if submitted is not None:
                return {
                    "canAttempt": False,
                    "attemptInfo": {
                        "hasAttempted": True,
                        "lastAttemptStatus": "completed",
                        "lastAttemptDate": to_iso(submitted.created_at),
                        "canRetry": False,
                        "submissionId": submitted.id,
                        "message": "You have already completed this test.",
                    },
                }
        return {"canAttempt": True, "attemptInfo": None}

    # ------------------------------------------------------------------
    # attempt lifecycle

    def start_attempt(self, student: User, test_id: int) -> Dict[str, Any]:
        test_set = self._get_test_set(test_id)
        self._ensure_schedule_open(test_set)

        ongoing = self.get_started_attempt(student.id, test_id)
        if ongoing is not None:
            remaining = self.timer.time_remaining_seconds(ongoing)
            if remaining > 0:
                elapsed = int((utcnow() - ongoing.started_at).total_seconds())
                return {
                    "message": "Test attempt resumed",
                    "resumed": True,
                    "attemptId": ongoing.id,
                    "attemptNumber": ongoing.attempt_number,
                    "startedAt": to_iso(ongoing.started_at),
                    "timeElapsed": elapsed,
                    "timeRemaining": remaining,
                }
            self.timer.auto_submit_exam(ongoing.id, "time_expired", db=self.db)
            logger.info(f"Auto-submitted expired attempt {ongoing.id}")

        self.ensure_can_reattempt(student.id, test_id)

        attempt = TestAttempt(
            student_id=student.id,
            test_set_id=test_id,
            attempt_number=self.next_attempt_number(student.id, test_id),
            status=AttemptStatus.STARTED,
            started_at=utcnow(),
            violations=[],
        )
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)

        return {
            "message": "Test attempt started",
            "resumed": False,
            "attemptId": attempt.id,
            "attemptNumber": attempt.attempt_number,
            "startedAt": to_iso(attempt.started_at),
        }

    def get_attempt_history(self, student: User, test_id: int) -> Dict[str, Any]:
        attempts = (
            self._attempts_query(student.id, test_id)
            .order_by(TestAttempt.attempt_number.desc())
            .all()
        )
        if not attempts:
            return {
                "hasAttempts": False,
                "hasCompletedAttempt": False,
                "reattemptBlocked": False,
                "lockTimestamp": None,
                "attempts": [],
            }

        finished = next((a for a in attempts if a.is_finished), None)
        reattempt_blocked = False
        lock_timestamp = None
        if finished is not None and finished.security is not None and finished.security.reattempt_blocked:
            reattempt_blocked = True
            lock_timestamp = to_iso(finished.security.lock_timestamp)

        return {
            "hasAttempts": True,
            "hasCompletedAttempt": finished is not None,
            "reattemptBlocked": reattempt_blocked,
            "lockTimestamp": lock_timestamp,
            "completedAt": to_iso(finished.completed_at) if finished else None,
            "attempts": [serialize_attempt(a) for a in attempts],
        }

    def end_attempt(
        self,
        student: User,
        test_id: int,
        reason: Optional[str],
        submission_id: Optional[int] = None,
        violations: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        attempt = self.get_started_attempt(student.id, test_id)
        if attempt is None:
            raise NotFoundError("No active test attempt found")

        if reason and reason not in EXIT_STATUS_MAP:
            raise BadRequestError("Invalid exit reason")

        attempt.status = EXIT_STATUS_MAP.get(reason, AttemptStatus.ABANDONED)
        attempt.exit_reason = reason
        attempt.completed_at = utcnow()

        if violations:
            reported = [
                {
                    "type": v.get("type"),
                    "timestamp": v.get("timestamp") or to_iso(utcnow()),
                    "details": v.get("details") or "",
                }
                for v in violations
                if isinstance(v, dict)
            ]
            attempt.violations = list(attempt.violations or []) + reported

        if submission_id is not None:
            attempt.submission_id = submission_id

        self.db.commit()
        self.timer.clear_timers(attempt.id)

        return {"message": "Test attempt ended", "status": attempt.status, "reason": attempt.exit_reason}

    def log_attempt_violation(self, student: User, test_id: int, violation_type: Optional[str], details: Any) -> Dict[str, Any]:
        """Lightweight log on the attempt only; no scoring."""
        attempt = self.get_started_attempt(student.id, test_id)
        if attempt is not None:
            attempt.violations = list(attempt.violations or []) + [
                {"type": violation_type, "details": details, "timestamp": to_iso(utcnow())}
            ]
            self.db.commit()
        return {"message": "Violation logged"}

    def cleanup_stale_attempts(self, student_id: int, test_id: Optional[int] = None) -> Dict[str, Any]:
        cutoff = utcnow() - timedelta(hours=settings.stale_attempt_hours)
        query = self.db.query(TestAttempt).filter(
            TestAttempt.student_id == student_id,
            TestAttempt.status == AttemptStatus.STARTED,
            TestAttempt.started_at < cutoff,
        )
        if test_id is not None:
            query = query.filter(TestAttempt.test_set_id == test_id)
        stale = query.all()

        if not stale:
            return {"success": True, "message": "No stale attempts found", "cleanedAttempts": 0}

        now = utcnow()
        for attempt in stale:
            attempt.status = AttemptStatus.ABANDONED
            attempt.completed_at = now
            attempt.exit_reason = attempt.exit_reason or "stale"
            self.timer.clear_timers(attempt.id)

        session_filter = [
            DeviceSession.user_id == student_id,
            DeviceSession.status == SessionStatus.ACTIVE,
        ]
        if test_id is not None:
            session_filter.append(DeviceSession.test_set_id == test_id)
        self.db.query(DeviceSession).filter(*session_filter).update(
            {
                DeviceSession.status: SessionStatus.TERMINATED,
                DeviceSession.termination_reason: "cleanup",
                DeviceSession.terminated_at: now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        return {
            "success": True,
            "message": f"Cleaned up {len(stale)} stale attempt(s)",
            "cleanedAttempts": len(stale),
        }

    # ------------------------------------------------------------------
    # admin

    def list_attempts(
        self,
        student_id: Optional[int] = None,
        test_id: Optional[int] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 200))
        query = self.db.query(TestAttempt)
        if student_id is not None:
            query = query.filter(TestAttempt.student_id == student_id)
        if test_id is not None:
            query = query.filter(TestAttempt.test_set_id == test_id)
        if status:
            query = query.filter(TestAttempt.status == status)

        total = query.count()
        attempts = (
            query.order_by(TestAttempt.created_at.desc(), TestAttempt.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        items = []
        for attempt in attempts:
            item = serialize_attempt(attempt)
            item.update(
                {
                    "student": {
                        "id": attempt.student.id,
                        "name": attempt.student.full_name,
                        "email": attempt.student.email,
                        "systemId": attempt.student.system_id,
                    },
                    "test": {"id": attempt.test_set.id, "title": attempt.test_set.title, "type": attempt.test_set.type},
                    "retryAllowedBy": attempt.retry_allowed_by,
                    "retryReason": attempt.retry_reason,
                    "violations": attempt.violations or [],
                }
            )
            items.append(item)

        return {
            "attempts": items,
            "pagination": {"current": page, "total": -(-total // limit), "count": total},
        }

    def _latest_attempt(self, student_id: int, test_id: int) -> Optional[TestAttempt]:
        return self._attempts_query(student_id, test_id).order_by(TestAttempt.attempt_number.desc()).first()

    def allow_retry(self, admin: User, student_id: int, test_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        attempt = self._latest_attempt(student_id, test_id)
        if attempt is None:
            raise NotFoundError("No test attempt found")
        if attempt.status == AttemptStatus.STARTED:
            raise BadRequestError("Test is currently in progress")

        attempt.is_retry_allowed = True
        attempt.retry_allowed_by = admin.id
        attempt.retry_allowed_at = utcnow()
        attempt.retry_reason = reason or "Admin override"
        self.db.commit()

        logger.info(f"Retry allowed for student {student_id} on test {test_id} by admin {admin.id}")
        return {
            "message": "Retry permission granted",
            "attempt": {
                "id": attempt.id,
                "studentId": attempt.student_id,
                "testId": attempt.test_set_id,
                "attemptNumber": attempt.attempt_number,
                "isRetryAllowed": True,
                "retryReason": attempt.retry_reason,
            },
        }

    def revoke_retry(self, student_id: int, test_id: int) -> Dict[str, Any]:
        attempt = (
            self._attempts_query(student_id, test_id)
            .filter(TestAttempt.is_retry_allowed.is_(True))
            .order_by(TestAttempt.attempt_number.desc())
            .first()
        )
        if attempt is None:
            raise NotFoundError("No retry permission found")

        attempt.is_retry_allowed = False
        attempt.retry_allowed_by = None
        attempt.retry_allowed_at = None
        attempt.retry_reason = None
        self.db.commit()
        return {"message": "Retry permission revoked"}
