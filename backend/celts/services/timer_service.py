import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import SessionLocal
from ..models.device_session import DeviceSession, SessionStatus
from ..models.exam_security import ExamSecurity, SecurityStatus
from ..models.test_attempt import TestAttempt, AttemptStatus
from ..models.test_set import TestSet
from ..utils.timezone import utcnow, to_iso

logger = logging.getLogger(__name__)


def effective_time_limit_minutes(test_set: Optional[TestSet]) -> int:
    if test_set is None or not test_set.time_limit_minutes:
        return settings.default_exam_time_limit_minutes
    return test_set.time_limit_minutes


def attempt_deadline(attempt: TestAttempt) -> datetime:
    """Persisted deadline, or start time plus the test's limit for attempts started without a timer."""
    if attempt.deadline_at is not None:
        return attempt.deadline_at
    return (attempt.started_at or utcnow()) + timedelta(
        minutes=effective_time_limit_minutes(attempt.test_set)
    )


def apply_lockdown(security: ExamSecurity, when: datetime, lock_submissions: bool = True):
    security.reattempt_blocked = True
    if lock_submissions:
        security.submission_locked = True
    security.lock_timestamp = security.lock_timestamp or when


def terminate_test_sessions(db: Session, user_id: int, test_set_id: int, reason: str, when: datetime) -> int:
    """Ends every active device session the user holds for a test."""
    return (
        db.query(DeviceSession)
        .filter(
            DeviceSession.user_id == user_id,
            DeviceSession.test_set_id == test_set_id,
            DeviceSession.status == SessionStatus.ACTIVE,
        )
        .update(
            {
                DeviceSession.status: SessionStatus.TERMINATED,
                DeviceSession.termination_reason: reason,
                DeviceSession.terminated_at: when,
                DeviceSession.exam_end_time: when,
            },
            synchronize_session=False,
        )
    )


class ExamTimerService:
    """
    Server-side exam countdowns keyed by attempt id.

    Each exam deadline is persisted on ``TestAttempt.deadline_at`` and armed as
    a daemon ``threading.Timer`` that auto-submits the attempt on expiry.
    In-memory timers are lost on restart; ``recover_timers`` re-arms them from
    the persisted deadlines and ``expire_overdue_attempts`` finalizes anything
    that expired while no timer was running.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory
        self._lock = threading.RLock()
        self.active_timers: Dict[int, Dict[str, Any]] = {}
        self.section_timers: Dict[int, List[Dict[str, Any]]] = {}
        self._cleanup_timer: Optional[threading.Timer] = None

    def start_exam_timer(
        self,
        db: Session,
        attempt: TestAttempt,
        sections: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        if attempt.status != AttemptStatus.STARTED:
            return {"success": False, "message": "Invalid test attempt"}

        limit_minutes = effective_time_limit_minutes(attempt.test_set)
        start_time = attempt.started_at or utcnow()
        end_time = start_time + timedelta(minutes=limit_minutes)

        attempt.deadline_at = end_time
        section_deadlines = self._build_section_deadlines(start_time, end_time, sections or [])
        if attempt.security is not None and section_deadlines:
            attempt.security.section_timings = [
                {**s, "endTime": to_iso(s["endTime"])} for s in section_deadlines
            ]
        db.commit()

        self._arm(attempt.id, attempt.test_set_id, attempt.student_id, end_time)
        if section_deadlines:
            with self._lock:
                self.section_timers[attempt.id] = section_deadlines

        return {
            "success": True,
            "startTime": to_iso(start_time),
            "endTime": to_iso(end_time),
            "totalTimeLimit": limit_minutes * 60,
            "message": "Exam timer started",
        }

    def _build_section_deadlines(
        self, start_time: datetime, end_time: datetime, sections: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        deadlines = []
        cursor = start_time
        for section in sections:
            minutes = section.get("timeLimit") or 0
            if not minutes:
                continue
            cursor = min(cursor + timedelta(minutes=minutes), end_time)
            deadlines.append(
                {
                    "sectionId": str(section.get("sectionId") or section.get("id") or len(deadlines)),
                    "sectionName": section.get("sectionName"),
                    "timeLimit": minutes,
                    "endTime": cursor,
                }
            )
        return deadlines

    def _arm(self, attempt_id: int, test_set_id: int, student_id: int, end_time: datetime):
        delay = max(0.0, (end_time - utcnow()).total_seconds())
        timer = threading.Timer(delay, self._on_expiry, args=(attempt_id,))
        timer.daemon = True

        with self._lock:
            existing = self.active_timers.get(attempt_id)
            if existing:
                existing["timer"].cancel()
            self.active_timers[attempt_id] = {
                "timer": timer,
                "endTime": end_time,
                "testId": test_set_id,
                "studentId": student_id,
            }
        timer.start()

    def _on_expiry(self, attempt_id: int):
        try:
            self.auto_submit_exam(attempt_id, "time_expired")
        except Exception as e:
            logger.error(f"Timed auto-submit failed for attempt {attempt_id}: {e}", exc_info=True)

    def auto_submit_exam(
        self, attempt_id: int, reason: str = "time_expired", db: Optional[Session] = None
    ) -> Dict[str, Any]:
        """
        Finalizes an attempt. A started attempt becomes completed; an attempt
        already terminated by the violation rule keeps its status and only
        gets its completion data, auto-submission record and lockdown.
        """
        own_session = db is None
        db = db or self.session_factory()
        try:
            self.clear_timers(attempt_id)

            attempt = db.get(TestAttempt, attempt_id)
            if attempt is None or attempt.status not in (AttemptStatus.STARTED, AttemptStatus.TERMINATED):
                return {"success": False, "message": "Invalid test attempt"}

            security = attempt.security
            if attempt.status == AttemptStatus.TERMINATED and security is not None and security.submission_locked:
                return {"success": False, "message": "Attempt already finalized"}

            now = utcnow()
            if attempt.status == AttemptStatus.STARTED:
                attempt.status = AttemptStatus.COMPLETED
                attempt.exit_reason = reason
            else:
                attempt.exit_reason = attempt.exit_reason or "violation"
            attempt.completed_at = attempt.completed_at or now

            if security is not None:
                security.auto_submissions = list(security.auto_submissions or []) + [
                    {"reason": reason, "timestamp": to_iso(now), "questionId": None, "sectionId": None}
                ]
                # a student racing the clock may still be uploading answers
                apply_lockdown(security, now, lock_submissions=reason != "time_expired")
                if security.security_status != SecurityStatus.TERMINATED:
                    security.security_status = SecurityStatus.COMPLETED

            terminate_test_sessions(db, attempt.student_id, attempt.test_set_id, "exam_completed", now)
            db.commit()

            logger.info(f"Exam auto-submitted for attempt {attempt_id}, reason: {reason}")
            return {"success": True, "message": "Exam auto-submitted successfully"}
        except Exception:
            db.rollback()
            raise
        finally:
            if own_session:
                db.close()

    def clear_timers(self, attempt_id: int):
        with self._lock:
            entry = self.active_timers.pop(attempt_id, None)
            self.section_timers.pop(attempt_id, None)
        if entry:
            entry["timer"].cancel()

    def get_remaining_time(
        self,
        attempt_id: int,
        timer_type: str = "exam",
        section_id: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> Dict[str, Any]:
        end_time = self._lookup_end_time(attempt_id, timer_type, section_id, db)
        if end_time is None:
            return {"remaining": 0, "endTime": None}
        remaining = max(0, int((end_time - utcnow()).total_seconds()))
        return {"remaining": remaining, "endTime": to_iso(end_time)}

    def _lookup_end_time(
        self, attempt_id: int, timer_type: str, section_id: Optional[str], db: Optional[Session]
    ) -> Optional[datetime]:
        with self._lock:
            if timer_type == "exam" and attempt_id in self.active_timers:
                return self.active_timers[attempt_id]["endTime"]
            if timer_type == "section":
                for section in self.section_timers.get(attempt_id, []):
                    if section["sectionId"] == str(section_id):
                        return section["endTime"]

        if db is None:
            return None

        # fall back to what was persisted when the timer was started
        attempt = db.get(TestAttempt, attempt_id)
        if attempt is None or attempt.status != AttemptStatus.STARTED:
            return None
        if timer_type == "exam":
            return attempt.deadline_at
        if timer_type == "section" and attempt.security is not None:
            for section in attempt.security.section_timings or []:
                if section.get("sectionId") == str(section_id) and section.get("endTime"):
                    return datetime.fromisoformat(section["endTime"].rstrip("Z"))
        return None

    def active_count(self) -> int:
        with self._lock:
            return len(self.active_timers)

    def time_remaining_seconds(self, attempt: TestAttempt) -> int:
        """Seconds left on an attempt from its persisted deadline or start time."""
        return max(0, int((attempt_deadline(attempt) - utcnow()).total_seconds()))

    def expire_overdue_attempts(self, db: Session) -> int:
        now = utcnow()
        overdue = (
            db.query(TestAttempt.id)
            .filter(
                TestAttempt.status == AttemptStatus.STARTED,
                TestAttempt.deadline_at.isnot(None),
                TestAttempt.deadline_at <= now,
            )
            .all()
        )
        expired = 0
        for (attempt_id,) in overdue:
            result = self.auto_submit_exam(attempt_id, "time_expired", db=db)
            if result["success"]:
                expired += 1
        return expired

    def recover_timers(self, db: Session) -> Dict[str, int]:
        """Re-arms timers for in-flight attempts after a restart."""
        expired = self.expire_overdue_attempts(db)
        in_flight = (
            db.query(TestAttempt)
            .filter(
                TestAttempt.status == AttemptStatus.STARTED,
                TestAttempt.deadline_at.isnot(None),
            )
            .all()
        )
        for attempt in in_flight:
            self._arm(attempt.id, attempt.test_set_id, attempt.student_id, attempt.deadline_at)
        logger.info(f"Timer recovery: {len(in_flight)} re-armed, {expired} expired")
        return {"rearmed": len(in_flight), "expired": expired}

    def cleanup_expired_timers(self) -> int:
        now = utcnow()
        removed = 0
        with self._lock:
            for attempt_id in list(self.active_timers.keys()):
                if self.active_timers[attempt_id]["endTime"] < now:
                    self.active_timers.pop(attempt_id)["timer"].cancel()
                    removed += 1
            for attempt_id in list(self.section_timers.keys()):
                if attempt_id not in self.active_timers:
                    self.section_timers.pop(attempt_id)
        if removed:
            logger.info(f"Cleaned up {removed} expired exam timers")
        return removed

    def start_cleanup_loop(self, interval: Optional[float] = None):
        interval = interval or settings.timer_cleanup_interval_seconds

        def _run():
            self.cleanup_expired_timers()
            self.start_cleanup_loop(interval)

        with self._lock:
            self._cleanup_timer = threading.Timer(interval, _run)
            self._cleanup_timer.daemon = True
            self._cleanup_timer.start()

    def shutdown(self):
        with self._lock:
            if self._cleanup_timer is not None:
                self._cleanup_timer.cancel()
                self._cleanup_timer = None
            attempt_ids = list(self.active_timers.keys())
        for attempt_id in attempt_ids:
            self.clear_timers(attempt_id)
        logger.info("Exam timer service shut down")


exam_timer_service = ExamTimerService()
