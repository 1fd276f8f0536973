import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from ..models.device_session import DeviceSession, SessionStatus
from ..models.exam_security import ExamSecurity, ExamViolation, SecurityStatus
from ..models.test_attempt import TestAttempt, AttemptStatus
from ..models.test_set import TestSet
from ..models.user import User
from ..utils.timezone import utcnow, to_iso
from . import violations as rules
from .attempt_service import AttemptService
from .timer_service import ExamTimerService, apply_lockdown, exam_timer_service, terminate_test_sessions

logger = logging.getLogger(__name__)

# violation type -> ExamSecurity counter it bumps
SCREEN_COUNTERS = {
    "tab_switch": "tab_switches",
    "window_blur": "window_blurs",
    "fullscreen_exit": "fullscreen_exits",
    "network_disconnect": "network_disconnections",
}


def _parse_client_time(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class SecurityService:
    """Device sessions, exam start/submit and the violation ingester."""

    def __init__(self, db: Session, timer: Optional[ExamTimerService] = None):
        self.db = db
        self.timer = timer or exam_timer_service
        self.attempts = AttemptService(db, timer=self.timer)

    # ------------------------------------------------------------------
    # device sessions

    def is_session_valid(self, session: DeviceSession, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if session.status != SessionStatus.ACTIVE:
            return False

        timeout_minutes = (
            settings.exam_session_inactivity_minutes
            if session.is_exam_session
            else settings.session_inactivity_minutes
        )
        last_activity = session.last_activity or session.created_at or now
        if now - last_activity > timedelta(minutes=timeout_minutes):
            return False

        if session.is_exam_session and session.exam_start_time:
            if now - session.exam_start_time > timedelta(hours=settings.exam_session_max_hours):
                return False
        return True

    def terminate_session(self, session: DeviceSession, reason: str, status: str = SessionStatus.TERMINATED):
        now = utcnow()
        session.status = status
        session.termination_reason = reason
        session.terminated_at = now
        if session.is_exam_session and session.exam_end_time is None:
            session.exam_end_time = now

    def _terminate_user_sessions(self, user_id: int, reason: str) -> int:
        return (
            self.db.query(DeviceSession)
            .filter(DeviceSession.user_id == user_id, DeviceSession.status == SessionStatus.ACTIVE)
            .update(
                {
                    DeviceSession.status: SessionStatus.TERMINATED,
                    DeviceSession.termination_reason: reason,
                    DeviceSession.terminated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )

    def _get_active_session(self, user: User, session_token: str) -> Optional[DeviceSession]:
        return (
            self.db.query(DeviceSession)
            .filter(
                DeviceSession.session_token == session_token,
                DeviceSession.user_id == user.id,
                DeviceSession.status == SessionStatus.ACTIVE,
            )
            .first()
        )

    def start_session(
        self,
        user: User,
        fingerprint: str,
        browser_info: Dict[str, Any],
        network_info: Dict[str, Any],
        test_id: Optional[int] = None,
        client_info: Optional[Dict[str, Any]] = None,
        browser_features: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if test_id is not None and self.db.get(TestSet, test_id) is None:
            raise NotFoundError("Test not found")

        self._terminate_user_sessions(user.id, "new_session")

        client_info = client_info or {}
        now = utcnow()
        session = DeviceSession(
            user_id=user.id,
            test_set_id=test_id,
            session_token=secrets.token_hex(32),
            device_fingerprint=fingerprint,
            browser_info={
                "userAgent": browser_info.get("userAgent") or "Unknown",
                "platform": client_info.get("platform") or "Unknown",
                "language": client_info.get("language") or "en-US",
                "cookieEnabled": client_info.get("cookieEnabled", True),
                "screenResolution": client_info.get("screenResolution") or "Unknown",
                "timezone": client_info.get("timezone") or "UTC",
                "browserName": browser_info.get("browserName", "Unknown"),
                "browserVersion": browser_info.get("browserVersion", "Unknown"),
                "isSecureBrowser": browser_info.get("isSecureBrowser", False),
                "features": browser_features or {},
            },
            network_info=network_info,
            is_exam_session=test_id is not None,
            exam_start_time=now if test_id is not None else None,
            last_activity=now,
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)

        logger.info(f"Device session {session.id} started for user {user.id}")
        return {
            "success": True,
            "sessionToken": session.session_token,
            "deviceFingerprint": fingerprint,
            "securityChecks": {
                "isSecureBrowser": bool(browser_info.get("isSecureBrowser")),
                "isVPN": bool(network_info.get("isVPN")),
                "multipleSessionsDetected": False,
            },
            "message": "Device session started successfully",
        }

    def validate_session(
        self, user: User, session_token: Optional[str], exam_context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not session_token:
            raise BadRequestError("Session token is required", valid=False)

        session = self._get_active_session(user, session_token)
        if session is None:
            raise AuthenticationError(
                "Session not found or has expired",
                valid=False,
                details="Your exam session may have timed out. Please restart the exam.",
            )

        if not self.is_session_valid(session):
            window = "2 hours" if session.is_exam_session else "30 minutes"
            self.terminate_session(session, "expired", status=SessionStatus.EXPIRED)
            self.db.commit()
            raise AuthenticationError(
                "Session expired due to inactivity",
                valid=False,
                details=f"Sessions expire after {window} of inactivity. Please restart the exam.",
            )

        if session.is_exam_session and exam_context:
            self._check_exam_context(user, session, exam_context)

        session.last_activity = utcnow()
        self.db.commit()

        return {
            "valid": True,
            "session": {
                "id": session.id,
                "isExamSession": bool(session.is_exam_session),
                "testId": session.test_set_id,
                "lastActivity": to_iso(session.last_activity),
                "examStartTime": to_iso(session.exam_start_time),
                "securityStatus": "exam_active" if session.is_exam_session else "active",
            },
        }

    def _check_exam_context(self, user: User, session: DeviceSession, exam_context: Dict[str, Any]):
        context_test_id = exam_context.get("testId")
        if context_test_id is not None and session.test_set_id is not None:
            if str(context_test_id) != str(session.test_set_id):
                raise AuthorizationError("Exam context mismatch", valid=False)

        active_attempt = self.attempts.get_started_attempt(user.id, session.test_set_id)
        started = session.exam_start_time or session.created_at or utcnow()
        in_grace_period = (utcnow() - started).total_seconds() < settings.exam_context_grace_seconds

        if active_attempt is None:
            if not in_grace_period:
                raise NotFoundError("No active exam attempt found", valid=False)
            return

        security = active_attempt.security
        if security is not None and security.security_status == SecurityStatus.TERMINATED:
            raise AuthorizationError(
                "Exam terminated due to security violations",
                valid=False,
                details=(
                    f"Your exam was terminated due to {len(security.violations)} security "
                    f"violations. Score: {security.security_score}"
                ),
            )

    def heartbeat(self, user: User, session_token: Optional[str]) -> Dict[str, Any]:
        if not session_token:
            raise BadRequestError("Session token is required")

        session = self._get_active_session(user, session_token)
        if session is None or not self.is_session_valid(session):
            raise AuthenticationError("Invalid session")

        session.last_activity = utcnow()
        self.db.commit()
        return {"success": True, "lastActivity": to_iso(session.last_activity)}

    def end_session(self, user: User, session_token: Optional[str], reason: str = "logout") -> Dict[str, Any]:
        if session_token:
            session = self._get_active_session(user, session_token)
            if session is not None:
                self.terminate_session(session, reason or "logout")
                self.db.commit()
        return {"success": True, "message": "Session ended successfully"}

    def recover_session(
        self,
        user: User,
        test_id: Optional[int],
        fingerprint: str,
        network_info: Dict[str, Any],
    ) -> Dict[str, Any]:
        if test_id is None:
            raise BadRequestError("Test ID is required for session recovery")

        attempt = self.attempts.get_started_attempt(user.id, test_id)
        if attempt is None:
            raise NotFoundError("No active exam attempt found to recover")

        test_set = self.db.get(TestSet, test_id)
        if test_set is None:
            raise NotFoundError("Test not found")

        time_remaining = self.timer.time_remaining_seconds(attempt)
        if time_remaining <= 0:
            raise BadRequestError("Test time has expired, cannot recover session")

        self._terminate_user_sessions(user.id, "session_recovery")
        session = DeviceSession(
            user_id=user.id,
            test_set_id=test_id,
            session_token=secrets.token_hex(32),
            device_fingerprint=fingerprint,
            network_info=network_info,
            browser_info={},
            is_exam_session=True,
            exam_start_time=attempt.started_at,
            last_activity=utcnow(),
        )
        self.db.add(session)
        self.db.flush()
        if attempt.security is not None:
            attempt.security.device_session_id = session.id
        self.db.commit()
        self.db.refresh(session)

        # re-arm in case the process restarted since the exam began
        if attempt.id not in self.timer.active_timers:
            self.timer.start_exam_timer(self.db, attempt)

        logger.info(f"Session recovered for attempt {attempt.id}, {time_remaining}s left")
        return {
            "success": True,
            "message": "Session recovered successfully",
            "sessionToken": session.session_token,
            "timeRemaining": time_remaining,
            "attemptId": attempt.id,
        }

    # ------------------------------------------------------------------
    # exam lifecycle

    def start_exam(
        self,
        user: User,
        test_id: Optional[int],
        session_token: Optional[str],
        browser_info: Dict[str, Any],
        network_info: Dict[str, Any],
        sections: Optional[list] = None,
        client_start_time: Any = None,
        browser_features: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if test_id is None or not session_token:
            raise BadRequestError("testId and sessionToken are required", code="MISSING_PARAMETERS")

        session = self._get_active_session(user, session_token)
        if session is None or not self.is_session_valid(session):
            raise AuthorizationError("Invalid device session. Please restart.", code="INVALID_SESSION")

        test_set = self.db.get(TestSet, test_id)
        if test_set is None:
            raise NotFoundError("Test not found")

        existing = self.attempts.get_started_attempt(user.id, test_id)
        if existing is not None:
            raise ConflictError("Test already in progress", code="TEST_IN_PROGRESS", attemptId=existing.id)

        self.attempts.ensure_can_reattempt(user.id, test_id)

        now = utcnow()
        attempt = TestAttempt(
            student_id=user.id,
            test_set_id=test_id,
            attempt_number=self.attempts.next_attempt_number(user.id, test_id),
            status=AttemptStatus.STARTED,
            started_at=now,
            violations=[],
        )
        self.db.add(attempt)
        self.db.flush()

        client_start = _parse_client_time(client_start_time) or now
        security = ExamSecurity(
            attempt_id=attempt.id,
            student_id=user.id,
            test_set_id=test_id,
            device_session_id=session.id,
            allowed_ips=[network_info.get("ip")],
            detected_vpn=bool(network_info.get("isVPN")),
            detected_proxy=bool(network_info.get("isProxy")),
            network_disconnections=0,
            is_secure_browser=bool(browser_info.get("isSecureBrowser")),
            browser_name=browser_info.get("browserName", "Unknown"),
            browser_version=browser_info.get("browserVersion", "Unknown"),
            security_features=browser_features or {},
            fullscreen_exits=0,
            tab_switches=0,
            window_blurs=0,
            server_start_time=now,
            client_start_time=client_start,
            time_drift_ms=(now - client_start).total_seconds() * 1000,
            auto_submissions=[],
            section_timings=[],
            security_score=100,
            security_status=SecurityStatus.SECURE,
        )
        self.db.add(security)

        session.is_exam_session = True
        session.test_set_id = test_id
        session.exam_start_time = now
        session.last_activity = now
        self.db.commit()
        self.db.refresh(attempt)

        timer_result = self.timer.start_exam_timer(self.db, attempt, sections)

        logger.info(f"Exam started: attempt {attempt.id} user {user.id} test {test_id}")
        return {
            "success": True,
            "attemptId": attempt.id,
            "securityId": security.id,
            "sessionId": session.id,
            "timer": timer_result,
            "message": "Exam started successfully",
        }

    def _get_owned_security(self, user: User, attempt_id: int) -> Optional[ExamSecurity]:
        return (
            self.db.query(ExamSecurity)
            .filter(ExamSecurity.attempt_id == attempt_id, ExamSecurity.student_id == user.id)
            .first()
        )

    def submit_exam(self, user: User, attempt_id: Optional[int], reason: Optional[str] = None) -> Dict[str, Any]:
        if attempt_id is None:
            raise BadRequestError("attemptId is required")

        attempt = (
            self.db.query(TestAttempt)
            .filter(
                TestAttempt.id == attempt_id,
                TestAttempt.student_id == user.id,
                TestAttempt.status == AttemptStatus.STARTED,
            )
            .first()
        )
        if attempt is None:
            raise NotFoundError("Active test attempt not found")

        security = self._get_owned_security(user, attempt_id)
        if security is None:
            raise NotFoundError("Exam security record not found")

        now = utcnow()
        attempt.status = AttemptStatus.COMPLETED
        attempt.completed_at = now
        attempt.exit_reason = reason or "completed"

        apply_lockdown(security, now)
        security.security_status = SecurityStatus.COMPLETED

        terminate_test_sessions(self.db, user.id, attempt.test_set_id, "exam_completed", now)
        self.db.commit()
        self.timer.clear_timers(attempt.id)

        logger.info(f"Exam submitted and locked: attempt {attempt.id}")
        return {
            "success": True,
            "securityLocked": True,
            "postExamSecurity": security.post_exam_security,
            "message": "Exam submitted and secured successfully",
        }

    def get_security_status(self, user: User, attempt_id: int) -> Dict[str, Any]:
        security = self._get_owned_security(user, attempt_id)
        if security is None:
            raise NotFoundError("Security record not found")

        return {
            "securityStatus": security.security_status,
            "securityScore": security.security_score,
            "violations": len(security.violations),
            "networkSecurity": {
                "isVPN": bool(security.detected_vpn),
                "isProxy": bool(security.detected_proxy),
                "disconnections": security.network_disconnections or 0,
            },
            "browserSecurity": {
                "isSecure": bool(security.is_secure_browser),
                "browser": security.browser_name,
            },
            "screenViolations": {
                "fullscreenExits": security.fullscreen_exits or 0,
                "tabSwitches": security.tab_switches or 0,
                "windowBlurs": security.window_blurs or 0,
            },
            "postExamSecurity": security.post_exam_security,
        }

    def get_remaining_time(
        self, user: User, attempt_id: int, timer_type: str = "exam", section_id: Optional[str] = None
    ) -> Dict[str, Any]:
        attempt = (
            self.db.query(TestAttempt)
            .filter(
                TestAttempt.id == attempt_id,
                TestAttempt.student_id == user.id,
                TestAttempt.status == AttemptStatus.STARTED,
            )
            .first()
        )
        if attempt is None:
            raise NotFoundError("Test attempt not found", remaining=0, endTime=None)
        return self.timer.get_remaining_time(attempt_id, timer_type, section_id, db=self.db)

    # ------------------------------------------------------------------
    # violations

    def record_violation(
        self, user: User, attempt_id: Optional[int], violation_type: Optional[str], details: Any = None
    ) -> Dict[str, Any]:
        if attempt_id is None or not violation_type:
            raise BadRequestError("testAttemptId and violationType are required")

        rule = rules.get_violation_rule(violation_type)
        if rule is None:
            raise BadRequestError("Invalid violation type", validTypes=rules.valid_violation_types())

        attempt = (
            self.db.query(TestAttempt)
            .filter(
                TestAttempt.id == attempt_id,
                TestAttempt.student_id == user.id,
                TestAttempt.status == AttemptStatus.STARTED,
            )
            .first()
        )
        if attempt is None:
            if self._is_terminated(user, attempt_id):
                raise ConflictError("Exam already terminated")
            raise NotFoundError("Active test attempt not found")

        security = self._get_owned_security(user, attempt_id)
        if security is None:
            raise NotFoundError("Exam security record not found")
        if security.security_status == SecurityStatus.TERMINATED or security.submission_locked:
            raise ConflictError("Exam already terminated")

        now = utcnow()
        clean_details = rules.sanitize_details(details)
        security.violations.append(
            ExamViolation(
                violation_type=violation_type,
                severity=rule.severity,
                action=rule.action,
                details=clean_details,
                timestamp=now,
            )
        )
        attempt.violations = list(attempt.violations or []) + [
            {"type": violation_type, "timestamp": to_iso(now), "details": clean_details}
        ]

        counter = SCREEN_COUNTERS.get(violation_type)
        if counter:
            setattr(security, counter, (getattr(security, counter) or 0) + 1)
        if violation_type == "multiple_monitors":
            security.multiple_monitors_detected = True

        if rule.severity == "critical" and security.security_status not in (
            SecurityStatus.TERMINATED,
            SecurityStatus.COMPLETED,
        ):
            security.security_status = SecurityStatus.VIOLATED

        security.security_score = rules.score_for_security(security)
        severity_counts = rules.count_by_severity(v.severity for v in security.violations)
        critical_count = severity_counts.get("critical", 0)
        high_count = severity_counts.get("high", 0)

        terminated = rules.should_terminate(critical_count, high_count, security.security_score)
        if terminated:
            # attempt and security flip together
            security.security_status = SecurityStatus.TERMINATED
            attempt.status = AttemptStatus.TERMINATED
            attempt.completed_at = now
            attempt.exit_reason = "violation"
        self.db.commit()

        if terminated:
            logger.warning(
                f"Attempt {attempt.id} terminated: critical={critical_count} high={high_count} "
                f"score={security.security_score}"
            )
            self._auto_submit_after_termination(attempt.id)

        return {
            "success": True,
            "violationLogged": True,
            "violationType": violation_type,
            "severity": rule.severity,
            "action": rule.action,
            "securityScore": security.security_score,
            "shouldTerminate": terminated,
            "remainingViolations": rules.remaining_violations(high_count, terminated),
            "message": "Exam terminated due to security violations" if terminated else rule.description,
        }

    def _is_terminated(self, user: User, attempt_id: int) -> bool:
        attempt = (
            self.db.query(TestAttempt)
            .filter(TestAttempt.id == attempt_id, TestAttempt.student_id == user.id)
            .first()
        )
        return attempt is not None and attempt.status == AttemptStatus.TERMINATED

    def _auto_submit_after_termination(self, attempt_id: int):
        try:
            self.timer.auto_submit_exam(attempt_id, "security_violation", db=self.db)
        except Exception as e:
            logger.error(f"Auto-submit failed for attempt {attempt_id}: {e}", exc_info=True)


def security_health(db: Session, timer: Optional[ExamTimerService] = None) -> Dict[str, Any]:
    """Checks the proctoring tables and the timer service."""
    timer = timer or exam_timer_service
    health: Dict[str, Any] = {"timestamp": to_iso(utcnow()), "models": {}, "services": {}, "errors": []}

    for name, model in (("DeviceSession", DeviceSession), ("ExamSecurity", ExamSecurity), ("TestAttempt", TestAttempt)):
        try:
            db.query(model.id).limit(1).all()
            health["models"][name] = "OK"
        except SQLAlchemyError as e:
            db.rollback()
            health["models"][name] = f"ERROR: {e}"
            health["errors"].append(f"{name} model error: {e}")

    health["services"]["examTimerService"] = f"OK - {timer.active_count()} active timers"

    health["status"] = "HEALTHY" if not health["errors"] else "ISSUES_DETECTED"
    return health


def security_stats(db: Session) -> Dict[str, Any]:
    def count_sessions(*criteria) -> int:
        return db.query(func.count(DeviceSession.id)).filter(*criteria).scalar() or 0

    def count_security(*criteria) -> int:
        return db.query(func.count(ExamSecurity.id)).filter(*criteria).scalar() or 0

    by_type = (
        db.query(ExamViolation.violation_type, func.count(ExamViolation.id))
        .group_by(ExamViolation.violation_type)
        .order_by(func.count(ExamViolation.id).desc())
        .all()
    )
    return {
        "timestamp": to_iso(utcnow()),
        "deviceSessions": {
            "total": count_sessions(),
            "active": count_sessions(DeviceSession.status == SessionStatus.ACTIVE),
            "terminated": count_sessions(DeviceSession.status == SessionStatus.TERMINATED),
            "examSessions": count_sessions(DeviceSession.is_exam_session.is_(True)),
        },
        "examSecurity": {
            "total": count_security(),
            "secure": count_security(ExamSecurity.security_status == SecurityStatus.SECURE),
            "violated": count_security(ExamSecurity.security_status == SecurityStatus.VIOLATED),
            "terminated": count_security(ExamSecurity.security_status == SecurityStatus.TERMINATED),
        },
        "violations": {
            "byType": [{"type": t, "count": c} for t, c in by_type],
            "total": sum(c for _, c in by_type),
        },
    }
