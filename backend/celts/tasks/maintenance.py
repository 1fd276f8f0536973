from datetime import timedelta
import logging

from ..core.celery_app import celery_app
from ..core.config import settings
from ..core.database import SessionLocal
from ..models.device_session import DeviceSession, SessionStatus
from ..models.test_attempt import TestAttempt, AttemptStatus
from ..services.attempt_service import AttemptService
from ..services.security_service import SecurityService
from ..services.timer_service import exam_timer_service
from ..utils.timezone import utcnow

logger = logging.getLogger(__name__)


@celery_app.task(name="celts.tasks.maintenance.expire_overdue_attempts")
def expire_overdue_attempts():
    """Auto-submit attempts whose deadline passed while no timer was armed"""
    db = SessionLocal()
    try:
        expired = exam_timer_service.expire_overdue_attempts(db)
        if expired:
            logger.info(f"Expired {expired} overdue attempt(s)")
        return {"expired": expired}
    except Exception as exc:
        logger.error(f"Error in expire_overdue_attempts: {exc}")
        raise
    finally:
        db.close()


@celery_app.task(name="celts.tasks.maintenance.cleanup_stale_attempts")
def cleanup_stale_attempts():
    """Abandon started attempts older than the stale cutoff, for every student"""
    db = SessionLocal()
    try:
        cutoff = utcnow() - timedelta(hours=settings.stale_attempt_hours)
        student_ids = [
            student_id
            for (student_id,) in db.query(TestAttempt.student_id)
            .filter(TestAttempt.status == AttemptStatus.STARTED, TestAttempt.started_at < cutoff)
            .distinct()
            .all()
        ]

        service = AttemptService(db, exam_timer_service)
        cleaned = 0
        for student_id in student_ids:
            cleaned += service.cleanup_stale_attempts(student_id)["cleanedAttempts"]

        logger.info(f"Stale attempt cleanup: {cleaned} attempt(s) for {len(student_ids)} student(s)")
        return {"cleanedAttempts": cleaned, "students": len(student_ids)}
    except Exception as exc:
        logger.error(f"Error in cleanup_stale_attempts: {exc}")
        raise
    finally:
        db.close()


@celery_app.task(name="celts.tasks.maintenance.expire_idle_sessions")
def expire_idle_sessions():
    """Mark active device sessions past their inactivity or exam window as expired"""
    db = SessionLocal()
    try:
        service = SecurityService(db, exam_timer_service)
        now = utcnow()
        expired = 0
        for session in db.query(DeviceSession).filter(DeviceSession.status == SessionStatus.ACTIVE).all():
            if not service.is_session_valid(session, now):
                service.terminate_session(session, "expired", SessionStatus.EXPIRED)
                expired += 1
        db.commit()

        if expired:
            logger.info(f"Expired {expired} idle device session(s)")
        return {"expired": expired}
    except Exception as exc:
        db.rollback()
        logger.error(f"Error in expire_idle_sessions: {exc}")
        raise
    finally:
        db.close()
