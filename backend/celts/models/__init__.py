from .base import BaseModel
from .user import User, UserRole
from .test_set import TestSet, TestQuestion
from .test_attempt import TestAttempt, AttemptStatus
from .device_session import DeviceSession, SessionStatus
from .exam_security import ExamSecurity, ExamViolation, SecurityStatus
from .submission import Submission, SubmissionStatus
from .student_stats import StudentStats
from .audit_log import AuditLog

__all__ = [
    "BaseModel",
    "User",
    "UserRole",
    "TestSet",
    "TestQuestion",
    "TestAttempt",
    "AttemptStatus",
    "DeviceSession",
    "SessionStatus",
    "ExamSecurity",
    "ExamViolation",
    "SecurityStatus",
    "Submission",
    "SubmissionStatus",
    "StudentStats",
    "AuditLog",
]
