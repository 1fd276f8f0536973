from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Integer, Float, JSON, Text
from sqlalchemy.orm import relationship
from ..core.database import Base
from .base import BaseModel
from ..utils.timezone import utcnow, to_iso


class SecurityStatus:
    SECURE = "secure"
    VIOLATED = "violated"
    TERMINATED = "terminated"
    COMPLETED = "completed"


class ExamSecurity(BaseModel):
    """Per-attempt proctoring record: counters, score and post-exam lockdown."""

    __tablename__ = "exam_security"

    attempt_id = Column(Integer, ForeignKey("test_attempts.id", ondelete="CASCADE"), unique=True, nullable=False)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    test_set_id = Column(Integer, ForeignKey("test_sets.id", ondelete="CASCADE"), nullable=False, index=True)
    device_session_id = Column(Integer, ForeignKey("device_sessions.id", ondelete="SET NULL"), nullable=True)

    # network
    detected_vpn = Column(Boolean, default=False)
    detected_proxy = Column(Boolean, default=False)
    network_disconnections = Column(Integer, default=0)
    allowed_ips = Column(JSON, default=list)

    # browser
    is_secure_browser = Column(Boolean, default=False)
    browser_name = Column(String, nullable=True)
    browser_version = Column(String, nullable=True)
    security_features = Column(JSON, default=list)

    # screen
    fullscreen_exits = Column(Integer, default=0)
    tab_switches = Column(Integer, default=0)
    window_blurs = Column(Integer, default=0)
    multiple_monitors_detected = Column(Boolean, default=False)

    # timing
    server_start_time = Column(DateTime, default=utcnow)
    client_start_time = Column(DateTime, nullable=True)
    time_drift_ms = Column(Float, default=0)
    auto_submissions = Column(JSON, default=list)
    section_timings = Column(JSON, default=list)

    security_score = Column(Integer, default=100)
    security_status = Column(String, default=SecurityStatus.SECURE, index=True)

    # post-exam lockdown
    submission_locked = Column(Boolean, default=False)
    reattempt_blocked = Column(Boolean, default=False)
    data_wiped = Column(Boolean, default=False)
    lock_timestamp = Column(DateTime, nullable=True)

    attempt = relationship("TestAttempt", back_populates="security")
    violations = relationship(
        "ExamViolation",
        back_populates="security",
        order_by="ExamViolation.id",
        cascade="all, delete-orphan",
    )

    @property
    def post_exam_security(self) -> dict:
        return {
            "submissionLocked": bool(self.submission_locked),
            "reattemptBlocked": bool(self.reattempt_blocked),
            "dataWiped": bool(self.data_wiped),
            "lockTimestamp": to_iso(self.lock_timestamp),
        }

    def __repr__(self):
        return f"<ExamSecurity attempt={self.attempt_id} {self.security_status} score={self.security_score}>"


class ExamViolation(Base):
    __tablename__ = "exam_violations"

    id = Column(Integer, primary_key=True, index=True)
    security_id = Column(Integer, ForeignKey("exam_security.id", ondelete="CASCADE"), nullable=False, index=True)
    violation_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    action = Column(String, nullable=False)
    details = Column(Text, nullable=True)
    handled = Column(Boolean, default=True)
    timestamp = Column(DateTime, default=utcnow)

    security = relationship("ExamSecurity", back_populates="violations")

    def __repr__(self):
        return f"<ExamViolation {self.violation_type} ({self.severity})>"
