from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Integer, JSON
from sqlalchemy.orm import relationship
from .base import BaseModel
from ..utils.timezone import utcnow


class SessionStatus:
    ACTIVE = "active"
    TERMINATED = "terminated"
    EXPIRED = "expired"
    VIOLATION = "violation"


class DeviceSession(BaseModel):
    __tablename__ = "device_sessions"

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    test_set_id = Column(Integer, ForeignKey("test_sets.id", ondelete="SET NULL"), nullable=True, index=True)
    session_token = Column(String(64), unique=True, index=True, nullable=False)
    device_fingerprint = Column(String(64), index=True)
    browser_info = Column(JSON, default=dict)
    network_info = Column(JSON, default=dict)
    status = Column(String, default=SessionStatus.ACTIVE, index=True)
    is_exam_session = Column(Boolean, default=False)
    exam_start_time = Column(DateTime, nullable=True)
    exam_end_time = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, default=utcnow)
    termination_reason = Column(String, nullable=True)
    terminated_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="device_sessions")

    def __repr__(self):
        return f"<DeviceSession {self.id} user={self.user_id} {self.status}>"
