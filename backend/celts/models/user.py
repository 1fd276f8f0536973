from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship
from .base import BaseModel


class UserRole:
    STUDENT = "student"
    FACULTY = "faculty"
    ADMIN = "admin"

    ALL = (STUDENT, FACULTY, ADMIN)


class User(BaseModel):
    __tablename__ = "users"

    full_name = Column(String, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    system_id = Column(String, index=True, nullable=True)
    hashed_password = Column(String)
    role = Column(String, default=UserRole.STUDENT, nullable=False)
    # faculty only; admins can always edit scores
    can_edit_scores = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)

    test_attempts = relationship(
        "TestAttempt", back_populates="student", foreign_keys="TestAttempt.student_id"
    )
    device_sessions = relationship("DeviceSession", back_populates="user")

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
