from sqlalchemy import Column, String, ForeignKey, Integer, JSON, Text
from sqlalchemy.orm import relationship
from .base import BaseModel


class AuditLog(BaseModel):
    __tablename__ = "audit_logs"

    action = Column(String, nullable=False, index=True)
    target_type = Column(String, nullable=False)
    target_id = Column(Integer, nullable=False)
    changed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    changed_by_role = Column(String, nullable=True)
    meta = Column(JSON, nullable=True)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)

    changed_by_user = relationship("User")
