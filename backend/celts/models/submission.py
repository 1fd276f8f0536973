from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Integer, Float, JSON, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import BaseModel


class SubmissionStatus:
    PENDING = "pending"
    GRADED = "graded"
    FAILED = "failed"


class Submission(BaseModel):
    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("student_id", "test_set_id", "skill", name="uq_submission_skill"),
    )

    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    test_set_id = Column(Integer, ForeignKey("test_sets.id", ondelete="CASCADE"), nullable=False, index=True)
    skill = Column(String, nullable=False)
    response = Column(JSON, nullable=True)
    media_path = Column(String, nullable=True)
    status = Column(String, default=SubmissionStatus.PENDING, index=True)

    total_marks = Column(Float, default=0)
    max_marks = Column(Float, default=0)
    total_questions = Column(Integer, default=0)
    attempted_count = Column(Integer, default=0)
    unattempted_count = Column(Integer, default=0)
    correct_count = Column(Integer, default=0)
    incorrect_count = Column(Integer, default=0)

    band_score = Column(Float, nullable=True)
    evaluation = Column(JSON, nullable=True)
    grading_error = Column(Text, nullable=True)
    grading_job_id = Column(String, nullable=True)

    is_overridden = Column(Boolean, default=False)
    original_band_score = Column(Float, nullable=True)
    overridden_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    override_reason = Column(Text, nullable=True)
    overridden_at = Column(DateTime, nullable=True)

    student = relationship("User", foreign_keys=[student_id])
    test_set = relationship("TestSet")
    overridden_by_user = relationship("User", foreign_keys=[overridden_by])

    @property
    def examiner_summary(self):
        if isinstance(self.evaluation, dict):
            return self.evaluation.get("examiner_summary")
        return None
