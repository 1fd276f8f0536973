from sqlalchemy import Column, ForeignKey, Boolean, Integer, Float, Text
from sqlalchemy.orm import relationship
from .base import BaseModel


class StudentStats(BaseModel):
    __tablename__ = "student_stats"

    student_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    reading_band = Column(Float, nullable=True)
    listening_band = Column(Float, nullable=True)
    writing_band = Column(Float, nullable=True)
    speaking_band = Column(Float, nullable=True)
    writing_examiner_summary = Column(Text, nullable=True)
    speaking_examiner_summary = Column(Text, nullable=True)
    overall_band = Column(Float, nullable=True)
    has_manual_override = Column(Boolean, default=False)

    student = relationship("User")

    def band_for(self, skill: str):
        return getattr(self, f"{skill}_band")

    def set_band(self, skill: str, value):
        setattr(self, f"{skill}_band", value)

    def bands(self) -> dict:
        return {
            "reading": self.reading_band,
            "listening": self.listening_band,
            "writing": self.writing_band,
            "speaking": self.speaking_band,
        }
