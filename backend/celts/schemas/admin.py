from typing import Optional

from pydantic import Field

from .common import CamelModel


class RetryRequest(CamelModel):
    student_id: int
    test_id: int
    reason: Optional[str] = Field(default=None, max_length=500)


class BandOverrideRequest(CamelModel):
    skill: str
    new_band_score: float = Field(ge=0, le=9)
    reason: Optional[str] = Field(default=None, max_length=500)


class SubmissionOverrideRequest(CamelModel):
    new_band_score: float = Field(ge=0, le=9)
    reason: Optional[str] = Field(default=None, max_length=500)
