from .auth import Token, RefreshRequest
from .user import User, UserCreate, UserUpdate
from .security import (
    SessionStartRequest,
    SessionValidateRequest,
    SessionTokenRequest,
    SessionEndRequest,
    SessionRecoverRequest,
    ExamStartRequest,
    ExamSubmitRequest,
    ViolationRequest,
)
from .student import AttemptEndRequest, AttemptViolationRequest, SubmissionRequest
from .test_set import QuestionIn, TestSetCreate, TestSetUpdate
from .admin import RetryRequest, BandOverrideRequest, SubmissionOverrideRequest

__all__ = [
    "Token",
    "RefreshRequest",
    "User",
    "UserCreate",
    "UserUpdate",
    "SessionStartRequest",
    "SessionValidateRequest",
    "SessionTokenRequest",
    "SessionEndRequest",
    "SessionRecoverRequest",
    "ExamStartRequest",
    "ExamSubmitRequest",
    "ViolationRequest",
    "AttemptEndRequest",
    "AttemptViolationRequest",
    "SubmissionRequest",
    "QuestionIn",
    "TestSetCreate",
    "TestSetUpdate",
    "RetryRequest",
    "BandOverrideRequest",
    "SubmissionOverrideRequest",
]
