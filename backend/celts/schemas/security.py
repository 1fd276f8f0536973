from typing import Any, Dict, List, Optional

from .common import CamelModel


class SessionStartRequest(CamelModel):
    test_id: Optional[int] = None
    client_info: Optional[Dict[str, Any]] = None
    browser_features: Optional[Dict[str, Any]] = None


class SessionValidateRequest(CamelModel):
    session_token: Optional[str] = None
    exam_context: Optional[Dict[str, Any]] = None


class SessionTokenRequest(CamelModel):
    session_token: Optional[str] = None


class SessionEndRequest(CamelModel):
    session_token: Optional[str] = None
    reason: Optional[str] = "logout"


class SessionRecoverRequest(CamelModel):
    test_id: Optional[int] = None


class SectionTiming(CamelModel):
    section_id: Optional[str] = None
    section_name: Optional[str] = None
    time_limit: Optional[int] = None


class ExamStartRequest(CamelModel):
    test_id: Optional[int] = None
    session_token: Optional[str] = None
    sections: Optional[List[SectionTiming]] = None
    client_start_time: Optional[Any] = None
    browser_features: Optional[Dict[str, Any]] = None


class ExamSubmitRequest(CamelModel):
    attempt_id: Optional[int] = None
    reason: Optional[str] = None


class ViolationRequest(CamelModel):
    test_attempt_id: Optional[int] = None
    violation_type: Optional[str] = None
    details: Optional[Any] = None
