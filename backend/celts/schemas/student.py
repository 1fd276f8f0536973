from typing import Any, Dict, List, Optional

from .common import CamelModel


class AttemptEndRequest(CamelModel):
    reason: Optional[str] = None
    submission_id: Optional[int] = None
    violations: Optional[List[Dict[str, Any]]] = None


class AttemptViolationRequest(CamelModel):
    type: Optional[str] = None
    details: Optional[Any] = None


class SubmissionRequest(CamelModel):
    response: Optional[Any] = None
    media_path: Optional[str] = None
