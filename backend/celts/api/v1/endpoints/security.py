import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ....core.database import get_db
from ....models.user import User
from ....schemas.security import (
    ExamStartRequest,
    ExamSubmitRequest,
    SessionEndRequest,
    SessionRecoverRequest,
    SessionStartRequest,
    SessionTokenRequest,
    SessionValidateRequest,
    ViolationRequest,
)
from ....services.security_service import SecurityService, security_health, security_stats
from ....utils.request_info import generate_device_fingerprint, get_browser_info, get_network_info
from ...deps import get_current_active_user, get_current_admin, get_current_student

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/session/start")
async def start_session(
    payload: SessionStartRequest,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    service = SecurityService(db)
    return service.start_session(
        current_user,
        fingerprint=generate_device_fingerprint(request),
        browser_info=get_browser_info(request),
        network_info=get_network_info(request),
        test_id=payload.test_id,
        client_info=payload.client_info,
        browser_features=payload.browser_features,
    )


@router.post("/session/validate")
async def validate_session(
    payload: SessionValidateRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return SecurityService(db).validate_session(current_user, payload.session_token, payload.exam_context)


@router.post("/session/heartbeat")
async def heartbeat(
    payload: SessionTokenRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return SecurityService(db).heartbeat(current_user, payload.session_token)


@router.post("/session/end")
async def end_session(
    payload: SessionEndRequest,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return SecurityService(db).end_session(current_user, payload.session_token, payload.reason or "logout")


@router.post("/session/recover")
async def recover_session(
    payload: SessionRecoverRequest,
    request: Request,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return SecurityService(db).recover_session(
        current_user,
        payload.test_id,
        fingerprint=generate_device_fingerprint(request),
        network_info=get_network_info(request),
    )


@router.post("/exam/start")
async def start_exam(
    payload: ExamStartRequest,
    request: Request,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    sections = [s.model_dump(by_alias=True) for s in payload.sections or []]
    return SecurityService(db).start_exam(
        current_user,
        payload.test_id,
        payload.session_token,
        browser_info=get_browser_info(request),
        network_info=get_network_info(request),
        sections=sections,
        client_start_time=payload.client_start_time,
        browser_features=payload.browser_features,
    )


@router.post("/exam/submit")
async def submit_exam(
    payload: ExamSubmitRequest,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return SecurityService(db).submit_exam(current_user, payload.attempt_id, payload.reason)


@router.get("/status/{attempt_id}")
async def get_security_status(
    attempt_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return SecurityService(db).get_security_status(current_user, attempt_id)


@router.get("/timer/remaining/{attempt_id}")
async def get_remaining_time(
    attempt_id: int,
    type: str = Query("exam", pattern="^(exam|section)$"),
    section_id: Optional[str] = Query(None, alias="sectionId"),
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return SecurityService(db).get_remaining_time(current_user, attempt_id, type, section_id)


@router.post("/violation")
async def record_violation(
    payload: ViolationRequest,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return SecurityService(db).record_violation(
        current_user, payload.test_attempt_id, payload.violation_type, payload.details
    )


@router.get("/health")
async def get_security_health(
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return security_health(db)


@router.get("/stats")
async def get_security_stats(
    current_user: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    return security_stats(db)
