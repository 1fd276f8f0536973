from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .... import schemas
from ....core.database import get_db
from ....models.user import User
from ....schemas.admin import RetryRequest
from ....services.attempt_service import AttemptService
from ....services.stats_service import StatsService
from ....services.user_service import UserService
from ...deps import get_current_admin

router = APIRouter()


@router.get("/users", response_model=List[schemas.User])
async def get_all_users(
    role: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    """
    Retrieve all users, optionally filtered by role. Admins only.
    """
    return UserService(db).list_users(role)


@router.post("/users", response_model=schemas.User, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    return UserService(db).create_user(user_data)


@router.patch("/users/{user_id}", response_model=schemas.User)
async def update_user(
    user_id: int,
    user_data: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    """Also used to grant faculty the score editing permission."""
    return UserService(db).update_user(user_id, user_data)


@router.get("/test-attempts")
async def list_test_attempts(
    student_id: Optional[int] = Query(None, alias="studentId"),
    test_id: Optional[int] = Query(None, alias="testId"),
    attempt_status: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    return AttemptService(db).list_attempts(student_id, test_id, attempt_status, page, limit)


@router.post("/allow-retry")
async def allow_retry(
    payload: RetryRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    return AttemptService(db).allow_retry(current_user, payload.student_id, payload.test_id, payload.reason)


@router.post("/revoke-retry")
async def revoke_retry(
    payload: RetryRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    return AttemptService(db).revoke_retry(payload.student_id, payload.test_id)


@router.get("/audit/overrides")
async def list_override_audit(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    return {"logs": StatsService(db).list_override_audit()}


@router.get("/stats")
async def list_student_stats(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_admin),
):
    return StatsService(db).list_all()
