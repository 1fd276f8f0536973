from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ....core.database import get_db
from ....models.user import User
from ....schemas.admin import BandOverrideRequest, SubmissionOverrideRequest
from ....schemas.test_set import TestSetCreate, TestSetUpdate
from ....services.grading_service import GradingService
from ....services.stats_service import StatsService
from ....services.test_set_service import TestSetService, serialize_test_set
from ...deps import get_current_faculty, get_current_staff

router = APIRouter()


@router.post("/tests", status_code=status.HTTP_201_CREATED)
async def create_test(
    payload: TestSetCreate,
    current_user: User = Depends(get_current_faculty),
    db: Session = Depends(get_db),
):
    test_set = TestSetService(db).create_test(current_user, payload)
    return {"message": "Test created", "test": serialize_test_set(test_set)}


@router.get("/tests")
async def list_tests(
    mine: bool = False,
    current_user: User = Depends(get_current_faculty),
    db: Session = Depends(get_db),
):
    return [serialize_test_set(t) for t in TestSetService(db).list_tests(current_user, mine)]


@router.get("/tests/{test_id}")
async def get_test(
    test_id: int,
    current_user: User = Depends(get_current_faculty),
    db: Session = Depends(get_db),
):
    return serialize_test_set(TestSetService(db).get_test(test_id))


@router.put("/tests/{test_id}")
async def update_test(
    test_id: int,
    payload: TestSetUpdate,
    current_user: User = Depends(get_current_faculty),
    db: Session = Depends(get_db),
):
    test_set = TestSetService(db).update_test(current_user, test_id, payload)
    return {"message": "Test updated", "test": serialize_test_set(test_set)}


@router.delete("/tests/{test_id}")
async def delete_test(
    test_id: int,
    current_user: User = Depends(get_current_faculty),
    db: Session = Depends(get_db),
):
    TestSetService(db).delete_test(current_user, test_id)
    return {"message": "Test deleted"}


@router.get("/submissions/{test_id}")
async def list_submissions(
    test_id: int,
    current_user: User = Depends(get_current_faculty),
    db: Session = Depends(get_db),
):
    return GradingService(db).list_submissions_for_test(test_id)


@router.patch("/students/{stats_id}/override-band")
async def override_band(
    stats_id: int,
    payload: BandOverrideRequest,
    current_user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    return StatsService(db).override_band(
        current_user, stats_id, payload.skill, payload.new_band_score, payload.reason
    )


@router.patch("/submissions/{submission_id}/override")
async def override_submission(
    submission_id: int,
    payload: SubmissionOverrideRequest,
    current_user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    return StatsService(db).override_submission(
        current_user, submission_id, payload.new_band_score, payload.reason
    )
