import logging

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ....core.config import settings
from ....core.database import get_db
from ....core.exceptions import BadRequestError
from ....models.user import User
from ....schemas.student import AttemptEndRequest, AttemptViolationRequest, SubmissionRequest
from ....services.attempt_service import AttemptService
from ....services.grading_service import GradingService
from ....services.media_storage import is_allowed_media_type, media_storage
from ....services.stats_service import StatsService
from ....services.test_set_service import TestSetService, serialize_test_set
from ...deps import get_current_student

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/tests")
async def list_tests(
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return AttemptService(db).list_tests_for_student(current_user)


@router.get("/tests/{test_id}")
async def get_test(
    test_id: int,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    test_set = TestSetService(db).get_test(test_id)
    data = serialize_test_set(test_set, include_answers=False)
    data.update(AttemptService(db).get_attempt_eligibility(current_user, test_id))
    return data


@router.post("/tests/{test_id}/start")
async def start_attempt(
    test_id: int,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return AttemptService(db).start_attempt(current_user, test_id)


@router.get("/tests/{test_id}/attempts")
async def get_attempts(
    test_id: int,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return AttemptService(db).get_attempt_history(current_user, test_id)


@router.post("/tests/{test_id}/end")
async def end_attempt(
    test_id: int,
    payload: AttemptEndRequest,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return AttemptService(db).end_attempt(
        current_user, test_id, payload.reason, payload.submission_id, payload.violations
    )


@router.post("/tests/{test_id}/violation")
async def log_violation(
    test_id: int,
    payload: AttemptViolationRequest,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return AttemptService(db).log_attempt_violation(current_user, test_id, payload.type, payload.details)


@router.post("/tests/{test_id}/cleanup")
async def cleanup_attempts(
    test_id: int,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return AttemptService(db).cleanup_stale_attempts(current_user.id, test_id)


@router.post("/media/upload")
async def upload_media(
    media: UploadFile = File(...),
    current_user: User = Depends(get_current_student),
):
    if not is_allowed_media_type(media.content_type):
        raise BadRequestError("Only audio/video files are allowed for speaking tests.")

    data = await media.read()
    if not data:
        raise BadRequestError("No file uploaded")
    if len(data) > settings.max_media_upload_size:
        raise BadRequestError(
            f"File too large (max {settings.max_media_upload_size // (1024 * 1024)}MB)"
        )

    media_path = await media_storage.save(data, current_user.id, media.filename, media.content_type)
    logger.info(f"Student {current_user.id} uploaded {len(data)} bytes of media")
    return {"message": "Media uploaded successfully", "mediaPath": media_path, "size": len(data)}


@router.post("/submit/{test_id}/{skill}")
async def submit(
    test_id: int,
    skill: str,
    payload: SubmissionRequest,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    status_code, body = GradingService(db).submit(
        current_user, test_id, skill, payload.response, payload.media_path
    )
    return JSONResponse(status_code=status_code, content=body)


@router.get("/submissions/{submission_id}")
async def get_submission(
    submission_id: int,
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return GradingService(db).get_submission_for_student(current_user, submission_id)


@router.get("/stats")
async def get_stats(
    current_user: User = Depends(get_current_student),
    db: Session = Depends(get_db),
):
    return StatsService(db).get_student_stats(current_user.id)
