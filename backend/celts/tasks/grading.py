from celery import current_task
import asyncio
import logging
from typing import Any, Dict

from ..core.celery_app import celery_app
from ..core.database import SessionLocal
from ..services.grading_service import GradingService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="celts.tasks.grading.grade_submission")
def grade_submission(self, submission_id: int):
    """Background AI grading for a writing or speaking submission"""
    try:
        current_task.update_state(
            state='PROGRESS',
            meta={'submission_id': submission_id, 'status': 'Grading submission...'}
        )

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        try:
            return loop.run_until_complete(_grade_internal(submission_id))
        finally:
            loop.close()

    except Exception as exc:
        logger.error(f"Error grading submission {submission_id}: {exc}")
        raise


async def _grade_internal(submission_id: int) -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return await GradingService(db).grade_pending(submission_id)
    finally:
        db.close()
