import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import AuthorizationError, BadRequestError, ConflictError, NotFoundError
from ..models.submission import Submission, SubmissionStatus
from ..models.test_attempt import TestAttempt, AttemptStatus
from ..models.test_set import OBJECTIVE_SKILLS, SKILLS, TestQuestion, TestSet
from ..models.user import User
from ..utils.audio_service import audio_service
from ..utils.openai_service import EvaluationError, openai_service, parse_band
from ..utils.timezone import utcnow, to_iso
from .media_storage import media_storage
from .stats_service import StatsService, compute_band_score, round_half_band
from .timer_service import attempt_deadline

logger = logging.getLogger(__name__)


def _answer_for(response: Any, question: TestQuestion, index: int) -> Any:
    """Answers are keyed by question id, falling back to the position index."""
    if not isinstance(response, dict):
        return None
    answer = response.get(str(question.id))
    if answer is None:
        answer = response.get(str(index))
    return answer


def _selected_index(response: Any, question: TestQuestion, index: int) -> Optional[int]:
    if isinstance(response, list):
        for entry in response:
            if not isinstance(entry, dict):
                continue
            if entry.get("questionIndex") == index or str(entry.get("questionId")) == str(question.id):
                answer = entry.get("answer")
                return answer if isinstance(answer, int) and not isinstance(answer, bool) else None
        return None

    answer = _answer_for(response, question, index)
    if isinstance(answer, dict):
        selected = answer.get("selectedIndex")
        if isinstance(selected, int) and not isinstance(selected, bool):
            return selected
    return None


def grade_objective(questions: List[TestQuestion], response: Any) -> Dict[str, Any]:
    """Scores the MCQ items of a reading or listening test."""
    earned = max_marks = 0.0
    total = attempted = correct = incorrect = 0

    for index, question in enumerate(questions):
        if question.question_type != "mcq":
            continue
        total += 1
        marks = question.marks or 1
        max_marks += marks

        selected = _selected_index(response, question, index)
        if selected is None:
            continue
        attempted += 1
        if selected == question.correct_index:
            correct += 1
            earned += marks
        else:
            incorrect += 1

    return {
        "total_marks": earned,
        "max_marks": max_marks,
        "total_questions": total,
        "attempted_count": attempted,
        "unattempted_count": total - attempted,
        "correct_count": correct,
        "incorrect_count": incorrect,
        "band_score": compute_band_score(earned, max_marks),
    }


def count_subjective(questions: List[TestQuestion], skill: str, response: Any, media_path: Optional[str]) -> Dict[str, int]:
    skill_questions = [q for q in questions if q.question_type == skill]
    total = len(skill_questions)

    attempted = 0
    if skill == "speaking" and media_path:
        attempted = total
    else:
        for index, question in enumerate(skill_questions):
            answer = _answer_for(response, question, index)
            if not isinstance(answer, dict):
                continue
            if skill == "writing" and str(answer.get("text") or "").strip():
                attempted += 1
            elif skill == "speaking" and str(answer.get("uploadedUrl") or "").strip():
                attempted += 1

    return {"total_questions": total, "attempted_count": attempted, "unattempted_count": max(total - attempted, 0)}


def extract_writing_answer(response: Any, question: TestQuestion, index: int) -> str:
    answer = _answer_for(response, question, index)
    if isinstance(answer, dict) and isinstance(answer.get("text"), str):
        return answer["text"].strip()
    return ""


class GradingService:
    """Accepts skill submissions and grades them, synchronously or via the worker."""

    def __init__(self, db: Session):
        self.db = db
        self.stats = StatsService(db)

    def _ensure_schedule_open(self, test_set: TestSet):
        now = utcnow()
        if test_set.start_time and now < test_set.start_time - timedelta(minutes=10):
            raise AuthorizationError("Not allowed to start/submit this test now (timing rules)")
        if test_set.end_time and now > test_set.end_time:
            raise AuthorizationError("Not allowed to start/submit this test now (timing rules)")

    def _submission_window_closed(self, attempt: TestAttempt) -> bool:
        """Answers still in flight at the bell get a short grace period, nothing more."""
        grace = timedelta(seconds=settings.submission_grace_seconds)
        return utcnow() > attempt_deadline(attempt) + grace

    def _latest_attempt(self, student_id: int, test_id: int) -> Optional[TestAttempt]:
        return (
            self.db.query(TestAttempt)
            .filter(TestAttempt.student_id == student_id, TestAttempt.test_set_id == test_id)
            .order_by(TestAttempt.attempt_number.desc())
            .first()
        )

    def submit(
        self,
        student: User,
        test_id: int,
        skill: str,
        response: Any,
        media_path: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Returns the HTTP status (200 graded, 202 queued) and the response body."""
        if skill not in SKILLS:
            raise BadRequestError("Invalid skill", validSkills=list(SKILLS))
        if not response and not media_path:
            raise BadRequestError("response is required")
        if media_path and not media_storage.belongs_to(media_path, student.id):
            raise AuthorizationError("Media file does not belong to this student")

        test_set = self.db.get(TestSet, test_id)
        if test_set is None:
            raise NotFoundError("Test not found")
        self._ensure_schedule_open(test_set)

        attempt = self._latest_attempt(student.id, test_id)
        if attempt is not None and attempt.security is not None and attempt.security.submission_locked:
            raise ConflictError(
                "Submissions are locked for this exam",
                code="SUBMISSION_LOCKED",
                lockTimestamp=to_iso(attempt.security.lock_timestamp),
            )
        if attempt is not None and self._submission_window_closed(attempt):
            raise ConflictError(
                "The submission window for this exam has closed",
                code="SUBMISSION_WINDOW_CLOSED",
                deadline=to_iso(attempt_deadline(attempt)),
            )

        auto_gradable = skill in OBJECTIVE_SKILLS
        if auto_gradable:
            counts = grade_objective(test_set.questions, response)
        else:
            counts = count_subjective(test_set.questions, skill, response, media_path)
            counts.update({"total_marks": 0, "max_marks": 0, "correct_count": 0, "incorrect_count": 0, "band_score": None})

        # one row per (student, test, skill); a permitted retry replaces it
        submission = (
            self.db.query(Submission)
            .filter(
                Submission.student_id == student.id,
                Submission.test_set_id == test_id,
                Submission.skill == skill,
            )
            .first()
        )
        if submission is None:
            submission = Submission(student_id=student.id, test_set_id=test_id, skill=skill)
            self.db.add(submission)
        elif submission.media_path and submission.media_path != media_path:
            media_storage.delete(submission.media_path)

        submission.response = response
        submission.media_path = media_path
        submission.status = SubmissionStatus.GRADED if auto_gradable else SubmissionStatus.PENDING
        submission.evaluation = None
        submission.grading_error = None
        submission.grading_job_id = None
        submission.is_overridden = False
        submission.original_band_score = None
        submission.overridden_by = None
        submission.override_reason = None
        submission.overridden_at = None
        for field, value in counts.items():
            setattr(submission, field, value)

        if auto_gradable and submission.band_score is not None:
            self.stats.update_stats_for_skill(student.id, skill, submission.band_score)

        self.db.flush()
        if attempt is not None and attempt.status == AttemptStatus.STARTED:
            attempt.submission_id = submission.id
        self.db.commit()

        job_id = None if auto_gradable else self._enqueue_grading(submission)

        if auto_gradable:
            return 200, {
                "message": "Submission accepted and auto-graded",
                "submissionId": submission.id,
                "jobId": None,
                "summary": {
                    "submissionId": submission.id,
                    "testId": test_id,
                    "skill": skill,
                    "totalMarks": submission.total_marks,
                    "maxMarks": submission.max_marks,
                    "totalQuestions": submission.total_questions,
                    "attemptedCount": submission.attempted_count,
                    "unattemptedCount": submission.unattempted_count,
                    "correctCount": submission.correct_count,
                    "incorrectCount": submission.incorrect_count,
                    "bandScore": submission.band_score,
                },
            }
        return 202, {
            "message": "Submission accepted for grading",
            "submissionId": submission.id,
            "jobId": job_id,
            "summary": None,
        }

    def _enqueue_grading(self, submission: Submission) -> Optional[str]:
        from ..tasks.grading import grade_submission

        try:
            job = grade_submission.delay(submission.id)
        except Exception as e:
            # stays pending; the submission can be re-queued later
            logger.error(f"Failed to enqueue grading for submission {submission.id}: {e}", exc_info=True)
            return None

        submission.grading_job_id = job.id
        self.db.commit()
        return job.id

    # ------------------------------------------------------------------
    # views

    def get_submission_for_student(self, student: User, submission_id: int) -> Dict[str, Any]:
        submission = self.db.get(Submission, submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        if submission.student_id != student.id:
            raise AuthorizationError("Not allowed to view this submission")
        return serialize_submission(submission)

    def list_submissions_for_test(self, test_id: int) -> List[Dict[str, Any]]:
        submissions = (
            self.db.query(Submission)
            .filter(Submission.test_set_id == test_id)
            .order_by(Submission.created_at.desc(), Submission.id.desc())
            .all()
        )
        return [serialize_submission(s) for s in submissions]

    # ------------------------------------------------------------------
    # AI grading, run by the worker

    async def grade_pending(self, submission_id: int) -> Dict[str, Any]:
        submission = self.db.get(Submission, submission_id)
        if submission is None:
            raise NotFoundError(f"Submission {submission_id} not found")
        if submission.skill not in ("writing", "speaking"):
            logger.warning(f"Unsupported skill '{submission.skill}' for submission {submission_id}")
            return {"submissionId": submission_id, "status": submission.status}

        test_set = submission.test_set
        try:
            if submission.skill == "writing":
                evaluation, band, marks = await self._grade_writing(test_set, submission.response)
                submission.total_marks = marks["total"]
                submission.max_marks = marks["max"]
            else:
                evaluation, band = await self._grade_speaking(test_set, submission)
        except Exception as e:
            self.db.rollback()
            submission.status = SubmissionStatus.FAILED
            submission.grading_error = str(e)
            self.db.commit()
            logger.error(f"Grading failed for submission {submission_id}: {e}", exc_info=True)
            self._cleanup_media(submission)
            raise

        submission.status = SubmissionStatus.GRADED
        submission.band_score = band
        submission.evaluation = evaluation
        submission.grading_error = None
        self.stats.update_stats_for_skill(submission.student_id, submission.skill, band, evaluation)
        self.db.commit()
        self._cleanup_media(submission)

        logger.info(f"Graded {submission.skill} submission {submission_id}, band {band}")
        return {"submissionId": submission_id, "status": submission.status, "bandScore": band}

    def _cleanup_media(self, submission: Submission):
        if settings.delete_media_after_grading and submission.media_path:
            media_storage.delete(submission.media_path)

    async def _grade_writing(self, test_set: TestSet, response: Any):
        questions = [q for q in test_set.questions if q.question_type == "writing"]
        if not questions:
            raise EvaluationError("No writing questions found in this test.")

        tasks = []
        earned_total = max_total = 0.0
        for index, question in enumerate(questions):
            answer = extract_writing_answer(response, question, index)
            evaluation = await openai_service.grade_writing(answer, question.prompt or "No prompt text")
            band = parse_band(evaluation.get("band_score"))

            max_marks = question.marks if question.marks and question.marks > 0 else 0
            earned = band / 9 * max_marks if band is not None and max_marks else 0
            max_total += max_marks
            earned_total += earned

            tasks.append(
                {
                    "questionId": question.id,
                    "prompt": question.prompt,
                    "writingType": question.writing_type,
                    "wordLimit": question.word_limit,
                    "maxMarks": max_marks,
                    "earnedMarks": earned,
                    "band_score": band,
                    "evaluation": evaluation,
                    "answerSnippet": answer[:400],
                }
            )

        if max_total > 0:
            band = round_half_band(earned_total / max_total * 9)
        else:
            bands = [t["band_score"] for t in tasks if t["band_score"] is not None]
            band = round_half_band(sum(bands) / len(bands)) if bands else None

        summary = "\n\n".join(
            f"Task {i + 1} ({t['writingType'] or 'Writing'}): "
            f"{t['evaluation'].get('examiner_summary') or 'No summary.'}"
            for i, t in enumerate(tasks)
        )
        evaluation = {
            "band_score": band,
            "examiner_summary": summary,
            "criteria_breakdown": tasks[0]["evaluation"].get("criteria_breakdown"),
            "tasks": tasks,
        }
        return evaluation, band, {"total": round(earned_total, 2), "max": max_total}

    async def _grade_speaking(self, test_set: TestSet, submission: Submission):
        response = submission.response if isinstance(submission.response, dict) else {}
        transcription = response.get("transcription") or ""
        if not transcription and not submission.media_path:
            raise EvaluationError("No audio, video, or transcription provided for speaking evaluation.")

        if not transcription:
            media = await media_storage.read(submission.media_path)
            transcription = await audio_service.speech_to_text_from_bytes(media)

        questions = [q.prompt or "" for q in test_set.questions if q.question_type == "speaking"]
        evaluation = await openai_service.grade_speaking(questions, transcription)
        return evaluation, parse_band(evaluation.get("band_score"))


def serialize_submission(submission: Submission) -> Dict[str, Any]:
    evaluation = submission.evaluation
    summary = submission.examiner_summary
    return {
        "submissionId": submission.id,
        "testId": submission.test_set_id,
        "testTitle": submission.test_set.title if submission.test_set else None,
        "skill": submission.skill,
        "status": submission.status,
        "totalMarks": submission.total_marks or 0,
        "maxMarks": submission.max_marks or 0,
        "totalQuestions": submission.total_questions or 0,
        "attemptedCount": submission.attempted_count or 0,
        "unattemptedCount": submission.unattempted_count or 0,
        "correctCount": submission.correct_count or 0,
        "incorrectCount": submission.incorrect_count or 0,
        "evaluation": evaluation,
        "error": submission.grading_error,
        "bandScore": submission.band_score,
        "writingEvaluationSummary": summary if submission.skill == "writing" else None,
        "speakingEvaluationSummary": summary if submission.skill == "speaking" else None,
        "examinerSummary": summary,
        "isOverridden": bool(submission.is_overridden),
        "originalBandScore": submission.original_band_score,
        "student": {
            "id": submission.student.id,
            "name": submission.student.full_name,
            "email": submission.student.email,
            "systemId": submission.student.system_id,
        } if submission.student else None,
        "createdAt": to_iso(submission.created_at),
    }
