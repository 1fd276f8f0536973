import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import AuthorizationError, BadRequestError, NotFoundError
from ..models.test_set import QUESTION_TYPES, SKILLS, TestQuestion, TestSet
from ..models.user import User, UserRole
from ..schemas.test_set import QuestionIn, TestSetCreate, TestSetUpdate
from ..utils.timezone import to_iso

logger = logging.getLogger(__name__)


def serialize_question(question: TestQuestion, include_answers: bool = True) -> Dict[str, Any]:
    data = {
        "id": question.id,
        "position": question.position,
        "questionType": question.question_type,
        "prompt": question.prompt,
        "options": question.options or [],
        "sectionId": question.section_id,
        "writingType": question.writing_type,
        "wordLimit": question.word_limit,
        "recordLimitSeconds": question.record_limit_seconds,
        "marks": question.marks,
    }
    if include_answers:
        data["correctIndex"] = question.correct_index
        data["explanation"] = question.explanation
    return data


def serialize_test_set(test_set: TestSet, include_answers: bool = True) -> Dict[str, Any]:
    return {
        "id": test_set.id,
        "title": test_set.title,
        "description": test_set.description,
        "type": test_set.type,
        "passage": test_set.passage,
        "audioUrl": test_set.audio_url,
        "listenLimit": test_set.listen_limit,
        "readingSections": test_set.reading_sections or [],
        "listeningSections": test_set.listening_sections or [],
        "timeLimitMinutes": test_set.time_limit_minutes or 0,
        "startTime": to_iso(test_set.start_time),
        "endTime": to_iso(test_set.end_time),
        "published": bool(test_set.published),
        "createdBy": test_set.created_by,
        "assignedStudents": [s.id for s in test_set.assigned_students],
        "questions": [serialize_question(q, include_answers) for q in test_set.questions],
        "createdAt": to_iso(test_set.created_at),
    }


class TestSetService:
    __test__ = False

    def __init__(self, db: Session):
        self.db = db

    def _validate(self, test_type: Optional[str], title: Optional[str], questions, reading_sections, listening_sections):
        if not title or test_type not in SKILLS:
            raise BadRequestError("Invalid test payload: title and valid type required")
        if not questions:
            raise BadRequestError("At least one question is required")
        for question in questions:
            if question.question_type not in QUESTION_TYPES:
                raise BadRequestError(f"Invalid question type: {question.question_type}")
        if test_type == "reading" and not reading_sections:
            raise BadRequestError("Reading tests require at least one passage in readingSections.")
        if test_type == "listening" and not listening_sections:
            raise BadRequestError("Listening tests require at least one audio block in listeningSections.")

    def _build_questions(self, questions: List[QuestionIn]) -> List[TestQuestion]:
        return [
            TestQuestion(position=index, **question.model_dump())
            for index, question in enumerate(questions)
        ]

    def _resolve_students(self, student_ids: Optional[List[int]]) -> List[User]:
        if not student_ids:
            return []
        return (
            self.db.query(User)
            .filter(User.id.in_(student_ids), User.role == UserRole.STUDENT)
            .all()
        )

    def create_test(self, faculty: User, payload: TestSetCreate) -> TestSet:
        self._validate(
            payload.type, payload.title, payload.questions, payload.reading_sections, payload.listening_sections
        )
        test_set = TestSet(
            title=payload.title,
            description=payload.description or "",
            type=payload.type,
            passage=payload.passage or "",
            audio_url=payload.audio_url or "",
            listen_limit=payload.listen_limit or 1,
            reading_sections=payload.reading_sections or [],
            listening_sections=payload.listening_sections or [],
            time_limit_minutes=payload.time_limit_minutes or 0,
            start_time=payload.start_time,
            end_time=payload.end_time,
            published=payload.published,
            created_by=faculty.id,
        )
        test_set.questions = self._build_questions(payload.questions)
        test_set.assigned_students = self._resolve_students(payload.assigned_students)
        self.db.add(test_set)
        self.db.commit()
        self.db.refresh(test_set)

        logger.info(f"Test {test_set.id} ({test_set.type}) created by faculty {faculty.id}")
        return test_set

    def list_tests(self, faculty: User, mine: bool = False) -> List[TestSet]:
        query = self.db.query(TestSet)
        if mine:
            query = query.filter(TestSet.created_by == faculty.id)
        return query.order_by(TestSet.created_at.desc(), TestSet.id.desc()).all()

    def get_test(self, test_id: int) -> TestSet:
        test_set = self.db.get(TestSet, test_id)
        if test_set is None:
            raise NotFoundError("Test not found")
        return test_set

    def _get_owned(self, faculty: User, test_id: int) -> TestSet:
        test_set = self.get_test(test_id)
        if test_set.created_by != faculty.id:
            raise AuthorizationError("Not allowed to modify this test")
        return test_set

    def update_test(self, faculty: User, test_id: int, payload: TestSetUpdate) -> TestSet:
        test_set = self._get_owned(faculty, test_id)
        updates = payload.model_dump(exclude_unset=True)

        questions = payload.questions if "questions" in updates else None
        self._validate(
            updates.get("type", test_set.type),
            updates.get("title", test_set.title),
            questions if questions is not None else test_set.questions,
            updates.get("reading_sections", test_set.reading_sections),
            updates.get("listening_sections", test_set.listening_sections),
        )

        assigned = updates.pop("assigned_students", None)
        updates.pop("questions", None)
        for field, value in updates.items():
            setattr(test_set, field, value)
        if questions is not None:
            test_set.questions = self._build_questions(questions)
        if assigned is not None:
            test_set.assigned_students = self._resolve_students(assigned)

        self.db.commit()
        self.db.refresh(test_set)
        return test_set

    def delete_test(self, faculty: User, test_id: int):
        test_set = self._get_owned(faculty, test_id)
        self.db.delete(test_set)
        self.db.commit()
        logger.info(f"Test {test_id} deleted by faculty {faculty.id}")
