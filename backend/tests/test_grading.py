"""
Tests for skill submissions, auto-grading and worker-side AI grading
"""
import asyncio
import os
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from celts.core.config import settings
from celts.models.student_stats import StudentStats
from celts.models.submission import Submission, SubmissionStatus
from celts.models.test_attempt import TestAttempt
from celts.services.grading_service import GradingService
from celts.services.media_storage import media_storage
from celts.services.timer_service import exam_timer_service
from celts.utils.openai_service import EvaluationError, openai_service
from celts.utils.timezone import utcnow

from conftest import auth_headers, start_exam

ALL_CORRECT = [
    {"questionIndex": 0, "answer": 0},
    {"questionIndex": 1, "answer": 1},
    {"questionIndex": 2, "answer": 2},
]


@pytest.fixture
def queued_grading():
    with patch("celts.tasks.grading.grade_submission") as task:
        task.delay.return_value = MagicMock(id="job-123")
        yield task


def writing_response(test_set, first="First essay text", second="Second essay text"):
    questions = sorted(test_set.questions, key=lambda q: q.position)
    return {str(questions[0].id): {"text": first}, str(questions[1].id): {"text": second}}


class TestObjectiveSubmission:

    def test_reading_is_graded_immediately(self, client, db, student, student_headers, reading_test):
        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Submission accepted and auto-graded"
        assert data["jobId"] is None
        assert data["summary"]["bandScore"] == 9.0
        assert data["summary"]["correctCount"] == 3
        assert data["summary"]["maxMarks"] == 4

        stats = db.query(StudentStats).filter(StudentStats.student_id == student.id).one()
        assert stats.reading_band == 9.0
        assert stats.overall_band == 9.0

    def test_partial_answers(self, client, student_headers, reading_test):
        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": [{"questionIndex": 0, "answer": 0}, {"questionIndex": 2, "answer": 1}]},
            headers=student_headers,
        )

        summary = response.json()["summary"]
        assert summary["totalMarks"] == 1
        assert summary["attemptedCount"] == 2
        assert summary["unattemptedCount"] == 1
        assert summary["incorrectCount"] == 1
        assert summary["bandScore"] == 2.5

    def test_resubmission_replaces_row(self, client, db, student, student_headers, reading_test):
        url = f"/api/v1/student/submit/{reading_test.id}/reading"
        first = client.post(url, json={"response": ALL_CORRECT[:1]}, headers=student_headers).json()
        second = client.post(url, json={"response": ALL_CORRECT}, headers=student_headers).json()

        assert first["submissionId"] == second["submissionId"]
        assert db.query(Submission).filter(Submission.student_id == student.id).count() == 1

    def test_student_stats_endpoint(self, client, student_headers, reading_test):
        assert client.get("/api/v1/student/stats", headers=student_headers).json() is None

        client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        )

        stats = client.get("/api/v1/student/stats", headers=student_headers).json()
        assert stats["readingBand"] == 9.0
        assert stats["writingBand"] is None


class TestSubmissionValidation:

    def test_invalid_skill(self, client, student_headers, reading_test):
        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/grammar",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        )
        assert response.status_code == 400
        assert "validSkills" in response.json()

    def test_missing_response(self, client, student_headers, reading_test):
        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading", json={}, headers=student_headers
        )
        assert response.status_code == 400
        assert response.json()["message"] == "response is required"

    def test_unknown_test(self, client, student_headers):
        response = client.post(
            "/api/v1/student/submit/999/reading", json={"response": ALL_CORRECT}, headers=student_headers
        )
        assert response.status_code == 404

    def test_foreign_media_path(self, client, other_student, student_headers, speaking_test):
        response = client.post(
            f"/api/v1/student/submit/{speaking_test.id}/speaking",
            json={"mediaPath": f"uploads/student_media/{other_student.id}/clip.webm"},
            headers=student_headers,
        )
        assert response.status_code == 403

    def test_traversal_media_path_rejected(self, client, student, student_headers, speaking_test):
        client.post(
            "/api/v1/student/media/upload",
            files={"media": ("answer.webm", b"fake-audio-bytes", "audio/webm")},
            headers=student_headers,
        )
        victim = os.path.join(settings.upload_base_dir, "victim.txt")
        with open(victim, "w") as f:
            f.write("keep me")

        response = client.post(
            f"/api/v1/student/submit/{speaking_test.id}/speaking",
            json={"mediaPath": f"uploads/student_media/{student.id}/../../../victim.txt"},
            headers=student_headers,
        )

        assert response.status_code == 403
        assert os.path.exists(victim)

    def test_locked_after_exam_submit(self, client, student_headers, reading_test):
        _, attempt_id = start_exam(client, student_headers, reading_test.id)
        client.post("/api/v1/security/exam/submit", json={"attemptId": attempt_id}, headers=student_headers)

        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "SUBMISSION_LOCKED"

    def test_submission_during_exam_links_attempt(self, client, db, student_headers, reading_test):
        _, attempt_id = start_exam(client, student_headers, reading_test.id)
        data = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        ).json()

        assert db.get(TestAttempt, attempt_id).submission_id == data["submissionId"]

    def expire_attempt(self, db, attempt_id, seconds_ago):
        attempt = db.get(TestAttempt, attempt_id)
        attempt.deadline_at = utcnow() - timedelta(seconds=seconds_ago)
        db.commit()
        exam_timer_service.auto_submit_exam(attempt_id, "time_expired", db=db)

    def test_late_upload_within_grace_after_time_expiry(self, client, db, student_headers, reading_test):
        _, attempt_id = start_exam(client, student_headers, reading_test.id)
        self.expire_attempt(db, attempt_id, seconds_ago=10)

        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        )

        assert response.status_code == 200

    def test_submission_rejected_after_grace_period(self, client, db, student_headers, reading_test):
        _, attempt_id = start_exam(client, student_headers, reading_test.id)
        self.expire_attempt(db, attempt_id, seconds_ago=settings.submission_grace_seconds + 60)

        response = client.post(
            f"/api/v1/student/submit/{reading_test.id}/reading",
            json={"response": ALL_CORRECT},
            headers=student_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "SUBMISSION_WINDOW_CLOSED"
        assert db.query(Submission).count() == 0


class TestQueuedSubmission:

    def test_writing_is_queued(self, client, db, student_headers, writing_test, queued_grading):
        response = client.post(
            f"/api/v1/student/submit/{writing_test.id}/writing",
            json={"response": writing_response(writing_test)},
            headers=student_headers,
        )

        assert response.status_code == 202
        data = response.json()
        assert data["message"] == "Submission accepted for grading"
        assert data["jobId"] == "job-123"
        queued_grading.delay.assert_called_once_with(data["submissionId"])

        submission = db.get(Submission, data["submissionId"])
        assert submission.status == SubmissionStatus.PENDING
        assert submission.attempted_count == 2
        assert submission.grading_job_id == "job-123"

    def test_broker_failure_keeps_submission_pending(self, client, db, student_headers, writing_test, queued_grading):
        queued_grading.delay.side_effect = ConnectionError("broker down")

        response = client.post(
            f"/api/v1/student/submit/{writing_test.id}/writing",
            json={"response": writing_response(writing_test)},
            headers=student_headers,
        )

        assert response.status_code == 202
        assert response.json()["jobId"] is None
        assert db.get(Submission, response.json()["submissionId"]).status == SubmissionStatus.PENDING

    def test_media_upload_and_speaking_submit(self, client, student, student_headers, speaking_test, queued_grading):
        upload = client.post(
            "/api/v1/student/media/upload",
            files={"media": ("answer.webm", b"fake-audio-bytes", "audio/webm")},
            headers=student_headers,
        )

        assert upload.status_code == 200
        media_path = upload.json()["mediaPath"]
        assert media_path.startswith(f"uploads/student_media/{student.id}/")
        assert media_path.endswith(".webm")

        response = client.post(
            f"/api/v1/student/submit/{speaking_test.id}/speaking",
            json={"mediaPath": media_path},
            headers=student_headers,
        )
        assert response.status_code == 202

    def test_upload_rejects_non_media(self, client, student_headers):
        response = client.post(
            "/api/v1/student/media/upload",
            files={"media": ("notes.txt", b"hello", "text/plain")},
            headers=student_headers,
        )
        assert response.status_code == 400

    def test_submission_view_is_owner_only(self, client, other_student, student_headers, writing_test, queued_grading):
        submission_id = client.post(
            f"/api/v1/student/submit/{writing_test.id}/writing",
            json={"response": writing_response(writing_test)},
            headers=student_headers,
        ).json()["submissionId"]

        own = client.get(f"/api/v1/student/submissions/{submission_id}", headers=student_headers)
        assert own.status_code == 200
        assert own.json()["status"] == SubmissionStatus.PENDING

        foreign = client.get(f"/api/v1/student/submissions/{submission_id}", headers=auth_headers(other_student))
        assert foreign.status_code == 403


class TestGradePending:

    def make_submission(self, db, student, test_set, skill, response):
        submission = Submission(
            student_id=student.id,
            test_set_id=test_set.id,
            skill=skill,
            response=response,
            status=SubmissionStatus.PENDING,
        )
        db.add(submission)
        db.commit()
        return submission

    def test_writing_grading(self, db, student, writing_test):
        submission = self.make_submission(db, student, writing_test, "writing", writing_response(writing_test))
        evaluation = {"band_score": 6, "examiner_summary": "Clear ideas.", "criteria_breakdown": {"coherence": 6}}

        with patch.object(openai_service, "grade_writing", AsyncMock(return_value=evaluation)) as grade:
            result = asyncio.run(GradingService(db).grade_pending(submission.id))

        assert grade.await_count == 2
        assert result["bandScore"] == 6.0

        db.refresh(submission)
        assert submission.status == SubmissionStatus.GRADED
        assert submission.total_marks == 6.0
        assert submission.max_marks == 9
        assert len(submission.evaluation["tasks"]) == 2
        assert submission.evaluation["examiner_summary"].startswith("Task 1 (task1): Clear ideas.")

        stats = db.query(StudentStats).filter(StudentStats.student_id == student.id).one()
        assert stats.writing_band == 6.0
        assert stats.writing_examiner_summary == submission.evaluation["examiner_summary"]

    def test_writing_grading_failure(self, db, student, writing_test):
        submission = self.make_submission(db, student, writing_test, "writing", writing_response(writing_test))

        failing = AsyncMock(side_effect=EvaluationError("model unavailable"))
        with patch.object(openai_service, "grade_writing", failing):
            with pytest.raises(EvaluationError):
                asyncio.run(GradingService(db).grade_pending(submission.id))

        db.refresh(submission)
        assert submission.status == SubmissionStatus.FAILED
        assert submission.grading_error == "model unavailable"

    def test_speaking_from_transcription(self, db, student, speaking_test):
        submission = self.make_submission(
            db, student, speaking_test, "speaking", {"transcription": "I live in a small town."}
        )
        evaluation = {"band_score": 7.5, "examiner_summary": "Fluent."}

        with patch.object(openai_service, "grade_speaking", AsyncMock(return_value=evaluation)) as grade:
            asyncio.run(GradingService(db).grade_pending(submission.id))

        grade.assert_awaited_once_with(["Describe your hometown"], "I live in a small town.")
        db.refresh(submission)
        assert submission.band_score == 7.5
        stats = db.query(StudentStats).filter(StudentStats.student_id == student.id).one()
        assert stats.speaking_examiner_summary == "Fluent."

    def test_speaking_without_input_fails(self, db, student, speaking_test):
        submission = self.make_submission(db, student, speaking_test, "speaking", {})

        with pytest.raises(EvaluationError):
            asyncio.run(GradingService(db).grade_pending(submission.id))

        db.refresh(submission)
        assert submission.status == SubmissionStatus.FAILED

    def test_objective_skill_is_ignored(self, db, student, reading_test):
        submission = self.make_submission(db, student, reading_test, "reading", ALL_CORRECT)

        result = asyncio.run(GradingService(db).grade_pending(submission.id))
        assert result == {"submissionId": submission.id, "status": SubmissionStatus.PENDING}


class TestMediaOwnership:

    def test_own_local_path(self, student):
        assert media_storage.belongs_to(f"uploads/student_media/{student.id}/clip.webm", student.id)

    def test_other_students_local_path(self, student, other_student):
        assert not media_storage.belongs_to(f"uploads/student_media/{other_student.id}/clip.webm", student.id)

    def test_prefix_embedded_in_foreign_path(self, student):
        assert not media_storage.belongs_to(f"elsewhere/uploads/student_media/{student.id}/clip.webm", student.id)

    def test_traversal_out_of_own_directory(self, student, other_student):
        escaped = f"uploads/student_media/{student.id}/../{other_student.id}/clip.webm"
        assert not media_storage.belongs_to(escaped, student.id)

    def test_absolute_path(self, student):
        assert not media_storage.belongs_to("/etc/passwd", student.id)

    def test_own_directory_itself(self, student):
        assert not media_storage.belongs_to(f"uploads/student_media/{student.id}", student.id)

    def test_s3_paths(self, student, other_student):
        bucket = media_storage.bucket
        assert media_storage.belongs_to(f"s3://{bucket}/student_media/{student.id}/clip.webm", student.id)
        assert not media_storage.belongs_to(f"s3://other-bucket/student_media/{student.id}/clip.webm", student.id)
        assert not media_storage.belongs_to(
            f"s3://{bucket}/student_media/{other_student.id}/clip.webm", student.id
        )
        assert not media_storage.belongs_to(
            f"s3://{bucket}/student_media/{student.id}/../{other_student.id}/clip.webm", student.id
        )

    def test_empty_path(self, student):
        assert not media_storage.belongs_to("", student.id)
