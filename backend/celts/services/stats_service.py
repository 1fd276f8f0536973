import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import AuthorizationError, BadRequestError, NotFoundError
from ..models.audit_log import AuditLog
from ..models.student_stats import StudentStats
from ..models.submission import Submission
from ..models.user import User, UserRole
from ..utils.timezone import utcnow, to_iso

logger = logging.getLogger(__name__)

OVERRIDABLE_STATS_SKILLS = ("writing", "speaking")
OVERRIDE_AUDIT_ACTIONS = ("score_override", "submission_score_override")


def round_half_band(value: float) -> float:
    """Rounds to the nearest 0.5, halves going up (6.25 -> 6.5)."""
    return math.floor(value * 2 + 0.5) / 2


def compute_band_score(earned: float, maximum: float) -> Optional[float]:
    if not maximum or maximum <= 0:
        return None
    return round_half_band(earned / maximum * 9)


def overall_band(bands: Iterable[Optional[float]]) -> Optional[float]:
    present = [b for b in bands if isinstance(b, (int, float)) and b > 0]
    if not present:
        return None
    return round_half_band(sum(present) / len(present))


def normalize_band(value: Any) -> float:
    """Clamps an override to 1..9 in 0.5 steps."""
    try:
        band = float(value)
    except (TypeError, ValueError):
        band = 1.0
    if band != band:
        band = 1.0
    return round_half_band(min(9.0, max(1.0, band)))


def serialize_stats(stats: Optional[StudentStats]) -> Optional[Dict[str, Any]]:
    if stats is None:
        return None
    return {
        "id": stats.id,
        "studentId": stats.student_id,
        "name": stats.student.full_name if stats.student else None,
        "email": stats.student.email if stats.student else None,
        "systemId": stats.student.system_id if stats.student else None,
        "readingBand": stats.reading_band,
        "listeningBand": stats.listening_band,
        "writingBand": stats.writing_band,
        "speakingBand": stats.speaking_band,
        "writingExaminerSummary": stats.writing_examiner_summary,
        "speakingExaminerSummary": stats.speaking_examiner_summary,
        "overallBand": stats.overall_band,
        "hasManualOverride": bool(stats.has_manual_override),
        "updatedAt": to_iso(stats.updated_at),
    }


def _bands_snapshot(stats: StudentStats) -> Dict[str, Optional[float]]:
    return {
        "readingBand": stats.reading_band,
        "listeningBand": stats.listening_band,
        "writingBand": stats.writing_band,
        "speakingBand": stats.speaking_band,
        "overallBand": stats.overall_band,
    }


class StatsService:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create(self, student_id: int) -> StudentStats:
        stats = self.db.query(StudentStats).filter(StudentStats.student_id == student_id).first()
        if stats is None:
            stats = StudentStats(student_id=student_id)
            self.db.add(stats)
        return stats

    def recompute_overall(self, stats: StudentStats) -> Optional[float]:
        stats.overall_band = overall_band(stats.bands().values())
        return stats.overall_band

    def update_stats_for_skill(
        self,
        student_id: int,
        skill: str,
        band_score: Optional[float],
        evaluation: Optional[Dict[str, Any]] = None,
    ) -> StudentStats:
        """Stores the latest band for a skill and refreshes the overall band. Caller commits."""
        stats = self.get_or_create(student_id)
        if band_score is not None:
            stats.set_band(skill, band_score)

        summary = evaluation.get("examiner_summary") if isinstance(evaluation, dict) else None
        if isinstance(summary, str):
            if skill == "writing":
                stats.writing_examiner_summary = summary
            elif skill == "speaking":
                stats.speaking_examiner_summary = summary

        self.recompute_overall(stats)
        return stats

    def get_student_stats(self, student_id: int) -> Optional[Dict[str, Any]]:
        stats = self.db.query(StudentStats).filter(StudentStats.student_id == student_id).first()
        return serialize_stats(stats)

    def list_all(self) -> List[Dict[str, Any]]:
        rows = self.db.query(StudentStats).order_by(StudentStats.student_id).all()
        return [serialize_stats(s) for s in rows]

    # ------------------------------------------------------------------
    # overrides

    def _ensure_can_edit_scores(self, user: User):
        if user.role == UserRole.ADMIN:
            return
        if user.role == UserRole.FACULTY and user.can_edit_scores:
            return
        raise AuthorizationError("Not allowed to override scores")

    def _audit(self, user: User, action: str, target_type: str, target_id: int, **fields) -> AuditLog:
        entry = AuditLog(
            action=action,
            target_type=target_type,
            target_id=target_id,
            changed_by=user.id,
            changed_by_role=user.role,
            **fields,
        )
        self.db.add(entry)
        return entry

    def override_band(
        self, user: User, stats_id: int, skill: str, new_band: float, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Overrides a student's writing or speaking band and their latest submission for it."""
        if skill not in OVERRIDABLE_STATS_SKILLS:
            raise BadRequestError('skill must be either "writing" or "speaking"')
        if new_band is None or not 0 <= float(new_band) <= 9:
            raise BadRequestError("newBandScore must be between 0 and 9")

        stats = self.db.get(StudentStats, stats_id)
        if stats is None:
            raise NotFoundError("Student stats not found")
        self._ensure_can_edit_scores(user)

        now = utcnow()
        new_band = float(new_band)
        old_band = stats.band_for(skill)
        stats.set_band(skill, new_band)
        self.recompute_overall(stats)
        stats.has_manual_override = True

        submission_info = None
        latest = (
            self.db.query(Submission)
            .filter(Submission.student_id == stats.student_id, Submission.skill == skill)
            .order_by(Submission.created_at.desc(), Submission.id.desc())
            .first()
        )
        if latest is not None:
            old_submission_band = latest.band_score
            if latest.original_band_score is None:
                latest.original_band_score = old_submission_band
            latest.band_score = new_band
            latest.is_overridden = True
            latest.overridden_by = user.id
            latest.override_reason = reason or ""
            latest.overridden_at = now
            submission_info = {
                "submissionId": latest.id,
                "oldBandScore": old_submission_band,
                "newBandScore": new_band,
            }
            self._audit(
                user,
                "score_override",
                "Submission",
                latest.id,
                meta={"studentId": stats.student_id, "testSetId": latest.test_set_id, "skill": skill},
                old_value={"skill": skill, "bandScore": old_submission_band},
                new_value={"skill": skill, "bandScore": new_band},
                reason=reason or "",
            )

        self.db.flush()
        self._audit(
            user,
            "student_stats_override",
            "StudentStats",
            stats.id,
            meta={"studentId": stats.student_id},
            old_value={"skill": skill, "band": old_band},
            new_value={"skill": skill, "band": new_band, "overallBand": stats.overall_band},
            reason=reason or "",
        )
        self.db.commit()

        logger.info(f"User {user.id} overrode {skill} band for stats {stats.id}: {old_band} -> {new_band}")
        return {
            "message": "Band score overridden successfully",
            "studentStatsId": stats.id,
            "skill": skill,
            "oldBand": old_band,
            "newBand": new_band,
            "overallBand": stats.overall_band,
            "submission": submission_info,
        }

    def override_submission(
        self, user: User, submission_id: int, new_band: Any, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        if new_band is None:
            raise BadRequestError("newBandScore is required")

        submission = self.db.get(Submission, submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        self._ensure_can_edit_scores(user)

        normalized = normalize_band(new_band)
        old_band = submission.band_score
        if not submission.is_overridden:
            submission.original_band_score = old_band
        submission.band_score = normalized
        submission.override_reason = reason or ""
        submission.overridden_by = user.id
        submission.is_overridden = True
        submission.overridden_at = utcnow()

        stats = self.get_or_create(submission.student_id)
        self.db.flush()
        before = _bands_snapshot(stats)
        if submission.skill in ("reading", "listening", "writing", "speaking"):
            stats.set_band(submission.skill, normalized)
        self.recompute_overall(stats)
        after = _bands_snapshot(stats)

        self._audit(
            user,
            "submission_score_override",
            "Submission",
            submission.id,
            meta={"studentId": submission.student_id, "testSetId": submission.test_set_id, "skill": submission.skill},
            old_value={"bandScore": old_band, "originalBandScore": submission.original_band_score},
            new_value={"bandScore": normalized},
            reason=reason or "",
        )
        self._audit(
            user,
            "student_stats_band_update",
            "StudentStats",
            stats.id,
            meta={"studentId": submission.student_id, "skillUpdated": submission.skill, "viaSubmissionId": submission.id},
            old_value=before,
            new_value=after,
            reason=reason or f"Band updated via submission override for {submission.skill}",
        )
        self.db.commit()

        logger.info(f"User {user.id} overrode submission {submission.id}: {old_band} -> {normalized}")
        return {
            "message": "Score overridden",
            "submission": {
                "id": submission.id,
                "skill": submission.skill,
                "bandScore": submission.band_score,
                "originalBandScore": submission.original_band_score,
                "isOverridden": True,
                "overrideReason": submission.override_reason,
                "overriddenBy": submission.overridden_by,
                "overriddenAt": to_iso(submission.overridden_at),
            },
            "stats": after,
        }

    def list_override_audit(self) -> List[Dict[str, Any]]:
        logs = (
            self.db.query(AuditLog)
            .filter(AuditLog.action.in_(OVERRIDE_AUDIT_ACTIONS), AuditLog.target_type == "Submission")
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .all()
        )
        submissions = {
            s.id: s
            for s in self.db.query(Submission).filter(Submission.id.in_([log.target_id for log in logs])).all()
        } if logs else {}

        result = []
        for log in logs:
            submission = submissions.get(log.target_id)
            if submission is None or submission.student is None:
                continue
            student = submission.student
            changed_by = log.changed_by_user
            result.append(
                {
                    "id": log.id,
                    "action": log.action,
                    "studentId": student.id,
                    "studentName": student.full_name,
                    "studentSystemId": student.system_id,
                    "studentEmail": student.email,
                    "skill": submission.skill,
                    "oldBandScore": (log.old_value or {}).get("bandScore"),
                    "newBandScore": (log.new_value or {}).get("bandScore"),
                    "reason": log.reason or "",
                    "changedAt": to_iso(log.created_at),
                    "submissionId": submission.id,
                    "facultyId": changed_by.id if changed_by else None,
                    "facultyName": changed_by.full_name if changed_by else "Unknown",
                    "facultySystemId": changed_by.system_id if changed_by else None,
                }
            )
        return result
