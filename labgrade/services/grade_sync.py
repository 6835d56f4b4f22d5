"""
Grade passback for graded attempts.

``deliver_grade`` makes exactly one delivery attempt and appends exactly one
``GradeSyncLog`` row for it. It never raises for a delivery problem; the
returned ``SyncResult`` says whether the failure is worth retrying, and the
queue job turns ``retryable`` into an exception.
"""
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from labgrade.core import errors
from labgrade.models.orm import GradeSyncLog, LabAttempt, User
from labgrade.services.gradebook import GradeBookClient, ScorePayload

logger = logging.getLogger(__name__)


class SyncKind(str, enum.Enum):
    SUCCESS = "success"
    TERMINAL = "terminal"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class SyncResult:
    attempt_id: str
    kind: SyncKind
    log_status: str
    http_status: int = 0
    message: str = ""

    @property
    def success(self) -> bool:
        return self.kind is SyncKind.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.kind is SyncKind.RETRYABLE

    def to_dict(self) -> dict:
        return {
            "attemptId": self.attempt_id,
            "success": self.success,
            "status": self.http_status,
            "syncStatus": self.log_status,
            "retryable": self.retryable,
            "message": self.message,
        }


def _append_log(db: Session, attempt_id: str, status: str, payload: Optional[dict]) -> GradeSyncLog:
    row = GradeSyncLog(attempt_id=attempt_id, canvas_status=status, canvas_response=payload)
    db.add(row)
    db.commit()
    return row


def deliver_grade(db: Session, attempt_id: str, client: GradeBookClient) -> SyncResult:
    attempt = db.get(LabAttempt, attempt_id)
    if not attempt:
        raise errors.NotFound(f"Attempt not found: {attempt_id}")
    if attempt.score is None:
        raise errors.PermanentSyncFailure(f"Attempt {attempt_id} has no score; grade it first.", attempt_id)

    if not attempt.lti_outcome_url:
        logger.warning("Attempt %s has no outcome reference; skipping grade sync", attempt_id)
        _append_log(db, attempt_id, "skipped", {"reason": "No LTI outcome URL on attempt"})
        return SyncResult(attempt_id, SyncKind.TERMINAL, "skipped",
                          message="No LTI outcome URL; this attempt was not launched from the grade book.")

    payload = ScorePayload.for_attempt(attempt)
    logger.info("Sending grade for attempt %s: %s/%s", attempt_id, payload.score_given, payload.score_maximum)
    try:
        response = client.publish_score(attempt.lti_outcome_url, payload)
    except Exception as e:
        logger.error("Grade sync error for attempt %s: %s", attempt_id, e)
        _append_log(db, attempt_id, "error", {"error": str(e), "type": type(e).__name__})
        return SyncResult(attempt_id, SyncKind.RETRYABLE, "error", message=f"Grade sync failed: {e}")

    if response.ok:
        _append_log(db, attempt_id, "success", {"status": response.status, "body": response.body})
        logger.info("Grade sync succeeded for attempt %s (HTTP %s)", attempt_id, response.status)
        return SyncResult(attempt_id, SyncKind.SUCCESS, "success", response.status, "Grade synced.")

    _append_log(db, attempt_id, "failed", {"status": response.status, "body": response.body})
    logger.warning("Grade book rejected attempt %s (HTTP %s)", attempt_id, response.status)
    return SyncResult(attempt_id, SyncKind.TERMINAL, "failed", response.status,
                      f"Grade book returned HTTP {response.status}")


def list_sync_logs(db: Session, attempt_id: str) -> List[GradeSyncLog]:
    return list(db.scalars(
        select(GradeSyncLog).where(GradeSyncLog.attempt_id == attempt_id).order_by(GradeSyncLog.synced_at.desc())
    ))


def graded_attempt_ids(db: Session, lab_id: str) -> List[str]:
    return list(db.scalars(select(LabAttempt.id).where(LabAttempt.lab_id == lab_id, LabAttempt.status == "graded")))


@dataclass(frozen=True)
class GradeRow:
    attempt: LabAttempt
    last_sync: Optional[GradeSyncLog]

    @property
    def sync_status(self) -> str:
        return self.last_sync.canvas_status if self.last_sync else "not_synced"


def lab_grade_rows(db: Session, lab_id: str) -> List[GradeRow]:
    """Submitted and graded attempts of a lab by student name, each with its newest sync log."""
    attempts = db.scalars(
        select(LabAttempt)
        .join(User, LabAttempt.student_id == User.id)
        .where(LabAttempt.lab_id == lab_id, LabAttempt.status.in_(("submitted", "graded")))
        .order_by(User.name, LabAttempt.attempt_number)
    )
    return [GradeRow(a, a.sync_logs[0] if a.sync_logs else None) for a in attempts]
