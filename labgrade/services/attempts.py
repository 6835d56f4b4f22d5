"""
Attempt lifecycle: not_started -> in_progress -> submitted -> graded.

Each public function is one transition. Callers pass an open session; every
transition commits on success and rolls back on failure, so a failed submit
leaves the attempt exactly where it was.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from labgrade.core import errors
from labgrade.core.auth import TokenData
from labgrade.models.orm import ACTIVE_STATUSES, Lab, LabAttempt, StructureResponse
from labgrade.services.grader import AnswerKey, answer_key_for, build_answer_keys, grade_answer
from labgrade.services.scoring import recalculate_attempt_score

logger = logging.getLogger(__name__)


@dataclass
class StructureGrade:
    response_id: str
    structure_id: str
    structure_name: Optional[str]
    student_answer: Optional[str]
    match_type: str
    is_correct: bool
    points_earned: float
    points_possible: float
    hints_used: int


@dataclass
class GradeReport:
    attempt_id: str
    score: float
    max_points: float
    percentage: float
    structures: List[StructureGrade] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _latest_attempt(db: Session, lab_id: str, student_id: str, statuses: Sequence[str]) -> Optional[LabAttempt]:
    return db.scalar(
        select(LabAttempt)
        .where(LabAttempt.lab_id == lab_id, LabAttempt.student_id == student_id, LabAttempt.status.in_(statuses))
        .order_by(LabAttempt.attempt_number.desc())
        .limit(1)
    )


def get_attempt(db: Session, attempt_id: str) -> LabAttempt:
    attempt = db.get(LabAttempt, attempt_id)
    if not attempt:
        raise errors.NotFound(f"Attempt with ID {attempt_id} does not exist.")
    return attempt


def get_attempt_for_user(db: Session, attempt_id: str, user: TokenData) -> LabAttempt:
    """Load an attempt, enforcing that students only see their own."""
    attempt = get_attempt(db, attempt_id)
    if not user.is_staff and attempt.student_id != user.sub:
        raise errors.Forbidden("You can only access your own attempts.")
    return attempt


def get_or_create_attempt(db: Session, lab_id: str, user: TokenData) -> LabAttempt:
    lab = db.get(Lab, lab_id)
    if not lab:
        raise errors.NotFound(f"Lab with ID {lab_id} does not exist.")
    if not lab.is_published and not user.is_staff:
        raise errors.NotFound("Lab not found.")

    attempt = _latest_attempt(db, lab_id, user.sub, ACTIVE_STATUSES)
    if attempt:
        return attempt

    previous = db.scalar(
        select(func.count()).select_from(LabAttempt).where(LabAttempt.lab_id == lab_id, LabAttempt.student_id == user.sub)
    ) or 0
    attempt = LabAttempt(lab_id=lab_id, student_id=user.sub, attempt_number=previous + 1, status="not_started")
    db.add(attempt)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent request created this attempt number first
        db.rollback()
        attempt = _latest_attempt(db, lab_id, user.sub, ACTIVE_STATUSES)
        if not attempt:
            raise
        return attempt
    db.refresh(attempt)
    logger.info("Created attempt #%s for student %s on lab %s", attempt.attempt_number, user.sub, lab_id)
    return attempt


def start_attempt(db: Session, lab_id: str, student_id: str) -> LabAttempt:
    attempt = _latest_attempt(db, lab_id, student_id, ("not_started",))
    if not attempt:
        raise errors.NotFound("No unstarted attempt found. Get /labs/{id}/attempt first.")
    attempt.status = "in_progress"
    attempt.started_at = _utcnow()
    db.commit()
    db.refresh(attempt)
    logger.info("Started attempt %s for student %s", attempt.id, student_id)
    return attempt


def upsert_responses(db: Session, attempt_id: str, user: TokenData, items: Sequence) -> List[StructureResponse]:
    """Insert or replace one response per structure. Latest write wins."""
    if not items:
        raise errors.ValidationError("At least one response is required.")
    attempt = get_attempt(db, attempt_id)
    if attempt.student_id != user.sub and not user.is_staff:
        raise errors.Forbidden("You can only submit responses for your own attempts.")
    if not attempt.is_active:
        raise errors.ValidationError(f'Cannot modify a finalized attempt (status "{attempt.status}").')

    allowed = {ls.structure_id for ls in attempt.lab.structures}
    unknown = [item.structure_id for item in items if item.structure_id not in allowed]
    if unknown:
        raise errors.ValidationError(f"Structure {unknown[0]} is not part of this lab.")

    saved: dict[str, StructureResponse] = {}
    for item in items:
        row = saved.get(item.structure_id) or db.scalar(
            select(StructureResponse).where(
                StructureResponse.attempt_id == attempt_id, StructureResponse.structure_id == item.structure_id
            )
        )
        if row is None:
            row = StructureResponse(attempt_id=attempt_id, structure_id=item.structure_id)
            db.add(row)
        row.student_answer = item.student_answer
        row.confidence_level = item.confidence_level
        row.hints_used = item.hints_used
        row.time_spent_seconds = item.time_spent_seconds
        saved[item.structure_id] = row
    db.commit()
    for row in saved.values():
        db.refresh(row)
    return list(saved.values())


def submit_attempt(db: Session, lab_id: str, student_id: str, now: Optional[datetime] = None) -> GradeReport:
    """Submit and grade the in-progress attempt in a single transaction."""
    attempt = _latest_attempt(db, lab_id, student_id, ("in_progress",))
    if not attempt:
        raise errors.NotFound("No in-progress attempt found. Start an attempt first.")

    now = now or _utcnow()
    try:
        attempt.time_spent_seconds = (
            max(0, int((now - _as_utc(attempt.started_at)).total_seconds())) if attempt.started_at else 0
        )
        attempt.submitted_at = now
        attempt.status = "submitted"
        db.flush()

        report = _grade_responses(db, attempt)

        attempt.status = "graded"
        attempt.graded_at = _utcnow()
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Submit failed for attempt %s; rolled back", attempt.id)
        raise

    db.refresh(attempt)
    logger.info("Graded attempt %s: %s/%s (%s%%)", attempt.id, report.score, report.max_points, report.percentage)
    return report


def _key_for(keys: Dict[str, AnswerKey], lab: Lab, response: StructureResponse) -> AnswerKey:
    # Structures removed from the lab after the answer was saved are worth the default point
    return keys.get(response.structure_id) or answer_key_for(lab, response.structure)


def _grade_responses(db: Session, attempt: LabAttempt) -> GradeReport:
    keys = build_answer_keys(attempt.lab)
    structures: List[StructureGrade] = []
    for response in attempt.responses:
        key = _key_for(keys, attempt.lab, response)
        outcome = grade_answer(response.student_answer, response.hints_used, key)
        response.match_type = outcome.match_type
        response.is_correct = outcome.is_correct
        response.points_earned = outcome.points_earned
        response.auto_graded = True
        structures.append(StructureGrade(
            response_id=response.id,
            structure_id=response.structure_id,
            structure_name=key.name,
            student_answer=response.student_answer,
            match_type=outcome.match_type,
            is_correct=outcome.is_correct,
            points_earned=outcome.points_earned,
            points_possible=key.points_possible,
            hints_used=response.hints_used,
        ))
    totals = recalculate_attempt_score(db, attempt)
    return GradeReport(attempt.id, totals.score, float(attempt.lab.max_points), totals.percentage, structures)


def override_response_grade(db: Session, attempt_id: str, response_id: str, override_points: float,
                            feedback: Optional[str] = None) -> LabAttempt:
    attempt = get_attempt(db, attempt_id)
    response = db.scalar(
        select(StructureResponse).where(StructureResponse.id == response_id, StructureResponse.attempt_id == attempt_id)
    )
    if not response:
        raise errors.NotFound("Response not found in this attempt.")
    if attempt.status != "graded":
        raise errors.ValidationError(f'Only graded attempts can be overridden (status "{attempt.status}").')

    ceiling = _key_for(build_answer_keys(attempt.lab), attempt.lab, response).points_possible
    if override_points < 0 or override_points > ceiling:
        raise errors.ValidationError(f"Override must be between 0 and {ceiling} points.")

    try:
        response.instructor_override = override_points
        response.auto_graded = False
        if feedback:
            attempt.instructor_feedback = feedback
        recalculate_attempt_score(db, attempt)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(attempt)
    logger.info("Instructor override on attempt %s: response %s -> %s points", attempt_id, response_id, override_points)
    return attempt
