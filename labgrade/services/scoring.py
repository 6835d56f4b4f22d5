import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from sqlalchemy.orm import Session

from labgrade.models.orm import LabAttempt, StructureResponse
from labgrade.services.grader import DEFAULT_POINTS_POSSIBLE, AnswerKey, build_answer_keys, round_half_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreTotals:
    total_earned: float
    total_possible: float
    score: float
    percentage: float


def compute_totals(responses: Iterable[StructureResponse], keys: Mapping[str, AnswerKey], max_points: float) -> ScoreTotals:
    """Totals from effective points: instructor override when set, else the autograded value.

    Possible points cover every structure in the answer key, so unanswered
    structures count as zero earned.
    """
    earned = 0.0
    possible = sum(k.points_possible for k in keys.values())
    for r in responses:
        if r.structure_id not in keys:
            possible += DEFAULT_POINTS_POSSIBLE
        earned += float(r.effective_points)
    if possible <= 0:
        return ScoreTotals(earned, possible, 0.0, 0.0)
    ratio = earned / possible
    return ScoreTotals(
        total_earned=round_half_up(earned),
        total_possible=round_half_up(possible),
        score=round_half_up(float(max_points) * ratio),
        percentage=round_half_up(100.0 * ratio),
    )


def recalculate_attempt_score(db: Session, attempt: LabAttempt) -> ScoreTotals:
    """Recompute and store an attempt's score and percentage. Does not commit."""
    keys = build_answer_keys(attempt.lab)
    totals = compute_totals(attempt.responses, keys, attempt.lab.max_points)
    attempt.score = totals.score
    attempt.percentage = totals.percentage
    db.flush()
    logger.debug("Attempt %s totals: %s/%s -> %s (%s%%)", attempt.id, totals.total_earned,
                 totals.total_possible, totals.score, totals.percentage)
    return totals
