"""
Answer grading for structure identification.

Everything here is pure: the same (answer, hints, key) always produces the
same ``GradeOutcome``. Keys are plain values built from the lab catalog by
``build_answer_keys`` so the grader never touches the database.
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from labgrade.core.config import settings

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

DEFAULT_POINTS_POSSIBLE = 1.0


@dataclass(frozen=True)
class AnswerKey:
    structure_id: str
    name: str
    latin_name: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    points_possible: float = DEFAULT_POINTS_POSSIBLE
    hint_penalty_percent: float = 10.0
    fuzzy_match: bool = True

    def terms(self) -> List[str]:
        """Every accepted name, normalized, without blanks or duplicates."""
        raw = [self.name, self.latin_name, *self.aliases]
        seen: List[str] = []
        for term in raw:
            norm = normalize_answer(term)
            if norm and norm not in seen:
                seen.append(norm)
        return seen


@dataclass(frozen=True)
class GradeOutcome:
    match_type: str
    is_correct: bool
    points_earned: float
    distance: Optional[int] = field(default=None, compare=False)


def round_half_up(value: float, places: int = 2) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def normalize_answer(answer: Optional[str]) -> str:
    """Case-fold, drop punctuation and collapse whitespace."""
    if not answer:
        return ""
    text = _PUNCTUATION.sub("", answer.casefold())
    return _WHITESPACE.sub(" ", text).strip()


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(current[j - 1] + 1, previous[j] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def hint_adjusted_points(points_possible: float, hints_used: int, penalty_percent: float) -> float:
    """Linear per-hint deduction, floored at zero."""
    factor = max(0.0, 1.0 - max(0, hints_used) * penalty_percent / 100.0)
    return round_half_up(points_possible * factor)


def grade_answer(answer: Optional[str], hints_used: int, key: AnswerKey,
                 max_distance: Optional[int] = None) -> GradeOutcome:
    max_distance = settings.FUZZY_MAX_DISTANCE if max_distance is None else max_distance
    candidate = normalize_answer(answer)
    if not candidate:
        return GradeOutcome("incorrect", False, 0.0)

    terms = key.terms()
    if candidate in terms:
        return GradeOutcome("exact", True, hint_adjusted_points(key.points_possible, hints_used, key.hint_penalty_percent), 0)

    if key.fuzzy_match and terms:
        best = min(levenshtein_distance(candidate, t) for t in terms)
        if best <= max_distance:
            return GradeOutcome("fuzzy", True, hint_adjusted_points(key.points_possible, hints_used, key.hint_penalty_percent), best)

    return GradeOutcome("incorrect", False, 0.0)


def _rubric_value(rubric: dict, name: str, default):
    value = rubric.get(name)
    return default if value is None else value


def answer_key_for(lab, structure, points_possible: Optional[float] = None) -> AnswerKey:
    """Key for one structure, with the lab rubric's penalty, fuzzy toggle and aliases."""
    rubric = lab.rubric or {}
    aliases = rubric.get("acceptedAliases") or {}
    return AnswerKey(
        structure_id=structure.id,
        name=structure.name,
        latin_name=structure.latin_name,
        aliases=tuple(aliases.get(structure.id) or ()),
        points_possible=float(DEFAULT_POINTS_POSSIBLE if points_possible is None else points_possible),
        hint_penalty_percent=float(_rubric_value(rubric, "hintPenaltyPercent", settings.DEFAULT_HINT_PENALTY_PERCENT)),
        fuzzy_match=rubric.get("fuzzyMatch") is not False,
    )


def build_answer_keys(lab) -> Dict[str, AnswerKey]:
    """Answer keys for every structure of a lab, keyed by structure id.

    Reads ``hintPenaltyPercent``, ``fuzzyMatch`` and ``acceptedAliases`` from
    the lab rubric; anything missing or null falls back to the configured
    defaults.
    """
    return {ls.structure.id: answer_key_for(lab, ls.structure, ls.points_possible) for ls in lab.structures}
