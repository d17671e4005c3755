"""
Mark-budget enforcement ("guillotine").

The marking service can award more marks than the scheme allows. This pass
is the deterministic backstop: awarded annotations are trimmed by priority
until every sub-question, and then the whole question, fits its budget, and
the score is recomputed from what survives.

Priority by mark code: accuracy (A) > independent (B) > method (M) > other.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence, Set

from pydantic import BaseModel, Field

from scanmark.models.marking import Annotation, MarkingScheme, Score, ServiceScore
from scanmark.utils.question_numbers import normalize_sub_question_key

logger = logging.getLogger(__name__)

MARK_PRIORITY: Dict[str, int] = {"A": 3, "B": 2, "M": 1}

# A code is a whole token: letters, digits and an optional "ft" (follow-through)
_MARK_CODE = re.compile(r"^[A-Za-z]{1,3}(\d+)(?:ft)?(?=$|[\s,;.])", re.IGNORECASE)
_MATH_TEXT = re.compile(r"[\\{}=^_()+*/×÷]|\w-\w|sqrt|frac")


class GuillotineResult(BaseModel):
    """Annotations and score after budget enforcement."""
    annotations: List[Annotation] = Field(default_factory=list)
    score: Score = Field(default_factory=Score)
    feedback: str = ""
    removed_marks: int = 0


def annotation_priority(annotation: Annotation) -> int:
    """3 for A-codes, 2 for B-codes, 1 for M-codes, 0 otherwise."""
    text = (annotation.text or "").strip()
    return MARK_PRIORITY.get(text[:1].upper(), 0)


def annotation_value(annotation: Annotation) -> int:
    """Marks an annotation is worth.

    Read from a leading mark-code token ("A2" -> 2, "B1ft" -> 1), else 1. Text that
    looks like mathematics is always worth 1 so formula digits are never
    taken for a mark value.
    """
    text = (annotation.text or "").strip()
    if _MATH_TEXT.search(text):
        return 1
    match = _MARK_CODE.match(text)
    if match:
        return int(match.group(1))
    return 1


def is_awarded(annotation: Annotation) -> bool:
    """Ticks, and any non-cross annotation carrying a positive mark code."""
    action = annotation.action.lower()
    if action == "cross":
        return False
    if action == "tick":
        return True
    match = _MARK_CODE.match((annotation.text or "").strip())
    return bool(match) and int(match.group(1)) > 0


def _trim_to_budget(
    candidates: Sequence[int],
    budget: int,
    priorities: List[int],
    values: List[int],
    kept: Set[int],
) -> None:
    """Keep candidates by descending priority while the running total fits."""
    running = 0
    for index in sorted(candidates, key=lambda i: -priorities[i]):
        if running + values[index] <= budget:
            running += values[index]
        else:
            kept.discard(index)


def enforce_mark_budget(
    annotations: Sequence[Annotation],
    scheme: Optional[MarkingScheme],
    service_score: Optional[ServiceScore] = None,
    feedback: str = "",
) -> GuillotineResult:
    """
    Trim awarded annotations to the scheme's budgets and rescore.

    Args:
        annotations: Annotations returned by the marking service
        scheme: Resolved marking scheme, or None
        service_score: Score self-reported by the marking service
        feedback: Feedback text from the marking service

    Returns:
        GuillotineResult. Without a scheme, everything passes through and the
        service's own score is used.
    """
    if scheme is None:
        reported = service_score or ServiceScore()
        return GuillotineResult(
            annotations=list(annotations),
            score=Score(
                awarded_marks=reported.awarded_marks,
                total_marks=reported.total_marks,
                score_text=f"{reported.awarded_marks}/{reported.total_marks}",
            ),
            feedback=feedback,
        )

    budgets = {normalize_sub_question_key(k): v for k, v in scheme.sub_question_max_scores.items()}
    priorities = [annotation_priority(a) for a in annotations]
    values = [annotation_value(a) for a in annotations]
    awarded = [i for i, a in enumerate(annotations) if is_awarded(a)]
    kept: Set[int] = set(range(len(annotations)))

    # Per sub-question pass
    groups: Dict[str, List[int]] = {}
    for index in awarded:
        groups.setdefault(normalize_sub_question_key(annotations[index].sub_question), []).append(index)
    for key, members in groups.items():
        budget = budgets.get(key)
        if budget is not None:
            _trim_to_budget(members, budget, priorities, values, kept)

    # Global pass across the whole question
    survivors = [i for i in awarded if i in kept]
    if sum(values[i] for i in survivors) > scheme.total_marks:
        _trim_to_budget(survivors, scheme.total_marks, priorities, values, kept)

    awarded_marks = sum(values[i] for i in awarded if i in kept)
    removed_marks = sum(values[i] for i in awarded if i not in kept)

    if removed_marks:
        logger.info(
            f"Question {scheme.question_key}: removed {removed_marks} excess mark(s), "
            f"{awarded_marks}/{scheme.total_marks} remain"
        )
        note = f"(Note: {removed_marks} excess marks removed to fit budget)"
        feedback = f"{feedback} {note}" if feedback else note

    return GuillotineResult(
        annotations=[a for i, a in enumerate(annotations) if i in kept],
        score=Score(
            awarded_marks=awarded_marks,
            total_marks=scheme.total_marks,
            score_text=f"{awarded_marks}/{scheme.total_marks}",
        ),
        feedback=feedback,
        removed_marks=removed_marks,
    )
