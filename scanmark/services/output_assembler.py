"""Output assembly: scores, per-page annotation grouping and the final output."""

import logging
from typing import Dict, List, Literal, Optional, Sequence

from scanmark.models.marking import Annotation, QuestionResult, Score
from scanmark.models.pipeline import AnnotatedPage, FinalOutput, OverallScore, ProcessingStats
from scanmark.utils.question_numbers import base_question_number

logger = logging.getLogger(__name__)


def calculate_overall_score(results: Sequence[QuestionResult]) -> OverallScore:
    """Sum awarded marks; count each base question's total only once.

    Split results for "3a" and "3b" share question 3's total, so totals are
    de-duplicated by base question number.
    """
    awarded = 0
    totals: Dict[str, int] = {}
    for result in results:
        awarded += result.score.awarded_marks
        key = base_question_number(result.question_number) or result.question_number
        totals.setdefault(key, result.score.total_marks)

    total = sum(totals.values())
    return OverallScore(awarded_marks=awarded, total_marks=total, score_text=f"{awarded}/{total}")


def result_page(result: QuestionResult) -> Optional[int]:
    """Page a result's score mark is drawn on: its first source page."""
    return min(result.source_image_indices) if result.source_image_indices else None


def calculate_per_page_scores(results: Sequence[QuestionResult]) -> Dict[int, List[Score]]:
    """Question scores grouped by the page they are displayed on, in question order."""
    per_page: Dict[int, List[Score]] = {}
    for result in results:
        page = result_page(result)
        if page is None:
            continue
        per_page.setdefault(page, []).append(result.score)
    return per_page


def group_annotations_by_page(results: Sequence[QuestionResult]) -> Dict[int, List[Annotation]]:
    """Annotations keyed by page; unplaced annotations go to the result's first page."""
    grouped: Dict[int, List[Annotation]] = {}
    for result in results:
        fallback = result_page(result)
        for annotation in result.annotations:
            page = annotation.page_index if annotation.page_index is not None else fallback
            if page is None:
                logger.warning(
                    f"Dropping annotation for question {result.question_number} with no page"
                )
                continue
            grouped.setdefault(page, []).append(annotation)
    return grouped


def build_final_output(
    submission_id: str,
    results: Sequence[QuestionResult],
    annotated_pages: Sequence[AnnotatedPage],
    mode: Literal["marking", "question"],
    stats: ProcessingStats,
    session_id: Optional[str] = None,
) -> FinalOutput:
    """Assemble the run's final output, pages in logical order."""
    return FinalOutput(
        submission_id=submission_id,
        annotated_output=sorted(annotated_pages, key=lambda p: p.page_index),
        results=list(results),
        mode=mode,
        session_id=session_id,
        processing_stats=stats,
        overall_score=calculate_overall_score(results),
    )
