"""Page classification adapter.

Asks the page-understanding service what each page holds (category plus
detected questions with student work) and normalizes the answers:

1. Per-page calls run concurrently; results are keyed by page index
2. Category overrides smooth out pages the classifier under-called
3. Mode detection decides between marking and question-only handling
"""

import asyncio
import logging
from typing import List, Literal, Optional, Protocol

from google import genai
from pydantic import BaseModel, Field

from scanmark.config import Settings
from scanmark.models.classification import (
    META_CATEGORIES,
    PageClassification,
    PageClassificationResponse,
)
from scanmark.models.page import StandardizedPage
from scanmark.services.gemini_client import generate_structured, image_part
from scanmark.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

CLASSIFICATION_SYSTEM_INSTRUCTION = """You classify single pages of scanned exam papers.

Return:
* category: "frontPage" for cover sheets, "metadata" for formula sheets or
  instructions with no questions, "questionOnly" for printed questions with
  no handwriting, "questionAnswer" for pages that carry student work.
* rotation: clockwise degrees (0, 90, 180, 270) needed to make the page upright.
* questions: every question visible on the page, with its printed number,
  text, nested sub-questions by part label, and each line of student work
  with its pixel position. Use "[DRAWING]" for diagrams drawn by the student.
Do not mark or correct the work."""


class PageClassifier(Protocol):
    """Contract of the external page-understanding service."""

    async def classify(self, page: StandardizedPage) -> PageClassification:
        ...


class GeminiPageClassifier:
    """Page classifier backed by a Gemini structured-output call."""

    def __init__(self, client: genai.Client, model: str):
        self.client = client
        self.model = model

    @retry_with_backoff()
    async def classify(self, page: StandardizedPage) -> PageClassification:
        response, tokens = await generate_structured(
            self.client,
            self.model,
            [image_part(page.image_bytes, page.mime_type), f"Classify page {page.index + 1}."],
            PageClassificationResponse,
            system_instruction=CLASSIFICATION_SYSTEM_INSTRUCTION,
        )
        return PageClassification(
            page_index=page.index,
            category=response.category,
            questions=response.questions,
            rotation=response.rotation,
            usage_tokens=tokens,
        )


async def classify_pages(
    pages: List[StandardizedPage],
    classifier: PageClassifier,
    concurrency: int = 8,
) -> List[PageClassification]:
    """
    Classify every page concurrently.

    A page whose classification fails is treated as a question-only page
    with nothing detected, so the rest of the submission can proceed.

    Returns:
        One PageClassification per page, sorted by page index
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def _classify_one(page: StandardizedPage) -> PageClassification:
        async with semaphore:
            try:
                result = await classifier.classify(page)
            except Exception as e:
                logger.error(f"Classification failed for page {page.index} ({page.original_file_name}): {e}")
                return PageClassification(page_index=page.index, category="questionOnly")
        # Re-associate by page, not by whatever the service echoed back
        if result.page_index != page.index:
            result = result.model_copy(update={"page_index": page.index})
        return result

    results = await asyncio.gather(*(_classify_one(page) for page in pages))
    return sorted(results, key=lambda r: r.page_index)


# ---------------------------------------------------------------------------
# Category overrides
# ---------------------------------------------------------------------------

class OverrideThresholds(BaseModel):
    """Thresholds for rewriting questionOnly pages as questionAnswer."""

    student_work_ratio: float = Field(default=0.9, ge=0.0, le=1.0)
    student_work_min_pages: int = Field(default=5, ge=0)
    safety_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    safety_min_pages: int = Field(default=2, ge=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OverrideThresholds":
        return cls(
            student_work_ratio=settings.student_work_ratio,
            student_work_min_pages=settings.student_work_min_pages,
            safety_ratio=settings.safety_ratio,
            safety_min_pages=settings.safety_min_pages,
        )


def _recategorize(
    results: List[PageClassification], source: str, target: str
) -> List[PageClassification]:
    return [
        r.model_copy(update={"category": target}) if r.category == source else r
        for r in results
    ]


def apply_category_overrides(
    results: List[PageClassification],
    thresholds: Optional[OverrideThresholds] = None,
) -> List[PageClassification]:
    """
    Smooth page categories across a submission.

    When most non-meta pages carry student work, the remaining
    question-only pages almost always hold work the classifier missed
    (neat drawings, faint pencil), so they are promoted to questionAnswer.
    If nothing at all carries student work, front pages are treated as
    question pages so they are answered rather than skipped.

    Returns:
        New list of PageClassification; the input is not modified
    """
    thresholds = thresholds or OverrideThresholds()

    non_meta = [r for r in results if r.category not in META_CATEGORIES]
    with_work = [r for r in non_meta if r.category == "questionAnswer"]
    ratio = len(with_work) / len(non_meta) if non_meta else 0.0

    if len(non_meta) > thresholds.student_work_min_pages and ratio >= thresholds.student_work_ratio:
        logger.info(
            f"Student-work override: {len(with_work)}/{len(non_meta)} pages have student work, "
            "promoting questionOnly pages"
        )
        results = _recategorize(results, "questionOnly", "questionAnswer")
    elif len(non_meta) > thresholds.safety_min_pages and ratio > thresholds.safety_ratio:
        logger.info(
            f"Safety override: {len(with_work)}/{len(non_meta)} pages have student work, "
            "promoting questionOnly pages"
        )
        results = _recategorize(results, "questionOnly", "questionAnswer")

    has_student_work = any(r.category == "questionAnswer" for r in results)
    if not has_student_work and any(r.category == "frontPage" for r in results):
        logger.info("No student work detected, treating front pages as question pages")
        results = _recategorize(results, "frontPage", "questionOnly")

    return results


def detect_mode(results: List[PageClassification]) -> Literal["marking", "question"]:
    """Marking mode when any page carries student work, question mode otherwise."""
    if any(r.category == "questionAnswer" for r in results):
        return "marking"
    return "question"
