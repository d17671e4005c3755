"""Marking service adapter: one marking request per logical question."""

import logging
from typing import Any, List, Protocol, Sequence

from google import genai
from pydantic import Field

from scanmark.models.base import GeminiCompatibleModel
from scanmark.models.marking import Annotation, MarkingServiceResult, MarkingTask, ServiceScore
from scanmark.models.page import StandardizedPage
from scanmark.services.gemini_client import generate_structured, image_part
from scanmark.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

MARKING_SYSTEM_INSTRUCTION = """You are an experienced exam marker.
Mark the student's work against the marking scheme. For every mark awarded
or withheld, place one annotation on the page image:
* action: "tick" for an awarded mark, "cross" for a withheld one, "circle",
  "underline" or "write" to point at specific working.
* text: the mark code (e.g. "M1", "A1", "B2").
* reasoning: for crosses, a short reason the mark was withheld.
* sub_question: the part label the mark belongs to (e.g. "a", "b(ii)").
* bbox: [x, y, width, height] of the working in page pixels, page_index: the
  page number (0-based, in the order given).
Report the score and concise feedback."""


class MarkingResponse(GeminiCompatibleModel):
    """Structured output requested from the marking model."""
    annotations: List[Annotation] = Field(default_factory=list)
    score: ServiceScore = Field(default_factory=ServiceScore)
    feedback: str = ""


class MarkingService(Protocol):
    """Contract of the external marking intelligence."""

    async def mark(self, task: MarkingTask, pages: Sequence[StandardizedPage]) -> MarkingServiceResult:
        ...


def build_marking_prompt(task: MarkingTask) -> str:
    """Text part of the marking request."""
    sections = [f"QUESTION {task.question_number}", task.question_text or "(question text unavailable)"]
    if task.scheme is not None:
        sections += [
            f"MARKING SCHEME ({task.scheme.total_marks} marks)",
            task.scheme.content or "(no scheme text)",
        ]
        if task.scheme.sub_question_max_scores:
            budgets = ", ".join(f"{k}: {v}" for k, v in task.scheme.sub_question_max_scores.items())
            sections.append(f"Maximum marks per part: {budgets}")
    sections += ["STUDENT WORK", task.student_work or "(see page images)"]
    if task.ocr_text:
        sections += ["OCR TRANSCRIPT", task.ocr_text]
    if task.block_ids:
        sections += ["OCR BLOCK IDS", ", ".join(task.block_ids)]
    return "\n\n".join(sections)


class GeminiMarkingService:
    """Marking service backed by a Gemini structured-output call."""

    def __init__(self, client: genai.Client, model: str):
        self.client = client
        self.model = model

    @retry_with_backoff()
    async def mark(self, task: MarkingTask, pages: Sequence[StandardizedPage]) -> MarkingServiceResult:
        contents: List[Any] = [image_part(p.image_bytes, p.mime_type) for p in pages]
        contents.append(build_marking_prompt(task))

        response, tokens = await generate_structured(
            self.client,
            self.model,
            contents,
            MarkingResponse,
            system_instruction=MARKING_SYSTEM_INSTRUCTION,
        )

        # The model numbers pages within the request; map back to submission pages
        annotations = []
        for annotation in response.annotations:
            local = annotation.page_index
            if local is not None and 0 <= local < len(pages):
                annotation = annotation.model_copy(update={"page_index": pages[local].index})
            elif local is not None:
                logger.warning(
                    f"Question {task.question_number}: page_index {local} outside the "
                    f"{len(pages)} page(s) sent, using the first source page"
                )
                annotation = annotation.model_copy(update={"page_index": None})
            annotations.append(annotation)

        return MarkingServiceResult(
            annotations=annotations,
            score=response.score,
            feedback=response.feedback,
            usage_tokens=tokens,
        )
