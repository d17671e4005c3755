"""Pydantic models for marking schemes, tasks, annotations and results."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from scanmark.models.base import GeminiCompatibleModel
from scanmark.models.classification import Question

ANNOTATION_ACTIONS = ("tick", "cross", "circle", "underline", "write")


class MarkingScheme(BaseModel):
    """Point budget for one logical question.

    ``sub_question_max_scores`` is keyed by normalized sub-question key
    ("a", "bii", "root").
    """

    question_key: str = Field(description="Question number the scheme belongs to")
    total_marks: int = Field(ge=0)
    sub_question_max_scores: Dict[str, int] = Field(default_factory=dict)
    is_generic: bool = Field(
        default=False,
        description="True for schemes synthesised without a known past paper"
    )
    content: str = Field(default="", description="Scheme text handed to the marking service")


class Annotation(GeminiCompatibleModel):
    """A single mark placed on a page by the marking service."""
    bbox: List[float] = Field(default_factory=list, description="[x, y, width, height] in page pixels")
    action: str = Field(description="One of tick, cross, circle, underline, write")
    text: Optional[str] = Field(default=None, description="Mark code, e.g. 'M1', 'A2', 'B1'")
    reasoning: Optional[str] = Field(default=None, description="Why the mark was withheld (crosses)")
    sub_question: Optional[str] = Field(default=None, description="Part the annotation belongs to")
    classification_text: Optional[str] = Field(default=None, description="Student text the mark refers to")
    page_index: Optional[int] = Field(default=None, description="Page the annotation is drawn on")
    source_position_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ServiceScore(GeminiCompatibleModel):
    """Score as self-reported by the marking service."""
    awarded_marks: int = Field(default=0)
    total_marks: int = Field(default=0)


class MarkingServiceResult(GeminiCompatibleModel):
    """Response contract of the external marking call for one task."""
    annotations: List[Annotation] = Field(default_factory=list)
    score: ServiceScore = Field(default_factory=ServiceScore)
    feedback: str = Field(default="")
    student_work: Optional[str] = Field(default=None, description="Student work as read by the marker")
    question_text: Optional[str] = Field(default=None, description="Question text as read by the marker")
    usage_tokens: int = Field(default=0, ge=0)


class Score(BaseModel):
    """Score of one question after budget enforcement."""
    awarded_marks: int = 0
    total_marks: int = 0
    score_text: str = "0/0"


class MarkingTask(BaseModel):
    """One logical question bundled with everything needed to mark it."""
    question_number: str
    question: Question
    scheme: Optional[MarkingScheme] = None
    question_text: str = ""
    student_work: str = ""
    ocr_text: str = ""
    block_ids: List[str] = Field(default_factory=list)
    source_pages: List[int] = Field(default_factory=list)


class QuestionResult(BaseModel):
    """Final marking outcome for one logical question."""
    question_number: str
    score: Score = Field(default_factory=Score)
    annotations: List[Annotation] = Field(default_factory=list)
    student_work: str = ""
    question_text: str = ""
    feedback: str = ""
    source_image_indices: List[int] = Field(default_factory=list)
    usage_tokens: int = 0
