"""Pydantic models for page classification and logical questions.

Classification emits per-page question fragments (``DetectedQuestion``);
the question merger folds fragments that share a question number into
logical ``Question`` trees spanning one or more pages.
"""

from typing import List, Literal, Optional

from pydantic import Field

from scanmark.models.base import GeminiCompatibleModel

PageCategory = Literal["questionOnly", "questionAnswer", "metadata", "frontPage"]

META_CATEGORIES = frozenset({"metadata", "frontPage"})


class LinePosition(GeminiCompatibleModel):
    """Bounding box of a line of student work, in page pixels."""
    x: float = Field(description="Left edge")
    y: float = Field(description="Top edge")
    width: float = Field(description="Box width")
    height: float = Field(description="Box height")


class StudentWorkLine(GeminiCompatibleModel):
    """A single line of handwritten work attributed to a question."""
    text: str = Field(description="Transcribed line of student work, '[DRAWING]' for diagrams")
    page_index: Optional[int] = Field(default=None, description="Page the line was written on")
    position: Optional[LinePosition] = Field(default=None, description="Where the line sits on the page")
    id: Optional[str] = Field(default=None, description="Page-scoped identifier (p<page>_...)")
    global_block_id: Optional[str] = Field(default=None, description="OCR block the line maps to")


class SubQuestion(GeminiCompatibleModel):
    """A labelled part of a question; parts nest to arbitrary depth."""
    part: str = Field(description="Part label, e.g. 'a', 'b(i)', 'ii'")
    text: str = Field(default="", description="Printed text of the part")
    student_work: Optional[str] = Field(default=None, description="Student answer text for the part")
    student_work_lines: List[StudentWorkLine] = Field(default_factory=list)
    has_student_drawing: bool = Field(default=False, description="True if the answer includes a drawing")
    page_index: Optional[int] = Field(default=None, description="Page holding the part")
    source_image_indices: List[int] = Field(default_factory=list, description="Every page holding the part")
    sub_questions: List["SubQuestion"] = Field(default_factory=list, description="Nested parts")


class DetectedQuestion(GeminiCompatibleModel):
    """A question fragment as seen on a single page."""
    question_number: Optional[str] = Field(default=None, description="Printed question number, e.g. '11'")
    text: str = Field(default="", description="Printed question text (stem)")
    student_work: Optional[str] = Field(default=None, description="Student answer text for the stem")
    student_work_lines: List[StudentWorkLine] = Field(default_factory=list)
    has_student_drawing: bool = Field(default=False)
    sub_questions: List[SubQuestion] = Field(default_factory=list)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class PageClassificationResponse(GeminiCompatibleModel):
    """Structured output requested from the classification model for one page."""
    category: PageCategory = Field(description="What the page holds")
    rotation: int = Field(default=0, description="Clockwise degrees needed to make the page upright")
    questions: List[DetectedQuestion] = Field(default_factory=list)


class PageClassification(GeminiCompatibleModel):
    """Classification result re-associated with its page."""
    page_index: int = Field(ge=0)
    category: PageCategory
    questions: List[DetectedQuestion] = Field(default_factory=list)
    rotation: int = Field(default=0)
    usage_tokens: int = Field(default=0, ge=0)

    @property
    def is_meta(self) -> bool:
        return self.category in META_CATEGORIES


class Question(GeminiCompatibleModel):
    """A logical question merged across every page it appears on."""
    question_number: Optional[str] = None
    text: str = ""
    student_work: str = ""
    student_work_lines: List[StudentWorkLine] = Field(default_factory=list)
    has_student_drawing: bool = False
    sub_questions: List[SubQuestion] = Field(default_factory=list)
    source_image_index: Optional[int] = None
    source_image_indices: List[int] = Field(default_factory=list)
    confidence: float = 0.9
