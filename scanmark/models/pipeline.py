"""Pydantic models for pipeline options, progress events and final output."""

import base64
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

from scanmark.models.marking import QuestionResult

MULTI_IMAGE_STEPS: List[str] = [
    "Input Validation",
    "Standardization",
    "Preprocessing",
    "OCR & Classification",
    "Question Detection",
    "Segmentation",
    "Marking",
    "Output Generation",
]


class MarkingOptions(BaseModel):
    """Recognised request options.

    ``marking_scheme`` is either a mapping of question number to scheme
    fields or a JSON string of the same.
    """

    model: Optional[str] = None
    exam_board: Optional[str] = None
    paper: Optional[str] = None
    year: Optional[str] = None
    season: Optional[str] = None
    question_number: Optional[str] = None
    marking_scheme: Optional[Any] = None
    custom_text: Optional[str] = None
    session_id: Optional[str] = None


class ProgressEvent(BaseModel):
    """Emitted once per pipeline stage transition."""
    type: Literal["progress"] = "progress"
    step_index: int
    label: str
    steps: List[str] = Field(default_factory=lambda: list(MULTI_IMAGE_STEPS))


class ProcessingStats(BaseModel):
    """Counters reported alongside the final output."""
    page_count: int = 0
    question_count: int = 0
    tasks_total: int = 0
    tasks_marked: int = 0
    tasks_failed: int = 0
    detection_rate: float = 0.0
    usage_tokens: int = 0
    duration_ms: float = 0.0
    model: str = ""


class OverallScore(BaseModel):
    """Submission-wide score."""
    awarded_marks: int = 0
    total_marks: int = 0
    score_text: str = "0/0"


class AnnotatedPage(BaseModel):
    """One output page with its vector overlay and flattened raster."""
    page_index: int
    width: int
    height: int
    original_file_name: str = ""
    svg: str = ""
    image_bytes: bytes = Field(default=b"", exclude=True, repr=False)
    mime_type: str = "image/jpeg"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def image_data(self) -> str:
        """The flattened image as a data URL."""
        encoded = base64.b64encode(self.image_bytes).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class FinalOutput(BaseModel):
    """Result of one pipeline run."""
    submission_id: str
    annotated_output: List[AnnotatedPage] = Field(default_factory=list)
    results: List[QuestionResult] = Field(default_factory=list)
    mode: Literal["marking", "question"] = "marking"
    session_id: Optional[str] = None
    processing_stats: ProcessingStats = Field(default_factory=ProcessingStats)
    overall_score: OverallScore = Field(default_factory=OverallScore)


class CompleteEvent(BaseModel):
    """Terminal progress event carrying the final output."""
    type: Literal["complete"] = "complete"
    result: FinalOutput


class ErrorEvent(BaseModel):
    """Terminal event sent when a run fails after streaming started."""
    type: Literal["error"] = "error"
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
