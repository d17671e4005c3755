"""Pydantic models for OCR output."""

from typing import Any, Dict, List, Optional

from pydantic import Field

from scanmark.models.base import GeminiCompatibleModel


class OcrBlock(GeminiCompatibleModel):
    """A block of recognised text (often a line of working or a formula)."""
    id: Optional[str] = Field(default=None, description="Stable identifier, p<page>_ocr_<seq> once indexed")
    text: str = Field(description="Recognised text, LaTeX for mathematics")
    bbox: Optional[List[float]] = Field(default=None, description="[x, y, width, height] in page pixels")
    page_index: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PageOcrResponse(GeminiCompatibleModel):
    """Structured output requested from the OCR model for one page."""
    text: str = Field(default="", description="Full page text in reading order")
    math_blocks: List[OcrBlock] = Field(default_factory=list)


class PageOcrResult(GeminiCompatibleModel):
    """OCR result re-associated with its page."""
    page_index: int = Field(ge=0)
    text: str = ""
    math_blocks: List[OcrBlock] = Field(default_factory=list)
    usage_tokens: int = Field(default=0, ge=0)
