"""Pydantic models for standardized page images."""

from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field


class StandardizedPage(BaseModel):
    """One physical page, rasterised and indexed in upload order.

    ``index`` starts out equal to ``original_upload_index`` and is rewritten
    once, by the page re-indexer, into logical question order.
    """

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, description="Current position of the page in the submission")
    image_bytes: bytes = Field(repr=False, description="Encoded raster image (PNG or JPEG)")
    width: int = Field(gt=0, description="Pixel width of the image")
    height: int = Field(gt=0, description="Pixel height of the image")
    original_file_name: str = Field(description="Name of the uploaded file this page came from")
    original_upload_index: int = Field(ge=0, description="Index of the page in upload order")
    mime_type: str = Field(default="image/png", description="MIME type of image_bytes")


class UploadedFile(BaseModel):
    """Raw file as received from the HTTP layer or the CLI."""

    file_name: str
    content: bytes = Field(repr=False)
    content_type: str = Field(default="application/octet-stream")


PageDimensions = Dict[int, Tuple[int, int]]


def dimensions_map(pages: List[StandardizedPage]) -> PageDimensions:
    """Map page index -> (width, height)."""
    return {page.index: (page.width, page.height) for page in pages}
