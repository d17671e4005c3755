"""
Page standardization: uploaded files -> uniform list of page images.

PDFs are rasterised with PyMuPDF, images are measured with Pillow. Both run
in worker threads, concurrently; results are re-associated with their
upload position, never with completion order.
"""

import asyncio
import io
import logging
from typing import List, Tuple

import fitz  # PyMuPDF
from PIL import Image

from scanmark.exceptions import InputValidationError, PageConversionError
from scanmark.models.page import StandardizedPage, UploadedFile
from scanmark.services.file_validator import FileKind

logger = logging.getLogger(__name__)

RenderedPage = Tuple[bytes, int, int, str]


def _render_pdf(content: bytes, dpi: int) -> List[RenderedPage]:
    """Rasterise every page of a PDF to PNG."""
    rendered: List[RenderedPage] = []
    with fitz.open(stream=content, filetype="pdf") as doc:
        for page in doc:
            pix = page.get_pixmap(dpi=dpi)
            rendered.append((pix.tobytes("png"), pix.width, pix.height, "image/png"))
    return rendered


def _measure_image(content: bytes, content_type: str) -> RenderedPage:
    """Read pixel dimensions without decoding the whole raster."""
    with Image.open(io.BytesIO(content)) as image:
        width, height = image.size
        mime_type = content_type if content_type.startswith("image/") else (
            Image.MIME.get(image.format or "", "image/png")
        )
    return content, width, height, mime_type


async def _convert_pdf(upload: UploadedFile, dpi: int) -> List[RenderedPage]:
    try:
        return await asyncio.to_thread(_render_pdf, upload.content, dpi)
    except Exception as e:
        raise PageConversionError(
            f"Failed to convert PDF '{upload.file_name}': {e}", upload.file_name
        ) from e


async def standardize_pages(
    files: List[UploadedFile],
    kind: FileKind,
    max_pages: int,
    dpi: int = 200,
) -> List[StandardizedPage]:
    """
    Turn validated uploads into pages indexed 0..n-1 in upload order.

    Args:
        files: Validated uploads, all of the same kind
        kind: "pdf" or "image" as returned by validate_uploads
        max_pages: Maximum number of pages allowed for the submission
        dpi: Resolution for rasterising PDFs

    Returns:
        List of StandardizedPage, index == original_upload_index

    Raises:
        InputValidationError: If every PDF failed to convert, or the page
            count exceeds max_pages
    """
    per_file: List[Tuple[UploadedFile, List[RenderedPage]]] = []

    if kind == "pdf":
        results = await asyncio.gather(
            *(_convert_pdf(upload, dpi) for upload in files),
            return_exceptions=True,
        )
        for upload, result in zip(files, results):
            if isinstance(result, BaseException):
                # One bad PDF in a batch contributes no pages
                logger.error(f"PDF conversion failed for {upload.file_name}: {result}")
                continue
            logger.info(f"Converted {upload.file_name}: {len(result)} page(s)")
            per_file.append((upload, result))

        if not any(rendered for _, rendered in per_file):
            raise InputValidationError("All PDF conversions yielded no pages.")
    else:
        measured = await asyncio.gather(
            *(asyncio.to_thread(_measure_image, upload.content, upload.content_type) for upload in files)
        )
        per_file = [(upload, [page]) for upload, page in zip(files, measured)]

    total = sum(len(rendered) for _, rendered in per_file)
    if total > max_pages:
        raise InputValidationError(
            f"Too many pages: {total}. The maximum per submission is {max_pages}."
        )

    pages: List[StandardizedPage] = []
    for upload, rendered in per_file:
        for image_bytes, width, height, mime_type in rendered:
            index = len(pages)
            pages.append(StandardizedPage(
                index=index,
                image_bytes=image_bytes,
                width=width,
                height=height,
                original_file_name=upload.file_name,
                original_upload_index=index,
                mime_type=mime_type,
            ))

    logger.info(f"Standardized {len(files)} file(s) into {len(pages)} page(s)")
    return pages


def _rotate_image(image_bytes: bytes, degrees: int) -> Tuple[bytes, int, int]:
    with Image.open(io.BytesIO(image_bytes)) as image:
        # PIL rotates counter-clockwise; classification reports clockwise
        rotated = image.rotate(-degrees, expand=True)
        buffer = io.BytesIO()
        rotated.save(buffer, format="PNG")
        return buffer.getvalue(), rotated.width, rotated.height


async def rotate_page(page: StandardizedPage, degrees: int) -> StandardizedPage:
    """Return the page turned upright; on failure the original page is kept."""
    degrees = degrees % 360
    if degrees == 0:
        return page

    try:
        image_bytes, width, height = await asyncio.to_thread(_rotate_image, page.image_bytes, degrees)
    except Exception as e:
        logger.error(f"Failed to rotate page {page.index} ({page.original_file_name}): {e}")
        return page

    logger.info(f"Rotated page {page.index} ({page.original_file_name}) by {degrees} degrees")
    return page.model_copy(update={
        "image_bytes": image_bytes,
        "width": width,
        "height": height,
        "mime_type": "image/png",
    })
