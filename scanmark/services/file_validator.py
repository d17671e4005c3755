"""
Upload validation for exam-paper submissions.

Provides the input checks that fail a submission outright:
- No files / empty files
- File size limits
- Supported types (PDF or raster image) and no PDF/image mixing
- Filename sanitization
"""

import io
import logging
import re
from pathlib import Path
from typing import List, Literal

from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from scanmark.exceptions import InputValidationError
from scanmark.models.page import UploadedFile

logger = logging.getLogger(__name__)

FileKind = Literal["pdf", "image"]

PDF_MIME_TYPE = "application/pdf"
PDF_MAGIC = b"%PDF-"
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".tif", ".tiff", ".heic"}


async def read_upload(file: UploadFile) -> UploadedFile:
    """Read a FastAPI upload into memory with a sanitized name."""
    content = await file.read()
    return UploadedFile(
        file_name=sanitize_filename(file.filename or "upload"),
        content=content,
        content_type=file.content_type or "application/octet-stream",
    )


def detect_file_kind(upload: UploadedFile) -> FileKind:
    """
    Decide whether an upload is a PDF or an image.

    The declared content type (or extension) says what the client claims;
    the bytes must agree before the file is accepted.

    Raises:
        InputValidationError: If the file is neither, or lies about its type
    """
    declared = (upload.content_type or "").lower()
    extension = Path(upload.file_name).suffix.lower()

    claims_pdf = declared == PDF_MIME_TYPE or extension == ".pdf"
    claims_image = declared.startswith("image/") or extension in IMAGE_EXTENSIONS

    if claims_pdf:
        if not upload.content.startswith(PDF_MAGIC):
            raise InputValidationError(
                f"File '{upload.file_name}' is declared as PDF but is not a valid PDF"
            )
        return "pdf"

    if claims_image:
        try:
            with Image.open(io.BytesIO(upload.content)) as image:
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise InputValidationError(
                f"File '{upload.file_name}' is declared as an image but could not be read: {e}"
            ) from e
        return "image"

    raise InputValidationError(
        f"Unsupported file type for '{upload.file_name}' ({declared or 'unknown'}). "
        "Upload PDFs or images."
    )


def validate_uploads(files: List[UploadedFile], max_file_size_mb: int) -> FileKind:
    """
    Validate a whole submission and return the kind shared by its files.

    Accepted shapes: one PDF, several PDFs, one image, several images.

    Raises:
        InputValidationError: No files, empty or oversized files, unsupported
            types, or a mix of PDFs and images
    """
    if not files:
        raise InputValidationError("No files uploaded.")

    max_bytes = max_file_size_mb * 1024 * 1024
    kinds = set()
    for upload in files:
        if len(upload.content) == 0:
            raise InputValidationError(f"File '{upload.file_name}' is empty")
        if len(upload.content) > max_bytes:
            raise InputValidationError(
                f"File '{upload.file_name}' too large. Maximum size is {max_file_size_mb}MB"
            )
        kinds.add(detect_file_kind(upload))

    if len(kinds) > 1:
        raise InputValidationError(
            "Mixed uploads are not supported. Upload either PDFs or images, not both."
        )

    kind: FileKind = kinds.pop()
    logger.info(f"Validated {len(files)} {kind} file(s)")
    return kind


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename to prevent path traversal attacks.

    Args:
        filename: Original filename from upload

    Returns:
        Sanitized filename safe for logs and output paths
    """
    filename = Path(filename.replace("\\", "/")).name

    filename = filename.replace("..", "").replace("/", "").replace("\\", "")
    filename = filename.replace("\0", "")

    # Keep only safe characters: alphanumeric, dash, underscore, dot
    filename = re.sub(r'[^a-zA-Z0-9._-]', '_', filename)

    if not filename or filename.strip(".") == "":
        filename = "upload"

    if len(filename) > 255:
        stem, suffix = Path(filename).stem, Path(filename).suffix
        filename = stem[:255 - len(suffix)] + suffix

    return filename
