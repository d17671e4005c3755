"""
Marking API endpoint.

POST /api/mark accepts a submission (PDFs or page images) and streams the
run's progress as Server-Sent Events, ending with the final output.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from scanmark.config import Settings, get_settings
from scanmark.exceptions import InputValidationError, MarkingPipelineError, PageIntegrityError
from scanmark.middleware.rate_limit import RATE_LIMITS, get_limiter
from scanmark.models.page import UploadedFile
from scanmark.models.pipeline import CompleteEvent, ErrorEvent, MarkingOptions
from scanmark.services.file_validator import read_upload
from scanmark.services.pipeline import PipelineCollaborators, run_marking_pipeline, validate_request

router = APIRouter(prefix="/api", tags=["marking"])
limiter = get_limiter()
logger = logging.getLogger(__name__)


def get_pipeline_collaborators() -> Optional[PipelineCollaborators]:
    """Collaborators for a run; None builds the Gemini-backed defaults per request."""
    return None


def format_sse(event: BaseModel) -> str:
    """One Server-Sent Events frame."""
    return f"data: {event.model_dump_json()}\n\n"


def _error_event(error: Exception) -> ErrorEvent:
    if isinstance(error, PageIntegrityError):
        return ErrorEvent(message=str(error), details={"unresolved_pages": error.unresolved_pages})
    if isinstance(error, MarkingPipelineError):
        return ErrorEvent(message=str(error), details={"error_type": type(error).__name__})
    return ErrorEvent(message="Marking failed unexpectedly", details={"error_type": type(error).__name__})


async def stream_marking_events(
    files: List[UploadedFile],
    options: MarkingOptions,
    settings: Settings,
    collaborators: Optional[PipelineCollaborators] = None,
) -> AsyncIterator[str]:
    """Run the pipeline and yield its events as SSE frames until it ends."""
    queue: asyncio.Queue[Optional[BaseModel]] = asyncio.Queue()

    async def _run() -> None:
        try:
            result = await run_marking_pipeline(
                files, options, queue.put, collaborators=collaborators, settings=settings
            )
            await queue.put(CompleteEvent(result=result))
        except MarkingPipelineError as e:
            logger.error(f"Marking run failed: {e}")
            await queue.put(_error_event(e))
        except Exception as e:
            logger.error(f"Unexpected error during marking run: {e}", exc_info=True)
            await queue.put(_error_event(e))
        finally:
            await queue.put(None)

    runner = asyncio.create_task(_run())
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield format_sse(event)
    finally:
        # Client went away mid-stream
        if not runner.done():
            runner.cancel()


@router.post("/mark")
@limiter.limit(RATE_LIMITS["mark"])  # type: ignore[untyped-decorator]
async def mark_submission(
    request: Request,
    files: List[UploadFile] = File(..., description="Exam pages: PDFs or images, not mixed"),
    model: Optional[str] = Form(None, description="Model override"),
    exam_board: Optional[str] = Form(None),
    paper: Optional[str] = Form(None),
    year: Optional[str] = Form(None),
    season: Optional[str] = Form(None),
    question_number: Optional[str] = Form(None),
    marking_scheme: Optional[str] = Form(None, description="JSON object keyed by question number"),
    custom_text: Optional[str] = Form(None),
    session_id: Optional[str] = Form(None),
    collaborators: Optional[PipelineCollaborators] = Depends(get_pipeline_collaborators),
) -> StreamingResponse:
    """
    Mark a submission, streaming progress.

    Returns:
        200: text/event-stream of progress events, then one complete (or
            error) event
        400: Invalid uploads or marking scheme (before streaming starts)
        429: Rate limit exceeded
    """
    settings = get_settings()
    options = MarkingOptions(
        model=model,
        exam_board=exam_board,
        paper=paper,
        year=year,
        season=season,
        question_number=question_number,
        marking_scheme=marking_scheme,
        custom_text=custom_text,
        session_id=session_id,
    )

    uploads = [await read_upload(f) for f in files]
    try:
        kind = validate_request(uploads, options, settings)
    except InputValidationError as e:
        logger.warning(f"Rejected submission: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"Accepted {len(uploads)} {kind} upload(s) for marking")
    return StreamingResponse(
        stream_marking_events(uploads, options, settings, collaborators),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "X-Upload-Kind": kind},
    )
