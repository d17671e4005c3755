"""
Module: services.pipeline

Purpose:
    Orchestrate one marking run from raw uploads to annotated output.

    Stages (one progress event each):
        0. Input Validation    validate uploads, parse the marking scheme
        1. Standardization     PDFs and images to indexed pages
        2. Preprocessing       classify pages, correct rotation
        3. OCR & Classification  category overrides, mode, OCR
        4. Question Detection  merge fragments, look up schemes
        5. Segmentation        re-index pages, build marking tasks
        6. Marking             bounded pool + mark-budget enforcement
        7. Output Generation   scores and overlay rendering

Key Functions:
    - validate_request(): Input checks shared with the HTTP layer
    - run_marking_pipeline(): Full run, returns FinalOutput
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from scanmark.config import Settings, get_settings
from scanmark.models.classification import PageClassification
from scanmark.models.marking import QuestionResult
from scanmark.models.page import StandardizedPage, UploadedFile
from scanmark.models.pipeline import (
    MULTI_IMAGE_STEPS,
    AnnotatedPage,
    FinalOutput,
    MarkingOptions,
    ProcessingStats,
    ProgressEvent,
)
from scanmark.services.file_validator import FileKind, validate_uploads
from scanmark.services.gemini_client import get_gemini_client
from scanmark.services.marking_executor import execute_marking_tasks
from scanmark.services.marking_service import GeminiMarkingService, MarkingService
from scanmark.services.ocr_service import GeminiOcrService, OcrService, run_ocr
from scanmark.services.output_assembler import (
    build_final_output,
    calculate_overall_score,
    calculate_per_page_scores,
    group_annotations_by_page,
)
from scanmark.services.overlay_renderer import OverlayStyle, render_page
from scanmark.services.page_classifier import (
    GeminiPageClassifier,
    OverrideThresholds,
    PageClassifier,
    apply_category_overrides,
    classify_pages,
    detect_mode,
)
from scanmark.services.page_reindexer import reindex_pages
from scanmark.services.page_standardizer import rotate_page, standardize_pages
from scanmark.services.question_merger import merge_questions
from scanmark.services.scheme_lookup import SchemeLookup, StaticSchemeLookup, parse_marking_scheme
from scanmark.services.task_factory import create_marking_tasks

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class PipelineCollaborators:
    """External services a run talks to."""

    def __init__(
        self,
        classifier: PageClassifier,
        ocr: OcrService,
        scheme_lookup: SchemeLookup,
        marking_service: MarkingService,
    ):
        self.classifier = classifier
        self.ocr = ocr
        self.scheme_lookup = scheme_lookup
        self.marking_service = marking_service

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[str] = None) -> "PipelineCollaborators":
        """Gemini-backed collaborators using the configured (or overridden) model."""
        client = get_gemini_client()
        model_name = model or settings.model_name
        return cls(
            classifier=GeminiPageClassifier(client, model_name),
            ocr=GeminiOcrService(client, model_name),
            scheme_lookup=StaticSchemeLookup(),
            marking_service=GeminiMarkingService(client, model_name),
        )


def validate_request(files: List[UploadedFile], options: MarkingOptions, settings: Settings) -> FileKind:
    """
    Checks that must pass before any work starts.

    Raises:
        InputValidationError: On missing, empty, oversized, unsupported or
            mixed uploads, or an unparseable marking scheme
    """
    kind = validate_uploads(files, settings.max_file_size_mb)
    parse_marking_scheme(options.marking_scheme)
    return kind


async def _emit(callback: Optional[ProgressCallback], step_index: int) -> None:
    event = ProgressEvent(step_index=step_index, label=MULTI_IMAGE_STEPS[step_index])
    logger.info(f"[{step_index + 1}/{len(MULTI_IMAGE_STEPS)}] {event.label}")
    if callback is None:
        return
    outcome = callback(event)
    if inspect.isawaitable(outcome):
        await outcome


async def _correct_rotation(
    pages: List[StandardizedPage],
    classifications: List[PageClassification],
) -> List[StandardizedPage]:
    rotations: Dict[int, int] = {c.page_index: c.rotation for c in classifications}
    return list(await asyncio.gather(*(
        rotate_page(page, rotations.get(page.index, 0)) for page in pages
    )))


async def _render_pages(
    pages: Sequence[StandardizedPage],
    results: Sequence[QuestionResult],
    with_scores: bool,
    total_score: Optional[str],
) -> List[AnnotatedPage]:
    annotations = group_annotations_by_page(results)
    per_page_scores = calculate_per_page_scores(results) if with_scores else {}
    first_page = min((p.index for p in pages), default=None)
    style = OverlayStyle()

    return list(await asyncio.gather(*(
        asyncio.to_thread(
            render_page,
            page,
            annotations.get(page.index, []),
            [s.score_text for s in per_page_scores.get(page.index, [])],
            total_score if page.index == first_page else None,
            style,
        )
        for page in pages
    )))


async def run_marking_pipeline(
    files: List[UploadedFile],
    options: Optional[MarkingOptions] = None,
    progress_callback: Optional[ProgressCallback] = None,
    collaborators: Optional[PipelineCollaborators] = None,
    settings: Optional[Settings] = None,
) -> FinalOutput:
    """
    Run the whole marking pipeline for one submission.

    Args:
        files: Uploaded files (all PDFs or all images)
        options: Request options (model override, marking scheme, session)
        progress_callback: Called (or awaited) with each ProgressEvent
        collaborators: External services; Gemini-backed ones by default
        settings: Application settings; loaded from the environment by default

    Returns:
        FinalOutput with annotated pages, per-question results and stats

    Raises:
        InputValidationError: Bad uploads or marking scheme
        PageIntegrityError: Pages that match no question under a known scheme
    """
    options = options or MarkingOptions()
    settings = settings or get_settings()
    collaborators = collaborators or PipelineCollaborators.from_settings(settings, options.model)
    model_name = options.model or settings.model_name
    submission_id = str(uuid.uuid4())
    started = time.perf_counter()

    logger.info(f"Starting submission {submission_id}: {len(files)} file(s), model={model_name}")

    await _emit(progress_callback, 0)
    kind = validate_request(files, options, settings)

    await _emit(progress_callback, 1)
    pages = await standardize_pages(files, kind, settings.max_upload_pages, settings.pdf_render_dpi)

    await _emit(progress_callback, 2)
    classifications = await classify_pages(
        pages, collaborators.classifier, settings.classification_concurrency
    )
    pages = await _correct_rotation(pages, classifications)

    await _emit(progress_callback, 3)
    classifications = apply_category_overrides(classifications, OverrideThresholds.from_settings(settings))
    mode = detect_mode(classifications)
    ocr_results = await run_ocr(
        pages, classifications, collaborators.ocr, settings.classification_concurrency
    )

    await _emit(progress_callback, 4)
    questions = merge_questions(classifications)
    lookup = await collaborators.scheme_lookup.lookup(questions, options)

    await _emit(progress_callback, 5)
    reindexed = reindex_pages(
        pages, classifications, questions, ocr_results, lookup.schemes.values()
    )
    answer_pages = {c.page_index for c in reindexed.classifications if c.category == "questionAnswer"}
    tasks = create_marking_tasks(
        reindexed.questions, lookup.schemes, reindexed.ocr_results, answer_pages
    ) if mode == "marking" else []

    await _emit(progress_callback, 6)
    results: List[QuestionResult] = []
    failures: List[str] = []
    marking_tokens = 0
    if tasks:
        report = await execute_marking_tasks(
            tasks, collaborators.marking_service, settings.marking_concurrency, reindexed.pages
        )
        results, failures = report.results, report.failures
        marking_tokens = sum(r.usage_tokens for r in results)
        logger.info(f"Peak marking concurrency: {report.peak_concurrency}")
    elif mode == "question":
        logger.info("No student work detected, returning question-only output")

    await _emit(progress_callback, 7)
    stats = ProcessingStats(
        page_count=len(reindexed.pages),
        question_count=len(reindexed.questions),
        tasks_total=len(tasks),
        tasks_marked=len(results),
        tasks_failed=len(failures),
        detection_rate=lookup.detection_rate,
        usage_tokens=(
            sum(c.usage_tokens for c in classifications)
            + sum(r.usage_tokens for r in ocr_results)
            + marking_tokens
        ),
        model=model_name,
    )
    overall = None
    if results:
        overall = calculate_overall_score(results).score_text
    annotated = await _render_pages(reindexed.pages, results, mode == "marking", overall)

    stats.duration_ms = round((time.perf_counter() - started) * 1000, 1)
    output = build_final_output(submission_id, results, annotated, mode, stats, options.session_id)
    logger.info(
        f"Submission {submission_id} complete: {output.overall_score.score_text} "
        f"({stats.tasks_marked}/{stats.tasks_total} marked, {stats.duration_ms:.0f}ms)"
    )
    return output
