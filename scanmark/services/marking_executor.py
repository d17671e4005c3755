"""
Marking executor: bounded worker pool over marking tasks.

A fixed number of workers drain one FIFO queue. Each worker marks a task,
runs the guillotine on the result and records it; a failing task is logged
and dropped without touching its siblings. The pool is done when every
worker has exited, i.e. the queue is empty and nothing is in flight.
"""

import asyncio
import logging
from typing import Dict, List, Sequence

from pydantic import BaseModel, Field

from scanmark.exceptions import MarkingTaskError
from scanmark.models.marking import MarkingTask, QuestionResult
from scanmark.models.page import StandardizedPage
from scanmark.services.guillotine import enforce_mark_budget
from scanmark.services.marking_service import MarkingService
from scanmark.utils.question_numbers import question_sort_key

logger = logging.getLogger(__name__)


class ExecutionReport(BaseModel):
    """Outcome of one pool run."""
    results: List[QuestionResult] = Field(default_factory=list)
    failures: List[str] = Field(default_factory=list, description="Question numbers that failed")
    peak_concurrency: int = 0


async def mark_task(
    task: MarkingTask,
    service: MarkingService,
    pages: Sequence[StandardizedPage] = (),
) -> QuestionResult:
    """
    Mark one task and enforce its scheme's budget.

    Raises:
        MarkingTaskError: If the marking service fails
    """
    try:
        raw = await service.mark(task, pages)
    except Exception as e:
        raise MarkingTaskError(
            f"Marking failed for question {task.question_number}: {e}",
            question_number=task.question_number,
            original_exception=e,
        ) from e

    outcome = enforce_mark_budget(raw.annotations, task.scheme, raw.score, raw.feedback)

    default_page = task.source_pages[0] if task.source_pages else None
    annotations = [
        a if a.page_index is not None or default_page is None
        else a.model_copy(update={"page_index": default_page})
        for a in outcome.annotations
    ]

    return QuestionResult(
        question_number=task.question_number,
        score=outcome.score,
        annotations=annotations,
        student_work=raw.student_work or task.student_work,
        question_text=raw.question_text or task.question_text,
        feedback=outcome.feedback,
        source_image_indices=list(task.source_pages),
        usage_tokens=raw.usage_tokens,
    )


async def execute_marking_tasks(
    tasks: Sequence[MarkingTask],
    service: MarkingService,
    concurrency: int = 5,
    pages: Sequence[StandardizedPage] = (),
) -> ExecutionReport:
    """
    Mark every task with at most ``concurrency`` marking calls in flight.

    Args:
        tasks: Marking tasks, queued in the given order
        service: External marking service
        concurrency: Pool size (maximum concurrent marking calls)
        pages: Submission pages; each task is sent the pages it spans

    Returns:
        ExecutionReport with results sorted by question number. Failed tasks
        are absent from results and listed in failures.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1 (got: {concurrency})")

    queue: asyncio.Queue[MarkingTask] = asyncio.Queue()
    for task in tasks:
        queue.put_nowait(task)

    pages_by_index: Dict[int, StandardizedPage] = {page.index: page for page in pages}
    results: List[QuestionResult] = []
    failures: List[str] = []
    active = 0
    peak = 0

    async def _worker(worker_id: int) -> None:
        nonlocal active, peak
        while True:
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            active += 1
            peak = max(peak, active)
            try:
                task_pages = [pages_by_index[i] for i in task.source_pages if i in pages_by_index]
                result = await mark_task(task, service, task_pages)
                results.append(result)
                logger.info(
                    f"[worker {worker_id}] Question {task.question_number} marked: {result.score.score_text}"
                )
            except Exception as e:
                failures.append(task.question_number)
                logger.error(f"[worker {worker_id}] {e}")
            finally:
                active -= 1
                queue.task_done()

    pool_size = min(concurrency, len(tasks))
    logger.info(f"Marking {len(tasks)} task(s) with {pool_size} worker(s)")

    await asyncio.gather(*(_worker(i) for i in range(pool_size)))
    await queue.join()

    if failures:
        logger.warning(f"{len(failures)} marking task(s) failed: {failures}")

    return ExecutionReport(
        results=sorted(results, key=lambda r: question_sort_key(r.question_number)),
        failures=failures,
        peak_concurrency=peak,
    )
