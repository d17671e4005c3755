"""Marking task creation.

Bundles each logical question with its scheme, the OCR text of its pages
and stable line identifiers. Questions detected under split numbers
("11a", "11b") are folded back into one task per base question number.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from scanmark.models.classification import Question, StudentWorkLine, SubQuestion
from scanmark.models.marking import MarkingScheme, MarkingTask
from scanmark.models.ocr import PageOcrResult
from scanmark.services.question_merger import merge_sub_questions
from scanmark.utils.identifiers import encode_page_id
from scanmark.utils.question_numbers import base_question_number, part_suffix, question_sort_key

logger = logging.getLogger(__name__)


def _walk_sub_questions(
    subs: Iterable[SubQuestion], prefix: str = ""
) -> Iterable[Tuple[str, SubQuestion]]:
    for sub in subs:
        label = f"{prefix}{sub.part}"
        yield label, sub
        yield from _walk_sub_questions(sub.sub_questions, label)


def format_question_text(question: Question, base: str) -> str:
    """Question stem as "<n>. text" followed by one "<part>) text" block per part."""
    blocks = []
    if question.text:
        blocks.append(f"{base}. {question.text}")
    for label, sub in _walk_sub_questions(question.sub_questions):
        if sub.text:
            blocks.append(f"{label}) {sub.text}")
    return "\n\n".join(blocks)


def collect_student_work(question: Question) -> str:
    """All student work in the question tree, parts labelled."""
    parts = [question.student_work] if question.student_work else []
    for label, sub in _walk_sub_questions(question.sub_questions):
        if sub.student_work:
            parts.append(f"{label}) {sub.student_work}")
    return "\n".join(parts)


def assign_line_ids(question: Question, base: str) -> Question:
    """Give every unlabelled work line a ``p<page>_q<n>_line_<seq>`` id."""
    counter = 0
    fallback_page = question.source_image_index or 0

    def _label(lines: List[StudentWorkLine], page: Optional[int]) -> List[StudentWorkLine]:
        nonlocal counter
        labelled = []
        for line in lines:
            counter += 1
            if line.id:
                labelled.append(line)
                continue
            line_page = line.page_index if line.page_index is not None else (
                page if page is not None else fallback_page
            )
            labelled.append(line.model_copy(update={
                "id": encode_page_id(line_page, f"q{base}_line", counter),
            }))
        return labelled

    def _sub(sub: SubQuestion) -> SubQuestion:
        return sub.model_copy(update={
            "student_work_lines": _label(sub.student_work_lines, sub.page_index),
            "sub_questions": [_sub(child) for child in sub.sub_questions],
        })

    return question.model_copy(update={
        "student_work_lines": _label(question.student_work_lines, question.source_image_index),
        "sub_questions": [_sub(sub) for sub in question.sub_questions],
    })


def _as_sub_question(question: Question) -> SubQuestion:
    return SubQuestion(
        part=part_suffix(question.question_number),
        text=question.text,
        student_work=question.student_work or None,
        student_work_lines=question.student_work_lines,
        has_student_drawing=question.has_student_drawing,
        page_index=question.source_image_index,
        source_image_indices=question.source_image_indices,
        sub_questions=question.sub_questions,
    )


def combine_split_questions(questions: Sequence[Question], base: str) -> Question:
    """Fold "11", "11a", "11b" detected as separate questions into question 11."""
    if len(questions) == 1 and not part_suffix(questions[0].question_number):
        return questions[0]

    stems = [q for q in questions if not part_suffix(q.question_number)]
    parts = [q for q in questions if part_suffix(q.question_number)]

    sub_questions: List[SubQuestion] = []
    for stem in stems:
        sub_questions = merge_sub_questions(sub_questions, stem.sub_questions)
    for question in parts:
        sub_questions = merge_sub_questions(sub_questions, [_as_sub_question(question)])

    pages: Set[int] = set()
    for question in questions:
        pages.update(question.source_image_indices)

    return Question(
        question_number=base,
        text=max((s.text for s in stems), key=len, default=""),
        student_work="\n".join(s.student_work for s in stems if s.student_work),
        student_work_lines=[line for s in stems for line in s.student_work_lines],
        has_student_drawing=any(q.has_student_drawing for q in questions),
        sub_questions=sub_questions,
        source_image_index=min(pages) if pages else None,
        source_image_indices=sorted(pages),
        confidence=max(q.confidence for q in questions),
    )


def _has_student_work(question: Question) -> bool:
    if question.student_work or question.student_work_lines or question.has_student_drawing:
        return True
    return any(
        sub.student_work or sub.student_work_lines or sub.has_student_drawing
        for _, sub in _walk_sub_questions(question.sub_questions)
    )


def create_marking_tasks(
    questions: Sequence[Question],
    schemes: Dict[str, MarkingScheme],
    ocr_results: Sequence[PageOcrResult] = (),
    answer_pages: Optional[Set[int]] = None,
) -> List[MarkingTask]:
    """
    Create one marking task per base question number.

    Args:
        questions: Re-indexed logical questions
        schemes: Marking schemes keyed by base question number
        ocr_results: Re-indexed OCR output
        answer_pages: Pages classified as carrying student work; a question
            is marked if it touches one of them or carries work itself

    Returns:
        Tasks in question order
    """
    grouped: Dict[str, List[Question]] = {}
    for question in questions:
        base = base_question_number(question.question_number)
        if not base:
            logger.warning(f"Skipping question without a usable number: {question.text[:40]!r}")
            continue
        grouped.setdefault(base, []).append(question)

    ocr_by_page = {result.page_index: result for result in ocr_results}
    tasks: List[MarkingTask] = []

    for base in sorted(grouped, key=question_sort_key):
        question = assign_line_ids(combine_split_questions(grouped[base], base), base)
        pages = question.source_image_indices

        touches_answers = answer_pages is None or bool(set(pages) & answer_pages)
        if not (touches_answers or _has_student_work(question)):
            logger.info(f"Question {base} has no student work, not marking")
            continue

        page_ocr = [ocr_by_page[p] for p in pages if p in ocr_by_page]
        tasks.append(MarkingTask(
            question_number=base,
            question=question,
            scheme=schemes.get(base),
            question_text=format_question_text(question, base),
            student_work=collect_student_work(question),
            ocr_text="\n".join(r.text for r in page_ocr if r.text),
            block_ids=[b.id for r in page_ocr for b in r.math_blocks if b.id],
            source_pages=list(pages),
        ))

    logger.info(f"Created {len(tasks)} marking task(s), {sum(1 for t in tasks if t.scheme)} with a scheme")
    return tasks
