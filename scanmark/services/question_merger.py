"""
Question merger: per-page fragments -> logical questions.

A question that runs over several pages (or whose parts are answered on
different pages) is detected once per page. Fragments sharing a question
number are folded into one logical ``Question`` whose
``source_image_indices`` covers every page it, or any of its parts, touches.

All functions here are pure: inputs are frozen models and every merge
returns new trees.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from scanmark.models.classification import (
    DetectedQuestion,
    PageClassification,
    Question,
    StudentWorkLine,
    SubQuestion,
)
from scanmark.utils.question_numbers import (
    base_question_number,
    is_usable_question_number,
    normalize_part,
)

logger = logging.getLogger(__name__)

BLANK_PAGE_MARKER = "BLANK PAGE"
DRAWING_MARKER = "[DRAWING]"
DEFAULT_CONFIDENCE = 0.9

Fragment = Tuple[int, DetectedQuestion]


# ---------------------------------------------------------------------------
# Page stamping
# ---------------------------------------------------------------------------

def _stamp_lines(lines: Iterable[StudentWorkLine], page_index: int) -> List[StudentWorkLine]:
    return [
        line if line.page_index is not None else line.model_copy(update={"page_index": page_index})
        for line in lines
    ]


def _line_pages(lines: Iterable[StudentWorkLine]) -> Set[int]:
    return {line.page_index for line in lines if line.page_index is not None}


def stamp_sub_question(sub: SubQuestion, page_index: int) -> SubQuestion:
    """Attach the page a sub-question was found on, recursively.

    An explicit page index on the node or on a line wins over the stamp.
    ``source_image_indices`` becomes every page touched by the node and
    its descendants.
    """
    own_page = sub.page_index if sub.page_index is not None else page_index
    children = [stamp_sub_question(child, own_page) for child in sub.sub_questions]
    lines = _stamp_lines(sub.student_work_lines, own_page)

    pages = set(sub.source_image_indices) | {own_page} | _line_pages(lines)
    for child in children:
        pages.update(child.source_image_indices)

    return sub.model_copy(update={
        "page_index": own_page,
        "student_work_lines": lines,
        "sub_questions": children,
        "source_image_indices": sorted(pages),
    })


# ---------------------------------------------------------------------------
# Sub-question merging
# ---------------------------------------------------------------------------

def _line_identity(line: StudentWorkLine) -> Tuple[str, Optional[Tuple[float, float, float, float]]]:
    position = line.position
    box = (position.x, position.y, position.width, position.height) if position else None
    return line.text, box


def _dedupe_lines(lines: Iterable[StudentWorkLine]) -> List[StudentWorkLine]:
    seen = set()
    unique = []
    for line in lines:
        identity = _line_identity(line)
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(line)
    return unique


def _append_work(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming or not incoming.strip():
        return existing
    if not existing or not existing.strip():
        return incoming
    if incoming in existing:
        return existing
    return f"{existing}\n{incoming}"


def _merge_sub_pair(first: SubQuestion, second: SubQuestion) -> SubQuestion:
    has_drawing = first.has_student_drawing or second.has_student_drawing
    work = _append_work(first.student_work, second.student_work)
    if has_drawing and DRAWING_MARKER not in (work or ""):
        work = _append_work(work, DRAWING_MARKER)

    return first.model_copy(update={
        "text": first.text or second.text,
        "student_work": work,
        "student_work_lines": _dedupe_lines([*first.student_work_lines, *second.student_work_lines]),
        "has_student_drawing": has_drawing,
        "page_index": first.page_index if first.page_index is not None else second.page_index,
        "source_image_indices": sorted(set(first.source_image_indices) | set(second.source_image_indices)),
        "sub_questions": merge_sub_questions(first.sub_questions, second.sub_questions),
    })


def merge_sub_questions(existing: List[SubQuestion], incoming: List[SubQuestion]) -> List[SubQuestion]:
    """Union two sibling lists by normalized part label, at every depth.

    Sibling order follows first appearance. After merging, no two siblings
    share a part label.
    """
    merged: Dict[str, SubQuestion] = {}
    for sub in [*existing, *incoming]:
        key = normalize_part(sub.part) or sub.part
        if key in merged:
            merged[key] = _merge_sub_pair(merged[key], sub)
        else:
            merged[key] = sub.model_copy(update={
                "sub_questions": merge_sub_questions([], sub.sub_questions),
            })
    return list(merged.values())


# ---------------------------------------------------------------------------
# Question merging
# ---------------------------------------------------------------------------

def _canonical_text(fragments: List[DetectedQuestion]) -> str:
    """Prefer real question text over blank-page markers, then the longest."""
    texts = [f.text for f in fragments if f.text and f.text.strip()]
    if not texts:
        return ""
    non_blank = [t for t in texts if BLANK_PAGE_MARKER not in t.upper()]
    return max(non_blank or texts, key=len)


def build_question(fragments: List[Fragment]) -> Question:
    """Fold the fragments of one question (in page order) into a logical question."""
    stamped: List[Fragment] = []
    for page_index, fragment in fragments:
        stamped.append((page_index, fragment.model_copy(update={
            "student_work_lines": _stamp_lines(fragment.student_work_lines, page_index),
            "sub_questions": [stamp_sub_question(s, page_index) for s in fragment.sub_questions],
        })))

    members = [fragment for _, fragment in stamped]

    work_parts = [f.student_work.strip() for f in members if f.student_work and f.student_work.strip()]
    lines = [line for f in members for line in f.student_work_lines]

    sub_questions: List[SubQuestion] = []
    for fragment in members:
        sub_questions = merge_sub_questions(sub_questions, fragment.sub_questions)

    pages = {page_index for page_index, _ in stamped} | _line_pages(lines)
    for sub in sub_questions:
        pages.update(sub.source_image_indices)

    confidences = [f.confidence if f.confidence is not None else DEFAULT_CONFIDENCE for f in members]
    number = members[0].question_number
    if is_usable_question_number(number):
        number = str(number).strip()

    return Question(
        question_number=number,
        text=_canonical_text(members),
        student_work="\n".join(work_parts),
        student_work_lines=lines,
        has_student_drawing=any(f.has_student_drawing for f in members),
        sub_questions=sub_questions,
        source_image_index=stamped[0][0],
        source_image_indices=sorted(pages),
        confidence=max(confidences),
    )


def _merge_sort_key(question: Question) -> Tuple[int, int]:
    base = base_question_number(question.question_number)
    if base and is_usable_question_number(question.question_number):
        return 0, int(base)
    return 1, 0


def merge_questions(classifications: List[PageClassification]) -> List[Question]:
    """
    Merge per-page question fragments into logical questions.

    Fragments are grouped by question number. Fragments without a usable
    number cannot be matched with anything and each becomes a question of
    its own.

    Args:
        classifications: Per-page classification results

    Returns:
        Logical questions sorted by numeric question number; unnumbered
        questions follow in page order
    """
    grouped: Dict[str, List[Fragment]] = {}
    ungrouped: List[Question] = []

    for classification in sorted(classifications, key=lambda c: c.page_index):
        for fragment in classification.questions:
            if is_usable_question_number(fragment.question_number):
                key = str(fragment.question_number).strip()
                grouped.setdefault(key, []).append((classification.page_index, fragment))
            else:
                ungrouped.append(build_question([(classification.page_index, fragment)]))

    merged = [build_question(fragments) for fragments in grouped.values()]
    for question in merged:
        if len(question.source_image_indices) > 1:
            logger.info(
                f"Question {question.question_number} spans pages {question.source_image_indices}"
            )

    questions = sorted(merged + ungrouped, key=_merge_sort_key)
    logger.info(
        f"Merged {sum(len(c.questions) for c in classifications)} fragment(s) "
        f"into {len(questions)} logical question(s)"
    )
    return questions
