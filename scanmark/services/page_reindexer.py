"""
Logical page re-indexer.

Scans are uploaded in whatever order they came off the scanner. Scoring,
rendering and review all want pages in question order, so this module:

1. Derives an order key for every page from the questions/parts on it
2. Refuses to guess when a known scheme is in play and a page is unplaceable
3. Sorts pages (meta pages first, then by key, then by upload order)
4. Rewrites every page reference - structured fields and the ``p<N>_``
   prefix of identifiers - to the new order
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from pydantic import BaseModel, Field

from scanmark.exceptions import PageIntegrityError
from scanmark.models.classification import (
    META_CATEGORIES,
    DetectedQuestion,
    PageClassification,
    Question,
    StudentWorkLine,
    SubQuestion,
)
from scanmark.models.marking import MarkingScheme
from scanmark.models.ocr import OcrBlock, PageOcrResult
from scanmark.models.page import PageDimensions, StandardizedPage, dimensions_map
from scanmark.utils.identifiers import encode_page_id, page_index_from_id, reencode_page_id
from scanmark.utils.question_numbers import UNRESOLVED_KEY, OrderKey, key_depth, order_key

logger = logging.getLogger(__name__)

QuestionNode = Union[Question, SubQuestion]


class ReindexResult(BaseModel):
    """Everything that carries a page reference, rewritten to logical order."""

    pages: List[StandardizedPage]
    classifications: List[PageClassification]
    questions: List[Question]
    ocr_results: List[PageOcrResult] = Field(default_factory=list)
    dimensions: PageDimensions = Field(default_factory=dict)
    page_mapping: Dict[int, int] = Field(default_factory=dict, description="old index -> new index")
    page_keys: Dict[int, OrderKey] = Field(default_factory=dict, description="new index -> order key")


# ---------------------------------------------------------------------------
# Order keys
# ---------------------------------------------------------------------------

def node_pages(node: QuestionNode) -> Set[int]:
    """Pages a node claims, merging the single-index and multi-index fields."""
    pages = set(node.source_image_indices)
    single = node.source_image_index if isinstance(node, Question) else node.page_index
    if single is not None:
        pages.add(single)
    return pages


def collect_page_keys(questions: Iterable[Question]) -> Dict[int, List[OrderKey]]:
    """Every order key each page contributes, walking full question trees."""
    keys: Dict[int, List[OrderKey]] = {}

    def _walk(node: QuestionNode, number: Optional[str], parts: Tuple[str, ...]) -> None:
        key = order_key(number, parts)
        if key is None:
            return
        for page in node_pages(node):
            keys.setdefault(page, []).append(key)
        for child in node.sub_questions:
            _walk(child, number, parts + (child.part,))

    for question in questions:
        _walk(question, question.question_number, ())
    return keys


def resolve_page_key(keys: Sequence[OrderKey]) -> OrderKey:
    """Pick the key a page sorts by.

    A page holding "11" and "11a" holds only part of 11, so it sorts by the
    deepest keys present; among those, the smallest.
    """
    if not keys:
        return UNRESOLVED_KEY
    deepest = max(key_depth(k) for k in keys)
    return min(k for k in keys if key_depth(k) == deepest)


def compute_page_keys(
    pages: Sequence[StandardizedPage], questions: Iterable[Question]
) -> Dict[int, OrderKey]:
    """Resolved order key for each page index."""
    contributed = collect_page_keys(questions)
    return {page.index: resolve_page_key(contributed.get(page.index, [])) for page in pages}


def check_page_integrity(
    pages: Sequence[StandardizedPage],
    page_keys: Dict[int, OrderKey],
    categories: Dict[int, str],
    schemes: Iterable[MarkingScheme],
) -> None:
    """
    Abort when a known scheme is in use and some answer page is unplaceable.

    Upload order is an acceptable fallback only for generic schemes; against
    a real past paper, a misplaced page corrupts scoring.

    Raises:
        PageIntegrityError: Listing the unresolved pages in upload order
    """
    if not any(not scheme.is_generic for scheme in schemes):
        return

    unresolved = [
        page.original_upload_index
        for page in pages
        if page_keys.get(page.index, UNRESOLVED_KEY) == UNRESOLVED_KEY
        and categories.get(page.index) not in META_CATEGORIES
    ]
    if unresolved:
        listed = ", ".join(str(i + 1) for i in sorted(unresolved))
        raise PageIntegrityError(
            f"[DETECTION INTEGRITY FAILURE] Pages {listed} could not be identified as "
            "belonging to any question of the marking scheme. Refusing to fall back to "
            "upload order.",
            unresolved_pages=sorted(unresolved),
        )


# ---------------------------------------------------------------------------
# Rewriting
# ---------------------------------------------------------------------------

class _PageRemapper:
    """Applies an old -> new page mapping to every kind of record."""

    def __init__(self, mapping: Dict[int, int], block_ids: Optional[Dict[Tuple[int, str], str]] = None):
        self.mapping = mapping
        self.block_ids = block_ids or {}

    def index(self, page_index: int) -> int:
        return self.mapping.get(page_index, page_index)

    def indices(self, indices: Iterable[int]) -> List[int]:
        return sorted({self.index(i) for i in indices})

    def line(self, line: StudentWorkLine) -> StudentWorkLine:
        old_page = line.page_index if line.page_index is not None else page_index_from_id(line.id)
        if old_page is None:
            return line
        new_page = self.index(old_page)

        block_id = line.global_block_id
        if (old_page, block_id) in self.block_ids:
            block_id = self.block_ids[(old_page, block_id)]
        else:
            block_id = reencode_page_id(block_id, new_page)

        update = {
            "page_index": new_page if line.page_index is not None else None,
            "id": reencode_page_id(line.id, new_page),
            "global_block_id": block_id,
        }
        if all(getattr(line, field) == value for field, value in update.items()):
            return line
        return line.model_copy(update=update)

    def sub_question(self, sub: SubQuestion) -> SubQuestion:
        return sub.model_copy(update={
            "page_index": self.index(sub.page_index) if sub.page_index is not None else None,
            "source_image_indices": self.indices(sub.source_image_indices),
            "student_work_lines": [self.line(l) for l in sub.student_work_lines],
            "sub_questions": [self.sub_question(c) for c in sub.sub_questions],
        })

    def question(self, question: Question) -> Question:
        single = question.source_image_index
        return question.model_copy(update={
            "source_image_index": self.index(single) if single is not None else None,
            "source_image_indices": self.indices(question.source_image_indices),
            "student_work_lines": [self.line(l) for l in question.student_work_lines],
            "sub_questions": [self.sub_question(s) for s in question.sub_questions],
        })

    def fragment(self, fragment: DetectedQuestion) -> DetectedQuestion:
        return fragment.model_copy(update={
            "student_work_lines": [self.line(l) for l in fragment.student_work_lines],
            "sub_questions": [self.sub_question(s) for s in fragment.sub_questions],
        })

    def classification(self, result: PageClassification) -> PageClassification:
        return result.model_copy(update={
            "page_index": self.index(result.page_index),
            "questions": [self.fragment(q) for q in result.questions],
        })


def regenerate_block_ids(
    ocr_results: Iterable[PageOcrResult], mapping: Dict[int, int]
) -> Tuple[List[PageOcrResult], Dict[Tuple[int, str], str]]:
    """
    Move OCR results to their new pages and renumber their blocks.

    Blocks become ``p<new>_ocr_<seq>`` with seq counting from 1 per page.
    A changed id keeps its previous value in ``metadata["original_id"]``.

    Returns:
        (rewritten results sorted by page, (old page, old block id) -> new
        block id; ids are only unique within a page)
    """
    renamed: Dict[Tuple[int, str], str] = {}
    rewritten: List[PageOcrResult] = []

    for result in ocr_results:
        new_page = mapping.get(result.page_index, result.page_index)
        blocks: List[OcrBlock] = []
        for sequence, block in enumerate(result.math_blocks, start=1):
            new_id = encode_page_id(new_page, "ocr", sequence)
            metadata = dict(block.metadata)
            if block.id and block.id != new_id:
                renamed[(result.page_index, block.id)] = new_id
                metadata.setdefault("original_id", block.id)
            blocks.append(block.model_copy(update={
                "id": new_id,
                "page_index": new_page,
                "metadata": metadata,
            }))
        rewritten.append(result.model_copy(update={"page_index": new_page, "math_blocks": blocks}))

    return sorted(rewritten, key=lambda r: r.page_index), renamed


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def reindex_pages(
    pages: Sequence[StandardizedPage],
    classifications: Sequence[PageClassification],
    questions: Sequence[Question],
    ocr_results: Sequence[PageOcrResult] = (),
    schemes: Iterable[MarkingScheme] = (),
) -> ReindexResult:
    """
    Re-sort pages into logical question order and rewrite all references.

    Args:
        pages: Standardized pages, indexed in upload order
        classifications: Per-page classification results
        questions: Merged logical questions
        ocr_results: Per-page OCR output
        schemes: Marking schemes resolved for this submission

    Returns:
        ReindexResult with every page reference pointing at the new order

    Raises:
        PageIntegrityError: If a known scheme is in use and a non-meta page
            matches no question
    """
    categories = {c.page_index: c.category for c in classifications}
    page_keys = compute_page_keys(pages, questions)

    check_page_integrity(pages, page_keys, categories, list(schemes))

    def _sort_key(page: StandardizedPage) -> Tuple[int, OrderKey, int]:
        is_meta = categories.get(page.index) in META_CATEGORIES
        return (0 if is_meta else 1, page_keys[page.index], page.original_upload_index)

    ordered = sorted(pages, key=_sort_key)
    mapping = {page.index: new_index for new_index, page in enumerate(ordered)}

    moved = {old: new for old, new in mapping.items() if old != new}
    if moved:
        logger.info(f"Re-indexed pages into question order: {moved}")
    unresolved = [p.index for p in pages if page_keys[p.index] == UNRESOLVED_KEY
                  and categories.get(p.index) not in META_CATEGORIES]
    if unresolved:
        logger.warning(f"Pages {unresolved} matched no question, kept in upload order")

    new_ocr, renamed_blocks = regenerate_block_ids(ocr_results, mapping)
    remap = _PageRemapper(mapping, renamed_blocks)

    new_pages = [
        page if page.index == mapping[page.index] else page.model_copy(update={"index": mapping[page.index]})
        for page in ordered
    ]

    return ReindexResult(
        pages=new_pages,
        classifications=sorted(
            (remap.classification(c) for c in classifications), key=lambda c: c.page_index
        ),
        questions=[remap.question(q) for q in questions],
        ocr_results=new_ocr,
        dimensions=dimensions_map(new_pages),
        page_mapping=mapping,
        page_keys={mapping[old]: key for old, key in page_keys.items()},
    )
