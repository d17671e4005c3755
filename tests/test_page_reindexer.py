"""Tests for logical page re-indexing."""

import pytest

from scanmark.exceptions import PageIntegrityError
from scanmark.models.classification import (
    DetectedQuestion,
    PageClassification,
    StudentWorkLine,
    SubQuestion,
)
from scanmark.models.marking import MarkingScheme
from scanmark.models.ocr import OcrBlock, PageOcrResult
from scanmark.services.page_reindexer import (
    regenerate_block_ids,
    reindex_pages,
    resolve_page_key,
)
from scanmark.services.question_merger import merge_questions
from scanmark.utils.question_numbers import UNRESOLVED_KEY

PAST_PAPER = MarkingScheme(question_key="1", total_marks=3)
GENERIC = MarkingScheme(question_key="1", total_marks=3, is_generic=True)


def _classification(index, category="questionAnswer", *questions) -> PageClassification:
    return PageClassification(page_index=index, category=category, questions=list(questions))


@pytest.fixture
def scenario_a(make_page):
    """Uploaded as [metadata, Q2 workings, Q1 workings]."""
    pages = [make_page(i, height=300 + i) for i in range(3)]
    classifications = [
        _classification(0, "metadata"),
        _classification(1, "questionAnswer", DetectedQuestion(
            question_number="2",
            student_work_lines=[StudentWorkLine(text="y = 7", id="p1_q2_line_1")],
        )),
        _classification(2, "questionAnswer", DetectedQuestion(
            question_number="1",
            student_work_lines=[StudentWorkLine(
                text="x = 2", page_index=2, id="p2_q1_line_1", global_block_id="p2_ocr_1",
            )],
        )),
    ]
    ocr = [
        PageOcrResult(page_index=1, text="y = 7", math_blocks=[OcrBlock(id="p1_ocr_1", text="y=7", page_index=1)]),
        PageOcrResult(page_index=2, text="x = 2", math_blocks=[OcrBlock(id="p2_ocr_1", text="x=2", page_index=2)]),
    ]
    return pages, classifications, merge_questions(classifications), ocr


class TestScenarioA:
    """Pages re-sorted into question order; identifiers follow their pages."""

    def test_pages_sorted_meta_first_then_by_question(self, scenario_a):
        pages, classifications, questions, ocr = scenario_a

        result = reindex_pages(pages, classifications, questions, ocr, [PAST_PAPER])

        assert [p.index for p in result.pages] == [0, 1, 2]
        assert [p.original_upload_index for p in result.pages] == [0, 2, 1]
        assert result.page_mapping == {0: 0, 1: 2, 2: 1}
        assert result.dimensions == {0: (200, 300), 1: (200, 302), 2: (200, 301)}

    def test_structured_page_references_rewritten(self, scenario_a):
        result = reindex_pages(*scenario_a, [PAST_PAPER])

        q1, q2 = result.questions
        assert q1.question_number == "1"
        assert q1.source_image_indices == [1]
        assert q1.source_image_index == 1
        assert q2.source_image_indices == [2]
        assert [c.page_index for c in result.classifications] == [0, 1, 2]
        assert result.classifications[1].questions[0].question_number == "1"

    def test_identifiers_rewritten_to_new_page(self, scenario_a):
        result = reindex_pages(*scenario_a, [PAST_PAPER])

        q1_line = result.questions[0].student_work_lines[0]
        assert q1_line.page_index == 1
        assert q1_line.id == "p1_q1_line_1"
        assert q1_line.global_block_id == "p1_ocr_1"

        q2_line = result.questions[1].student_work_lines[0]
        assert q2_line.id == "p2_q2_line_1"

        fragment_line = result.classifications[2].questions[0].student_work_lines[0]
        assert fragment_line.id == "p2_q2_line_1"
        assert fragment_line.page_index is None

    def test_ocr_blocks_renumbered_with_original_id(self, scenario_a):
        result = reindex_pages(*scenario_a, [PAST_PAPER])

        assert [r.page_index for r in result.ocr_results] == [1, 2]
        block = result.ocr_results[0].math_blocks[0]
        assert block.id == "p1_ocr_1"
        assert block.page_index == 1
        assert block.text == "x=2"
        assert block.metadata["original_id"] == "p2_ocr_1"

    def test_reindexing_is_idempotent(self, scenario_a):
        once = reindex_pages(*scenario_a, [PAST_PAPER])

        twice = reindex_pages(once.pages, once.classifications, once.questions, once.ocr_results, [PAST_PAPER])

        assert twice.page_mapping == {0: 0, 1: 1, 2: 2}
        assert twice.pages == once.pages
        assert twice.questions == once.questions
        assert twice.classifications == once.classifications
        assert twice.ocr_results == once.ocr_results

    def test_inputs_not_modified(self, scenario_a):
        pages, classifications, questions, ocr = scenario_a

        reindex_pages(pages, classifications, questions, ocr, [PAST_PAPER])

        assert [p.index for p in pages] == [0, 1, 2]
        assert questions[0].student_work_lines[0].id == "p2_q1_line_1"
        assert ocr[1].math_blocks[0].id == "p2_ocr_1"


class TestScenarioC:
    """Unplaceable pages under a known scheme are fatal."""

    def _submission(self, make_page):
        pages = [make_page(i) for i in range(3)]
        classifications = [
            _classification(0, "frontPage"),
            _classification(1, "questionAnswer", DetectedQuestion(question_number="1", student_work="x = 2")),
            _classification(2, "questionAnswer"),
        ]
        return pages, classifications, merge_questions(classifications)

    def test_known_scheme_raises_integrity_error(self, make_page):
        pages, classifications, questions = self._submission(make_page)

        with pytest.raises(PageIntegrityError) as exc_info:
            reindex_pages(pages, classifications, questions, schemes=[PAST_PAPER])

        assert exc_info.value.unresolved_pages == [2]
        assert "[DETECTION INTEGRITY FAILURE] Pages 3" in str(exc_info.value)

    def test_generic_scheme_falls_back_to_upload_order(self, make_page):
        pages, classifications, questions = self._submission(make_page)

        result = reindex_pages(pages, classifications, questions, schemes=[GENERIC])

        assert [p.original_upload_index for p in result.pages] == [0, 1, 2]
        assert result.page_keys[2] == UNRESOLVED_KEY

    def test_no_scheme_falls_back_to_upload_order(self, make_page):
        pages, classifications, questions = self._submission(make_page)

        result = reindex_pages(pages, classifications, questions)

        assert [p.original_upload_index for p in result.pages] == [0, 1, 2]


class TestOrdering:
    """Pages follow (meta first, question key, upload order)."""

    def test_split_question_pages_sorted_by_deepest_part(self, make_page):
        pages = [make_page(i) for i in range(6)]
        classifications = [
            _classification(0, "questionAnswer", DetectedQuestion(
                question_number="3", sub_questions=[SubQuestion(part="b", student_work="b work")])),
            _classification(1, "metadata"),
            _classification(2, "questionAnswer", DetectedQuestion(question_number="1", student_work="one")),
            _classification(3, "questionAnswer", DetectedQuestion(
                question_number="3", sub_questions=[SubQuestion(part="a", student_work="a work")])),
            _classification(4, "questionAnswer", DetectedQuestion(question_number="2", student_work="two")),
            _classification(5, "questionAnswer", DetectedQuestion(question_number="2", student_work="more")),
        ]
        questions = merge_questions(classifications)

        result = reindex_pages(pages, classifications, questions, schemes=[PAST_PAPER])

        assert [p.original_upload_index for p in result.pages] == [1, 2, 4, 5, 3, 0]
        keys = [result.page_keys[p.index] for p in result.pages[1:]]
        assert keys == sorted(keys)
        assert result.questions[2].sub_questions[0].page_index == 5  # part b, uploaded first

    def test_resolve_page_key_prefers_deepest(self):
        assert resolve_page_key([(11, ()), (11, (2,)), (11, (1,))]) == (11, (1,))
        assert resolve_page_key([(11, ()), (12, ())]) == (11, ())
        assert resolve_page_key([]) == UNRESOLVED_KEY


def test_regenerate_block_ids_numbers_per_page():
    ocr = [PageOcrResult(page_index=0, math_blocks=[
        OcrBlock(text="a"),
        OcrBlock(id="p0_ocr_2", text="b"),
        OcrBlock(id="legacy-9", text="c"),
    ])]

    rewritten, renamed = regenerate_block_ids(ocr, {0: 0})

    blocks = rewritten[0].math_blocks
    assert [b.id for b in blocks] == ["p0_ocr_1", "p0_ocr_2", "p0_ocr_3"]
    assert "original_id" not in blocks[0].metadata
    assert "original_id" not in blocks[1].metadata
    assert blocks[2].metadata["original_id"] == "legacy-9"
    assert renamed == {(0, "legacy-9"): "p0_ocr_3"}


def test_same_block_id_on_two_pages_follows_its_own_page(make_page):
    pages = [make_page(0), make_page(1)]
    classifications = [
        _classification(0, "questionAnswer", DetectedQuestion(
            question_number="2",
            student_work_lines=[StudentWorkLine(text="y = 7", page_index=0, global_block_id="block_1")],
        )),
        _classification(1, "questionAnswer", DetectedQuestion(
            question_number="1",
            student_work_lines=[StudentWorkLine(text="x = 2", page_index=1, global_block_id="block_1")],
        )),
    ]
    ocr = [
        PageOcrResult(page_index=0, math_blocks=[OcrBlock(id="block_1", text="y=7")]),
        PageOcrResult(page_index=1, math_blocks=[OcrBlock(id="block_1", text="x=2")]),
    ]

    result = reindex_pages(pages, classifications, merge_questions(classifications), ocr, [PAST_PAPER])

    assert result.page_mapping == {0: 1, 1: 0}
    q1, q2 = result.questions
    assert q1.student_work_lines[0].global_block_id == "p0_ocr_1"
    assert q2.student_work_lines[0].global_block_id == "p1_ocr_1"
    assert result.ocr_results[0].math_blocks[0].text == "x=2"
