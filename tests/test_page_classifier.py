"""Tests for page classification, category overrides and mode detection."""

import asyncio
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scanmark.config import Settings
from scanmark.models.classification import (
    DetectedQuestion,
    PageClassification,
    PageClassificationResponse,
)
from scanmark.services.page_classifier import (
    GeminiPageClassifier,
    OverrideThresholds,
    apply_category_overrides,
    classify_pages,
    detect_mode,
)


def _results(*categories: str) -> List[PageClassification]:
    return [PageClassification(page_index=i, category=c) for i, c in enumerate(categories)]


def _categories(results: List[PageClassification]) -> List[str]:
    return [r.category for r in results]


class FakeClassifier:
    """Returns canned results; optionally fails for some pages."""

    def __init__(self, categories, failing=(), echo_index=None):
        self.categories = categories
        self.failing = set(failing)
        self.echo_index = echo_index
        self.active = 0
        self.peak = 0

    async def classify(self, page):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            # Later pages finish first
            await asyncio.sleep(0.001 * (len(self.categories) - page.index))
            if page.index in self.failing:
                raise RuntimeError("service unavailable")
            index = self.echo_index if self.echo_index is not None else page.index
            return PageClassification(page_index=index, category=self.categories[page.index])
        finally:
            self.active -= 1


class TestClassifyPages:
    """Concurrent classification keyed by page."""

    @pytest.mark.asyncio
    async def test_results_follow_page_order(self, make_page):
        pages = [make_page(i) for i in range(4)]
        classifier = FakeClassifier(["frontPage", "questionOnly", "questionAnswer", "questionAnswer"])

        results = await classify_pages(pages, classifier, concurrency=2)

        assert [r.page_index for r in results] == [0, 1, 2, 3]
        assert _categories(results) == ["frontPage", "questionOnly", "questionAnswer", "questionAnswer"]
        assert classifier.peak <= 2

    @pytest.mark.asyncio
    async def test_failed_page_degrades_to_question_only(self, make_page):
        pages = [make_page(i) for i in range(3)]
        classifier = FakeClassifier(["questionAnswer"] * 3, failing={1})

        results = await classify_pages(pages, classifier)

        assert _categories(results) == ["questionAnswer", "questionOnly", "questionAnswer"]
        assert results[1].questions == []

    @pytest.mark.asyncio
    async def test_echoed_index_is_reassociated(self, make_page):
        pages = [make_page(i) for i in range(2)]
        classifier = FakeClassifier(["questionOnly", "questionAnswer"], echo_index=0)

        results = await classify_pages(pages, classifier)

        assert [r.page_index for r in results] == [0, 1]
        assert results[1].category == "questionAnswer"


class TestGeminiPageClassifier:
    """Adapter around the structured-output call."""

    @pytest.mark.asyncio
    async def test_classify_maps_response(self, make_page):
        response = PageClassificationResponse(
            category="questionAnswer",
            rotation=180,
            questions=[DetectedQuestion(question_number="3", text="Solve x")],
        )
        with patch(
            "scanmark.services.page_classifier.generate_structured",
            new=AsyncMock(return_value=(response, 120)),
        ) as mock_generate:
            result = await GeminiPageClassifier(MagicMock(), "gemini-test").classify(make_page(4))

        assert result.page_index == 4
        assert result.category == "questionAnswer"
        assert result.rotation == 180
        assert result.questions[0].question_number == "3"
        assert result.usage_tokens == 120
        assert mock_generate.await_args.args[1] == "gemini-test"


class TestCategoryOverrides:
    """Smoothing of under-called student-work pages."""

    def test_student_work_rule_promotes_question_only(self):
        results = _results("frontPage", *(["questionAnswer"] * 9), "questionOnly")

        updated = apply_category_overrides(results)

        assert _categories(updated)[0] == "frontPage"
        assert set(_categories(updated)[1:]) == {"questionAnswer"}

    def test_safety_rule_promotes_question_only(self):
        results = _results("questionAnswer", "questionAnswer", "questionAnswer", "questionOnly")

        updated = apply_category_overrides(results)

        assert _categories(updated) == ["questionAnswer"] * 4

    def test_safety_rule_ratio_is_exclusive(self):
        results = _results("questionAnswer", "questionAnswer", "questionOnly", "questionOnly")

        updated = apply_category_overrides(results)

        assert _categories(updated) == _categories(results)

    def test_minority_student_work_left_alone(self):
        results = _results("questionAnswer", "questionOnly", "questionOnly")

        assert _categories(apply_category_overrides(results)) == _categories(results)

    def test_metadata_pages_never_promoted(self):
        results = _results("metadata", "questionAnswer", "questionAnswer", "questionAnswer", "questionOnly")

        updated = apply_category_overrides(results)

        assert _categories(updated) == ["metadata"] + ["questionAnswer"] * 4

    def test_front_page_becomes_question_page_without_student_work(self):
        results = _results("frontPage", "questionOnly", "metadata")

        updated = apply_category_overrides(results)

        assert _categories(updated) == ["questionOnly", "questionOnly", "metadata"]

    def test_thresholds_are_configurable(self):
        results = _results("questionAnswer", "questionOnly", "questionOnly")

        updated = apply_category_overrides(results, OverrideThresholds(safety_ratio=0.3))

        assert _categories(updated) == ["questionAnswer"] * 3

    def test_thresholds_from_settings(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "test-key")
        monkeypatch.setenv("SAFETY_MIN_PAGES", "7")

        thresholds = OverrideThresholds.from_settings(Settings())

        assert thresholds.safety_min_pages == 7
        assert thresholds.student_work_ratio == 0.9

    def test_input_not_modified(self):
        results = _results("questionAnswer", "questionAnswer", "questionAnswer", "questionOnly")

        apply_category_overrides(results)

        assert results[3].category == "questionOnly"


def test_detect_mode():
    assert detect_mode(_results("frontPage", "questionAnswer")) == "marking"
    assert detect_mode(_results("frontPage", "questionOnly")) == "question"
    assert detect_mode([]) == "question"
