"""Tests for request-supplied marking schemes."""

import json

import pytest

from scanmark.exceptions import InputValidationError
from scanmark.models.classification import Question
from scanmark.models.pipeline import MarkingOptions
from scanmark.services.scheme_lookup import StaticSchemeLookup, parse_marking_scheme


class TestParseMarkingScheme:
    """Scheme payloads from the form field or the CLI file."""

    def test_json_text_keyed_by_base_number(self):
        raw = json.dumps({
            "Q3": {"total_marks": 4, "sub_question_max_scores": {"3a": 1, "(b)": 3}, "content": "M1 A1"},
        })

        schemes = parse_marking_scheme(raw)

        assert list(schemes) == ["3"]
        assert schemes["3"].total_marks == 4
        assert schemes["3"].sub_question_max_scores == {"a": 1, "b": 3}
        assert schemes["3"].content == "M1 A1"
        assert schemes["3"].is_generic is False

    def test_total_defaults_to_sum_of_parts(self):
        schemes = parse_marking_scheme({"5": {"sub_question_max_scores": {"a": 2, "b": 2}}})

        assert schemes["5"].total_marks == 4

    def test_empty_payload(self):
        assert parse_marking_scheme(None) == {}
        assert parse_marking_scheme("") == {}

    def test_invalid_json(self):
        with pytest.raises(InputValidationError, match="not valid JSON"):
            parse_marking_scheme("{not json")

    def test_non_object_payload(self):
        with pytest.raises(InputValidationError):
            parse_marking_scheme("[1, 2]")

    def test_negative_total_rejected(self):
        with pytest.raises(InputValidationError, match="question 2"):
            parse_marking_scheme({"2": {"total_marks": -1}})

    def test_non_numeric_budget_rejected(self):
        with pytest.raises(InputValidationError):
            parse_marking_scheme({"2": {"sub_question_max_scores": {"a": "lots"}}})

    def test_entry_without_number_ignored(self):
        assert parse_marking_scheme({"intro": {"total_marks": 1}}) == {}


class TestStaticSchemeLookup:
    """Matching detected questions against supplied schemes."""

    @pytest.mark.asyncio
    async def test_detection_rate(self):
        questions = [
            Question(question_number="1"),
            Question(question_number="2a"),
            Question(question_number="2b"),
            Question(question_number="3"),
            Question(question_number=None),
        ]
        options = MarkingOptions(marking_scheme={"1": {"total_marks": 2}, "2": {"total_marks": 5}})

        result = await StaticSchemeLookup().lookup(questions, options)

        assert sorted(result.schemes) == ["1", "2"]
        assert result.detection_rate == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_no_questions(self):
        result = await StaticSchemeLookup().lookup([], MarkingOptions())

        assert result.schemes == {}
        assert result.detection_rate == 0.0
