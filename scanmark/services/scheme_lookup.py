"""Marking-scheme lookup adapter.

The scheme database is an external collaborator. The default lookup reads
schemes supplied with the request (``options.marking_scheme``), keyed by
question number:

    {"3": {"total_marks": 4, "sub_question_max_scores": {"a": 1, "b": 3},
           "content": "M1 for ...", "is_generic": false}}
"""

import json
import logging
from typing import Any, Dict, List, Protocol

from pydantic import BaseModel, Field, ValidationError

from scanmark.exceptions import InputValidationError
from scanmark.models.classification import Question
from scanmark.models.marking import MarkingScheme
from scanmark.models.pipeline import MarkingOptions
from scanmark.utils.question_numbers import base_question_number, normalize_sub_question_key

logger = logging.getLogger(__name__)


class SchemeLookupResult(BaseModel):
    """Schemes keyed by base question number, plus how many questions matched."""
    schemes: Dict[str, MarkingScheme] = Field(default_factory=dict)
    detection_rate: float = Field(default=0.0, ge=0.0, le=1.0)


class SchemeLookup(Protocol):
    """Contract of the external marking-scheme lookup."""

    async def lookup(self, questions: List[Question], options: MarkingOptions) -> SchemeLookupResult:
        ...


def parse_marking_scheme(raw: Any) -> Dict[str, MarkingScheme]:
    """
    Parse request-supplied schemes.

    Args:
        raw: Mapping of question number -> scheme fields, or its JSON text

    Returns:
        Schemes keyed by base question number, sub-question budgets keyed
        by normalized sub-question key

    Raises:
        InputValidationError: If the payload is not valid JSON or a scheme
            entry does not validate
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InputValidationError(f"markingScheme is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise InputValidationError("markingScheme must map question numbers to schemes")

    schemes: Dict[str, MarkingScheme] = {}
    for question_key, entry in raw.items():
        base = base_question_number(str(question_key))
        if not base:
            logger.warning(f"Ignoring marking scheme entry without a question number: {question_key!r}")
            continue
        if not isinstance(entry, dict):
            raise InputValidationError(f"Marking scheme for question {question_key} must be an object")

        try:
            budgets = {
                normalize_sub_question_key(part): int(marks)
                for part, marks in (entry.get("sub_question_max_scores") or {}).items()
            }
            schemes[base] = MarkingScheme(
                question_key=base,
                total_marks=entry.get("total_marks", sum(budgets.values())),
                sub_question_max_scores=budgets,
                is_generic=bool(entry.get("is_generic", False)),
                content=entry.get("content", ""),
            )
        except (ValidationError, ValueError, TypeError) as e:
            raise InputValidationError(f"Invalid marking scheme for question {question_key}: {e}") from e

    return schemes


class StaticSchemeLookup:
    """Looks schemes up in the mapping supplied with the request."""

    async def lookup(self, questions: List[Question], options: MarkingOptions) -> SchemeLookupResult:
        available = parse_marking_scheme(options.marking_scheme)

        numbers = {base_question_number(q.question_number) for q in questions}
        numbers.discard("")

        matched = {number: available[number] for number in numbers if number in available}
        detection_rate = len(matched) / len(numbers) if numbers else 0.0

        logger.info(
            f"Marking schemes matched for {len(matched)}/{len(numbers)} question(s) "
            f"({detection_rate:.0%})"
        )
        return SchemeLookupResult(schemes=matched, detection_rate=detection_rate)
