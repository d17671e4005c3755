"""Exception hierarchy for the marking pipeline.

Fatal errors (input, integrity) abort a submission. The remaining classes
are raised and caught locally: a failing task, PDF or annotation is logged
and dropped while the rest of the submission carries on.
"""

from typing import List, Optional


class MarkingPipelineError(Exception):
    """Base class for every error raised by the marking pipeline."""


class InputValidationError(MarkingPipelineError):
    """Raised when an upload cannot be processed at all.

    Covers empty uploads, unsupported or mixed file types and page counts
    over the configured limit. Never retried.
    """


class PageIntegrityError(MarkingPipelineError):
    """Raised when pages cannot be aligned to questions under a known scheme.

    Attributes:
        unresolved_pages: Original (upload order) indices of the pages with
            no resolvable question key
    """

    def __init__(self, message: str, unresolved_pages: List[int]):
        super().__init__(message)
        self.unresolved_pages = unresolved_pages


class MarkingTaskError(MarkingPipelineError):
    """Raised when the external marking call for one question fails.

    Attributes:
        question_number: The logical question the task belonged to
        original_exception: The exception raised by the marking service
    """

    def __init__(
        self,
        message: str,
        question_number: str,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.question_number = question_number
        self.original_exception = original_exception


class PageConversionError(MarkingPipelineError):
    """Raised when a single uploaded file cannot be turned into pages."""

    def __init__(self, message: str, file_name: str):
        super().__init__(message)
        self.file_name = file_name


class AnnotationRenderError(MarkingPipelineError):
    """Raised when a single annotation cannot be laid out on its page."""
