"""Shared fixtures: settings environment, in-memory pages and scripted collaborators."""

import io
from typing import Callable

import pytest
from PIL import Image

from scanmark.config import get_settings
from scanmark.models.classification import DetectedQuestion, StudentWorkLine
from scanmark.models.page import StandardizedPage, UploadedFile
from scanmark.services.pipeline import PipelineCollaborators
from scanmark.services.scheme_lookup import StaticSchemeLookup
from tests.fakes import EchoOcr, ScriptedClassifier, ScriptedMarker


@pytest.fixture
def env(monkeypatch):
    """Minimal valid environment; settings cache cleared around the test."""
    monkeypatch.setenv("GEMINI_API_KEY", "test-api-key")
    monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


def _png(width: int = 200, height: int = 300, color: str = "white") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> Callable[..., bytes]:
    """Factory for PNG-encoded blank pages."""
    return _png


@pytest.fixture
def make_page() -> Callable[..., StandardizedPage]:
    """Factory for StandardizedPage with index == upload index by default."""

    def _make(index: int, width: int = 200, height: int = 300, upload_index=None, file_name="scan.png"):
        return StandardizedPage(
            index=index,
            image_bytes=_png(width, height),
            width=width,
            height=height,
            original_file_name=file_name,
            original_upload_index=index if upload_index is None else upload_index,
        )

    return _make


def _fragment(number, work=None):
    return DetectedQuestion(
        question_number=number,
        text=f"Question {number}",
        student_work=work,
        student_work_lines=[StudentWorkLine(text=work)] if work else [],
    )


@pytest.fixture
def submission(png_bytes):
    """Three scanned pages uploaded out of order: Q2, Q1, then the cover sheet."""
    files = [
        UploadedFile(file_name="q2.png", content=png_bytes(), content_type="image/png"),
        UploadedFile(file_name="q1.png", content=png_bytes(), content_type="image/png"),
        UploadedFile(file_name="cover.png", content=png_bytes(), content_type="image/png"),
    ]
    classifier = ScriptedClassifier({
        "q2.png": ("questionAnswer", [_fragment("2", "x = 4")], 90),
        "q1.png": ("questionAnswer", [_fragment("1", "y = 2x")], 0),
        "cover.png": ("frontPage", [], 0),
    })
    marker = ScriptedMarker({"1": ["A2", "A2"], "2": ["M1"]})
    collaborators = PipelineCollaborators(
        classifier=classifier,
        ocr=EchoOcr(),
        scheme_lookup=StaticSchemeLookup(),
        marking_service=marker,
    )
    scheme = {"1": {"total_marks": 2}, "2": {"total_marks": 3}}
    return files, collaborators, marker, scheme
