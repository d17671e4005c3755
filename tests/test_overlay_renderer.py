"""Tests for annotation layout and page rendering."""

import io
import logging

import pytest
from PIL import Image

from scanmark.exceptions import AnnotationRenderError
from scanmark.models.marking import Annotation
from scanmark.services.overlay_renderer import (
    EllipseElement,
    LineElement,
    OverlayStyle,
    TextElement,
    layout_annotation,
    layout_annotations,
    layout_page_scores,
    render_page,
    render_svg,
    wrap_text,
)

# Reference height: scale 1.0
PAGE = (1000.0, 2400.0)


def _texts(elements):
    return [e for e in elements if isinstance(e, TextElement)]


class TestWrapText:

    def test_short_text_single_line(self):
        assert wrap_text("Sign error") == ["Sign error"]

    def test_breaks_at_spaces(self):
        text = "The student used the wrong formula for the area of a circle here"

        lines = wrap_text(text)

        assert len(lines) > 1
        assert all(len(line) <= 30 for line in lines)
        assert " ".join(lines) == text

    def test_unbreakable_word_split_hard(self):
        assert wrap_text("a" * 70) == ["a" * 30, "a" * 30, "a" * 10]

    def test_punctuation_kept_on_line(self):
        lines = wrap_text("Correct working,shown,but,final,answer,missing,units")

        assert lines[0].endswith(",")
        assert all(len(line) <= 30 for line in lines)


class TestLayoutAnnotation:
    """Placement of single annotations."""

    def test_tick_label_right_of_box(self):
        annotation = Annotation(action="tick", text="M1", bbox=[100, 100, 50, 40])

        elements = layout_annotation(annotation, PAGE, OverlayStyle())

        assert [e.text for e in elements] == ["✓", "M1"]
        assert all(e.anchor == "start" and e.x > 150 for e in elements)
        assert elements[0].x < elements[1].x

    def test_label_flips_left_at_right_edge(self):
        annotation = Annotation(action="tick", text="M1", bbox=[950, 100, 40, 40])

        elements = layout_annotation(annotation, PAGE, OverlayStyle())

        assert all(e.anchor == "end" for e in elements)
        assert all(e.x <= 950 for e in elements)
        assert [e.text for e in elements] == ["✓", "M1"]

    def test_classification_truncated_in_blue(self):
        annotation = Annotation(
            action="tick", text="B1", classification_text="a very long piece of student text",
            bbox=[100, 100, 50, 40],
        )

        elements = layout_annotation(annotation, PAGE, OverlayStyle())

        assert elements[-1].text == "a very long piece..."
        assert elements[-1].color == "#0000ff"

    def test_short_reasoning_inline(self):
        annotation = Annotation(action="cross", text="A1", reasoning="Sign error", bbox=[100, 100, 50, 40])

        elements = layout_annotation(annotation, PAGE, OverlayStyle())

        assert [e.text for e in elements] == ["✗", "A1", "Sign error"]
        assert elements[2].x > elements[1].x

    def test_long_reasoning_below_box(self):
        reasoning = "The method is correct but the final answer has the wrong units and sign"
        annotation = Annotation(action="cross", text="A1", reasoning=reasoning, bbox=[100, 100, 200, 40])

        elements = layout_annotation(annotation, PAGE, OverlayStyle())

        block = elements[2:]
        assert [e.text for e in block] == wrap_text(reasoning)
        assert all(e.y > 140 for e in block)
        assert all(e.x == 100 for e in block)

    def test_long_reasoning_above_box_near_bottom(self):
        reasoning = "The method is correct but the final answer has the wrong units and sign"
        annotation = Annotation(action="cross", text="A1", reasoning=reasoning, bbox=[100, 2300, 200, 40])

        elements = layout_annotation(annotation, PAGE, OverlayStyle())

        assert all(e.y < 2300 for e in elements[2:])

    def test_circle_and_underline(self):
        circle = layout_annotation(Annotation(action="circle", bbox=[10, 10, 100, 50]), PAGE, OverlayStyle())
        underline = layout_annotation(Annotation(action="underline", bbox=[10, 10, 100, 50]), PAGE, OverlayStyle())

        assert isinstance(circle[0], EllipseElement)
        assert circle[0].cx == 60 and circle[0].cy == 35
        assert isinstance(underline[0], LineElement)
        assert (underline[0].x1, underline[0].x2, underline[0].y1) == (10, 110, 60)

    def test_write(self):
        elements = layout_annotation(Annotation(action="write", text="units?", bbox=[10, 10, 100, 50]), PAGE,
                                     OverlayStyle())

        assert [e.text for e in elements] == ["units?"]

    def test_unknown_action(self):
        with pytest.raises(AnnotationRenderError, match="Unknown annotation action"):
            layout_annotation(Annotation(action="scribble", bbox=[0, 0, 1, 1]), PAGE, OverlayStyle())

    def test_sizes_scale_with_page_height(self):
        annotation = Annotation(action="tick", bbox=[10, 10, 50, 40])

        full = layout_annotation(annotation, PAGE, OverlayStyle())
        half = layout_annotation(annotation, (500.0, 1200.0), OverlayStyle())
        tiny = layout_annotation(annotation, (100.0, 240.0), OverlayStyle())

        assert full[0].size == 50
        assert half[0].size == 25
        assert tiny[0].size == 20


class TestLayoutAnnotations:

    def test_duplicate_boxes_stack_downward(self):
        annotations = [
            Annotation(action="tick", text="M1", bbox=[100, 100, 50, 40]),
            Annotation(action="tick", text="A1", bbox=[102, 100, 50, 40]),
        ]

        elements = layout_annotations(annotations, PAGE)

        first, second = elements[0], elements[2]
        assert second.y - first.y == pytest.approx(60)

    def test_bad_annotations_skipped(self, caplog):
        annotations = [
            Annotation(action="scribble", bbox=[0, 0, 10, 10]),
            Annotation(action="tick", bbox=[1, 2]),
            Annotation(action="tick", bbox=[100, 100, 50, 40]),
        ]

        with caplog.at_level(logging.WARNING):
            elements = layout_annotations(annotations, PAGE)

        assert [e.text for e in _texts(elements)] == ["✓"]
        assert caplog.text.count("Skipping annotation") == 2

    def test_blank_reasoning_treated_as_absent(self):
        annotations = [
            Annotation(action="cross", text="A1", reasoning="   ", bbox=[100, 100, 50, 40]),
            Annotation(action="tick", bbox=[100, 400, 50, 40]),
        ]

        elements = layout_annotations(annotations, (1700.0, 2400.0))

        assert [e.text for e in _texts(elements)] == ["✗", "A1", "✓"]

    def test_non_finite_bbox_skipped(self, caplog):
        annotations = [
            Annotation(action="tick", bbox=[float("nan"), 10, 20, 20]),
            Annotation(action="tick", bbox=[10, 10, float("inf"), 20]),
            Annotation(action="tick", bbox=[100, 100, 50, 40]),
        ]

        with caplog.at_level(logging.WARNING):
            elements = layout_annotations(annotations, PAGE)

        assert [e.text for e in _texts(elements)] == ["✓"]
        assert caplog.text.count("non-finite") == 2

    def test_non_finite_bbox_raises_for_single_layout(self):
        with pytest.raises(AnnotationRenderError):
            layout_annotation(Annotation(action="tick", bbox=[float("nan"), 0, 10, 10]), PAGE, OverlayStyle())


class TestLayoutPageScores:

    def test_total_top_right_double_underlined(self):
        elements = layout_page_scores(PAGE, total_score="7/10")

        total, *lines = elements
        assert total.text == "7/10"
        assert total.anchor == "end"
        assert total.x == 920
        assert len(lines) == 2
        assert all(isinstance(line, LineElement) and line.x2 == 920 for line in lines)
        assert lines[1].y1 > lines[0].y1 > total.y

    def test_question_scores_stack_below_total(self):
        elements = layout_page_scores(PAGE, question_scores=["2/3", "1/4"], total_score="3/7")

        circles = [e for e in elements if isinstance(e, EllipseElement)]
        labels = [e.text for e in _texts(elements)]
        assert labels == ["3/7", "2/3", "1/4"]
        assert len(circles) == 2
        assert circles[1].cy > circles[0].cy
        assert circles[0].cy - circles[0].ry > elements[2].y1

    def test_nothing_to_draw(self):
        assert layout_page_scores(PAGE) == []


def test_render_svg_escapes_text():
    svg = render_svg([TextElement(x=1, y=2, text="a<b & c", size=10, color="#ff0000")], 100, 200)

    assert svg.startswith('<svg xmlns="http://www.w3.org/2000/svg" width="100" height="200"')
    assert "a&lt;b &amp; c" in svg
    assert 'text-anchor="start"' in svg


def test_render_page(make_page):
    page = make_page(3, width=200, height=300, file_name="paper.pdf")
    annotations = [
        Annotation(action="tick", text="M1", bbox=[20, 20, 30, 30]),
        Annotation(action="cross", text="A1", reasoning="Wrong sign", bbox=[20, 120, 30, 30]),
    ]

    annotated = render_page(page, annotations, question_scores=["1/2"], total_score="1/2")

    assert annotated.page_index == 3
    assert annotated.original_file_name == "paper.pdf"
    assert annotated.image_bytes[:2] == b"\xff\xd8"
    with Image.open(io.BytesIO(annotated.image_bytes)) as image:
        assert image.size == (200, 300)
    assert "✓" in annotated.svg
    assert "Wrong sign" in annotated.svg
    assert annotated.image_data.startswith("data:image/jpeg;base64,")


def test_render_page_without_annotations(make_page):
    annotated = render_page(make_page(0))

    assert annotated.svg.endswith('viewBox="0 0 200 300"></svg>')
    assert annotated.image_bytes[:2] == b"\xff\xd8"


def test_render_page_survives_malformed_annotations(make_page):
    annotations = [
        Annotation(action="tick", bbox=[float("nan"), 10, 20, 20]),
        Annotation(action="cross", reasoning=" ", bbox=[20, 120, 30, 30]),
        Annotation(action="tick", text="B1", bbox=[20, 20, 30, 30]),
    ]

    annotated = render_page(make_page(0), annotations)

    assert annotated.image_bytes[:2] == b"\xff\xd8"
    assert "B1" in annotated.svg
    assert annotated.svg.count("✓") == 1
