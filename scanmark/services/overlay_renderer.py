"""
Module: services.overlay_renderer

Purpose:
    Burn marking annotations onto page images. Annotations are laid out
    once as vector primitives, then emitted both as an SVG layer and as a
    Pillow drawing alpha-composited over the page raster (JPEG output).

Key Functions:
    - layout_annotations(): Place ticks, crosses, labels and reasoning
    - layout_page_scores(): Place the total score and per-question circles
    - render_svg(): Serialize primitives to an SVG document
    - render_page(): Produce the AnnotatedPage for one page

Dependencies:
    - PIL: Raster drawing and compositing
"""

import io
import logging
import math
from typing import Dict, List, Literal, Optional, Sequence, Tuple, Union
from xml.sax.saxutils import escape, quoteattr

from PIL import Image, ImageDraw, ImageFont
from pydantic import BaseModel, Field

from scanmark.exceptions import AnnotationRenderError
from scanmark.models.marking import Annotation
from scanmark.models.page import StandardizedPage
from scanmark.models.pipeline import AnnotatedPage

logger = logging.getLogger(__name__)

TICK_SYMBOL = "✓"
CROSS_SYMBOL = "✗"

MARK_COLOR = "#ff0000"
CLASSIFICATION_COLOR = "#0000ff"
CIRCLE_COLOR = "#ffaa00"
UNDERLINE_COLOR = "#0066ff"

MIN_SYMBOL_SIZE = 20
MIN_TEXT_SIZE = 16
CHAR_WIDTH_FACTOR = 0.6
LINE_HEIGHT_FACTOR = 1.2
CLASSIFICATION_MAX_CHARS = 20
REASONING_LINE_CHARS = 30
REASONING_BREAK_SEARCH = 0.7
REASONING_MAX_WIDTH_RATIO = 0.7
DUPLICATE_BBOX_TOLERANCE = 8.0
JPEG_QUALITY = 85

Anchor = Literal["start", "middle", "end"]


# ----- Style -----

class CircleMarkStyle(BaseModel):
    base_radius: float = 60
    base_font_size: float = 30
    margin_right: float = 90
    margin_top: float = 90
    base_stroke_width: float = 8
    min_radius: float = 30
    min_stroke_width: float = 4


class TotalScoreStyle(BaseModel):
    base_font_size: float = 70
    margin_right: float = 80
    margin_top: float = 80
    base_stroke_width: float = 4
    underline_spacing: float = 10
    underline_offset: float = 15
    min_stroke_width: float = 3
    min_margin_right: float = 40
    min_margin_top: float = 40


class OverlayStyle(BaseModel):
    """Sizes are in pixels at the reference height and scale linearly."""

    font_family: str = "'Lucida Handwriting','Comic Neue','Comic Sans MS',cursive,Arial,sans-serif"
    base_reference_height: float = 2400
    base_font_sizes: Dict[str, float] = Field(default_factory=lambda: {
        "reasoning": 25,
        "tick": 50,
        "cross": 50,
        "markingSchemeCode": 50,
        "studentScore": 70,
        "totalScore": 50,
    })
    base_y_offset: float = -40  # percent of box height, symbol baseline
    reasoning_y_offset: float = -11
    circle_mark: CircleMarkStyle = Field(default_factory=CircleMarkStyle)
    total_score: TotalScoreStyle = Field(default_factory=TotalScoreStyle)

    def scale_for(self, page_height: float) -> float:
        return page_height / self.base_reference_height

    def font_size(self, name: str, scale: float, minimum: float = MIN_TEXT_SIZE) -> float:
        return max(self.base_font_sizes[name] * scale, minimum)


# ----- Primitives -----

class TextElement(BaseModel):
    x: float
    y: float  # baseline
    text: str
    size: float
    color: str
    anchor: Anchor = "start"


class LineElement(BaseModel):
    x1: float
    y1: float
    x2: float
    y2: float
    color: str
    width: float


class EllipseElement(BaseModel):
    cx: float
    cy: float
    rx: float
    ry: float
    color: str
    width: float


Element = Union[TextElement, LineElement, EllipseElement]


def estimate_text_width(text: str, size: float) -> float:
    return len(text) * size * CHAR_WIDTH_FACTOR


def wrap_text(text: str, target: int = REASONING_LINE_CHARS) -> List[str]:
    """Break text near ``target`` characters at a space or punctuation.

    Searches back from the target to 70% of it for a break character; a
    word with no break point in range is split hard at the target.
    """
    lines: List[str] = []
    remaining = " ".join(text.split())
    floor = int(target * REASONING_BREAK_SEARCH)

    while len(remaining) > target:
        cut = None
        for i in range(target, floor - 1, -1):
            if remaining[i] in " ,.;:!?-":
                cut = i
                break
        if cut is None:
            line, remaining = remaining[:target], remaining[target:]
        elif remaining[cut] == " ":
            line, remaining = remaining[:cut], remaining[cut + 1:]
        else:
            line, remaining = remaining[:cut + 1], remaining[cut + 1:]
        lines.append(line.rstrip())
        remaining = remaining.lstrip()

    if remaining:
        lines.append(remaining)
    return lines


# ----- Layout -----

def _parse_bbox(annotation: Annotation) -> Tuple[float, float, float, float]:
    if len(annotation.bbox) != 4:
        raise AnnotationRenderError(f"Annotation bbox must have 4 values, got {annotation.bbox}")
    x, y, w, h = (float(v) for v in annotation.bbox)
    if not all(math.isfinite(v) for v in (x, y, w, h)):
        raise AnnotationRenderError(f"Annotation bbox has non-finite values: {annotation.bbox}")
    if w < 0 or h < 0:
        raise AnnotationRenderError(f"Annotation bbox has negative size: {annotation.bbox}")
    return x, y, w, h


def _label_parts(annotation: Annotation, symbol: Optional[str], style: OverlayStyle, scale: float,
                 symbol_size_name: str) -> List[Tuple[str, float, str]]:
    parts: List[Tuple[str, float, str]] = []
    if symbol:
        parts.append((symbol, style.font_size(symbol_size_name, scale, MIN_SYMBOL_SIZE), MARK_COLOR))
    if annotation.text:
        parts.append((annotation.text, style.font_size("markingSchemeCode", scale), MARK_COLOR))
    if annotation.classification_text:
        classification = annotation.classification_text.strip()
        if len(classification) > CLASSIFICATION_MAX_CHARS:
            classification = classification[:CLASSIFICATION_MAX_CHARS - 3] + "..."
        parts.append((classification, style.font_size("reasoning", scale), CLASSIFICATION_COLOR))
    return parts


def _layout_label(
    parts: List[Tuple[str, float, str]],
    box: Tuple[float, float, float, float],
    baseline: float,
    page_width: float,
    gap: float,
) -> Tuple[List[TextElement], float, float]:
    """Lay label parts out to the right of the box, or to its left if they would overflow.

    Returns:
        (elements, left edge, right edge) of the placed label
    """
    x, _, w, _ = box
    widths = [estimate_text_width(text, size) for text, size, _ in parts]
    total = sum(widths) + gap * max(len(parts) - 1, 0)

    elements: List[TextElement] = []
    right_anchor = x + w + gap
    if right_anchor + total <= page_width - gap or x - gap - total < 0:
        cursor = right_anchor
        for (text, size, color), width in zip(parts, widths):
            elements.append(TextElement(x=cursor, y=baseline, text=text, size=size, color=color))
            cursor += width + gap
        return elements, right_anchor, right_anchor + total

    # Flip: anchor at the box's left edge, parts laid out right-to-left
    cursor = x - gap
    for (text, size, color), width in reversed(list(zip(parts, widths))):
        elements.append(TextElement(x=cursor, y=baseline, text=text, size=size, color=color, anchor="end"))
        cursor -= width + gap
    elements.reverse()
    return elements, x - gap - total, x - gap


def _layout_reasoning(
    reasoning: str,
    box: Tuple[float, float, float, float],
    label_span: Tuple[float, float],
    baseline: float,
    page_size: Tuple[float, float],
    style: OverlayStyle,
    scale: float,
) -> List[TextElement]:
    x, y, w, h = box
    page_width, page_height = page_size
    size = style.font_size("reasoning", scale)
    lines = wrap_text(reasoning)
    line_height = size * LINE_HEIGHT_FACTOR
    block_width = max(estimate_text_width(line, size) for line in lines)
    block_height = line_height * len(lines)
    gap = 10 * scale

    label_left, label_right = label_span
    flipped = label_right <= x
    inline_x = (label_left - gap - block_width) if flipped else (label_right + gap)
    fits_inline = (
        len(lines) == 1
        and block_width <= page_width * REASONING_MAX_WIDTH_RATIO
        and 0 <= inline_x
        and inline_x + block_width <= page_width
    )

    if fits_inline:
        top = baseline + style.reasoning_y_offset * scale
        return [TextElement(x=inline_x, y=top, text=lines[0], size=size, color=MARK_COLOR)]

    left = min(max(x, 0.0), max(page_width - block_width, 0.0))
    below_first = y + h + gap + size
    if below_first + block_height - size > page_height:
        # Near the bottom edge: put the block above the box instead
        first = max(y - gap - block_height + size, size)
    else:
        first = below_first
    return [
        TextElement(x=left, y=first + i * line_height, text=line, size=size, color=MARK_COLOR)
        for i, line in enumerate(lines)
    ]


def layout_annotation(
    annotation: Annotation,
    page_size: Tuple[float, float],
    style: OverlayStyle,
    stack_offset: float = 0.0,
) -> List[Element]:
    """
    Lay out one annotation.

    Raises:
        AnnotationRenderError: For malformed boxes or unknown actions
    """
    page_width, page_height = page_size
    scale = style.scale_for(page_height)
    x, y, w, h = _parse_bbox(annotation)
    y += stack_offset

    # Clamp boxes running off the bottom edge
    if y + h > page_height:
        y = min(y, page_height - MIN_SYMBOL_SIZE)
        h = max(page_height - y, 0.0)
    box = (x, y, w, h)

    action = annotation.action.lower()
    gap = 8 * scale
    baseline = y + h + h * style.base_y_offset / 100

    if action in ("tick", "cross"):
        symbol = TICK_SYMBOL if action == "tick" else CROSS_SYMBOL
        parts = _label_parts(annotation, symbol, style, scale, action)
        baseline = max(baseline, parts[0][1])
        elements: List[Element] = []
        labels, left, right = _layout_label(parts, box, baseline, page_width, gap)
        elements.extend(labels)
        if action == "cross" and (annotation.reasoning or "").strip():
            elements.extend(_layout_reasoning(
                annotation.reasoning, box, (left, right), baseline, page_size, style, scale
            ))
        return elements

    if action == "circle":
        stroke = max(style.circle_mark.base_stroke_width * scale * 0.5, style.circle_mark.min_stroke_width)
        elements = [EllipseElement(
            cx=x + w / 2, cy=y + h / 2, rx=w / 2 + stroke, ry=h / 2 + stroke,
            color=CIRCLE_COLOR, width=stroke,
        )]
        parts = _label_parts(annotation, None, style, scale, "tick")
        if parts:
            elements.extend(_layout_label(parts, box, max(baseline, parts[0][1]), page_width, gap)[0])
        return elements

    if action == "underline":
        stroke = max(style.total_score.base_stroke_width * scale, style.total_score.min_stroke_width)
        elements = [LineElement(x1=x, y1=y + h, x2=x + w, y2=y + h, color=UNDERLINE_COLOR, width=stroke)]
        parts = _label_parts(annotation, None, style, scale, "tick")
        if parts:
            elements.extend(_layout_label(parts, box, max(baseline, parts[0][1]), page_width, gap)[0])
        return elements

    if action == "write":
        content = annotation.text or annotation.reasoning or ""
        if not content:
            return []
        size = style.font_size("markingSchemeCode", scale)
        return [TextElement(x=x, y=max(baseline, size), text=content, size=size, color=MARK_COLOR)]

    raise AnnotationRenderError(f"Unknown annotation action: {annotation.action!r}")


def _is_duplicate(a: Tuple[float, ...], b: Tuple[float, ...]) -> bool:
    return all(abs(p - q) <= DUPLICATE_BBOX_TOLERANCE for p, q in zip(a, b))


def layout_annotations(
    annotations: Sequence[Annotation],
    page_size: Tuple[float, float],
    style: Optional[OverlayStyle] = None,
) -> List[Element]:
    """Lay out every annotation on a page, skipping the ones that cannot be drawn.

    Annotations sharing (approximately) the same box are stacked downward.
    """
    style = style or OverlayStyle()
    scale = style.scale_for(page_size[1])
    step = style.font_size("tick", scale, MIN_SYMBOL_SIZE) * LINE_HEIGHT_FACTOR

    placed: List[Tuple[float, ...]] = []
    elements: List[Element] = []
    for annotation in annotations:
        try:
            box = _parse_bbox(annotation)
            duplicates = sum(1 for other in placed if _is_duplicate(box, other))
            elements.extend(layout_annotation(annotation, page_size, style, duplicates * step))
            placed.append(box)
        except AnnotationRenderError as e:
            logger.warning(f"Skipping annotation on page: {e}")
    return elements


def layout_page_scores(
    page_size: Tuple[float, float],
    question_scores: Sequence[str] = (),
    total_score: Optional[str] = None,
    style: Optional[OverlayStyle] = None,
) -> List[Element]:
    """
    Pin score marks to the top-right corner.

    The submission total (double-underlined) goes first; per-question score
    circles stack beneath it.
    """
    style = style or OverlayStyle()
    page_width, page_height = page_size
    scale = style.scale_for(page_height)
    elements: List[Element] = []
    top = 0.0

    if total_score:
        ts = style.total_score
        size = max(ts.base_font_size * scale, MIN_TEXT_SIZE)
        margin_right = max(ts.margin_right * scale, ts.min_margin_right)
        margin_top = max(ts.margin_top * scale, ts.min_margin_top)
        stroke = max(ts.base_stroke_width * scale, ts.min_stroke_width)
        right = page_width - margin_right
        baseline = margin_top + size
        width = estimate_text_width(total_score, size)
        first = baseline + ts.underline_offset * scale
        second = first + max(ts.underline_spacing * scale, stroke * 2)

        elements.append(TextElement(x=right, y=baseline, text=total_score, size=size,
                                    color=MARK_COLOR, anchor="end"))
        for underline_y in (first, second):
            elements.append(LineElement(x1=right - width, y1=underline_y, x2=right, y2=underline_y,
                                        color=MARK_COLOR, width=stroke))
        top = second + stroke

    cm = style.circle_mark
    radius = max(cm.base_radius * scale, cm.min_radius)
    stroke = max(cm.base_stroke_width * scale, cm.min_stroke_width)
    size = max(cm.base_font_size * scale, MIN_TEXT_SIZE)
    cx = page_width - max(cm.margin_right * scale, radius + stroke)
    cy = max(top + radius + stroke, max(cm.margin_top * scale, radius + stroke)) if top else \
        max(cm.margin_top * scale, radius + stroke)

    for score_text in question_scores:
        elements.append(EllipseElement(cx=cx, cy=cy, rx=radius, ry=radius, color=MARK_COLOR, width=stroke))
        elements.append(TextElement(x=cx, y=cy + size * 0.35, text=score_text, size=size,
                                    color=MARK_COLOR, anchor="middle"))
        cy += 2 * radius + stroke * 2

    return elements


# ----- Output -----

def render_svg(elements: Sequence[Element], width: int, height: int, style: Optional[OverlayStyle] = None) -> str:
    """Serialize primitives as a standalone SVG document sized to the page."""
    style = style or OverlayStyle()
    font = quoteattr(style.font_family)
    body: List[str] = []
    for element in elements:
        if isinstance(element, TextElement):
            body.append(
                f'<text x="{element.x:.1f}" y="{element.y:.1f}" font-family={font} '
                f'font-size="{element.size:.1f}" fill="{element.color}" '
                f'text-anchor="{element.anchor}">{escape(element.text)}</text>'
            )
        elif isinstance(element, LineElement):
            body.append(
                f'<line x1="{element.x1:.1f}" y1="{element.y1:.1f}" x2="{element.x2:.1f}" '
                f'y2="{element.y2:.1f}" stroke="{element.color}" stroke-width="{element.width:.1f}"/>'
            )
        else:
            body.append(
                f'<ellipse cx="{element.cx:.1f}" cy="{element.cy:.1f}" rx="{element.rx:.1f}" '
                f'ry="{element.ry:.1f}" fill="none" stroke="{element.color}" '
                f'stroke-width="{element.width:.1f}"/>'
            )
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}">' + "".join(body) + "</svg>"
    )


_PIL_ANCHORS = {"start": "ls", "middle": "ms", "end": "rs"}


def _load_font(size: float) -> Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]:
    """Load a font with tick/cross glyphs, falling back to Pillow's default."""
    font_options = [
        "DejaVuSans.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "Arial Unicode.ttf",
        "arial.ttf",
        "Arial.ttf",
    ]
    for font_name in font_options:
        try:
            return ImageFont.truetype(font_name, int(round(size)))
        except (IOError, OSError):
            continue
    return ImageFont.load_default(size=int(round(size)))


def draw_elements(image: Image.Image, elements: Sequence[Element]) -> Image.Image:
    """Draw primitives on a transparent layer and composite it over ``image``."""
    base = image.convert("RGBA")
    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    fonts: Dict[int, Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]] = {}

    for element in elements:
        if isinstance(element, TextElement):
            key = int(round(element.size))
            if key not in fonts:
                fonts[key] = _load_font(key)
            draw.text((element.x, element.y), element.text, fill=element.color,
                      font=fonts[key], anchor=_PIL_ANCHORS[element.anchor])
        elif isinstance(element, LineElement):
            draw.line([(element.x1, element.y1), (element.x2, element.y2)],
                      fill=element.color, width=max(int(round(element.width)), 1))
        else:
            draw.ellipse(
                [element.cx - element.rx, element.cy - element.ry,
                 element.cx + element.rx, element.cy + element.ry],
                outline=element.color, width=max(int(round(element.width)), 1),
            )

    return Image.alpha_composite(base, layer).convert("RGB")


def render_page(
    page: StandardizedPage,
    annotations: Sequence[Annotation] = (),
    question_scores: Sequence[str] = (),
    total_score: Optional[str] = None,
    style: Optional[OverlayStyle] = None,
) -> AnnotatedPage:
    """
    Render one page: SVG overlay plus flattened JPEG.

    Args:
        page: Page to draw on
        annotations: Annotations placed on this page
        question_scores: Score texts of the questions shown on this page
        total_score: Submission total, drawn on the first page only
        style: Overlay style

    Returns:
        AnnotatedPage with the SVG layer and JPEG bytes
    """
    style = style or OverlayStyle()
    page_size = (float(page.width), float(page.height))

    elements: List[Element] = layout_annotations(annotations, page_size, style)
    elements.extend(layout_page_scores(page_size, question_scores, total_score, style))

    with Image.open(io.BytesIO(page.image_bytes)) as image:
        flattened = draw_elements(image, elements)
    buffer = io.BytesIO()
    flattened.save(buffer, format="JPEG", quality=JPEG_QUALITY)

    logger.debug(f"Rendered page {page.index}: {len(annotations)} annotation(s), {len(elements)} element(s)")
    return AnnotatedPage(
        page_index=page.index,
        width=page.width,
        height=page.height,
        original_file_name=page.original_file_name,
        svg=render_svg(elements, page.width, page.height, style),
        image_bytes=buffer.getvalue(),
    )
