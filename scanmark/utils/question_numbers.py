"""Question-number parsing, normalization and ordering.

Question labels arrive from classification and from the marking service in
loose shapes ("11", "11a", "11 (a)(ii)", "Q3", "null"). Everything that
groups, matches or sorts by question label goes through this module.
"""

import re
import sys
from typing import Iterator, Optional, Sequence, Tuple

# (question number, part components) compared lexicographically:
# (11, ()) < (11, (1,)) < (11, (1, 1)) < (11, (2,)) < (12, ())
OrderKey = Tuple[int, Tuple[int, ...]]

UNRESOLVED_KEY: OrderKey = (sys.maxsize, ())

_UNUSABLE_NUMBERS = {"", "null", "undefined", "none"}
_LEADING_NUMBER = re.compile(r"^\D*?(\d+)")
_LEADING_DIGITS = re.compile(r"^\d+")
_PART_TOKEN = re.compile(r"\(([^()]*)\)|([a-z]+)|(\d+)")
_ROMAN = re.compile(r"^(x{0,3})(ix|iv|v?i{0,3})$")
_ROMAN_VALUES = {"i": 1, "v": 5, "x": 10}
_NATURAL_SPLIT = re.compile(r"(\d+)")


def is_usable_question_number(value: Optional[str]) -> bool:
    """False for missing numbers and the placeholder strings LLMs emit."""
    if value is None:
        return False
    return str(value).strip().lower() not in _UNUSABLE_NUMBERS


def base_question_number(label: Optional[str]) -> str:
    """Return the leading question number of a label ("Q11a(i)" -> "11"), or ''."""
    if not label:
        return ""
    match = _LEADING_NUMBER.match(str(label).strip())
    if not match:
        return ""
    return str(int(match.group(1)))


def normalize_part(part: Optional[str]) -> str:
    """Normalize a sub-question part for comparison: "(I)" -> "i", " b (ii) " -> "bii"."""
    if not part:
        return ""
    return re.sub(r"\s+", "", str(part).strip().replace("(", "").replace(")", "")).lower()


def normalize_sub_question_key(label: Optional[str]) -> str:
    """Key used to group annotations and budgets within one question.

    Leading question digits are dropped so "5a" and "a" land in the same
    group; anything that normalizes to nothing belongs to "root".
    """
    if not label:
        return "root"
    text = str(label).strip().lower()
    text = _LEADING_DIGITS.sub("", text)
    text = re.sub(r"[()\s]", "", text)
    return text or "root"


def _is_roman(token: str) -> bool:
    return bool(token) and bool(_ROMAN.match(token))


def _roman_value(token: str) -> int:
    total = 0
    previous = 0
    for char in reversed(token):
        value = _ROMAN_VALUES[char]
        if value < previous:
            total -= value
        else:
            total += value
            previous = value
    return total


def _letters_value(token: str) -> int:
    value = 0
    for char in token:
        value = value * 27 + (ord(char) - ord("a") + 1)
    return value


def _component_value(token: str, depth: int, parenthesized: bool) -> int:
    if token.isdigit():
        return int(token)
    # A bare single letter at the first level is a letter part ("i" after
    # "h"); deeper, parenthesized or multi-letter numerals read as roman.
    if _is_roman(token) and (parenthesized or depth > 0 or len(token) > 1):
        return _roman_value(token)
    return _letters_value(token)


def _label_components(text: str, start_depth: int) -> Iterator[int]:
    depth = start_depth
    for match in _PART_TOKEN.finditer(text.lower()):
        inner, letters, digits = match.groups()
        if inner is not None:
            inner = re.sub(r"\s+", "", inner)
            if not inner:
                continue
            if inner.isdigit() or inner.isalpha():
                yield _component_value(inner, depth, parenthesized=True)
                depth += 1
            else:
                # "(a)(i)" style content nested in one pair of parentheses
                for value in _label_components(inner, depth):
                    yield value
                    depth += 1
            continue
        token = letters if letters is not None else digits
        yield _component_value(token, depth, parenthesized=False)
        depth += 1


def order_key(question_number: Optional[str], parts: Sequence[str] = ()) -> Optional[OrderKey]:
    """Composite ordering key for a question label and its part path.

    Args:
        question_number: Label of the logical question, possibly already
            carrying parts ("11", "11a(i)")
        parts: Part labels of the nested sub-questions walked to reach
            the node, outermost first

    Returns:
        (question number, part components), or None when the label has no
        leading number to anchor it
    """
    base = base_question_number(question_number)
    if not base:
        return None

    label = str(question_number).strip()
    leading = _LEADING_NUMBER.match(label)
    remainder = label[leading.end():] if leading else ""
    components = list(_label_components(remainder, 0))
    path = remainder.strip().lower()

    for part in parts:
        text = str(part or "").strip().lower()
        # Some classifiers repeat the question number inside the part ("11a"),
        # or the whole parent path ("b(i)" under "b")
        if text.startswith(base):
            text = text[len(base):]
        if path and text.startswith(path) and len(text) > len(path) and not text[len(path)].isalnum():
            text = text[len(path):]
        path += text
        components.extend(_label_components(text, len(components)))

    return int(base), tuple(components)


def key_depth(key: OrderKey) -> int:
    """Nesting depth of a key: 0 for a bare question number."""
    return len(key[1])


def natural_key(label: Optional[str]) -> Tuple[Tuple[int, int, str], ...]:
    """Alphanumeric key that compares digit runs numerically ("2b" < "10a")."""
    chunks = _NATURAL_SPLIT.split(str(label or "").lower())
    key = []
    for chunk in chunks:
        if not chunk:
            continue
        if chunk.isdigit():
            key.append((0, int(chunk), ""))
        else:
            key.append((1, 0, chunk))
    return tuple(key)


def question_sort_key(label: Optional[str]) -> Tuple[int, int, Tuple[Tuple[int, int, str], ...]]:
    """Sort numbered labels by their question number, anything else after them."""
    base = base_question_number(label)
    if base:
        return 0, int(base), natural_key(label)
    return 1, 0, natural_key(label)


def part_suffix(label: Optional[str]) -> str:
    """Whatever follows the leading question number: "11a(i)" -> "a(i)", "Q4" -> ""."""
    if not label:
        return ""
    text = str(label).strip()
    match = _LEADING_NUMBER.match(text)
    return text[match.end():].strip() if match else text
