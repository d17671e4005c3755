"""Page-scoped identifiers of the form ``p<pageIndex>_<kind>_<sequence>``.

Downstream citation and lookup code parses these positionally, so the page
number baked into an identifier is a denormalized copy of the structured
page index. Whenever a page index changes, identifiers are rewritten through
``reencode_page_id`` and nowhere else.
"""

import re
from typing import Optional

PAGE_ID_PATTERN = re.compile(r"^p(\d+)_")


def encode_page_id(page_index: int, kind: str, sequence: int) -> str:
    """Build a fresh identifier, e.g. ``encode_page_id(2, "ocr", 1) == "p2_ocr_1"``."""
    return f"p{page_index}_{kind}_{sequence}"


def page_index_from_id(identifier: Optional[str]) -> Optional[int]:
    """Return the page number encoded in an identifier, or None if it has none."""
    if not identifier:
        return None
    match = PAGE_ID_PATTERN.match(identifier)
    return int(match.group(1)) if match else None


def reencode_page_id(identifier: Optional[str], page_index: int) -> Optional[str]:
    """Point a page-scoped identifier at a new page.

    Identifiers without a ``p<N>_`` prefix are opaque and returned unchanged.
    """
    if not identifier:
        return identifier
    return PAGE_ID_PATTERN.sub(f"p{page_index}_", identifier, count=1)
