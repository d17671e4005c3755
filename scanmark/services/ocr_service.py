"""OCR adapter: page image -> text plus positioned blocks."""

import asyncio
import logging
from typing import Dict, List, Protocol

from google import genai

from scanmark.models.classification import META_CATEGORIES, PageClassification
from scanmark.models.ocr import PageOcrResponse, PageOcrResult
from scanmark.models.page import StandardizedPage
from scanmark.services.gemini_client import generate_structured, image_part
from scanmark.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

OCR_SYSTEM_INSTRUCTION = """Transcribe the handwritten and printed content of this exam page.
Return the full text in reading order, and one block per line of working
with its [x, y, width, height] pixel box. Write mathematics as LaTeX."""


class OcrService(Protocol):
    """Contract of the external OCR service."""

    async def recognize(self, page: StandardizedPage) -> PageOcrResult:
        ...


class GeminiOcrService:
    """OCR backed by a Gemini structured-output call."""

    def __init__(self, client: genai.Client, model: str):
        self.client = client
        self.model = model

    @retry_with_backoff()
    async def recognize(self, page: StandardizedPage) -> PageOcrResult:
        response, tokens = await generate_structured(
            self.client,
            self.model,
            [image_part(page.image_bytes, page.mime_type), "Transcribe this page."],
            PageOcrResponse,
            system_instruction=OCR_SYSTEM_INSTRUCTION,
        )
        blocks = [block.model_copy(update={"page_index": page.index}) for block in response.math_blocks]
        return PageOcrResult(
            page_index=page.index,
            text=response.text,
            math_blocks=blocks,
            usage_tokens=tokens,
        )


async def run_ocr(
    pages: List[StandardizedPage],
    classifications: List[PageClassification],
    service: OcrService,
    concurrency: int = 8,
) -> List[PageOcrResult]:
    """
    OCR every page that can hold student work.

    Metadata and front pages are skipped. A failed page yields an empty
    result rather than failing the submission.

    Returns:
        One PageOcrResult per OCR'd page, sorted by page index
    """
    categories: Dict[int, str] = {c.page_index: c.category for c in classifications}
    targets = [p for p in pages if categories.get(p.index) not in META_CATEGORIES]
    semaphore = asyncio.Semaphore(concurrency)

    async def _recognize(page: StandardizedPage) -> PageOcrResult:
        async with semaphore:
            try:
                return await service.recognize(page)
            except Exception as e:
                logger.error(f"OCR failed for page {page.index} ({page.original_file_name}): {e}")
                return PageOcrResult(page_index=page.index)

    results = await asyncio.gather(*(_recognize(page) for page in targets))
    logger.info(f"OCR complete for {len(results)} page(s), {len(pages) - len(targets)} skipped")
    return sorted(results, key=lambda r: r.page_index)
