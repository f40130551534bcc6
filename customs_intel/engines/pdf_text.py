"""
pdfplumber text layer access.
Used for page counting, the tariff pre-scan and legal document text.
Scanned pages come back empty; callers decide on an LLM fallback.
"""

import io
import re
from typing import Iterable, Optional

import pdfplumber
import structlog

from customs_intel.engines.base import EngineError

logger = structlog.get_logger(__name__)

ENGINE_NAME = "pdfplumber"

# "/Type /Page" objects, excluding the "/Type /Pages" tree nodes
_PAGE_OBJECT_RE = re.compile(rb"/Type\s*/Page(?!s)")


def _open(pdf_bytes: bytes):
    return pdfplumber.open(io.BytesIO(pdf_bytes))


def count_pages(pdf_bytes: bytes) -> int:
    """Page count from the parsed document. Raises EngineError if unreadable."""
    try:
        with _open(pdf_bytes) as pdf:
            return len(pdf.pages)
    except Exception as e:
        raise EngineError(ENGINE_NAME, "ERR_PDF_UNREADABLE", f"cannot open PDF: {e}") from e


def count_page_objects(pdf_bytes: bytes) -> int:
    """Rough page count by scanning raw bytes for page objects."""
    return len(_PAGE_OBJECT_RE.findall(pdf_bytes))


def _page_text(page) -> str:
    text = page.extract_text(x_tolerance=3, y_tolerance=3) or ""
    return text.strip()


def extract_page_texts(pdf_bytes: bytes, page_numbers: Iterable[int]) -> dict[int, str]:
    """
    Text of the requested 1-based pages.
    Out-of-range pages are omitted from the result.
    """
    wanted = sorted(set(page_numbers))
    texts: dict[int, str] = {}
    try:
        with _open(pdf_bytes) as pdf:
            total = len(pdf.pages)
            for page_number in wanted:
                if page_number < 1 or page_number > total:
                    continue
                texts[page_number] = _page_text(pdf.pages[page_number - 1])
    except Exception as e:
        raise EngineError(ENGINE_NAME, "ERR_TEXT_EXTRACTION", f"pdfplumber failed: {e}") from e

    logger.debug(
        "pdf_text_extracted",
        pages=len(texts),
        chars=sum(len(t) for t in texts.values()),
    )
    return texts


def has_text_layer(text: Optional[str], min_chars: int) -> bool:
    """Check if extracted page text is worth using instead of an LLM read."""
    if not text or len(text.strip()) < min_chars:
        return False
    words = text.split()[:50]
    alpha_count = sum(1 for w in words if any(c.isalpha() for c in w))
    return alpha_count / len(words) > 0.3 if words else False
