"""
Page counting and the tariff pre-scan.

Counts are cached per document in an explicit bounded TTL cache that the
extractor receives at construction, so tests can build a fresh one.
"""

import asyncio
import math
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, TypeVar

import structlog

from customs_intel.config import settings
from customs_intel.engines import pdf_text
from customs_intel.engines.base import EngineError
from customs_intel.models.enums import PageKind
from customs_intel.pipeline.page_parser import page_contains_tariff_table

logger = structlog.get_logger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Bounded LRU cache whose entries expire after ttl_seconds."""

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: "OrderedDict[Hashable, tuple[float, V]]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._data[key] = (self._clock() + self.ttl_seconds, value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class PageCountCache(TTLCache[int]):

    def __init__(self, max_size: Optional[int] = None, ttl_seconds: Optional[float] = None, **kwargs):
        super().__init__(
            max_size or settings.PAGE_COUNT_CACHE_SIZE,
            ttl_seconds if ttl_seconds is not None else settings.PAGE_COUNT_CACHE_TTL_SECONDS,
            **kwargs,
        )


def estimate_pages_from_size(size_bytes: int) -> int:
    return max(1, math.ceil(size_bytes / settings.ESTIMATED_BYTES_PER_TARIFF_PAGE))


async def count_document_pages(pdf_bytes: bytes, cache_key: str, cache: PageCountCache) -> int:
    """
    Resolve a document's page count: cache, then pdfplumber, then a raw
    page-object scan, then a size-based estimate.
    """
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    try:
        count = await asyncio.to_thread(pdf_text.count_pages, pdf_bytes)
    except EngineError as e:
        count = pdf_text.count_page_objects(pdf_bytes)
        logger.warning("page_count_fallback_scan", key=cache_key, error=e.message, pages=count)

    if count <= 0:
        count = estimate_pages_from_size(len(pdf_bytes))
        logger.warning("page_count_estimated_from_size", key=cache_key, size_bytes=len(pdf_bytes), pages=count)

    cache.set(cache_key, count)
    return count


async def prescan_pages(pdf_bytes: bytes, start_page: int, end_page: int) -> dict[int, PageKind]:
    """
    Label each page of the window as tariff or text from its text layer.
    Pages without a usable text layer (scans) are labelled tariff: only the
    model can read them.
    """
    pages = range(start_page, end_page + 1)
    try:
        texts = await asyncio.to_thread(pdf_text.extract_page_texts, pdf_bytes, pages)
    except EngineError as e:
        logger.warning("prescan_failed", error=e.message)
        return {page: PageKind.TARIFF for page in pages}

    kinds = {}
    for page in pages:
        text = texts.get(page) or ""
        if len(text) < settings.LEGAL_MIN_TEXT_CHARS or page_contains_tariff_table(text):
            kinds[page] = PageKind.TARIFF
        else:
            kinds[page] = PageKind.TEXT

    logger.info(
        "prescan_complete",
        start_page=start_page,
        end_page=end_page,
        tariff_pages=sum(1 for k in kinds.values() if k == PageKind.TARIFF),
        text_pages=sum(1 for k in kinds.values() if k == PageKind.TEXT),
    )
    return kinds
