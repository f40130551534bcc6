"""
Tests for the page count cache and page counting fallbacks.
"""

import pytest

from customs_intel.models.enums import PageKind
from customs_intel.pipeline.page_scan import (
    PageCountCache,
    TTLCache,
    count_document_pages,
    estimate_pages_from_size,
    prescan_pages,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestTTLCache:

    def test_get_and_expiry(self):
        clock = FakeClock()
        cache = TTLCache(max_size=4, ttl_seconds=60, clock=clock)
        cache.set("a", 1)
        assert cache.get("a") == 1

        clock.now += 59
        assert cache.get("a") == 1
        clock.now += 1
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_least_recently_used_evicted(self):
        cache = TTLCache(max_size=2, ttl_seconds=60, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_clear(self):
        cache = TTLCache(max_size=2, ttl_seconds=60)
        cache.set("a", 1)
        cache.clear()
        assert cache.get("a") is None

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            TTLCache(max_size=0, ttl_seconds=60)


class TestCountDocumentPages:

    @pytest.mark.asyncio
    async def test_cached_value_wins(self):
        cache = PageCountCache(max_size=4, ttl_seconds=60)
        cache.set("pdf-1", 42)
        assert await count_document_pages(b"not a pdf", "pdf-1", cache) == 42

    @pytest.mark.asyncio
    async def test_page_object_scan_when_unreadable(self):
        cache = PageCountCache(max_size=4, ttl_seconds=60)
        data = b"garbage /Type /Page x /Type /Page y /Type /Pages z"
        assert await count_document_pages(data, "pdf-2", cache) == 2
        assert cache.get("pdf-2") == 2

    @pytest.mark.asyncio
    async def test_size_estimate_as_last_resort(self):
        cache = PageCountCache(max_size=4, ttl_seconds=60)
        data = b"x" * 120_000
        assert await count_document_pages(data, "pdf-3", cache) == estimate_pages_from_size(len(data))

    def test_estimate_never_below_one(self):
        assert estimate_pages_from_size(10) == 1


class TestPrescan:

    @pytest.mark.asyncio
    async def test_unreadable_document_is_all_tariff(self):
        kinds = await prescan_pages(b"not a pdf", 3, 5)
        assert kinds == {3: PageKind.TARIFF, 4: PageKind.TARIFF, 5: PageKind.TARIFF}
