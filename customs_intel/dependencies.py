"""
FastAPI dependency injection.
Provides stores, engines, per-process caches, the pipeline services and
API key validation.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from customs_intel.config import settings
from customs_intel.engines.anthropic_engine import AnthropicEngine
from customs_intel.engines.base import EmbeddingEngine, LLMEngine
from customs_intel.engines.openai_embeddings import OpenAIEmbeddingEngine
from customs_intel.engines.stub_engine import StubEngine
from customs_intel.pipeline.batch_extractor import TariffBatchExtractor
from customs_intel.pipeline.legal_ingestion import LegalIngestionService
from customs_intel.pipeline.page_scan import PageCountCache, TTLCache
from customs_intel.storage.artifact_store import ArtifactStore
from customs_intel.storage.sql_stores import SqlExtractionStore, SqlLegalStore
from customs_intel.storage.stores import ExtractionStore, LegalStore


# ── Singleton instances ──────────────────────────────────────
_artifact_store: Optional[ArtifactStore] = None
_page_count_cache: Optional[PageCountCache] = None
_summary_cache: Optional[TTLCache[str]] = None


def get_artifact_store() -> ArtifactStore:
    """Get or create the artifact store singleton."""
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store


def get_page_count_cache() -> PageCountCache:
    global _page_count_cache
    if _page_count_cache is None:
        _page_count_cache = PageCountCache()
    return _page_count_cache


def get_summary_cache() -> TTLCache[str]:
    global _summary_cache
    if _summary_cache is None:
        _summary_cache = TTLCache(
            max_size=settings.PAGE_COUNT_CACHE_SIZE,
            ttl_seconds=settings.PAGE_COUNT_CACHE_TTL_SECONDS,
        )
    return _summary_cache


def get_extraction_store() -> ExtractionStore:
    return SqlExtractionStore()


def get_legal_store() -> LegalStore:
    return SqlLegalStore()


def get_llm_engine() -> LLMEngine:
    """Anthropic in production; the offline stub when the flag is set."""
    if settings.ENABLE_STUB_ENGINE:
        return StubEngine()
    return AnthropicEngine()


def get_embedder() -> Optional[EmbeddingEngine]:
    if settings.ENABLE_STUB_ENGINE or not settings.OPENAI_API_KEY:
        return None
    return OpenAIEmbeddingEngine()


def get_batch_extractor(
    store: ExtractionStore = Depends(get_extraction_store),
    engine: LLMEngine = Depends(get_llm_engine),
    artifacts: ArtifactStore = Depends(get_artifact_store),
    page_count_cache: PageCountCache = Depends(get_page_count_cache),
    summary_cache: TTLCache[str] = Depends(get_summary_cache),
) -> TariffBatchExtractor:
    return TariffBatchExtractor(store, engine, artifacts, page_count_cache, summary_cache)


def get_legal_ingestion_service(
    store: LegalStore = Depends(get_legal_store),
    engine: LLMEngine = Depends(get_llm_engine),
    artifacts: ArtifactStore = Depends(get_artifact_store),
    page_count_cache: PageCountCache = Depends(get_page_count_cache),
    embedder: Optional[EmbeddingEngine] = Depends(get_embedder),
) -> LegalIngestionService:
    return LegalIngestionService(store, engine, artifacts, page_count_cache, embedder)


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
