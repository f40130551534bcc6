"""
Legal document ingestion: page text → chunks (+ embeddings) → HS evidence.

Dense legal text is processed one page per call by default. Re-submitting
pages a source has already ingested is a no-op, so a client can replay a
whole document safely.
"""

import asyncio
import base64
import binascii
from typing import Optional

import structlog

from customs_intel.config import settings
from customs_intel.engines import pdf_text
from customs_intel.engines.base import EmbeddingEngine, EngineError, LLMEngine, RateLimitedError
from customs_intel.observability.metrics import legal_chunks_created_total, legal_pages_ingested_total
from customs_intel.pipeline.batch_extractor import PipelineError
from customs_intel.pipeline.chunker import DetectedCode, PageText, TextChunk, create_chunks, detect_hs_codes
from customs_intel.pipeline.page_scan import PageCountCache, count_document_pages
from customs_intel.pipeline.prompts import build_text_extraction_prompt
from customs_intel.schemas.ingestion import IngestLegalDocRequest, IngestLegalDocResponse
from customs_intel.storage.artifact_store import ArtifactStore
from customs_intel.storage.stores import ChunkRecord, EvidenceRecord, LegalSourceRecord, LegalStore

logger = structlog.get_logger(__name__)

EXCERPT_CHARS = 500


def _evidence_from_codes(codes: list[DetectedCode]) -> list[EvidenceRecord]:
    """One evidence row per code, keeping the occurrence with the longest context."""
    best: dict[str, DetectedCode] = {}
    for code in codes:
        if code.hs_code_6 is None:
            continue
        key = code.national_code or code.hs_code_6
        if key not in best or len(code.context) > len(best[key].context):
            best[key] = code
    return [
        EvidenceRecord(
            national_code=code.national_code,
            hs_code_6=code.hs_code_6,
            evidence_text=code.context,
            page_number=code.page_number,
            confidence="high" if code.national_code else "medium",
        )
        for code in best.values()
    ]


class LegalIngestionService:

    def __init__(
        self,
        store: LegalStore,
        engine: LLMEngine,
        artifact_store: ArtifactStore,
        page_count_cache: PageCountCache,
        embedder: Optional[EmbeddingEngine] = None,
    ):
        self.store = store
        self.engine = engine
        self.artifacts = artifact_store
        self.page_count_cache = page_count_cache
        self.embedder = embedder

    async def ingest(self, request: IngestLegalDocRequest) -> IngestLegalDocResponse:
        pdf_bytes = None
        if request.raw_text:
            total_pages = 1
        else:
            pdf_bytes = self._load_pdf(request)
            cache_key = f"legal:{request.country_code}:{request.source_type}:{request.source_ref}"
            total_pages = await count_document_pages(pdf_bytes, cache_key, self.page_count_cache)

        if request.batch_mode:
            batch_start = request.start_page
            batch_end = min(total_pages, batch_start + settings.LEGAL_PAGES_PER_BATCH - 1)
            if request.end_page is not None:
                batch_end = min(batch_end, request.end_page)
        else:
            batch_start, batch_end = 1, total_pages

        if batch_start > total_pages:
            logger.info("legal_already_complete", source_ref=request.source_ref, total_pages=total_pages)
            return IngestLegalDocResponse(
                source_id=request.source_id,
                total_pages=total_pages,
                already_complete=True,
            )

        source: Optional[LegalSourceRecord] = None
        if request.source_id is not None:
            source = await self.store.get_source(request.source_id)
            if source is None:
                raise PipelineError(f"Legal source {request.source_id} not found", "ERR_SOURCE_NOT_FOUND")
            if source.last_ingested_page >= batch_end:
                complete = source.pages_ingested >= total_pages
                logger.info(
                    "legal_pages_already_ingested",
                    source_id=source.id,
                    batch_start=batch_start,
                    batch_end=batch_end,
                    complete=complete,
                )
                return IngestLegalDocResponse(
                    source_id=source.id,
                    total_pages=total_pages,
                    batch_start=batch_start,
                    batch_end=batch_end,
                    already_complete=complete,
                )

        pages = await self._page_texts(request, pdf_bytes, batch_start, batch_end)
        full_text = "\n\n".join(page.text for page in pages)

        if source is None:
            source = await self.store.upsert_source(
                country_code=request.country_code,
                source_type=request.source_type,
                source_ref=request.source_ref,
                title=request.title,
                issuer=request.issuer,
                excerpt=full_text[:EXCERPT_CHARS] or None,
            )
            if batch_start == 1:
                # fresh ingestion of the document replaces what an earlier one stored
                await self.store.reset_source(source.id)
                source = source.model_copy(update={"pages_ingested": 0, "last_ingested_page": 0, "total_chunks": 0})

        chunks = create_chunks(pages, start_index=source.total_chunks)
        detected = detect_hs_codes(pages) if request.detect_hs_codes else []

        records = []
        for chunk in chunks:
            embedding = await self._embed(chunk) if request.generate_embeddings else None
            records.append(ChunkRecord(
                chunk_index=chunk.chunk_index,
                chunk_text=chunk.text,
                page_number=chunk.page_number,
                char_start=chunk.char_start,
                char_end=chunk.char_end,
                article_number=chunk.article_number,
                section_title=chunk.section_title,
                parent_section=chunk.parent_section,
                chunk_type=chunk.chunk_type.value,
                hierarchy_path=chunk.hierarchy_path,
                keywords=chunk.keywords,
                mentioned_hs_codes=chunk.mentioned_hs_codes,
                embedding=embedding,
            ))

        chunks_created = await self.store.insert_chunks(source.id, records)
        evidence_created = await self.store.insert_evidence(
            source.id, request.country_code, _evidence_from_codes(detected)
        )
        await self.store.update_progress(
            source.id,
            total_pages=total_pages,
            last_ingested_page=batch_end,
            pages_added=len(pages),
            chunks_added=chunks_created,
        )

        legal_pages_ingested_total.inc(len(pages))
        for chunk in chunks:
            legal_chunks_created_total.labels(chunk_type=chunk.chunk_type.value).inc()

        logger.info(
            "legal_batch_ingested",
            source_id=source.id,
            source_ref=request.source_ref,
            batch_start=batch_start,
            batch_end=batch_end,
            total_pages=total_pages,
            chunks=chunks_created,
            detected_codes=len(detected),
            evidence=evidence_created,
        )
        return IngestLegalDocResponse(
            source_id=source.id,
            pages_processed=len(pages),
            chunks_created=chunks_created,
            detected_codes_count=len(detected),
            evidence_created=evidence_created,
            total_pages=total_pages,
            batch_start=batch_start,
            batch_end=batch_end,
        )

    def _load_pdf(self, request: IngestLegalDocRequest) -> bytes:
        if request.pdf_base64:
            try:
                return base64.b64decode(request.pdf_base64, validate=True)
            except (binascii.Error, ValueError) as e:
                raise PipelineError(f"Invalid pdf_base64: {e}", "ERR_BAD_REQUEST") from e
        try:
            return self.artifacts.load_bytes(request.pdf_path)
        except (FileNotFoundError, ValueError) as e:
            raise PipelineError(f"PDF file unavailable: {e}", "ERR_PDF_NOT_FOUND") from e

    async def _page_texts(
        self,
        request: IngestLegalDocRequest,
        pdf_bytes: Optional[bytes],
        batch_start: int,
        batch_end: int,
    ) -> list[PageText]:
        if request.raw_text:
            return [PageText(page_number=1, text=request.raw_text)]

        pages = range(batch_start, batch_end + 1)
        try:
            texts = await asyncio.to_thread(pdf_text.extract_page_texts, pdf_bytes, pages)
        except EngineError as e:
            logger.warning("legal_text_layer_unreadable", error=e.message)
            texts = {}

        pdf_b64 = None
        result = []
        for page in pages:
            text = texts.get(page) or ""
            if not pdf_text.has_text_layer(text, settings.LEGAL_MIN_TEXT_CHARS):
                pdf_b64 = pdf_b64 or base64.b64encode(pdf_bytes).decode("ascii")
                text = await self._llm_page_text(pdf_b64, page)
            result.append(PageText(page_number=page, text=text))
        return result

    async def _llm_page_text(self, pdf_b64: str, page: int) -> str:
        try:
            response = await self.engine.analyze_document(
                pdf_b64,
                build_text_extraction_prompt(page),
                timeout=settings.ANTHROPIC_PAGE_TIMEOUT_SECONDS,
                page_number=page,
            )
        except RateLimitedError as e:
            raise PipelineError(
                f"Provider rate limit on page {page}", "ERR_RATE_LIMITED", retry_after=e.retry_after
            ) from e
        except EngineError as e:
            raise PipelineError(f"Text extraction failed on page {page}: {e.message}", "ERR_EXTRACTION_FAILED") from e
        logger.info("legal_page_text_from_llm", page=page, chars=len(response.text))
        return response.text

    async def _embed(self, chunk: TextChunk) -> Optional[list[float]]:
        if self.embedder is None:
            return None
        try:
            return await self.embedder.embed(chunk.text)
        except EngineError as e:
            logger.warning("chunk_embedding_failed", chunk_index=chunk.chunk_index, error=e.message)
            return None
