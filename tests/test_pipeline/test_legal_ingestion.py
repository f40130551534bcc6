"""
Tests for legal document ingestion.
"""

import base64

import pytest

from conftest import FAKE_PDF_BYTES
from customs_intel.engines.base import EmbeddingEngine, EngineError, RateLimitedError
from customs_intel.engines.stub_engine import StubEngine
from customs_intel.pipeline.batch_extractor import PipelineError
from customs_intel.pipeline.legal_ingestion import LegalIngestionService
from customs_intel.schemas.ingestion import IngestLegalDocRequest

LEGAL_TEXT = (
    "Article 1\n"
    "Les bateaux de plaisance de la sous-position 8903.11.00.00 sont admis en franchise des droits "
    "et taxes à l'importation, sous réserve de la présentation d'un certificat d'origine délivré par "
    "l'autorité compétente du pays d'exportation et du respect des conditions fixées par la présente "
    "circulaire.\n\n"
    "Article 2\n"
    "Les yachts et autres bateaux relevant de la position 8903.92 restent soumis au régime de droit "
    "commun. Le bénéfice de la franchise ne peut être accordé qu'aux importations réalisées après la "
    "date de publication de la présente circulaire."
)


class FakeEmbedder(EmbeddingEngine):

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.texts = []

    @property
    def engine_name(self) -> str:
        return "fake-embeddings"

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise EngineError(self.engine_name, "ERR_EMBEDDING", "quota exceeded")
        self.texts.append(text)
        return [0.1, 0.2, 0.3]


@pytest.fixture
def make_service(legal_store, artifact_store, page_count_cache, stub_engine):
    def _make(engine=None, embedder=None) -> LegalIngestionService:
        return LegalIngestionService(legal_store, engine or stub_engine, artifact_store, page_count_cache, embedder)
    return _make


def text_request(**overrides) -> IngestLegalDocRequest:
    fields = {
        "source_type": "circular",
        "source_ref": "5432/21",
        "title": "Circulaire relative aux bateaux de plaisance",
        "raw_text": LEGAL_TEXT,
    }
    fields.update(overrides)
    return IngestLegalDocRequest(**fields)


class TestRawText:

    @pytest.mark.asyncio
    async def test_chunks_and_evidence(self, make_service, legal_store):
        response = await make_service().ingest(text_request())

        assert response.source_id == 1
        assert response.pages_processed == 1
        assert response.total_pages == 1
        assert response.chunks_created >= 1
        assert response.chunks_created == len(legal_store.chunks[1])
        assert response.detected_codes_count == 2
        assert response.evidence_created == 2

        evidence = {e.hs_code_6: e for e in legal_store.evidence[1]}
        assert evidence["890311"].national_code == "8903110000"
        assert evidence["890311"].confidence == "high"
        assert evidence["890392"].national_code is None
        assert evidence["890392"].confidence == "medium"

        source = legal_store.sources[1]
        assert source.last_ingested_page == 1
        assert source.pages_ingested == 1
        assert source.total_chunks == response.chunks_created

    @pytest.mark.asyncio
    async def test_chunk_metadata(self, make_service, legal_store):
        await make_service().ingest(text_request())
        chunk = legal_store.chunks[1][0]
        assert chunk.chunk_index == 0
        assert chunk.article_number == "1"
        assert "8903110000" in chunk.mentioned_hs_codes
        assert chunk.embedding is None

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self, make_service, legal_store):
        response = await make_service().ingest(text_request(detect_hs_codes=False))
        assert response.detected_codes_count == 0
        assert legal_store.evidence[1] == []

    @pytest.mark.asyncio
    async def test_fresh_ingestion_replaces_previous(self, make_service, legal_store):
        service = make_service()
        first = await service.ingest(text_request())
        second = await service.ingest(text_request())

        assert second.source_id == first.source_id
        assert len(legal_store.chunks[1]) == first.chunks_created
        assert legal_store.chunks[1][0].chunk_index == 0
        assert legal_store.sources[1].total_chunks == first.chunks_created

    @pytest.mark.asyncio
    async def test_already_ingested_pages_are_noop(self, make_service, legal_store):
        service = make_service()
        first = await service.ingest(text_request())

        again = await service.ingest(text_request(source_id=first.source_id))

        assert again.already_complete
        assert again.pages_processed == 0
        assert len(legal_store.chunks[1]) == first.chunks_created

    @pytest.mark.asyncio
    async def test_batch_past_the_end(self, make_service):
        response = await make_service().ingest(text_request(batch_mode=True, start_page=2))
        assert response.already_complete
        assert response.pages_processed == 0

    @pytest.mark.asyncio
    async def test_unknown_source(self, make_service):
        with pytest.raises(PipelineError) as exc_info:
            await make_service().ingest(text_request(source_id=99))
        assert exc_info.value.error_code == "ERR_SOURCE_NOT_FOUND"


class TestEmbeddings:

    @pytest.mark.asyncio
    async def test_vectors_attached(self, make_service, legal_store):
        embedder = FakeEmbedder()
        await make_service(embedder=embedder).ingest(text_request(generate_embeddings=True))
        assert all(c.embedding == [0.1, 0.2, 0.3] for c in legal_store.chunks[1])
        assert len(embedder.texts) == len(legal_store.chunks[1])

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_chunk(self, make_service, legal_store):
        response = await make_service(embedder=FakeEmbedder(fail=True)).ingest(
            text_request(generate_embeddings=True)
        )
        assert response.chunks_created >= 1
        assert all(c.embedding is None for c in legal_store.chunks[1])


class TestPdfBatches:

    def _pdf_request(self, artifact_store, page_count_cache, **overrides):
        path = artifact_store.save_bytes("legal/law/loi.pdf", FAKE_PDF_BYTES)
        page_count_cache.set("legal:MA:law:LOI-2023-15", 2)
        fields = {
            "source_type": "law",
            "source_ref": "LOI-2023-15",
            "pdf_path": path,
            "batch_mode": True,
        }
        fields.update(overrides)
        return IngestLegalDocRequest(**fields)

    @pytest.mark.asyncio
    async def test_page_by_page_with_model_text(self, make_service, legal_store, artifact_store, page_count_cache):
        engine = StubEngine(page_replies={1: LEGAL_TEXT, 2: LEGAL_TEXT.replace("Article", "Art.")})
        service = make_service(engine)

        first = await service.ingest(self._pdf_request(artifact_store, page_count_cache))
        assert (first.batch_start, first.batch_end, first.total_pages) == (1, 1, 2)
        assert first.pages_processed == 1
        assert engine.calls == [1]

        second = await service.ingest(self._pdf_request(
            artifact_store, page_count_cache, start_page=2, source_id=first.source_id
        ))
        assert (second.batch_start, second.batch_end) == (2, 2)
        assert engine.calls == [1, 2]
        assert legal_store.sources[first.source_id].pages_ingested == 2

        done = await service.ingest(self._pdf_request(
            artifact_store, page_count_cache, start_page=3, source_id=first.source_id
        ))
        assert done.already_complete

    @pytest.mark.asyncio
    async def test_chunk_indexes_continue_across_batches(
        self, make_service, legal_store, artifact_store, page_count_cache
    ):
        service = make_service(StubEngine(page_replies={1: LEGAL_TEXT, 2: LEGAL_TEXT}))
        first = await service.ingest(self._pdf_request(artifact_store, page_count_cache))
        await service.ingest(self._pdf_request(
            artifact_store, page_count_cache, start_page=2, source_id=first.source_id
        ))
        indexes = [c.chunk_index for c in legal_store.chunks[first.source_id]]
        assert indexes == list(range(len(indexes)))

    @pytest.mark.asyncio
    async def test_rate_limit_surfaces(self, make_service, artifact_store, page_count_cache):
        engine = StubEngine(page_replies={1: RateLimitedError("stub", 429, retry_after=20)})
        with pytest.raises(PipelineError) as exc_info:
            await make_service(engine).ingest(self._pdf_request(artifact_store, page_count_cache))
        assert exc_info.value.error_code == "ERR_RATE_LIMITED"
        assert exc_info.value.retry_after == 20

    @pytest.mark.asyncio
    async def test_extraction_failure_surfaces(self, make_service, artifact_store, page_count_cache):
        engine = StubEngine(page_replies={1: EngineError("stub", "ERR_TIMEOUT", "timed out")})
        with pytest.raises(PipelineError) as exc_info:
            await make_service(engine).ingest(self._pdf_request(artifact_store, page_count_cache))
        assert exc_info.value.error_code == "ERR_EXTRACTION_FAILED"

    @pytest.mark.asyncio
    async def test_inline_base64_document(self, make_service, page_count_cache):
        page_count_cache.set("legal:MA:decree:D-2-22-100", 1)
        engine = StubEngine(page_replies={1: LEGAL_TEXT})
        request = IngestLegalDocRequest(
            source_type="decree",
            source_ref="D-2-22-100",
            pdf_base64=base64.b64encode(FAKE_PDF_BYTES).decode("ascii"),
        )
        response = await make_service(engine).ingest(request)
        assert response.pages_processed == 1

    @pytest.mark.asyncio
    async def test_invalid_base64(self, make_service):
        request = IngestLegalDocRequest(source_type="decree", source_ref="D-1", pdf_base64="***not base64***")
        with pytest.raises(PipelineError) as exc_info:
            await make_service().ingest(request)
        assert exc_info.value.error_code == "ERR_BAD_REQUEST"
