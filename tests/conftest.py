"""
Shared test fixtures.
In-memory stores stand in for PostgreSQL; the stub engine stands in for
the LLM provider.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio

from customs_intel.engines.stub_engine import StubEngine
from customs_intel.pipeline.batch_extractor import TariffBatchExtractor
from customs_intel.pipeline.page_scan import PageCountCache, TTLCache
from customs_intel.storage.artifact_store import ArtifactStore
from customs_intel.storage.stores import (
    ChunkRecord, CostRecord, EvidenceRecord, ExtractionStore, LegalSourceRecord,
    LegalStore, PdfRecord, RunRecord, StoreError,
)

FAKE_PDF_BYTES = b"%PDF-1.4\n% test document\n"


class InMemoryExtractionStore(ExtractionStore):

    def __init__(self):
        self.pdfs: dict[str, PdfRecord] = {}
        self.runs: dict[str, RunRecord] = {}
        self.tariff_lines: dict[str, dict] = {}
        self.hs_codes: dict[str, dict] = {}
        self.notes: list = []
        self.circulars: list = []
        self.cost_events: list[CostRecord] = []
        self.summaries: dict[str, str] = {}
        self.verified: dict[str, list[str]] = {}
        self.fail_operations: set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise StoreError(operation, "simulated failure")

    async def create_pdf(
        self,
        title,
        file_name,
        file_path,
        file_hash,
        file_size_bytes,
        country_code="MA",
        category="tarif",
        pdf_id=None,
    ) -> PdfRecord:
        pdf = PdfRecord(
            id=pdf_id or str(uuid.uuid4()),
            title=title,
            file_name=file_name,
            file_path=file_path,
            country_code=country_code,
            category=category,
            file_size_bytes=file_size_bytes,
            created_at=datetime.now(timezone.utc),
        )
        self.pdfs[pdf.id] = pdf
        return pdf

    async def list_pdfs(self, limit=50, offset=0):
        pdfs = list(reversed(self.pdfs.values()))
        return pdfs[offset: offset + limit], len(pdfs)

    async def get_pdf(self, pdf_id: str) -> Optional[PdfRecord]:
        return self.pdfs.get(pdf_id)

    async def set_pdf_page_count(self, pdf_id: str, page_count: int) -> None:
        self.pdfs[pdf_id].page_count = page_count

    async def save_pdf_summary(self, pdf_id: str, summary: str) -> None:
        self.summaries[pdf_id] = summary

    async def mark_pdf_verified(self, pdf_id: str, related_hs_codes: list[str]) -> None:
        self.pdfs[pdf_id].is_verified = True
        self.verified[pdf_id] = related_hs_codes

    async def create_run(self, pdf_id, start_page, total_pages, batch_size, country_code=None, file_name=None):
        self._check("create_run")
        run = RunRecord(
            id=str(uuid.uuid4()),
            pdf_id=pdf_id,
            current_page=start_page,
            total_pages=total_pages,
            batch_size=batch_size,
            created_at=datetime.now(timezone.utc),
        )
        self.runs[run.id] = run
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, pdf_id: str) -> list[RunRecord]:
        runs = [r for r in self.runs.values() if r.pdf_id == pdf_id]
        return [r.model_copy(deep=True) for r in sorted(runs, key=lambda r: r.created_at, reverse=True)]

    async def save_run(self, run: RunRecord) -> None:
        self._check("save_run")
        stored = self.runs[run.id]
        saved = run.model_copy(deep=True)
        saved.current_page = max(stored.current_page, run.current_page)
        saved.created_at = stored.created_at
        self.runs[run.id] = saved

    async def set_run_status(self, run_id, status, error_message=None):
        run = self.runs.get(run_id)
        if run is None:
            return None
        run.status = status
        if error_message is not None:
            run.error_message = error_message
        return run.model_copy(deep=True)

    async def persist_tariff_lines(self, lines, country_code, source_pdf, run_id) -> int:
        self._check("persist_tariff_lines")
        for line in lines:
            self.tariff_lines[line.national_code] = line.model_dump()
        return len({line.national_code for line in lines})

    async def persist_hs_codes(self, entries) -> int:
        self._check("persist_hs_codes")
        for entry in entries:
            self.hs_codes[entry.code] = entry.model_dump()
        return len(entries)

    async def persist_notes(self, notes, country_code, source_pdf, run_id) -> int:
        self._check("persist_notes")
        self.notes.extend(notes)
        return len(notes)

    async def persist_circulars(self, circulars, country_code) -> int:
        self._check("persist_circulars")
        self.circulars.extend(circulars)
        return sum(len(c.related_hs_codes) for c in circulars)

    async def record_costs(self, events: list[CostRecord]) -> None:
        self.cost_events.extend(events)


class InMemoryLegalStore(LegalStore):

    def __init__(self):
        self.sources: dict[int, LegalSourceRecord] = {}
        self.chunks: dict[int, list[ChunkRecord]] = {}
        self.evidence: dict[int, list[EvidenceRecord]] = {}
        self._next_id = 1

    async def upsert_source(self, country_code, source_type, source_ref, title=None, issuer=None, excerpt=None):
        for source in self.sources.values():
            if (source.country_code, source.source_type, source.source_ref) == (country_code, source_type, source_ref):
                if title:
                    source.title = title
                return source.model_copy()
        source = LegalSourceRecord(
            id=self._next_id,
            country_code=country_code,
            source_type=source_type,
            source_ref=source_ref,
            title=title,
        )
        self._next_id += 1
        self.sources[source.id] = source
        return source.model_copy()

    async def get_source(self, source_id: int) -> Optional[LegalSourceRecord]:
        source = self.sources.get(source_id)
        return source.model_copy() if source else None

    async def reset_source(self, source_id: int) -> None:
        self.chunks.pop(source_id, None)
        self.evidence.pop(source_id, None)
        source = self.sources[source_id]
        source.pages_ingested = 0
        source.last_ingested_page = 0
        source.total_chunks = 0

    async def insert_chunks(self, source_id: int, chunks: list[ChunkRecord]) -> int:
        self.chunks.setdefault(source_id, []).extend(chunks)
        return len(chunks)

    async def insert_evidence(self, source_id, country_code, evidence) -> int:
        self.evidence.setdefault(source_id, []).extend(evidence)
        return len(evidence)

    async def update_progress(self, source_id, total_pages, last_ingested_page, pages_added, chunks_added):
        source = self.sources.get(source_id)
        if source is None:
            raise StoreError("update_progress", f"source {source_id} not found")
        source.total_pages = total_pages
        source.last_ingested_page = max(source.last_ingested_page, last_ingested_page)
        source.pages_ingested = min(source.pages_ingested + pages_added, total_pages)
        source.total_chunks += chunks_added
        return source.model_copy()


def tariff_page_reply(page: int, rows: list[dict], notes: Optional[list[dict]] = None) -> str:
    """Model output for one tariff page, as the page prompt asks for it."""
    return json.dumps({
        "page_number": page,
        "has_tariff_table": bool(rows),
        "raw_lines": rows,
        "notes": notes or [],
    })


@pytest.fixture
def extraction_store():
    return InMemoryExtractionStore()


@pytest.fixture
def legal_store():
    return InMemoryLegalStore()


@pytest.fixture
def artifact_store(tmp_path):
    return ArtifactStore(root=str(tmp_path / "artifacts"))


@pytest.fixture
def page_count_cache():
    return PageCountCache(max_size=16, ttl_seconds=3600)


@pytest.fixture
def summary_cache():
    return TTLCache(max_size=16, ttl_seconds=3600)


@pytest.fixture
def stub_engine():
    return StubEngine()


@pytest_asyncio.fixture
async def tariff_pdf(extraction_store, artifact_store):
    """A registered PDF whose file exists in the artifact store."""
    path = artifact_store.save_bytes("pdfs/test/tarif.pdf", FAKE_PDF_BYTES)
    return await extraction_store.create_pdf(
        title="Chapitre 89 - Navigation maritime",
        file_name="tarif.pdf",
        file_path=path,
        file_hash="0" * 64,
        file_size_bytes=len(FAKE_PDF_BYTES),
    )


@pytest.fixture
def make_extractor(extraction_store, artifact_store, page_count_cache, summary_cache, stub_engine):
    """Factory: a batch extractor over the shared fakes, without inter-page delay."""
    def _make(engine=None) -> TariffBatchExtractor:
        return TariffBatchExtractor(
            extraction_store,
            engine or stub_engine,
            artifact_store,
            page_count_cache,
            summary_cache,
            page_delay=0,
        )
    return _make
