"""
Persistence interfaces used by the extraction and ingestion loops.

The loops only talk to these ABCs; the PostgreSQL implementations live in
sql_stores.py and the test suite ships in-memory ones.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from customs_intel.models.enums import RunStatus
from customs_intel.schemas.extraction import (
    BatchStats, CircularReference, ExtractedNote, HSCodeEntry, RunState, TariffLine,
)


class StoreError(Exception):
    """A persistence call failed."""
    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"[{operation}] {message}")


# ── Records ──────────────────────────────────────────────────

class PdfRecord(BaseModel):
    id: str
    title: str
    file_name: str
    file_path: str
    country_code: str = "MA"
    category: str = "tarif"
    page_count: Optional[int] = None
    is_verified: bool = False
    file_size_bytes: Optional[int] = None
    created_at: Optional[datetime] = None


class RunRecord(BaseModel):
    id: str
    pdf_id: str
    status: RunStatus = RunStatus.PROCESSING
    current_page: int = 1
    total_pages: int = 0
    processed_pages: int = 0
    batch_size: int = 4
    stats: BatchStats = Field(default_factory=BatchStats)
    last_batch_start: Optional[int] = None
    last_batch_response: Optional[dict] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    def to_state(self) -> RunState:
        return RunState(
            id=self.id,
            pdf_id=self.pdf_id,
            status=self.status,
            current_page=self.current_page,
            total_pages=self.total_pages,
            processed_pages=self.processed_pages,
            batch_size=self.batch_size,
            stats=self.stats,
            error_message=self.error_message,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )


class CostRecord(BaseModel):
    run_id: Optional[str] = None
    pdf_id: Optional[str] = None
    engine_name: str
    operation: str
    page_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: int = 0


class LegalSourceRecord(BaseModel):
    id: int
    country_code: str
    source_type: str
    source_ref: str
    title: Optional[str] = None
    total_pages: Optional[int] = None
    pages_ingested: int = 0
    last_ingested_page: int = 0
    total_chunks: int = 0


class ChunkRecord(BaseModel):
    chunk_index: int
    chunk_text: str
    page_number: Optional[int] = None
    char_start: Optional[int] = None
    char_end: Optional[int] = None
    article_number: Optional[str] = None
    section_title: Optional[str] = None
    parent_section: Optional[str] = None
    chunk_type: str
    hierarchy_path: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    mentioned_hs_codes: list[str] = Field(default_factory=list)
    embedding: Optional[list[float]] = None


class EvidenceRecord(BaseModel):
    national_code: Optional[str] = None
    hs_code_6: Optional[str] = None
    evidence_text: str
    page_number: Optional[int] = None
    confidence: str = "medium"


# ── Interfaces ───────────────────────────────────────────────

class ExtractionStore(ABC):
    """Documents, extraction runs and the tariff tables they feed."""

    @abstractmethod
    async def create_pdf(
        self,
        title: str,
        file_name: str,
        file_path: str,
        file_hash: str,
        file_size_bytes: int,
        country_code: str = "MA",
        category: str = "tarif",
        pdf_id: Optional[str] = None,
    ) -> PdfRecord:
        ...

    @abstractmethod
    async def list_pdfs(self, limit: int = 50, offset: int = 0) -> tuple[list[PdfRecord], int]:
        """A page of documents, newest first, and the total count."""

    @abstractmethod
    async def get_pdf(self, pdf_id: str) -> Optional[PdfRecord]:
        ...

    @abstractmethod
    async def set_pdf_page_count(self, pdf_id: str, page_count: int) -> None:
        ...

    @abstractmethod
    async def save_pdf_summary(self, pdf_id: str, summary: str) -> None:
        ...

    @abstractmethod
    async def mark_pdf_verified(self, pdf_id: str, related_hs_codes: list[str]) -> None:
        ...

    @abstractmethod
    async def create_run(
        self,
        pdf_id: str,
        start_page: int,
        total_pages: int,
        batch_size: int,
        country_code: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> RunRecord:
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        ...

    @abstractmethod
    async def list_runs(self, pdf_id: str) -> list[RunRecord]:
        """Runs of a document, newest first."""

    @abstractmethod
    async def save_run(self, run: RunRecord) -> None:
        """Write the server-owned progress fields of a run."""

    @abstractmethod
    async def set_run_status(
        self, run_id: str, status: RunStatus, error_message: Optional[str] = None
    ) -> Optional[RunRecord]:
        ...

    @abstractmethod
    async def persist_tariff_lines(
        self, lines: list[TariffLine], country_code: str, source_pdf: str, run_id: str
    ) -> int:
        ...

    @abstractmethod
    async def persist_hs_codes(self, entries: list[HSCodeEntry]) -> int:
        ...

    @abstractmethod
    async def persist_notes(
        self, notes: list[ExtractedNote], country_code: str, source_pdf: str, run_id: str
    ) -> int:
        ...

    @abstractmethod
    async def persist_circulars(self, circulars: list[CircularReference], country_code: str) -> int:
        """Upsert each circular as a legal source; returns evidence rows created."""

    @abstractmethod
    async def record_costs(self, events: list[CostRecord]) -> None:
        ...


class LegalStore(ABC):
    """Legal sources, their chunks and the HS evidence found in them."""

    @abstractmethod
    async def upsert_source(
        self,
        country_code: str,
        source_type: str,
        source_ref: str,
        title: Optional[str] = None,
        issuer: Optional[str] = None,
        excerpt: Optional[str] = None,
    ) -> LegalSourceRecord:
        ...

    @abstractmethod
    async def get_source(self, source_id: int) -> Optional[LegalSourceRecord]:
        ...

    @abstractmethod
    async def reset_source(self, source_id: int) -> None:
        """Drop the chunks and evidence of a source and zero its progress."""

    @abstractmethod
    async def insert_chunks(self, source_id: int, chunks: list[ChunkRecord]) -> int:
        ...

    @abstractmethod
    async def insert_evidence(
        self, source_id: int, country_code: str, evidence: list[EvidenceRecord]
    ) -> int:
        ...

    @abstractmethod
    async def update_progress(
        self,
        source_id: int,
        total_pages: int,
        last_ingested_page: int,
        pages_added: int,
        chunks_added: int,
    ) -> LegalSourceRecord:
        ...
