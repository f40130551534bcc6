"""
PostgreSQL implementations of the extraction and legal stores.
Upserts go through sqlalchemy.dialects.postgresql.insert ... on_conflict_do_update.
"""

import re
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from customs_intel.config import settings
from customs_intel.models.database import async_session_factory
from customs_intel.models.enums import RunStatus
from customs_intel.models.tables import (
    CostEvent, CountryTariff, ExtractionRun, HSCode, HSEvidence, LegalChunk,
    LegalSource, PdfDocument, TariffNote,
)
from customs_intel.pipeline.hs_codes import parse_detected_code
from customs_intel.schemas.extraction import (
    BatchStats, CircularReference, ExtractedNote, HSCodeEntry, TariffLine,
)
from customs_intel.storage.stores import (
    ChunkRecord, CostRecord, EvidenceRecord, ExtractionStore, LegalSourceRecord,
    LegalStore, PdfRecord, RunRecord, StoreError,
)

logger = structlog.get_logger(__name__)

_CHAPTER_RE = re.compile(r"chapitre\s*(\d+)", re.IGNORECASE)
_SH_CODE_RE = re.compile(r"SH_CODE_(\d+)", re.IGNORECASE)


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _decimal(value: Optional[float]) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


class _SqlStore:

    def __init__(self, session_factory: async_sessionmaker = async_session_factory):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("store_operation_failed", operation=operation, error=str(e))
                raise StoreError(operation, str(e)) from e


def _pdf_record(row: PdfDocument) -> PdfRecord:
    return PdfRecord(
        id=str(row.id),
        title=row.title,
        file_name=row.file_name,
        file_path=row.file_path,
        country_code=row.country_code,
        category=row.category,
        page_count=row.page_count,
        is_verified=row.is_verified,
        file_size_bytes=row.file_size_bytes,
        created_at=row.created_at,
    )


def _run_record(row: ExtractionRun) -> RunRecord:
    return RunRecord(
        id=str(row.id),
        pdf_id=str(row.pdf_id),
        status=RunStatus(row.status),
        current_page=row.current_page,
        total_pages=row.total_pages,
        processed_pages=row.processed_pages,
        batch_size=row.batch_size,
        stats=BatchStats.model_validate(row.stats or {}),
        last_batch_start=row.last_batch_start,
        last_batch_response=row.last_batch_response,
        error_message=row.error_message,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def _source_record(row: LegalSource) -> LegalSourceRecord:
    return LegalSourceRecord(
        id=row.id,
        country_code=row.country_code,
        source_type=row.source_type,
        source_ref=row.source_ref,
        title=row.title,
        total_pages=row.total_pages,
        pages_ingested=row.pages_ingested,
        last_ingested_page=row.last_ingested_page,
        total_chunks=row.total_chunks,
    )


class SqlExtractionStore(_SqlStore, ExtractionStore):

    # ── Documents ──

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
        async with self._session("create_pdf") as session:
            row = PdfDocument(
                id=_as_uuid(pdf_id) or uuid.uuid4(),
                title=title,
                file_name=file_name,
                file_path=file_path,
                file_hash=file_hash,
                file_size_bytes=file_size_bytes,
                country_code=country_code,
                category=category,
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            return _pdf_record(row)

    async def list_pdfs(self, limit: int = 50, offset: int = 0) -> tuple[list[PdfRecord], int]:
        async with self._session("list_pdfs") as session:
            total = (await session.execute(select(func.count()).select_from(PdfDocument))).scalar() or 0
            result = await session.execute(
                select(PdfDocument).order_by(PdfDocument.created_at.desc()).offset(offset).limit(limit)
            )
            return [_pdf_record(row) for row in result.scalars().all()], total

    async def get_pdf(self, pdf_id: str) -> Optional[PdfRecord]:
        pdf_uuid = _as_uuid(pdf_id)
        if pdf_uuid is None:
            return None
        async with self._session("get_pdf") as session:
            row = await session.get(PdfDocument, pdf_uuid)
            return _pdf_record(row) if row else None

    async def set_pdf_page_count(self, pdf_id: str, page_count: int) -> None:
        async with self._session("set_pdf_page_count") as session:
            await session.execute(
                update(PdfDocument)
                .where(PdfDocument.id == _as_uuid(pdf_id))
                .values(page_count=page_count, updated_at=func.now())
            )

    async def save_pdf_summary(self, pdf_id: str, summary: str) -> None:
        async with self._session("save_pdf_summary") as session:
            await session.execute(
                update(PdfDocument)
                .where(PdfDocument.id == _as_uuid(pdf_id))
                .values(summary=summary, updated_at=func.now())
            )

    async def mark_pdf_verified(self, pdf_id: str, related_hs_codes: list[str]) -> None:
        async with self._session("mark_pdf_verified") as session:
            await session.execute(
                update(PdfDocument)
                .where(PdfDocument.id == _as_uuid(pdf_id))
                .values(
                    is_verified=True,
                    verified_at=func.now(),
                    related_hs_codes=related_hs_codes,
                    updated_at=func.now(),
                )
            )

    # ── Runs ──

    async def create_run(
        self,
        pdf_id: str,
        start_page: int,
        total_pages: int,
        batch_size: int,
        country_code: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> RunRecord:
        async with self._session("create_run") as session:
            run = ExtractionRun(
                pdf_id=_as_uuid(pdf_id),
                status=RunStatus.PROCESSING.value,
                current_page=start_page,
                total_pages=total_pages,
                processed_pages=0,
                batch_size=batch_size,
                country_code=country_code,
                file_name=file_name,
                stats=BatchStats().model_dump(),
            )
            session.add(run)
            await session.flush()
            await session.refresh(run)
            return _run_record(run)

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        run_uuid = _as_uuid(run_id)
        if run_uuid is None:
            return None
        async with self._session("get_run") as session:
            row = await session.get(ExtractionRun, run_uuid)
            return _run_record(row) if row else None

    async def list_runs(self, pdf_id: str) -> list[RunRecord]:
        pdf_uuid = _as_uuid(pdf_id)
        if pdf_uuid is None:
            return []
        async with self._session("list_runs") as session:
            result = await session.execute(
                select(ExtractionRun)
                .where(ExtractionRun.pdf_id == pdf_uuid)
                .order_by(ExtractionRun.created_at.desc())
            )
            return [_run_record(row) for row in result.scalars().all()]

    async def save_run(self, run: RunRecord) -> None:
        async with self._session("save_run") as session:
            await session.execute(
                update(ExtractionRun)
                .where(ExtractionRun.id == _as_uuid(run.id))
                .values(
                    status=run.status.value,
                    # never move a run backwards, even under a concurrent writer
                    current_page=func.greatest(ExtractionRun.current_page, run.current_page),
                    total_pages=run.total_pages,
                    processed_pages=run.processed_pages,
                    stats=run.stats.model_dump(),
                    last_batch_start=run.last_batch_start,
                    last_batch_response=run.last_batch_response,
                    error_message=run.error_message,
                    completed_at=run.completed_at,
                    updated_at=func.now(),
                )
            )

    async def set_run_status(
        self, run_id: str, status: RunStatus, error_message: Optional[str] = None
    ) -> Optional[RunRecord]:
        run_uuid = _as_uuid(run_id)
        if run_uuid is None:
            return None
        async with self._session("set_run_status") as session:
            values = {"status": status.value, "updated_at": func.now()}
            if error_message is not None:
                values["error_message"] = error_message
            await session.execute(
                update(ExtractionRun).where(ExtractionRun.id == run_uuid).values(**values)
            )
            row = await session.get(ExtractionRun, run_uuid, populate_existing=True)
            return _run_record(row) if row else None

    # ── Tariff data ──

    async def persist_tariff_lines(
        self, lines: list[TariffLine], country_code: str, source_pdf: str, run_id: str
    ) -> int:
        if not lines:
            return 0
        # one row per code, last wins: ON CONFLICT cannot touch a row twice
        by_code = {line.national_code: line for line in lines}
        rows = [
            {
                "country_code": country_code,
                "national_code": line.national_code,
                "hs_code_6": line.hs_code_6,
                "description_local": line.description,
                "duty_rate": _decimal(line.duty_rate),
                "duty_note": line.duty_note,
                "vat_rate": _decimal(settings.DEFAULT_VAT_RATE),
                "unit_code": line.unit_norm,
                "unit_complementary_code": line.unit_comp,
                "is_active": True,
                "is_inherited": line.is_inherited,
                "source": f"PDF: {source_pdf}",
                "source_pdf": source_pdf,
                "source_page": line.page_number,
                "source_run_id": _as_uuid(run_id),
                "source_evidence": line.source_evidence,
            }
            for line in by_code.values()
        ]
        stmt = pg_insert(CountryTariff).values(rows)
        updatable = [k for k in rows[0] if k not in ("country_code", "national_code")]
        stmt = stmt.on_conflict_do_update(
            index_elements=["country_code", "national_code"],
            set_={**{k: stmt.excluded[k] for k in updatable}, "updated_at": func.now()},
        )
        async with self._session("persist_tariff_lines") as session:
            await session.execute(stmt)
        return len(rows)

    async def persist_hs_codes(self, entries: list[HSCodeEntry]) -> int:
        if not entries:
            return 0
        by_code = {entry.code: entry for entry in entries}
        rows = [
            {
                "code": entry.code,
                "code_clean": entry.code_clean,
                "description_fr": entry.description,
                "chapter_number": int(entry.code_clean[:2]),
                "level": entry.level.value,
                "is_active": True,
            }
            for entry in by_code.values()
        ]
        stmt = pg_insert(HSCode).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["code"],
            set_={
                "code_clean": stmt.excluded.code_clean,
                "description_fr": stmt.excluded.description_fr,
                "chapter_number": stmt.excluded.chapter_number,
                "level": stmt.excluded.level,
                "is_active": True,
            },
        )
        async with self._session("persist_hs_codes") as session:
            await session.execute(stmt)
        return len(rows)

    async def persist_notes(
        self, notes: list[ExtractedNote], country_code: str, source_pdf: str, run_id: str
    ) -> int:
        if not notes:
            return 0
        chapter = _chapter_from_title(source_pdf)
        async with self._session("persist_notes") as session:
            session.add_all([
                TariffNote(
                    country_code=country_code,
                    chapter_number=chapter,
                    note_type=note.note_type.value,
                    anchor=note.anchor,
                    note_text=note.note_text,
                    page_number=note.page_number,
                    source_pdf=source_pdf,
                    source_run_id=_as_uuid(run_id),
                )
                for note in notes
            ])
        return len(notes)

    async def persist_circulars(self, circulars: list[CircularReference], country_code: str) -> int:
        evidence_count = 0
        async with self._session("persist_circulars") as session:
            for circular in circulars:
                stmt = pg_insert(LegalSource).values(
                    country_code=country_code,
                    source_type=circular.source_type,
                    source_ref=circular.source_ref,
                    title=circular.title,
                    issuer=circular.issuer,
                    excerpt=circular.note_text[:500],
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["country_code", "source_type", "source_ref"],
                    set_={
                        "title": stmt.excluded.title,
                        "issuer": stmt.excluded.issuer,
                        "excerpt": stmt.excluded.excerpt,
                        "updated_at": func.now(),
                    },
                ).returning(LegalSource.id)
                source_id = (await session.execute(stmt)).scalar_one()

                for raw_code in circular.related_hs_codes:
                    parsed = parse_detected_code(raw_code)
                    if parsed.hs_code_6 is None:
                        continue
                    session.add(HSEvidence(
                        source_id=source_id,
                        country_code=country_code,
                        national_code=parsed.national_code,
                        hs_code_6=parsed.hs_code_6,
                        evidence_text=circular.note_text[:300],
                        page_number=circular.page_number,
                        confidence="high",
                    ))
                    evidence_count += 1
        return evidence_count

    async def record_costs(self, events: list[CostRecord]) -> None:
        if not events:
            return
        async with self._session("record_costs") as session:
            session.add_all([
                CostEvent(
                    run_id=_as_uuid(event.run_id),
                    pdf_id=_as_uuid(event.pdf_id),
                    engine_name=event.engine_name,
                    operation=event.operation,
                    page_count=event.page_count,
                    input_tokens=event.input_tokens,
                    output_tokens=event.output_tokens,
                    cost_usd=Decimal(str(event.cost_usd)),
                    latency_ms=event.latency_ms,
                )
                for event in events
            ])


def _chapter_from_title(title: str) -> Optional[str]:
    match = _CHAPTER_RE.search(title) or _SH_CODE_RE.search(title)
    return match.group(1) if match else None


class SqlLegalStore(_SqlStore, LegalStore):

    async def upsert_source(
        self,
        country_code: str,
        source_type: str,
        source_ref: str,
        title: Optional[str] = None,
        issuer: Optional[str] = None,
        excerpt: Optional[str] = None,
    ) -> LegalSourceRecord:
        stmt = pg_insert(LegalSource).values(
            country_code=country_code,
            source_type=source_type,
            source_ref=source_ref,
            title=title,
            issuer=issuer,
            excerpt=excerpt,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["country_code", "source_type", "source_ref"],
            set_={
                "title": func.coalesce(stmt.excluded.title, LegalSource.title),
                "issuer": func.coalesce(stmt.excluded.issuer, LegalSource.issuer),
                "excerpt": func.coalesce(stmt.excluded.excerpt, LegalSource.excerpt),
                "updated_at": func.now(),
            },
        ).returning(LegalSource)
        async with self._session("upsert_source") as session:
            row = (await session.execute(stmt)).scalar_one()
            return _source_record(row)

    async def get_source(self, source_id: int) -> Optional[LegalSourceRecord]:
        async with self._session("get_source") as session:
            row = await session.get(LegalSource, source_id)
            return _source_record(row) if row else None

    async def reset_source(self, source_id: int) -> None:
        async with self._session("reset_source") as session:
            await session.execute(delete(LegalChunk).where(LegalChunk.source_id == source_id))
            await session.execute(delete(HSEvidence).where(HSEvidence.source_id == source_id))
            await session.execute(
                update(LegalSource)
                .where(LegalSource.id == source_id)
                .values(pages_ingested=0, last_ingested_page=0, total_chunks=0, updated_at=func.now())
            )

    async def insert_chunks(self, source_id: int, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0
        async with self._session("insert_chunks") as session:
            session.add_all([
                LegalChunk(source_id=source_id, **chunk.model_dump())
                for chunk in chunks
            ])
        return len(chunks)

    async def insert_evidence(
        self, source_id: int, country_code: str, evidence: list[EvidenceRecord]
    ) -> int:
        if not evidence:
            return 0
        async with self._session("insert_evidence") as session:
            session.add_all([
                HSEvidence(source_id=source_id, country_code=country_code, **item.model_dump())
                for item in evidence
            ])
        return len(evidence)

    async def update_progress(
        self,
        source_id: int,
        total_pages: int,
        last_ingested_page: int,
        pages_added: int,
        chunks_added: int,
    ) -> LegalSourceRecord:
        async with self._session("update_progress") as session:
            await session.execute(
                update(LegalSource)
                .where(LegalSource.id == source_id)
                .values(
                    total_pages=total_pages,
                    last_ingested_page=func.greatest(LegalSource.last_ingested_page, last_ingested_page),
                    pages_ingested=func.least(LegalSource.pages_ingested + pages_added, total_pages),
                    total_chunks=LegalSource.total_chunks + chunks_added,
                    updated_at=func.now(),
                )
            )
            row = await session.get(LegalSource, source_id, populate_existing=True)
            if row is None:
                raise StoreError("update_progress", f"Legal source {source_id} not found")
            return _source_record(row)
