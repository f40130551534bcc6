"""
Server side of paginated tariff extraction.

One call processes one window of pages of one PDF, strictly in page order,
and advances the extraction run. The run record is the only state carried
between calls, so a client can resume from anywhere after a crash.

Flow per call: RESOLVE RUN → WINDOW → ANALYSE PAGES → RECONCILE → PERSIST → ADVANCE
"""

import asyncio
import base64
import time
import traceback
from itertools import groupby
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog

from customs_intel.config import settings
from customs_intel.engines.base import EngineError, LLMEngine, RateLimitedError
from customs_intel.models.enums import PageKind, RunStatus
from customs_intel.observability.cost_tracker import CostTracker
from customs_intel.observability.logging import bind_run_context, clear_run_context
from customs_intel.observability.metrics import (
    extraction_batch_duration_seconds,
    extraction_batches_total,
    extraction_runs_active,
    pages_analyzed_total,
)
from customs_intel.pipeline.page_parser import extract_circular_references, parse_page_response
from customs_intel.pipeline.page_scan import (
    PageCountCache, TTLCache, count_document_pages, prescan_pages,
)
from customs_intel.pipeline.prompts import PAGE_SYSTEM_PROMPT, build_page_prompt, build_summary_prompt
from customs_intel.pipeline.reconciler import (
    ReconcileDebug, build_source_evidence, extract_hs_codes_from_tariff_lines, process_raw_lines,
)
from customs_intel.schemas.extraction import (
    AnalyzePdfRequest, BatchResponse, BatchStats, ExtractedNote, RawTariffLine, TariffLine,
)
from customs_intel.storage.artifact_store import ArtifactStore
from customs_intel.storage.paths import extraction_output_path, page_response_path
from customs_intel.storage.stores import ExtractionStore, PdfRecord, RunRecord, StoreError

logger = structlog.get_logger(__name__)

SUMMARY_MAX_TOKENS = 1024


class PipelineError(Exception):
    """Fatal pipeline error."""
    def __init__(
        self,
        message: str,
        error_code: str = "ERR_PIPELINE",
        retry_after: Optional[float] = None,
        run_id: Optional[str] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.retry_after = retry_after
        self.run_id = run_id
        super().__init__(message)


def clamp_batch_size(requested: Optional[int]) -> int:
    if requested is None:
        return settings.DEFAULT_BATCH_SIZE
    return max(settings.MIN_BATCH_SIZE, min(settings.MAX_BATCH_SIZE, requested))


class TariffBatchExtractor:
    """
    Processes one batch of pages per call against a persisted run.

    Caches are passed in rather than held at module level so each process
    (and each test) owns its own.
    """

    def __init__(
        self,
        store: ExtractionStore,
        engine: LLMEngine,
        artifact_store: ArtifactStore,
        page_count_cache: PageCountCache,
        summary_cache: TTLCache[str],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        page_delay: Optional[float] = None,
    ):
        self.store = store
        self.engine = engine
        self.artifacts = artifact_store
        self.page_count_cache = page_count_cache
        self.summary_cache = summary_cache
        self._sleep = sleep
        self.page_delay = settings.PAGE_DELAY_SECONDS if page_delay is None else page_delay

    async def run_batch(self, request: AnalyzePdfRequest) -> BatchResponse:
        started = time.monotonic()
        extraction_runs_active.inc()
        outcome = "error"
        try:
            response = await self._run_batch(request)
            outcome = "replayed" if response.replayed else ("done" if response.done else "continued")
            return response
        except PipelineError as e:
            outcome = "rate_limited" if e.error_code == "ERR_RATE_LIMITED" else "error"
            raise
        finally:
            extraction_runs_active.dec()
            extraction_batches_total.labels(outcome=outcome).inc()
            extraction_batch_duration_seconds.observe(time.monotonic() - started)
            clear_run_context()

    async def _run_batch(self, request: AnalyzePdfRequest) -> BatchResponse:
        bind_run_context(pdf_id=request.pdf_id)
        pdf = await self.store.get_pdf(request.pdf_id)
        if pdf is None:
            raise PipelineError(f"PDF {request.pdf_id} not found", "ERR_PDF_NOT_FOUND")

        batch_size = clamp_batch_size(request.max_pages)
        run: Optional[RunRecord] = None

        # ── Resolve run ──
        if request.extraction_run_id:
            run = await self.store.get_run(request.extraction_run_id)
            if run is None or run.pdf_id != pdf.id:
                raise PipelineError(
                    f"Extraction run {request.extraction_run_id} not found for PDF {pdf.id}",
                    "ERR_RUN_NOT_FOUND",
                )
            bind_run_context(run_id=run.id)

            if run.status in (RunStatus.CANCELLED, RunStatus.ERROR):
                raise PipelineError(
                    f"Extraction run {run.id} is {run.status.value}", "ERR_RUN_CLOSED", run_id=run.id
                )

            replay = self._replay(run, request.start_page)
            if replay is not None:
                return replay

            if run.status == RunStatus.DONE:
                logger.info("batch_on_finished_run", run_id=run.id)
                return self._response(run, pdf)

            if run.status == RunStatus.PAUSED:
                logger.info("run_resumed", run_id=run.id, current_page=run.current_page)
                await self.store.set_run_status(run.id, RunStatus.PROCESSING)
                run.status = RunStatus.PROCESSING

            if request.start_page != run.current_page:
                logger.warning(
                    "batch_start_mismatch",
                    run_id=run.id,
                    requested=request.start_page,
                    current_page=run.current_page,
                )

        pdf_bytes = self._load_pdf(pdf, request.file_path)
        is_new_run = run is None

        try:
            if run is None:
                total_pages = await count_document_pages(pdf_bytes, pdf.id, self.page_count_cache)
                run = await self.store.create_run(
                    pdf_id=pdf.id,
                    start_page=request.start_page,
                    total_pages=total_pages,
                    batch_size=batch_size,
                    country_code=pdf.country_code,
                    file_name=pdf.title,
                )
                bind_run_context(run_id=run.id)
                logger.info("run_created", run_id=run.id, total_pages=total_pages, batch_size=batch_size)
                if pdf.page_count != total_pages:
                    await self.store.set_pdf_page_count(pdf.id, total_pages)
            elif run.total_pages <= 0:
                run.total_pages = await count_document_pages(pdf_bytes, pdf.id, self.page_count_cache)

            return await self._process_window(request, pdf, pdf_bytes, run, batch_size, is_new_run)

        except PipelineError:
            raise
        except Exception as e:
            logger.error(
                "batch_failed",
                pdf_id=pdf.id,
                run_id=run.id if run else None,
                error=str(e),
                traceback=traceback.format_exc(),
            )
            if run is not None:
                await self._fail_run(run.id, str(e))
            raise PipelineError(f"Batch extraction failed: {e}", run_id=run.id if run else None) from e

    def _replay(self, run: RunRecord, start_page: int) -> Optional[BatchResponse]:
        """
        A repeated request for a batch the run has already moved past gets
        the stored answer back, with no processing and no stats change.
        """
        if (
            run.last_batch_response is None
            or run.last_batch_start is None
            or start_page != run.last_batch_start
            or run.current_page <= start_page
        ):
            return None
        logger.info("batch_replayed", run_id=run.id, start_page=start_page)
        response = BatchResponse.model_validate(run.last_batch_response)
        response.replayed = True
        return response

    def _load_pdf(self, pdf: PdfRecord, file_path: Optional[str]) -> bytes:
        path = file_path or pdf.file_path
        try:
            return self.artifacts.load_bytes(path)
        except (FileNotFoundError, ValueError) as e:
            raise PipelineError(f"PDF file unavailable: {e}", "ERR_PDF_NOT_FOUND") from e

    async def _process_window(
        self,
        request: AnalyzePdfRequest,
        pdf: PdfRecord,
        pdf_bytes: bytes,
        run: RunRecord,
        batch_size: int,
        is_new_run: bool,
    ) -> BatchResponse:
        start_page = run.current_page
        end_page = min(start_page + batch_size - 1, run.total_pages)
        stats = run.stats.model_copy(deep=True)
        cost = CostTracker(run_id=run.id, pdf_id=pdf.id)
        pdf_b64 = base64.b64encode(pdf_bytes).decode("ascii")

        logger.info(
            "batch_started",
            run_id=run.id,
            start_page=start_page,
            end_page=end_page,
            total_pages=run.total_pages,
        )

        summary = None
        if is_new_run and request.start_page == 1:
            summary = await self._summary(pdf, pdf_b64, cost)

        page_kinds: dict[int, PageKind] = {}
        if end_page >= start_page and batch_size >= settings.PRESCAN_MIN_BATCH_SIZE:
            page_kinds = await prescan_pages(pdf_bytes, start_page, end_page)

        # ── Analyse pages ──
        raw_lines: list[RawTariffLine] = []
        notes: list[ExtractedNote] = []
        pages_processed = 0
        rate_limited: Optional[RateLimitedError] = None

        for page in range(start_page, end_page + 1):
            if page > start_page and self.page_delay > 0:
                await self._sleep(self.page_delay)

            try:
                llm = await self.engine.analyze_document(
                    pdf_b64,
                    build_page_prompt(pdf.title, page, run.total_pages),
                    system=PAGE_SYSTEM_PROMPT,
                    timeout=settings.ANTHROPIC_PAGE_TIMEOUT_SECONDS,
                    page_number=page,
                )
            except RateLimitedError as e:
                rate_limited = e
                pages_analyzed_total.labels(outcome="rate_limited").inc()
                logger.warning("batch_rate_limited", run_id=run.id, page=page, retry_after=e.retry_after)
                break
            except EngineError as e:
                pages_processed += 1
                stats.pages_skipped += 1
                stats.add_error(f"Page {page}: {e.message}", settings.RUN_STATS_MAX_ERRORS)
                pages_analyzed_total.labels(outcome="error").inc()
                logger.warning("page_analysis_failed", run_id=run.id, page=page, error_code=e.error_code)
                continue

            cost.record(self.engine.engine_name, "analyze_page", llm)
            self._save_page_response(pdf.id, run.id, page, llm.text)

            try:
                extraction = parse_page_response(llm.text, page)
            except Exception as e:
                pages_processed += 1
                stats.pages_skipped += 1
                stats.add_error(f"Page {page}: unreadable page output ({e})", settings.RUN_STATS_MAX_ERRORS)
                pages_analyzed_total.labels(outcome="error").inc()
                logger.warning("page_parse_failed", run_id=run.id, page=page, error=str(e))
                continue

            if extraction.error:
                stats.add_error(f"Page {page}: {extraction.error}", settings.RUN_STATS_MAX_ERRORS)

            raw_lines.extend(extraction.raw_lines)
            notes.extend(extraction.notes)
            pages_processed += 1

            if extraction.raw_lines:
                pages_analyzed_total.labels(outcome="tariff").inc()
            elif page_kinds.get(page) == PageKind.TEXT:
                pages_analyzed_total.labels(outcome="text").inc()
            else:
                stats.pages_skipped += 1
                pages_analyzed_total.labels(outcome="empty").inc()

            logger.info(
                "page_analyzed",
                run_id=run.id,
                page=page,
                raw_lines=len(extraction.raw_lines),
                notes=len(extraction.notes),
                strategy=extraction.parse_strategy.value,
            )

        if rate_limited is not None and pages_processed == 0:
            await self._flush_costs(cost)
            raise PipelineError(
                "Provider rate limit reached before any page was processed",
                "ERR_RATE_LIMITED",
                retry_after=rate_limited.retry_after,
                run_id=run.id,
            )

        # ── Reconcile ──
        lines, debug = self._reconcile(run.id, raw_lines, stats)
        lines = [line.model_copy(update={"source_evidence": build_source_evidence(line)}) for line in lines]
        hs_codes = extract_hs_codes_from_tariff_lines(lines)
        debug.notes_count = len(notes)

        # ── Persist ──
        if not request.preview_only:
            await self._persist(pdf, run, lines, hs_codes, notes, stats)

        # ── Advance ──
        next_page = start_page + pages_processed
        run.current_page = max(run.current_page, next_page)
        run.processed_pages = min(run.processed_pages + pages_processed, run.total_pages)
        run.stats = stats
        done = run.current_page > run.total_pages
        if done:
            run.status = RunStatus.DONE
            run.completed_at = datetime.now(timezone.utc)
        else:
            run.status = RunStatus.PROCESSING

        response = self._response(run, pdf, lines, hs_codes, notes, summary)
        run.last_batch_start = start_page
        run.last_batch_response = response.model_dump(mode="json", by_alias=True)
        await self.store.save_run(run)
        cost_usd = cost.summary()["total_cost_usd"]
        await self._flush_costs(cost)

        if done:
            self._save_extraction_output(pdf, run, lines, notes, debug.model_dump())
            if not request.preview_only:
                await self.store.mark_pdf_verified(pdf.id, [h.code_clean for h in hs_codes])

        logger.info(
            "batch_completed",
            run_id=run.id,
            pages_processed=pages_processed,
            tariff_lines=len(lines),
            hs_codes=len(hs_codes),
            notes=len(notes),
            swaps=debug.detected_swaps,
            skipped_rows=debug.skipped_lines,
            next_page=response.next_page,
            done=done,
            cost_usd=cost_usd,
        )
        return response

    @staticmethod
    def _reconcile(
        run_id: str, raw_lines: list[RawTariffLine], stats: BatchStats
    ) -> tuple[list[TariffLine], ReconcileDebug]:
        """
        Reconcile the whole window in one pass. If that raises, redo it one
        page at a time and drop only the pages that still fail.
        """
        try:
            return process_raw_lines(raw_lines)
        except Exception as e:
            logger.warning("batch_reconcile_failed", run_id=run_id, error=str(e))

        lines: list[TariffLine] = []
        debug = ReconcileDebug()
        for page, page_rows in groupby(raw_lines, key=lambda row: row.page_number):
            try:
                page_lines, page_debug = process_raw_lines(list(page_rows))
            except Exception as e:
                stats.pages_skipped += 1
                stats.add_error(f"Page {page}: reconciliation failed ({e})", settings.RUN_STATS_MAX_ERRORS)
                logger.warning("page_reconcile_failed", run_id=run_id, page=page, error=str(e))
                continue
            lines.extend(page_lines)
            debug.absorb(page_debug)
        return lines, debug

    async def _persist(self, pdf, run, lines, hs_codes, notes, stats: BatchStats) -> None:
        """Each table is written independently; a failure is recorded, not raised."""
        country = pdf.country_code or settings.DEFAULT_COUNTRY_CODE
        try:
            stats.tariff_lines_inserted += await self.store.persist_tariff_lines(lines, country, pdf.title, run.id)
        except StoreError as e:
            stats.add_error(f"Tariff insert: {e.message}", settings.RUN_STATS_MAX_ERRORS)
        try:
            stats.hs_codes_inserted += await self.store.persist_hs_codes(hs_codes)
        except StoreError as e:
            stats.add_error(f"HS insert: {e.message}", settings.RUN_STATS_MAX_ERRORS)
        try:
            stats.notes_inserted += await self.store.persist_notes(notes, country, pdf.title, run.id)
        except StoreError as e:
            stats.add_error(f"Notes insert: {e.message}", settings.RUN_STATS_MAX_ERRORS)

        circulars = extract_circular_references(notes)
        if circulars:
            try:
                linked = await self.store.persist_circulars(circulars, country)
                logger.info("circulars_linked", circulars=len(circulars), evidence=linked)
            except StoreError as e:
                stats.add_error(f"Circulars insert: {e.message}", settings.RUN_STATS_MAX_ERRORS)

    async def _summary(self, pdf: PdfRecord, pdf_b64: str, cost: CostTracker) -> Optional[str]:
        cached = self.summary_cache.get(pdf.id)
        if cached is not None:
            return cached
        try:
            llm = await self.engine.analyze_document(
                pdf_b64, build_summary_prompt(pdf.title), max_tokens=SUMMARY_MAX_TOKENS
            )
        except EngineError as e:
            logger.warning("summary_failed", pdf_id=pdf.id, error=e.message)
            return None
        cost.record(self.engine.engine_name, "summary", llm, page_count=0)
        summary = llm.text.strip() or None
        if summary:
            self.summary_cache.set(pdf.id, summary)
            try:
                await self.store.save_pdf_summary(pdf.id, summary)
            except StoreError as e:
                logger.warning("summary_save_failed", pdf_id=pdf.id, error=e.message)
        return summary

    def _response(
        self,
        run: RunRecord,
        pdf: PdfRecord,
        lines=None,
        hs_codes=None,
        notes=None,
        summary: Optional[str] = None,
    ) -> BatchResponse:
        done = run.status == RunStatus.DONE
        return BatchResponse(
            extraction_run_id=run.id,
            done=done,
            next_page=None if done else run.current_page,
            processed_pages=run.processed_pages,
            total_pages=run.total_pages,
            stats=run.stats,
            status=run.status,
            pdf_id=pdf.id,
            pdf_title=pdf.title,
            country_code=pdf.country_code,
            tariff_lines=lines or [],
            hs_codes=hs_codes or [],
            notes=notes or [],
            summary=summary,
        )

    def _save_page_response(self, pdf_id: str, run_id: str, page: int, text: str) -> None:
        try:
            self.artifacts.save_text(page_response_path(pdf_id, run_id, page), text)
        except OSError as e:
            logger.warning("page_response_not_saved", page=page, error=str(e))

    def _save_extraction_output(self, pdf, run, lines, notes, debug: dict) -> None:
        try:
            self.artifacts.save_json(extraction_output_path(pdf.id, run.id), {
                "pdf_id": pdf.id,
                "run_id": run.id,
                "title": pdf.title,
                "total_pages": run.total_pages,
                "processed_pages": run.processed_pages,
                "stats": run.stats.model_dump(),
                "tariff_lines": [line.model_dump() for line in lines],
                "notes": [note.model_dump(mode="json") for note in notes],
                "notes_text": "\n\n".join(note.note_text for note in notes),
                "debug": debug,
                "model": self.engine.engine_version,
            })
        except OSError as e:
            logger.warning("extraction_output_not_saved", run_id=run.id, error=str(e))

    async def _flush_costs(self, cost: CostTracker) -> None:
        try:
            await cost.flush(self.store)
        except StoreError as e:
            logger.warning("cost_events_not_saved", error=e.message)

    async def _fail_run(self, run_id: str, message: str) -> None:
        try:
            await self.store.set_run_status(run_id, RunStatus.ERROR, error_message=message[:1000])
        except StoreError as e:
            logger.error("run_fail_not_saved", run_id=run_id, error=e.message)


async def update_run_status(store: ExtractionStore, run_id: str, status: RunStatus) -> RunRecord:
    """
    Client-owned transitions: processing/paused → paused|cancelled.
    Finished runs keep their status.
    """
    run = await store.get_run(run_id)
    if run is None:
        raise PipelineError(f"Extraction run {run_id} not found", "ERR_RUN_NOT_FOUND")
    if status not in (RunStatus.PAUSED, RunStatus.CANCELLED):
        raise PipelineError(f"Status {status.value} cannot be set by clients", "ERR_INVALID_TRANSITION")
    if run.status == status:
        return run
    if run.status not in (RunStatus.PROCESSING, RunStatus.PAUSED):
        raise PipelineError(
            f"Extraction run {run_id} is {run.status.value}", "ERR_RUN_CLOSED", run_id=run_id
        )
    updated = await store.set_run_status(run_id, status)
    logger.info("run_status_changed", run_id=run_id, old=run.status.value, new=status.value)
    return updated or run
