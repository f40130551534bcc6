"""
Client side of paginated tariff extraction.

Drives a PDF through the batch endpoint one window at a time until the
server reports the run done, accumulating the extracted rows.

Transient failures go through recovery before retry: the server may have
finished the batch even though the client never saw the response, so the
run is queried first. When it is ahead the same window is requested again
and the server replays the stored answer, so no rows are lost.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from customs_intel.client.api_client import ApiError, ExtractionApiClient
from customs_intel.config import settings
from customs_intel.models.enums import ProgressStatus, RunStatus
from customs_intel.observability.metrics import orchestrator_recoveries_total, orchestrator_retries_total
from customs_intel.schemas.extraction import (
    AnalyzePdfRequest, BatchResponse, BatchStats, ExtractedNote, HSCodeEntry, RunState, TariffLine,
)

logger = structlog.get_logger(__name__)


class OrchestrationError(Exception):
    """The orchestrated extraction cannot continue."""
    def __init__(self, message: str, run_id: Optional[str] = None):
        self.message = message
        self.run_id = run_id
        super().__init__(message)


# ── Progress & Outcome ───────────────────────────────────────

class BatchProgress(BaseModel):
    pdf_id: str
    run_id: Optional[str] = None
    status: ProgressStatus = ProgressStatus.IDLE
    current_page: int = 1
    total_pages: int = 0
    processed_pages: int = 0
    stats: BatchStats = Field(default_factory=BatchStats)
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: Optional[float] = None
    error: Optional[str] = None


class ExtractionOutcome(BaseModel):
    pdf_id: str
    run_id: Optional[str] = None
    status: ProgressStatus
    progress: BatchProgress
    tariff_lines: list[TariffLine] = Field(default_factory=list)
    hs_codes: list[HSCodeEntry] = Field(default_factory=list)
    notes: list[ExtractedNote] = Field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None

    def raise_for_status(self) -> "ExtractionOutcome":
        if self.status == ProgressStatus.ERROR:
            raise OrchestrationError(self.error or "Extraction failed", run_id=self.run_id)
        return self


class ProgressObserver:
    """Receives orchestrator events. Every hook is optional."""

    def on_progress(self, progress: BatchProgress) -> None:
        pass

    def on_complete(self, outcome: ExtractionOutcome) -> None:
        pass

    def on_error(self, message: str, progress: BatchProgress) -> None:
        pass


class LoggingObserver(ProgressObserver):
    """Observer for headless runs (worker, CLI): every event becomes a log line."""

    def on_progress(self, progress: BatchProgress) -> None:
        logger.info(
            "extraction_progress",
            pdf_id=progress.pdf_id,
            run_id=progress.run_id,
            status=progress.status.value,
            processed_pages=progress.processed_pages,
            total_pages=progress.total_pages,
            elapsed_seconds=round(progress.elapsed_seconds, 1),
            estimated_remaining_seconds=(
                round(progress.estimated_remaining_seconds, 1)
                if progress.estimated_remaining_seconds is not None else None
            ),
        )

    def on_complete(self, outcome: ExtractionOutcome) -> None:
        logger.info(
            "extraction_complete",
            pdf_id=outcome.pdf_id,
            run_id=outcome.run_id,
            tariff_lines=len(outcome.tariff_lines),
            hs_codes=len(outcome.hs_codes),
            notes=len(outcome.notes),
        )

    def on_error(self, message: str, progress: BatchProgress) -> None:
        logger.error(
            "extraction_failed",
            pdf_id=progress.pdf_id,
            run_id=progress.run_id,
            processed_pages=progress.processed_pages,
            error=message,
        )


class _Accumulator:
    """Rows gathered across batches; HS codes deduplicated by code_clean."""

    def __init__(self):
        self.tariff_lines: list[TariffLine] = []
        self.notes: list[ExtractedNote] = []
        self.hs_codes: dict[str, HSCodeEntry] = {}
        self.summary: Optional[str] = None

    def merge(self, batch: BatchResponse) -> None:
        self.tariff_lines.extend(batch.tariff_lines)
        self.notes.extend(batch.notes)
        for entry in batch.hs_codes:
            self.hs_codes.setdefault(entry.code_clean, entry)
        if batch.summary and not self.summary:
            self.summary = batch.summary


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class BatchExtractionOrchestrator:

    def __init__(
        self,
        api: ExtractionApiClient,
        observer: Optional[ProgressObserver] = None,
        batch_size: int = 4,
        delay_between_batches: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        preview_only: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.observer = observer or ProgressObserver()
        self.batch_size = batch_size
        self.delay_between_batches = (
            delay_between_batches if delay_between_batches is not None
            else settings.CLIENT_DELAY_BETWEEN_BATCHES
        )
        self.max_retries = max_retries if max_retries is not None else settings.CLIENT_MAX_RETRIES
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.CLIENT_RETRY_BASE_DELAY
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else settings.CLIENT_RETRY_MAX_DELAY
        self.preview_only = preview_only
        self._sleep = sleep
        self._clock = clock
        self._pause_requested = False
        self._cancel_requested = False

    # ── Controls ─────────────────────────────────────────────

    def pause(self) -> None:
        """Stop after the batch in flight; the run can be resumed later."""
        self._pause_requested = True

    def cancel(self) -> None:
        """Stop after the batch in flight and delete the run, which closes it as cancelled."""
        self._cancel_requested = True

    async def get_existing_runs(self, pdf_id: str) -> list[RunState]:
        """Runs of a document, newest first."""
        return await self.api.list_runs(pdf_id)

    def retry_delay(self, consecutive_errors: int) -> float:
        return min(self.retry_base_delay * (2 ** (consecutive_errors - 1)), self.retry_max_delay)

    # ── Main loop ────────────────────────────────────────────

    async def run(
        self, pdf_id: str, file_path: Optional[str] = None, existing_run_id: Optional[str] = None
    ) -> ExtractionOutcome:
        self._pause_requested = False
        self._cancel_requested = False
        started = self._clock()
        started_at = datetime.now(timezone.utc)
        acc = _Accumulator()
        progress = BatchProgress(pdf_id=pdf_id, run_id=existing_run_id, status=ProgressStatus.PROCESSING)
        session_base = 0
        start_page = 1
        run_id = existing_run_id

        logger.info("orchestration_started", pdf_id=pdf_id, run_id=existing_run_id, batch_size=self.batch_size)

        try:
            if existing_run_id:
                run = await self._load_existing_run(existing_run_id)
                self._adopt(progress, run)
                session_base = run.processed_pages
                start_page = run.current_page
                if run.status == RunStatus.DONE:
                    return self._finish(progress, acc, ProgressStatus.DONE)

            consecutive_errors = 0
            recovering_page: Optional[int] = None
            while True:
                if self._cancel_requested:
                    await self._persist_status(run_id, RunStatus.CANCELLED)
                    return self._finish(progress, acc, ProgressStatus.CANCELLED)
                if self._pause_requested:
                    await self._persist_status(run_id, RunStatus.PAUSED)
                    return self._finish(progress, acc, ProgressStatus.PAUSED)

                request = AnalyzePdfRequest(
                    pdf_id=pdf_id,
                    file_path=file_path,
                    preview_only=self.preview_only,
                    start_page=start_page,
                    max_pages=self.batch_size,
                    extraction_run_id=run_id,
                )
                try:
                    batch = await self.api.analyze_pdf(request)
                except ApiError as e:
                    if not e.is_transient:
                        raise OrchestrationError(f"Batch at page {start_page} rejected: {e.message}", run_id) from e

                    server_run = await self._recover(pdf_id, run_id, started_at)
                    if server_run is not None:
                        run_id = server_run.id
                        if server_run.status in (RunStatus.ERROR, RunStatus.CANCELLED):
                            raise OrchestrationError(
                                f"Run closed by the server ({server_run.status.value}): "
                                f"{server_run.error_message or e.message}",
                                run_id,
                            ) from e
                        if server_run.status == RunStatus.DONE or server_run.current_page > start_page:
                            # Ask for the same window again under the run id: the server
                            # replays the stored answer so its rows still get merged.
                            orchestrator_recoveries_total.inc()
                            logger.info(
                                "batch_recovered_from_server",
                                run_id=run_id,
                                requested_page=start_page,
                                server_page=server_run.current_page,
                                server_status=server_run.status.value,
                            )
                            self._adopt(progress, server_run)
                            self._update_timing(progress, started, session_base)
                            self.observer.on_progress(progress)
                            recovering_page = start_page
                            consecutive_errors += 1
                            if consecutive_errors >= self.max_retries:
                                raise OrchestrationError(
                                    f"Batch at page {start_page} could not be fetched back "
                                    f"after {consecutive_errors} attempts: {e.message}",
                                    run_id,
                                ) from e
                            continue

                    consecutive_errors += 1
                    if consecutive_errors >= self.max_retries:
                        raise OrchestrationError(
                            f"Batch at page {start_page} failed {consecutive_errors} times: {e.message}", run_id
                        ) from e
                    delay = self.retry_delay(consecutive_errors)
                    if e.retry_after is not None:
                        delay = min(max(delay, e.retry_after), self.retry_max_delay)
                    orchestrator_retries_total.inc()
                    logger.warning(
                        "batch_retrying",
                        run_id=run_id,
                        start_page=start_page,
                        attempt=consecutive_errors,
                        max_retries=self.max_retries,
                        delay=delay,
                        status_code=e.status_code,
                        error=e.message,
                    )
                    await self._sleep(delay)
                    continue

                if recovering_page is not None and not batch.replayed:
                    logger.warning(
                        "batch_rows_not_recovered",
                        run_id=batch.extraction_run_id,
                        lost_from_page=recovering_page,
                        server_page=progress.current_page,
                    )
                recovering_page = None
                consecutive_errors = 0
                run_id = batch.extraction_run_id
                acc.merge(batch)
                progress.run_id = run_id
                progress.total_pages = batch.total_pages
                progress.processed_pages = batch.processed_pages
                progress.current_page = batch.next_page or batch.total_pages
                progress.stats = batch.stats
                self._update_timing(progress, started, session_base)
                self.observer.on_progress(progress)

                if batch.done:
                    return self._finish(progress, acc, ProgressStatus.DONE)
                if batch.next_page is None:
                    raise OrchestrationError("Invalid batch response: next_page missing", run_id)
                start_page = batch.next_page
                if self.delay_between_batches > 0:
                    await self._sleep(self.delay_between_batches)

        except OrchestrationError as e:
            progress.error = e.message
            outcome = self._finish(progress, acc, ProgressStatus.ERROR)
            self.observer.on_error(e.message, progress)
            return outcome

    # ── Helpers ──────────────────────────────────────────────

    async def _load_existing_run(self, run_id: str) -> RunState:
        try:
            run = await self.api.get_run(run_id)
        except ApiError as e:
            raise OrchestrationError(f"Cannot resume run {run_id}: {e.message}", run_id) from e
        if run.status in (RunStatus.ERROR, RunStatus.CANCELLED):
            raise OrchestrationError(f"Run {run_id} is {run.status.value} and cannot be resumed", run_id)
        return run

    async def _recover(self, pdf_id: str, run_id: Optional[str], started_at: datetime) -> Optional[RunState]:
        """
        Server view of the run after a transient failure. Without a run id,
        the newest run of the PDF created since this orchestration started.
        """
        try:
            if run_id:
                return await self.api.get_run(run_id)
            runs = await self.api.list_runs(pdf_id)
        except ApiError as e:
            logger.warning("recovery_query_failed", pdf_id=pdf_id, run_id=run_id, error=e.message)
            return None
        for run in runs:
            if _aware(run.created_at) >= started_at:
                return run
        return None

    async def _persist_status(self, run_id: Optional[str], status: RunStatus) -> None:
        if run_id is None:
            return
        try:
            if status == RunStatus.CANCELLED:
                await self.api.cancel_run(run_id)
            else:
                await self.api.set_run_status(run_id, status)
        except ApiError as e:
            logger.warning("run_status_update_failed", run_id=run_id, status=status.value, error=e.message)

    @staticmethod
    def _adopt(progress: BatchProgress, run: RunState) -> None:
        progress.run_id = run.id
        progress.total_pages = run.total_pages
        progress.processed_pages = run.processed_pages
        progress.current_page = run.current_page
        progress.stats = run.stats

    def _update_timing(self, progress: BatchProgress, started: float, session_base: int) -> None:
        elapsed = self._clock() - started
        progress.elapsed_seconds = elapsed
        pages_this_session = progress.processed_pages - session_base
        remaining = max(progress.total_pages - progress.processed_pages, 0)
        if pages_this_session > 0:
            progress.estimated_remaining_seconds = elapsed / pages_this_session * remaining
        else:
            progress.estimated_remaining_seconds = None

    def _finish(self, progress: BatchProgress, acc: _Accumulator, status: ProgressStatus) -> ExtractionOutcome:
        progress.status = status
        if status == ProgressStatus.DONE:
            progress.estimated_remaining_seconds = 0.0
        self.observer.on_progress(progress)
        outcome = ExtractionOutcome(
            pdf_id=progress.pdf_id,
            run_id=progress.run_id,
            status=status,
            progress=progress.model_copy(deep=True),
            tariff_lines=acc.tariff_lines,
            hs_codes=list(acc.hs_codes.values()),
            notes=acc.notes,
            summary=acc.summary,
            error=progress.error,
        )
        logger.info(
            "orchestration_finished",
            pdf_id=progress.pdf_id,
            run_id=progress.run_id,
            status=status.value,
            processed_pages=progress.processed_pages,
            total_pages=progress.total_pages,
        )
        if status == ProgressStatus.DONE:
            self.observer.on_complete(outcome)
        return outcome
