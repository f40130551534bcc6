"""
Client loop for legal document ingestion.

Walks a document one server batch at a time (one page by default), with a
pause between batches and a few linear-backoff attempts per batch.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from customs_intel.client.api_client import ApiError, ExtractionApiClient
from customs_intel.config import settings
from customs_intel.models.enums import ProgressStatus
from customs_intel.schemas.ingestion import IngestLegalDocRequest, IngestLegalDocResponse

logger = structlog.get_logger(__name__)


class IngestionProgress(BaseModel):
    source_ref: str
    source_id: Optional[int] = None
    status: ProgressStatus = ProgressStatus.IDLE
    current_page: int = 1
    total_pages: int = 0
    pages_processed: int = 0
    chunks_created: int = 0
    detected_codes: int = 0
    evidence_created: int = 0
    error: Optional[str] = None


class IngestionObserver:
    def on_progress(self, progress: IngestionProgress) -> None:
        pass


class LegalIngestionRunner:

    def __init__(
        self,
        api: ExtractionApiClient,
        observer: Optional[IngestionObserver] = None,
        delay_between_batches: Optional[float] = None,
        attempts_per_batch: Optional[int] = None,
        retry_step: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.observer = observer or IngestionObserver()
        self.delay_between_batches = (
            delay_between_batches if delay_between_batches is not None
            else settings.LEGAL_DELAY_BETWEEN_BATCHES
        )
        self.attempts_per_batch = attempts_per_batch or settings.LEGAL_ATTEMPTS_PER_BATCH
        self.retry_step = retry_step if retry_step is not None else settings.LEGAL_RETRY_STEP_SECONDS
        self._sleep = sleep
        self._cancel_requested = False

    def cancel(self) -> None:
        self._cancel_requested = True

    async def run(self, request: IngestLegalDocRequest) -> IngestionProgress:
        """
        Ingest the whole document (or up to request.end_page). With a
        source_id, resumes after the last page the server has ingested.
        """
        self._cancel_requested = False
        progress = IngestionProgress(
            source_ref=request.source_ref,
            source_id=request.source_id,
            status=ProgressStatus.PROCESSING,
        )

        if request.raw_text:
            try:
                response = await self._call(request.model_copy(update={"batch_mode": False}))
            except ApiError as e:
                return self._fail(progress, e.message)
            self._apply(progress, response)
            return self._finish(progress, ProgressStatus.DONE)

        page = 1
        if request.source_id is not None:
            try:
                source = await self.api.get_legal_source(request.source_id)
            except ApiError as e:
                return self._fail(progress, f"Cannot resume source {request.source_id}: {e.message}")
            page = source.last_ingested_page + 1
            progress.total_pages = source.total_pages or 0
            logger.info("legal_ingestion_resuming", source_id=source.id, from_page=page)

        source_id = request.source_id
        first = True
        while True:
            if self._cancel_requested:
                return self._finish(progress, ProgressStatus.CANCELLED)
            if not first and self.delay_between_batches > 0:
                await self._sleep(self.delay_between_batches)
            first = False

            batch_request = request.model_copy(update={
                "batch_mode": True,
                "start_page": page,
                "source_id": source_id,
            })
            try:
                response = await self._call(batch_request)
            except ApiError as e:
                return self._fail(progress, f"Page {page}: {e.message}")

            source_id = response.source_id or source_id
            self._apply(progress, response)
            if response.already_complete:
                return self._finish(progress, ProgressStatus.DONE)

            page = (response.batch_end or page) + 1
            progress.current_page = page
            self.observer.on_progress(progress)

            last_page = response.total_pages
            if request.end_page is not None:
                last_page = min(last_page, request.end_page)
            if page > last_page:
                return self._finish(progress, ProgressStatus.DONE)

    async def _call(self, request: IngestLegalDocRequest) -> IngestLegalDocResponse:
        """One batch, retried with a linearly growing pause on transient errors."""
        for attempt in range(1, self.attempts_per_batch + 1):
            try:
                return await self.api.ingest_legal_doc(request)
            except ApiError as e:
                if not e.is_transient or attempt == self.attempts_per_batch:
                    raise
                delay = self.retry_step * attempt
                logger.warning(
                    "legal_batch_retrying",
                    source_ref=request.source_ref,
                    start_page=request.start_page,
                    attempt=attempt,
                    delay=delay,
                    error=e.message,
                )
                await self._sleep(delay)
        raise RuntimeError("retry loop exited without a response")

    @staticmethod
    def _apply(progress: IngestionProgress, response: IngestLegalDocResponse) -> None:
        progress.source_id = response.source_id or progress.source_id
        progress.total_pages = response.total_pages or progress.total_pages
        progress.pages_processed += response.pages_processed
        progress.chunks_created += response.chunks_created
        progress.detected_codes += response.detected_codes_count
        progress.evidence_created += response.evidence_created

    def _fail(self, progress: IngestionProgress, message: str) -> IngestionProgress:
        progress.error = message
        logger.error("legal_ingestion_failed", source_ref=progress.source_ref, error=message)
        return self._finish(progress, ProgressStatus.ERROR)

    def _finish(self, progress: IngestionProgress, status: ProgressStatus) -> IngestionProgress:
        progress.status = status
        self.observer.on_progress(progress)
        logger.info(
            "legal_ingestion_finished",
            source_ref=progress.source_ref,
            source_id=progress.source_id,
            status=status.value,
            pages_processed=progress.pages_processed,
            chunks_created=progress.chunks_created,
        )
        return progress
