"""
RQ job functions for whole-document tariff extraction.
The worker drives the batch endpoint through the client orchestrator, the
same way an interactive client would.
"""

import asyncio
from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from customs_intel.config import settings
from customs_intel.observability.metrics import worker_jobs_active

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the extraction job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_extraction(
    pdf_id: str,
    file_path: Optional[str] = None,
    run_id: Optional[str] = None,
    batch_size: int = 4,
    preview_only: bool = False,
) -> str:
    """
    Enqueue a full extraction of one PDF.
    Returns the job ID.
    """
    q = get_queue()
    job = q.enqueue(
        run_extraction_job,
        pdf_id,
        file_path,
        run_id,
        batch_size,
        preview_only,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info("job_enqueued", pdf_id=pdf_id, job_id=job.id, run_id=run_id)
    return job.id


def run_extraction_job(
    pdf_id: str,
    file_path: Optional[str] = None,
    run_id: Optional[str] = None,
    batch_size: int = 4,
    preview_only: bool = False,
) -> dict:
    """
    Main job function: extract every page of a PDF.
    This runs inside the RQ worker process.
    """
    logger.info("job_started", pdf_id=pdf_id, run_id=run_id)
    worker_jobs_active.inc()
    try:
        result = asyncio.run(_run_extraction_async(pdf_id, file_path, run_id, batch_size, preview_only))
        logger.info("job_completed", pdf_id=pdf_id, run_id=result["run_id"], status=result["status"])
        return result
    except Exception as e:
        logger.error("job_failed", pdf_id=pdf_id, error=str(e))
        raise
    finally:
        worker_jobs_active.dec()


async def _run_extraction_async(
    pdf_id: str,
    file_path: Optional[str],
    run_id: Optional[str],
    batch_size: int,
    preview_only: bool,
) -> dict:
    from customs_intel.client.api_client import ExtractionApiClient
    from customs_intel.client.orchestrator import BatchExtractionOrchestrator, LoggingObserver

    async with ExtractionApiClient(api_key=settings.API_KEY) as api:
        orchestrator = BatchExtractionOrchestrator(
            api,
            observer=LoggingObserver(),
            batch_size=batch_size,
            preview_only=preview_only,
        )
        outcome = await orchestrator.run(pdf_id, file_path, existing_run_id=run_id)

    outcome.raise_for_status()
    return {
        "pdf_id": outcome.pdf_id,
        "run_id": outcome.run_id,
        "status": outcome.status.value,
        "processed_pages": outcome.progress.processed_pages,
        "total_pages": outcome.progress.total_pages,
        "tariff_lines": len(outcome.tariff_lines),
        "hs_codes": len(outcome.hs_codes),
        "notes": len(outcome.notes),
    }
