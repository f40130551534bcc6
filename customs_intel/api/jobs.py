"""
/api/v1/jobs endpoints.
Background extraction jobs and queue status.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.worker import Worker

from customs_intel.config import settings
from customs_intel.dependencies import get_extraction_store, verify_api_key
from customs_intel.schemas.jobs import ExtractionJobRequest, JobEnqueued, JobStatus, QueueStats
from customs_intel.storage.stores import ExtractionStore
from customs_intel.worker.jobs import enqueue_extraction

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"], dependencies=[Depends(verify_api_key)])


def _get_redis() -> Redis:
    """Get a Redis connection."""
    return Redis.from_url(settings.REDIS_URL)


@router.post("/extractions", response_model=JobEnqueued, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_extraction_job(
    request: ExtractionJobRequest,
    store: ExtractionStore = Depends(get_extraction_store),
):
    """Extract a whole PDF on the worker."""
    if await store.get_pdf(request.pdf_id) is None:
        raise HTTPException(status_code=404, detail=f"PDF {request.pdf_id} not found")
    try:
        job_id = enqueue_extraction(
            request.pdf_id,
            file_path=request.file_path,
            run_id=request.extraction_run_id,
            batch_size=request.batch_size,
            preview_only=request.preview_only,
        )
    except RedisError as e:
        logger.warning("enqueue_failed", pdf_id=request.pdf_id, error=str(e))
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {e}") from e
    return JobEnqueued(job_id=job_id, pdf_id=request.pdf_id)


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats():
    """Get current queue statistics."""
    try:
        conn = _get_redis()
        q = Queue(settings.QUEUE_NAME, connection=conn)
        workers = Worker.all(connection=conn)

        return QueueStats(
            queue_name=settings.QUEUE_NAME,
            queued=len(q),
            started=q.started_job_registry.count,
            finished=q.finished_job_registry.count,
            failed=q.failed_job_registry.count,
            deferred=q.deferred_job_registry.count,
            workers=len(workers),
        )
    except RedisError as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {e}") from e


@router.get("/{job_id}", response_model=JobStatus)
async def get_job_status(job_id: str):
    """Get the status of a specific extraction job."""
    try:
        job = Job.fetch(job_id, connection=_get_redis())
    except NoSuchJobError as e:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}") from e
    except RedisError as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {e}") from e

    job_state = job.get_status()
    return JobStatus(
        job_id=job_id,
        pdf_id=job.args[0] if job.args else "",
        status=job_state.value if job_state else "unknown",
        enqueued_at=job.enqueued_at,
        started_at=job.started_at,
        ended_at=job.ended_at,
        error_message=str(job.exc_info) if job.exc_info else None,
        result=job.result if job.is_finished else None,
    )
