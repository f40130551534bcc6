"""
Pydantic schemas for the /api/v1/jobs endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ExtractionJobRequest(BaseModel):
    """Run a whole-document extraction on the worker."""
    pdf_id: str = Field(min_length=1)
    file_path: Optional[str] = None
    extraction_run_id: Optional[str] = None
    batch_size: int = Field(default=4, ge=1, le=15)
    preview_only: bool = False


class JobEnqueued(BaseModel):
    job_id: str
    pdf_id: str
    status: str = "queued"


class JobStatus(BaseModel):
    job_id: str
    pdf_id: str
    status: str
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class QueueStats(BaseModel):
    queue_name: str
    queued: int
    started: int
    finished: int
    failed: int
    deferred: int
    workers: int
