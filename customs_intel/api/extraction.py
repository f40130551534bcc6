"""
Batch tariff extraction endpoints.

POST /api/v1/analyze-pdf processes one window of pages and advances the
extraction run. The run endpoints let clients resume, pause and cancel.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from customs_intel.api.errors import pipeline_http_error, store_http_error
from customs_intel.dependencies import get_batch_extractor, get_extraction_store, verify_api_key
from customs_intel.models.enums import RunStatus
from customs_intel.pipeline.batch_extractor import PipelineError, TariffBatchExtractor, update_run_status
from customs_intel.schemas.extraction import (
    AnalyzePdfRequest, BatchResponse, RunListResponse, RunState, RunStatusUpdate,
)
from customs_intel.storage.stores import ExtractionStore, StoreError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["extraction"], dependencies=[Depends(verify_api_key)])


@router.post("/analyze-pdf", response_model=BatchResponse, response_model_by_alias=True)
async def analyze_pdf(
    request: AnalyzePdfRequest,
    extractor: TariffBatchExtractor = Depends(get_batch_extractor),
):
    """Process the next batch of pages of a tariff PDF."""
    try:
        return await extractor.run_batch(request)
    except PipelineError as e:
        raise pipeline_http_error(e) from e
    except StoreError as e:
        raise store_http_error(e) from e


@router.get("/extraction-runs/{run_id}", response_model=RunState)
async def get_extraction_run(run_id: str, store: ExtractionStore = Depends(get_extraction_store)):
    run = await store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Extraction run {run_id} not found")
    return run.to_state()


@router.get("/pdfs/{pdf_id}/extraction-runs", response_model=RunListResponse)
async def list_extraction_runs(pdf_id: str, store: ExtractionStore = Depends(get_extraction_store)):
    """Runs of a PDF, newest first."""
    runs = await store.list_runs(pdf_id)
    return RunListResponse(runs=[run.to_state() for run in runs], total=len(runs))


@router.patch("/extraction-runs/{run_id}/status", response_model=RunState)
async def set_extraction_run_status(
    run_id: str,
    update: RunStatusUpdate,
    store: ExtractionStore = Depends(get_extraction_store),
):
    """Pause or cancel a run. Other statuses are owned by the server."""
    try:
        run = await update_run_status(store, run_id, update.status)
    except PipelineError as e:
        raise pipeline_http_error(e) from e
    return run.to_state()


@router.delete("/extraction-runs/{run_id}", response_model=RunState)
async def delete_extraction_run(run_id: str, store: ExtractionStore = Depends(get_extraction_store)):
    """Cancel a run. The record stays so clients can still query where it stopped."""
    try:
        run = await update_run_status(store, run_id, RunStatus.CANCELLED)
    except PipelineError as e:
        raise pipeline_http_error(e) from e
    logger.info("run_cancelled", run_id=run_id, current_page=run.current_page, via="delete")
    return run.to_state()
