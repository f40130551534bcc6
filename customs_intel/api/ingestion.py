"""
Legal document ingestion endpoints.
"""

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from customs_intel.api.errors import pipeline_http_error, store_http_error
from customs_intel.api.pdfs import read_pdf_upload
from customs_intel.dependencies import (
    get_artifact_store, get_legal_ingestion_service, get_legal_store, verify_api_key,
)
from customs_intel.pipeline.batch_extractor import PipelineError
from customs_intel.pipeline.legal_ingestion import LegalIngestionService
from customs_intel.schemas.ingestion import IngestLegalDocRequest, IngestLegalDocResponse, LegalSourceState
from customs_intel.storage.artifact_store import ArtifactStore
from customs_intel.storage.paths import legal_document_path
from customs_intel.storage.stores import LegalStore, StoreError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["legal"], dependencies=[Depends(verify_api_key)])


@router.post("/ingest-legal-doc", response_model=IngestLegalDocResponse)
async def ingest_legal_doc(
    request: IngestLegalDocRequest,
    service: LegalIngestionService = Depends(get_legal_ingestion_service),
):
    """Chunk one batch of a legal document and record the HS codes it cites."""
    try:
        return await service.ingest(request)
    except PipelineError as e:
        raise pipeline_http_error(e) from e
    except StoreError as e:
        raise store_http_error(e) from e


@router.post("/legal-documents", status_code=status.HTTP_201_CREATED)
async def upload_legal_document(
    file: UploadFile = File(...),
    source_type: str = Form(..., min_length=1),
    source_ref: str = Form(..., min_length=1),
    artifacts: ArtifactStore = Depends(get_artifact_store),
):
    """Store a legal PDF; the returned pdf_path feeds /ingest-legal-doc."""
    file_bytes = await read_pdf_upload(file)
    source_key = f"{source_type}_{source_ref}"
    path = legal_document_path(source_key, file.filename or "document.pdf")
    artifacts.save_bytes(path, file_bytes)
    logger.info("legal_document_uploaded", source_ref=source_ref, path=path, size_bytes=len(file_bytes))
    return {"pdf_path": path, "file_size_bytes": len(file_bytes)}


@router.get("/legal-sources/{source_id}", response_model=LegalSourceState)
async def get_legal_source(source_id: int, store: LegalStore = Depends(get_legal_store)):
    source = await store.get_source(source_id)
    if source is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Legal source {source_id} not found")
    return LegalSourceState(**source.model_dump())
