"""
/api/v1/pdfs endpoints.
Handles tariff PDF upload, listing and detail.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status

from customs_intel.config import settings
from customs_intel.dependencies import get_artifact_store, get_extraction_store, verify_api_key
from customs_intel.schemas.pdfs import PdfListResponse, PdfSummary, PdfUploadResponse
from customs_intel.storage.artifact_store import ArtifactStore
from customs_intel.storage.paths import file_hash, pdf_storage_path
from customs_intel.storage.stores import ExtractionStore, PdfRecord

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/pdfs", tags=["pdfs"], dependencies=[Depends(verify_api_key)])


def _summary(pdf: PdfRecord) -> PdfSummary:
    return PdfSummary(
        pdf_id=pdf.id,
        title=pdf.title,
        file_name=pdf.file_name,
        file_path=pdf.file_path,
        country_code=pdf.country_code,
        category=pdf.category,
        page_count=pdf.page_count,
        is_verified=pdf.is_verified,
        file_size_bytes=pdf.file_size_bytes,
        created_at=pdf.created_at,
    )


async def read_pdf_upload(file: UploadFile) -> bytes:
    """Read an uploaded PDF, enforcing type and size limits."""
    if file.content_type not in settings.ALLOWED_MIME_TYPES.split(","):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported file type: {file.content_type}. Allowed: {settings.ALLOWED_MIME_TYPES}",
        )

    file_bytes = await file.read()
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {len(file_bytes)} bytes. Max: {max_bytes} bytes",
        )
    if not file_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file uploaded")
    return file_bytes


@router.post("", response_model=PdfUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_pdf(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    country_code: str = Form(settings.DEFAULT_COUNTRY_CODE, min_length=2, max_length=2),
    category: str = Form("tarif"),
    store: ExtractionStore = Depends(get_extraction_store),
    artifacts: ArtifactStore = Depends(get_artifact_store),
):
    """Store a tariff PDF and register it for extraction."""
    file_bytes = await read_pdf_upload(file)
    file_name = file.filename or "document.pdf"
    pdf_id = str(uuid.uuid4())

    path = pdf_storage_path(pdf_id, file_name)
    artifacts.save_bytes(path, file_bytes)

    pdf = await store.create_pdf(
        title=title or file_name.rsplit(".", 1)[0],
        file_name=file_name,
        file_path=path,
        file_hash=file_hash(file_bytes),
        file_size_bytes=len(file_bytes),
        country_code=country_code.upper(),
        category=category,
        pdf_id=pdf_id,
    )

    logger.info("pdf_uploaded", pdf_id=pdf.id, file_name=file_name, file_size_bytes=len(file_bytes))
    return PdfUploadResponse(
        pdf_id=pdf.id,
        title=pdf.title,
        file_name=pdf.file_name,
        file_path=pdf.file_path,
        file_size_bytes=len(file_bytes),
        file_hash=file_hash(file_bytes),
    )


@router.get("", response_model=PdfListResponse)
async def list_pdfs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: ExtractionStore = Depends(get_extraction_store),
):
    pdfs, total = await store.list_pdfs(limit=limit, offset=offset)
    return PdfListResponse(pdfs=[_summary(p) for p in pdfs], total=total, limit=limit, offset=offset)


@router.get("/{pdf_id}", response_model=PdfSummary)
async def get_pdf(pdf_id: str, store: ExtractionStore = Depends(get_extraction_store)):
    pdf = await store.get_pdf(pdf_id)
    if pdf is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"PDF {pdf_id} not found")
    return _summary(pdf)
