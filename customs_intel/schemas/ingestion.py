"""
Pydantic schemas for legal document ingestion.
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator


class IngestLegalDocRequest(BaseModel):
    source_type: str = Field(min_length=1)    # circular, law, decree, note, ...
    source_ref: str = Field(min_length=1)
    title: Optional[str] = None
    issuer: Optional[str] = None

    # Document body: exactly one is used, in this order
    raw_text: Optional[str] = None
    pdf_base64: Optional[str] = None
    pdf_path: Optional[str] = None

    country_code: str = Field(default="MA", min_length=2, max_length=2)
    start_page: int = Field(default=1, ge=1)
    end_page: Optional[int] = Field(default=None, ge=1)
    batch_mode: bool = False
    source_id: Optional[int] = None
    generate_embeddings: bool = False
    detect_hs_codes: bool = True

    @model_validator(mode="after")
    def _require_body(self):
        if not (self.raw_text or self.pdf_base64 or self.pdf_path):
            raise ValueError("one of raw_text, pdf_base64 or pdf_path is required")
        if self.end_page is not None and self.end_page < self.start_page:
            raise ValueError("end_page must be >= start_page")
        return self


class IngestLegalDocResponse(BaseModel):
    success: bool = True
    source_id: Optional[int] = None
    pages_processed: int = 0
    chunks_created: int = 0
    detected_codes_count: int = 0
    evidence_created: int = 0
    total_pages: int = 0
    batch_start: Optional[int] = None
    batch_end: Optional[int] = None
    already_complete: bool = False


class LegalSourceState(BaseModel):
    """Ingestion progress of a legal source, for resuming clients."""
    id: int
    country_code: str
    source_type: str
    source_ref: str
    title: Optional[str] = None
    total_pages: Optional[int] = None
    pages_ingested: int = 0
    last_ingested_page: int = 0
    total_chunks: int = 0
