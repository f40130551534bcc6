"""
Pydantic schemas for the /api/v1/pdfs endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PdfUploadResponse(BaseModel):
    pdf_id: str
    title: str
    file_name: str
    file_path: str
    file_size_bytes: int
    file_hash: str
    message: str = "PDF stored. Start extraction with /api/v1/analyze-pdf."


class PdfSummary(BaseModel):
    pdf_id: str
    title: str
    file_name: str
    file_path: str
    country_code: str
    category: str
    page_count: Optional[int] = None
    is_verified: bool
    file_size_bytes: Optional[int] = None
    created_at: Optional[datetime] = None


class PdfListResponse(BaseModel):
    pdfs: list[PdfSummary]
    total: int
    limit: int
    offset: int
