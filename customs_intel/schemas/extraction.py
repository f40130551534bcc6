"""
Pydantic schemas for the batch tariff extraction endpoints and the
objects exchanged between the page parser, the reconciler and the client.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

from customs_intel.models.enums import HSLevel, NoteType, RunStatus


# ── Extraction Objects ───────────────────────────────────────

class RawTariffLine(BaseModel):
    """One table row as read by the LLM, before reconciliation."""
    prefix_col: Optional[str] = None     # alignment digit, never part of the code
    position_6: Optional[str] = None
    col2: Optional[str] = None
    col3: Optional[str] = None
    national_code: Optional[str] = None
    hs_code_6: Optional[str] = None
    description: Optional[str] = None
    duty_rate: Union[float, str, None] = None
    unit_norm: Optional[str] = None
    unit_comp: Optional[str] = None
    page_number: Optional[int] = None


class TariffLine(BaseModel):
    national_code: str = Field(pattern=r"^\d{10}$")
    hs_code_6: str = Field(pattern=r"^\d{6}$")
    description: str = ""
    duty_rate: float
    duty_note: Optional[str] = None
    unit_norm: Optional[str] = None
    unit_comp: Optional[str] = None
    is_inherited: bool = False
    page_number: Optional[int] = None
    source_evidence: Optional[str] = None


class HSCodeEntry(BaseModel):
    code: str
    code_clean: str
    description: str = ""
    level: HSLevel


class ExtractedNote(BaseModel):
    note_type: NoteType = NoteType.REMARK
    anchor: Optional[str] = None
    note_text: str
    page_number: Optional[int] = None


class CircularReference(BaseModel):
    """A customs circular cited inside a tariff note."""
    source_type: str = "circular"
    source_ref: str
    title: Optional[str] = None
    issuer: Optional[str] = None
    related_hs_codes: list[str] = Field(default_factory=list)
    note_text: str
    page_number: Optional[int] = None


class BatchStats(BaseModel):
    """Running tally attached to an extraction run."""
    tariff_lines_inserted: int = 0
    hs_codes_inserted: int = 0
    notes_inserted: int = 0
    pages_skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    def add_error(self, message: str, max_errors: int) -> None:
        """Append-only and bounded: the oldest messages are kept."""
        if len(self.errors) < max_errors:
            self.errors.append(message)


# ── Request Schemas ──────────────────────────────────────────

class AnalyzePdfRequest(BaseModel):
    """Batch call body. Accepts both the camelCase and snake_case names."""
    pdf_id: str = Field(alias="pdfId", min_length=1)
    file_path: Optional[str] = Field(default=None, alias="filePath")
    preview_only: bool = Field(default=False, alias="previewOnly")
    start_page: int = Field(default=1, ge=1)
    max_pages: Optional[int] = None
    extraction_run_id: Optional[str] = None

    model_config = {"populate_by_name": True}


class RunStatusUpdate(BaseModel):
    """Only the client-owned transitions are accepted."""
    status: RunStatus


# ── Response Schemas ─────────────────────────────────────────

class BatchResponse(BaseModel):
    extraction_run_id: str
    done: bool
    next_page: Optional[int] = None
    processed_pages: int
    total_pages: int
    stats: BatchStats
    status: RunStatus
    pdf_id: str = Field(alias="pdfId")
    pdf_title: Optional[str] = Field(default=None, alias="pdfTitle")
    country_code: Optional[str] = Field(default=None, alias="countryCode")
    tariff_lines: list[TariffLine] = Field(default_factory=list)
    hs_codes: list[HSCodeEntry] = Field(default_factory=list)
    notes: list[ExtractedNote] = Field(default_factory=list)
    summary: Optional[str] = None
    replayed: bool = False

    model_config = {"populate_by_name": True}


class RunState(BaseModel):
    """Extraction run as exposed to clients."""
    id: str
    pdf_id: str
    status: RunStatus
    current_page: int
    total_pages: int
    processed_pages: int
    batch_size: int
    stats: BatchStats
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class RunListResponse(BaseModel):
    runs: list[RunState]
    total: int
