"""
SQLAlchemy ORM models.
Column names match the PostgreSQL tables the extraction service reads and writes.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    ForeignKey,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID, ENUM
from sqlalchemy.orm import Mapped, mapped_column, relationship

from customs_intel.models.database import Base


# ────────────────────────────────────────────────────────────
# PDF DOCUMENTS
# ────────────────────────────────────────────────────────────
class PdfDocument(Base):
    __tablename__ = "pdf_documents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_hash: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    category: Mapped[str] = mapped_column(
        Text, nullable=False, default="tarif", server_default="tarif"
    )
    country_code: Mapped[str] = mapped_column(
        String(2), nullable=False, default="MA", server_default="MA"
    )
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    related_hs_codes: Mapped[Optional[list]] = mapped_column(ARRAY(Text), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    extraction_runs = relationship("ExtractionRun", back_populates="pdf", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_pdf_documents_hash", "file_hash"),
        Index("idx_pdf_documents_created", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# EXTRACTION RUNS
# ────────────────────────────────────────────────────────────
class ExtractionRun(Base):
    __tablename__ = "pdf_extraction_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    pdf_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pdf_documents.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        ENUM('processing', 'done', 'error', 'paused', 'cancelled',
             name='extraction_run_status_enum', create_type=False),
        nullable=False, default="processing", server_default="processing"
    )
    current_page: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    total_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processed_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=4, server_default="4")
    file_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    stats: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # Replay record for duplicate batch requests
    last_batch_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_batch_response: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    pdf = relationship("PdfDocument", back_populates="extraction_runs")

    __table_args__ = (
        Index("idx_runs_pdf", "pdf_id"),
        Index("idx_runs_status", "status"),
        Index("idx_runs_created", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# TARIFF DATA
# ────────────────────────────────────────────────────────────
class CountryTariff(Base):
    __tablename__ = "country_tariffs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    national_code: Mapped[str] = mapped_column(String(10), nullable=False)
    hs_code_6: Mapped[str] = mapped_column(String(6), nullable=False)
    description_local: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duty_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 3), nullable=True)
    duty_note: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    vat_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    unit_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unit_complementary_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    is_inherited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    source: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_pdf: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_page: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    source_evidence: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        UniqueConstraint("country_code", "national_code", name="uq_country_tariffs_code"),
        Index("idx_country_tariffs_hs6", "hs_code_6"),
    )


class HSCode(Base):
    __tablename__ = "hs_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    code_clean: Mapped[str] = mapped_column(Text, nullable=False)
    description_fr: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chapter_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    level: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")

    __table_args__ = (
        Index("idx_hs_codes_clean", "code_clean"),
    )


class TariffNote(Base):
    __tablename__ = "tariff_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    chapter_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    note_type: Mapped[str] = mapped_column(Text, nullable=False)
    anchor: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    note_text: Mapped[str] = mapped_column(Text, nullable=False)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source_pdf: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )


# ────────────────────────────────────────────────────────────
# LEGAL SOURCES
# ────────────────────────────────────────────────────────────
class LegalSource(Base):
    __tablename__ = "legal_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_ref: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issuer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    full_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pages_ingested: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_ingested_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    chunks = relationship("LegalChunk", back_populates="source", cascade="all, delete-orphan")
    evidence = relationship("HSEvidence", back_populates="source", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("country_code", "source_type", "source_ref", name="uq_legal_sources_ref"),
    )


class LegalChunk(Base):
    __tablename__ = "legal_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("legal_sources.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    char_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    char_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    article_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    section_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_section: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hierarchy_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    keywords: Mapped[Optional[list]] = mapped_column(ARRAY(Text), nullable=True)
    mentioned_hs_codes: Mapped[Optional[list]] = mapped_column(ARRAY(Text), nullable=True)
    embedding: Mapped[Optional[list]] = mapped_column(ARRAY(Float), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    source = relationship("LegalSource", back_populates="chunks")

    __table_args__ = (
        Index("idx_legal_chunks_source", "source_id", "chunk_index"),
    )


class HSEvidence(Base):
    __tablename__ = "hs_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("legal_sources.id", ondelete="CASCADE"), nullable=False
    )
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    national_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    hs_code_6: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    evidence_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confidence: Mapped[str] = mapped_column(Text, nullable=False, default="medium", server_default="medium")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    source = relationship("LegalSource", back_populates="evidence")

    __table_args__ = (
        Index("idx_hs_evidence_hs6", "hs_code_6"),
    )


# ────────────────────────────────────────────────────────────
# COST EVENTS
# ────────────────────────────────────────────────────────────
class CostEvent(Base):
    __tablename__ = "cost_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pdf_extraction_runs.id", ondelete="SET NULL"),
        nullable=True
    )
    pdf_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pdf_documents.id", ondelete="SET NULL"),
        nullable=True
    )
    engine_name: Mapped[str] = mapped_column(Text, nullable=False)
    operation: Mapped[str] = mapped_column(Text, nullable=False)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    input_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6), nullable=True)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_cost_run", "run_id"),
        Index("idx_cost_engine", "engine_name"),
        Index("idx_cost_created", "created_at"),
    )
