"""
Path layout for stored PDFs and extraction artifacts.
All paths are relative to ARTIFACT_ROOT.
"""

import hashlib
import re
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def file_hash(file_bytes: bytes) -> str:
    """SHA-256 hash of file content."""
    return hashlib.sha256(file_bytes).hexdigest()


def safe_file_name(file_name: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(file_name).name).strip("._")
    return name or "document.pdf"


def pdf_storage_path(pdf_id: str, file_name: str) -> str:
    """Path for an uploaded tariff PDF."""
    return f"pdfs/{pdf_id}/{safe_file_name(file_name)}"


def legal_document_path(source_key: str, file_name: str) -> str:
    """Path for a legal document submitted for ingestion."""
    return f"legal/{source_key}/{safe_file_name(file_name)}"


def page_response_path(pdf_id: str, run_id: str, page_number: int) -> str:
    """Path for the raw model response of one page."""
    return f"pdfs/{pdf_id}/runs/{run_id}/page_{page_number:04d}.txt"


def extraction_output_path(pdf_id: str, run_id: str) -> str:
    """Path for the consolidated extraction written when a run completes."""
    return f"pdfs/{pdf_id}/runs/{run_id}/extraction.json"


def ensure_parent_dirs(artifact_root: str, relative_path: str) -> Path:
    """Create parent directories and return the full absolute path."""
    full_path = Path(artifact_root) / relative_path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    return full_path
