"""
Python enums matching the stored string values.
Values MUST match what the API and the DB columns carry.
"""

from enum import Enum


class RunStatus(str, Enum):
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ProgressStatus(str, Enum):
    """Client-side orchestrator status."""
    IDLE = "idle"
    PROCESSING = "processing"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    DONE = "done"
    ERROR = "error"


class NoteType(str, Enum):
    CHAPTER_NOTE = "chapter_note"
    SECTION_NOTE = "section_note"
    DEFINITION = "definition"
    FOOTNOTE = "footnote"
    EXCLUSION = "exclusion"
    REMARK = "remark"


class HSLevel(str, Enum):
    CHAPTER = "chapter"
    HEADING = "heading"
    SUBHEADING = "subheading"
    TARIFF_ITEM = "tariff_item"
    NATIONAL_LINE = "national_line"


class PageKind(str, Enum):
    """Pre-scan classification of a PDF page."""
    TARIFF = "tariff"
    TEXT = "text"


class ParseStrategy(str, Enum):
    DIRECT = "direct"
    FENCED = "fenced"
    REPAIRED = "repaired"
    LARGEST_OBJECT = "largest_object"
    PARTIAL_FIELDS = "partial_fields"
    FAILED = "failed"


class ChunkType(str, Enum):
    DEFINITION = "definition"
    HEADER = "header"
    ARTICLE = "article"
    NOTE = "note"
    EXCLUSION = "exclusion"
    PROCEDURE = "procedure"
    SANCTION = "sanction"
    TARIFF = "tariff"
    GENERAL = "general"
