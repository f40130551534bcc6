"""
Turn one page's LLM output into raw tariff rows and notes.

The parsed JSON is untrusted: every field is type-checked before it reaches
a RawTariffLine or ExtractedNote. When no JSON can be recovered the raw text
goes through a row regex and the heuristic notes extractor instead.
"""

import math
import re
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from customs_intel.models.enums import NoteType, ParseStrategy
from customs_intel.pipeline.hs_codes import digits_only, normalize10, normalize2
from customs_intel.pipeline.json_resilient import parse_json_resilient
from customs_intel.pipeline.reconciler import is_number_like, is_unit
from customs_intel.schemas.extraction import CircularReference, ExtractedNote, RawTariffLine

logger = structlog.get_logger(__name__)

RAW_LINE_FIELDS = (
    "prefix_col", "position_6", "col2", "col3", "national_code",
    "hs_code_6", "description", "unit_norm", "unit_comp",
)

# ── Tariff page detection ────────────────────────────────────
TARIFF_PAGE_MARKERS = [
    re.compile(r"TARIF\s+DES\s+DROITS", re.IGNORECASE),
    re.compile(r"Codification", re.IGNORECASE),
    re.compile(r"Position", re.IGNORECASE),
    re.compile(r"Désignation\s+des\s+produits", re.IGNORECASE),
    re.compile(r"\b\d{4}\.\d{2}\b"),
    re.compile(r"\b\d{4}\.\d{2}\s+\d{2}\s+\d{2}\b"),
    re.compile(r"Droit\s+d['’]importation", re.IGNORECASE),
    re.compile(r"Unité", re.IGNORECASE),
]
MIN_TARIFF_PAGE_CHARS = 50
MIN_TARIFF_MARKERS = 2

# ── Fallback patterns ────────────────────────────────────────
_AGGRESSIVE_LINE_RE = re.compile(
    r"^(?:(\d)\s+)?(\d{4}[.\s]\d{2})\s+(\d{2})?\s*(\d{2})?\s+(.+?)"
    r"(?:\s+(\d+(?:[,.]\d+)?%?)\s*([A-Za-z]{1,5}\d{0,2})?)?$",
    re.MULTILINE,
)
_NUMBERED_NOTE_RE = re.compile(r"\b(\d+)\.\s+([A-Z](?:[^.]+\.){0,5}[^.]+\.)")
_DEFINITION_RE = re.compile(r"\b([A-Z]{2,8})\s*:\s*([^.\n]{10,200})")
_NOTE_HEADER_RE = re.compile(
    r"\b(Notes?\s*(?:de\s+)?(?:chapitre|section|complémentaires?)?)\s*[:\-]?\s*"
    r"([^\n]+(?:\n(?!\s*\n)[^\n]+)*)",
    re.IGNORECASE,
)
_FOOTNOTE_RE = re.compile(r"\(([a-z1-9])\)\s*([^()]{10,300})")
_EXCLUSION_RE = re.compile(r"((?:ne\s+comprend\s+pas|ne\s+couvre\s+pas)[^.]+\.)", re.IGNORECASE)
_EXPRESSION_RE = re.compile(r"(l['’]expression\s*[\"«]([^\"»]+)[\"»]\s*désigne[^.]+\.)", re.IGNORECASE)

_CIRCULAR_RE = re.compile(
    r"circulaire\s+(?:(ADII|ASMEX|DGDI)\s+)?n[°o]?\s*(\d{3,6}(?:/\d{2,4})?)",
    re.IGNORECASE,
)
_NOTE_HS_RE = re.compile(r"\b(\d{4}(?:\.\d{2}){1,2})\b")

_LEGACY_POSITION_RE = re.compile(r"^\d{4}(\.\d{2})?$")


class PageExtraction(BaseModel):
    """What one page produced, before reconciliation."""
    page_number: int
    has_tariff_table: bool = False
    raw_lines: list[RawTariffLine] = Field(default_factory=list)
    notes: list[ExtractedNote] = Field(default_factory=list)
    parse_strategy: ParseStrategy = ParseStrategy.DIRECT
    error: Optional[str] = None


def page_contains_tariff_table(page_text: Optional[str]) -> bool:
    """At least two tariff markers on a page with real text."""
    if not page_text or len(page_text) < MIN_TARIFF_PAGE_CHARS:
        return False
    matches = sum(1 for marker in TARIFF_PAGE_MARKERS if marker.search(page_text))
    return matches >= MIN_TARIFF_MARKERS


# ── Untrusted value coercion ─────────────────────────────────

def _as_text(value: Any) -> Optional[str]:
    """Strings and numbers become stripped text; anything else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            value = int(value)
    if isinstance(value, (str, int, float)):
        try:
            text = str(value).strip()
        except ValueError:
            # int above the interpreter's digit limit for str()
            return None
        return text or None
    return None


def _as_rate(value: Any):
    """Finite numbers as float, non-empty strings as text; anything else None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            rate = float(value)
        except OverflowError:
            return None
        return rate if math.isfinite(rate) else None
    if isinstance(value, str):
        return value.strip() or None
    return None


def coerce_raw_line(item: Any, page_number: int) -> Optional[RawTariffLine]:
    """Validate one raw_lines entry from the LLM payload."""
    if not isinstance(item, dict):
        return None
    if "col1" in item and "position_6" not in item:
        return convert_legacy_line(item, page_number)

    values = {field: _as_text(item.get(field)) for field in RAW_LINE_FIELDS}
    values["duty_rate"] = _as_rate(item.get("duty_rate"))
    if not any(values.values()):
        return None
    return RawTariffLine(**values, page_number=page_number)


def convert_legacy_line(item: dict, page_number: int) -> Optional[RawTariffLine]:
    """
    Older payloads number the cells col1..col5 (col6/col7 for the
    sub-codes). Map them onto the named fields.
    """
    cols = [_as_text(item.get(f"col{i}")) or "" for i in range(1, 6)]
    col1, col2, col3, col4, col5 = cols

    prefix_col: Optional[str] = None
    position_6: Optional[str] = None
    if re.fullmatch(r"\d", col1) and _LEGACY_POSITION_RE.match(col2):
        prefix_col = col1
        position_6 = col2
    elif _LEGACY_POSITION_RE.match(col1) or re.fullmatch(r"\d{6}", col1):
        position_6 = col1

    text_fields = [col3, col4, col5, _as_text(item.get("description")) or ""]
    description = max(text_fields, key=len)

    duty_rate = None
    unit_norm: Optional[str] = None
    for field in (col4, col5, _as_rate(item.get("duty_rate"))):
        if field is None or field == "":
            continue
        if is_number_like(field) and duty_rate is None:
            duty_rate = field
        elif is_unit(field) and unit_norm is None:
            unit_norm = str(field)

    if _as_text(item.get("unit_norm")):
        unit_norm = _as_text(item.get("unit_norm"))

    return RawTariffLine(
        prefix_col=prefix_col,
        position_6=position_6,
        col2=normalize2(_as_text(item.get("col6"))),
        col3=normalize2(_as_text(item.get("col7"))),
        national_code=normalize10(digits_only(col1 + col2 + col3)),
        description=description or None,
        duty_rate=duty_rate,
        unit_norm=unit_norm or None,
        unit_comp=_as_text(item.get("unit_comp")),
        page_number=page_number,
    )


def coerce_note(item: Any, page_number: int) -> Optional[ExtractedNote]:
    if not isinstance(item, dict):
        return None
    note_text = _as_text(item.get("note_text"))
    if not note_text:
        return None
    try:
        note_type = NoteType(str(item.get("note_type") or "remark").strip().lower())
    except ValueError:
        note_type = NoteType.REMARK
    return ExtractedNote(
        note_type=note_type,
        anchor=_as_text(item.get("anchor")),
        note_text=note_text,
        page_number=page_number,
    )


# ── Text fallbacks ───────────────────────────────────────────

def extract_raw_lines_aggressively(text: str, page_number: Optional[int] = None) -> list[RawTariffLine]:
    """Rows shaped like "[p] XXXX.XX [cc] [cc] description [rate] [unit]"."""
    results = []
    for match in _AGGRESSIVE_LINE_RE.finditer(text or ""):
        prefix, pos6, col2, col3, desc, rate, unit = match.groups()
        results.append(RawTariffLine(
            prefix_col=prefix,
            position_6=re.sub(r"\s", "", pos6),
            col2=col2,
            col3=col3,
            description=desc.strip() if desc else None,
            duty_rate=rate,
            unit_norm=unit,
            page_number=page_number,
        ))
    return results


def extract_notes_from_text(text: str, page_number: Optional[int] = None) -> list[ExtractedNote]:
    """Heuristic note detection for pages whose notes the model did not return."""
    notes: list[ExtractedNote] = []
    seen: set[str] = set()
    text = text or ""

    def add(note_type: NoteType, note_text: str, anchor: Optional[str] = None) -> None:
        key = f"{note_type.value}:{note_text[:50]}"
        if key in seen or len(note_text) <= 15:
            return
        seen.add(key)
        notes.append(ExtractedNote(
            note_type=note_type, anchor=anchor, note_text=note_text, page_number=page_number,
        ))

    for number, content in _NUMBERED_NOTE_RE.findall(text):
        content = content.strip()
        if 30 < len(content) < 2000:
            add(NoteType.CHAPTER_NOTE, f"{number}. {content}", number)

    for term, definition in _DEFINITION_RE.findall(text):
        add(NoteType.DEFINITION, f"{term} : {definition.strip()}", term)

    for header, content in _NOTE_HEADER_RE.findall(text):
        content = content.strip()
        if not 20 < len(content) < 1500:
            continue
        lowered = header.lower()
        if "chapitre" in lowered and "complémentaire" not in lowered:
            add(NoteType.CHAPTER_NOTE, content)
        else:
            add(NoteType.SECTION_NOTE, content)

    for mark, content in _FOOTNOTE_RE.findall(text):
        add(NoteType.FOOTNOTE, content.strip(), f"({mark})")

    for content in _EXCLUSION_RE.findall(text):
        add(NoteType.EXCLUSION, content.strip())

    for content, term in _EXPRESSION_RE.findall(text):
        add(NoteType.DEFINITION, content.strip(), term.strip())

    return notes


def extract_circular_references(notes: list[ExtractedNote]) -> list[CircularReference]:
    """Customs circulars cited in notes, with the HS codes the same note names."""
    refs: list[CircularReference] = []
    seen: set[str] = set()
    for note in notes:
        related = [code.replace(".", "") for code in _NOTE_HS_RE.findall(note.note_text)]
        for issuer, ref in _CIRCULAR_RE.findall(note.note_text):
            if ref in seen:
                continue
            seen.add(ref)
            issuer = (issuer or "ADII").upper()
            refs.append(CircularReference(
                source_type="circular",
                source_ref=ref,
                title=f"Circulaire {issuer} n° {ref}",
                issuer=issuer,
                related_hs_codes=related,
                note_text=note.note_text,
                page_number=note.page_number,
            ))
    return refs


# ── Page payload ─────────────────────────────────────────────

def parse_page_response(text: str, page_number: int) -> PageExtraction:
    """Parse and validate one page's model output. Never raises."""
    result = parse_json_resilient(text)
    payload = result.data if result.success else None
    if isinstance(payload, list):
        payload = {"raw_lines": payload}

    if not isinstance(payload, dict):
        lines = extract_raw_lines_aggressively(text, page_number)
        notes = extract_notes_from_text(text, page_number)
        logger.warning(
            "page_json_unrecoverable",
            page=page_number,
            fallback_lines=len(lines),
            fallback_notes=len(notes),
        )
        return PageExtraction(
            page_number=page_number,
            has_tariff_table=bool(lines),
            raw_lines=lines,
            notes=notes,
            parse_strategy=ParseStrategy.FAILED,
            error="JSON parse failed, used fallback",
        )

    raw_items = payload.get("raw_lines")
    raw_lines = [
        line for line in (coerce_raw_line(item, page_number) for item in raw_items or [])
        if line is not None
    ] if isinstance(raw_items, list) else []

    note_items = payload.get("notes")
    notes = [
        note for note in (coerce_note(item, page_number) for item in note_items or [])
        if note is not None
    ] if isinstance(note_items, list) else []
    if not notes and "notes" not in payload:
        notes = extract_notes_from_text(text, page_number)

    return PageExtraction(
        page_number=page_number,
        has_tariff_table=payload.get("has_tariff_table") is not False and bool(raw_lines),
        raw_lines=raw_lines,
        notes=notes,
        parse_strategy=result.strategy,
    )
