"""
Strict HS code normalisation.

Never pad a code: a national code exists only when exactly ten digits were
read, an HS6 only when exactly six. Chapter 00 is rejected everywhere.
"""

import re
from typing import Optional

from pydantic import BaseModel

from customs_intel.models.enums import HSLevel

_NON_DIGIT_RE = re.compile(r"[^0-9]")
_HS_PUNCT_RE = re.compile(r"[.\s\-–—]")


def digits_only(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_DIGIT_RE.sub("", str(value))


def clean_hs_code(code: Optional[str]) -> str:
    """Strip dots, dashes and whitespace."""
    if not code:
        return ""
    return _HS_PUNCT_RE.sub("", str(code)).strip()


def _valid_chapter(digits: str) -> bool:
    return 1 <= int(digits[:2]) <= 99


def normalize10(value: Optional[str]) -> Optional[str]:
    """Ten-digit national code, or None."""
    digits = digits_only(value)
    if len(digits) != 10 or not _valid_chapter(digits):
        return None
    return digits


def normalize6(value: Optional[str]) -> Optional[str]:
    """Six-digit HS subheading, or None."""
    digits = digits_only(clean_hs_code(value))
    if len(digits) != 6 or not _valid_chapter(digits):
        return None
    return digits


def normalize4(value: Optional[str]) -> Optional[str]:
    digits = digits_only(value)
    if len(digits) != 4 or not _valid_chapter(digits):
        return None
    return digits


def normalize2(value: Optional[str]) -> Optional[str]:
    """Two-digit national sub-code (col2/col3); no chapter check."""
    digits = digits_only(value)
    if len(digits) != 2:
        return None
    return digits


def extract_hs6(code: Optional[str]) -> Optional[str]:
    digits = digits_only(code)
    if len(digits) < 6:
        return None
    return digits[:6]


def hs_level(code: Optional[str]) -> HSLevel:
    length = len(digits_only(code))
    if length <= 2:
        return HSLevel.CHAPTER
    if length <= 4:
        return HSLevel.HEADING
    if length <= 6:
        return HSLevel.SUBHEADING
    if length <= 8:
        return HSLevel.TARIFF_ITEM
    return HSLevel.NATIONAL_LINE


def format_hs_code(code: Optional[str]) -> str:
    """Dotted display form: 8903.11.00.00"""
    clean = digits_only(code)
    if len(clean) <= 2:
        return clean
    if len(clean) <= 4:
        return f"{clean[:2]}.{clean[2:]}"
    if len(clean) <= 6:
        return f"{clean[:4]}.{clean[4:]}"
    if len(clean) <= 8:
        return f"{clean[:4]}.{clean[4:6]}.{clean[6:]}"
    return f"{clean[:4]}.{clean[4:6]}.{clean[6:8]}.{clean[8:]}"


class ParsedHSCode(BaseModel):
    raw: str
    hs_code_6: Optional[str] = None
    national_code: Optional[str] = None
    level: HSLevel
    is_complete: bool = False


def parse_detected_code(raw: str) -> ParsedHSCode:
    """Split a code found in free text into its valid components."""
    digits = digits_only(raw)
    return ParsedHSCode(
        raw=raw,
        hs_code_6=digits[:6] if len(digits) >= 6 else None,
        national_code=digits if len(digits) == 10 else None,
        level=hs_level(digits),
        is_complete=len(digits) == 10,
    )
