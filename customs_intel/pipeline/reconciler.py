"""
Tabular field reconciliation for tariff rows read by an LLM.

Two transpositions are common on Moroccan tariff schedules:
- the duty rate and the unit-of-quantity cells are swapped;
- the two 2-digit sub-classification columns (col2/col3) are ambiguous
  when one of them is "00".
Rate/unit swaps are corrected deterministically. Col2/col3 resolution is
conservative: the extractor's order is kept and every decision carries a
reason string.

Codes are never padded: rows whose 10-digit national code cannot be
reconstructed exactly are skipped.
"""

import math
import re
from typing import Optional, Union

import structlog
from pydantic import BaseModel, Field

from customs_intel.models.enums import HSLevel
from customs_intel.observability.metrics import (
    rate_unit_swaps_total,
    tariff_lines_extracted_total,
    tariff_rows_skipped_total,
)
from customs_intel.pipeline.hs_codes import digits_only, normalize10, normalize2
from customs_intel.schemas.extraction import HSCodeEntry, RawTariffLine, TariffLine

logger = structlog.get_logger(__name__)

RateValue = Union[str, float, int, None]

DASHES = ("-", "–", "—")
COMMON_UNITS = frozenset({
    "U", "KG", "KGN", "M", "M2", "M3", "L", "N", "P", "PR",
    "CT", "GR", "T", "1000U", "1000P", "K",
})
MAX_SWAP_SAMPLES = 10

_UNIT_RE = re.compile(r"^[A-Za-z]{1,5}\d{0,2}$")
_NUMBER_RE = re.compile(r"^\d+([.,]\d+)?%?$")
_FOOTNOTE_MARK_RE = re.compile(r"\([a-z]\)", re.IGNORECASE)
_DUTY_NOTE_RE = re.compile(r"\(([a-z])\)", re.IGNORECASE)
_LEADING_DASHES_RE = re.compile(r"^[–\-\s]+")


class SwapSample(BaseModel):
    national_code: str
    before_duty_rate: RateValue = None
    before_unit_norm: Optional[str] = None
    after_duty_rate: Optional[float] = None
    after_unit_norm: Optional[str] = None


class ReconcileDebug(BaseModel):
    """Diagnostics for one reconciliation pass."""
    detected_swaps: int = 0
    swapped_samples: list[SwapSample] = Field(default_factory=list)
    parsing_warnings: list[str] = Field(default_factory=list)
    skipped_lines: int = 0
    notes_count: int = 0
    lines_from_fallback: int = 0

    def absorb(self, other: "ReconcileDebug") -> None:
        """Fold the counters of another pass into this one."""
        self.detected_swaps += other.detected_swaps
        room = max(MAX_SWAP_SAMPLES - len(self.swapped_samples), 0)
        self.swapped_samples.extend(other.swapped_samples[:room])
        self.parsing_warnings.extend(other.parsing_warnings)
        self.skipped_lines += other.skipped_lines
        self.lines_from_fallback += other.lines_from_fallback


class RateUnitResolution(BaseModel):
    duty_rate: Optional[float] = None
    unit_norm: Optional[str] = None
    swapped: bool = False


class Col2Col3Resolution(BaseModel):
    col2: str
    col3: str
    swap_applied: bool = False
    reason: str


# ── Field Grammars ───────────────────────────────────────────

def _is_blank(value: RateValue) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _is_dash(value: RateValue) -> bool:
    return isinstance(value, str) and value.strip() in DASHES


def normalize_rate(value: RateValue) -> Optional[float]:
    """
    Parse a duty rate cell. "2,5 %" -> 2.5, "10 (a)" -> 10.0.
    Dashes, blanks and anything non-numeric give None; never raises.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip()
    if text == "" or text in DASHES:
        return None
    cleaned = text.replace("%", "").strip()
    cleaned = cleaned.replace(",", ".", 1)
    cleaned = _FOOTNOTE_MARK_RE.sub("", cleaned).strip()
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def is_unit(value: RateValue) -> bool:
    """Unit-of-quantity token, or a dash/empty placeholder."""
    if value is None:
        return False
    text = str(value).strip().upper()
    if text == "" or text in DASHES:
        return True
    if text in COMMON_UNITS:
        return True
    return bool(_UNIT_RE.match(text))


def is_number_like(value: RateValue) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(float(value))
    text = str(value).strip()
    if text == "" or text in DASHES:
        return False
    return bool(_NUMBER_RE.match(text))


def _as_unit_text(value: RateValue) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


# ── Rate / Unit ──────────────────────────────────────────────

def fix_rate_unit_swap(line: RawTariffLine, debug: Optional[ReconcileDebug] = None) -> RateUnitResolution:
    """
    Detect a duty rate / unit transposition and return the corrected pair.

    1. duty looks like a unit and unit looks numeric -> swap
    2. duty is a dash and unit is numeric -> duty takes the number, unit "-"
    3. duty is empty and unit is numeric -> duty takes the number, unit None
    """
    original_duty: RateValue = line.duty_rate
    original_unit: RateValue = line.unit_norm
    duty: RateValue = original_duty
    unit: RateValue = original_unit
    swapped = False

    if is_unit(duty) and is_number_like(unit):
        duty, unit = unit, str(original_duty)
        swapped = True
    elif _is_dash(duty) and is_number_like(unit):
        duty, unit = unit, "-"
        swapped = True
    elif _is_blank(duty) and is_number_like(unit):
        duty, unit = unit, None
        swapped = True

    resolution = RateUnitResolution(
        duty_rate=normalize_rate(duty),
        unit_norm=_as_unit_text(unit),
        swapped=swapped,
    )

    if swapped:
        rate_unit_swaps_total.inc()
        if debug is not None:
            debug.detected_swaps += 1
            if len(debug.swapped_samples) < MAX_SWAP_SAMPLES:
                debug.swapped_samples.append(SwapSample(
                    national_code=line.national_code or "unknown",
                    before_duty_rate=original_duty,
                    before_unit_norm=_as_unit_text(original_unit),
                    after_duty_rate=resolution.duty_rate,
                    after_unit_norm=resolution.unit_norm,
                ))
        logger.debug(
            "rate_unit_swap",
            national_code=line.national_code,
            duty_before=original_duty,
            unit_before=original_unit,
        )
    return resolution


def extract_duty_note(duty: RateValue) -> Optional[str]:
    """Footnote letter in a rate cell: "10 (a)" -> "a"."""
    if duty is None or not isinstance(duty, str):
        return None
    match = _DUTY_NOTE_RE.search(duty.strip())
    return match.group(1).lower() if match else None


def is_reserved_code(code: Optional[str]) -> bool:
    """Bracketed positions ("[8903.11]") are reserved and carry no tariff."""
    if not code or not code.strip():
        return False
    return "[" in code or "]" in code


# ── Col2 / Col3 ──────────────────────────────────────────────

def resolve_col2_col3(pos6: str, a: Optional[str], b: Optional[str]) -> Optional[Col2Col3Resolution]:
    """
    Decide which 2-digit group is col2 (sub-position) and which is col3
    (national detail).

    Returns None when either candidate is not exactly two digits; the caller
    then falls back to inheritance. The extractor's order is always kept:
    col2 "00" is a legitimate parent row, and without a "00" anchor, or with
    col3 "00", nothing in the structure proves a transposition.
    """
    col_a = normalize2(a)
    col_b = normalize2(b)
    if not col_a or not col_b:
        return None

    if col_a == "00":
        reason = f"KEEP(col2=00-parent) col2={col_a},col3={col_b}"
    elif col_b != "00":
        reason = f"KEEP(no-00) both={col_a},{col_b}"
    else:
        reason = f"KEEP(trust-llm) col2={col_a},col3={col_b}"

    return Col2Col3Resolution(col2=col_a, col3=col_b, swap_applied=False, reason=reason)


def _position_digits(position: Optional[str]) -> Optional[str]:
    if not position:
        return None
    digits = digits_only(re.sub(r"[.\-\s]", "", position))
    if len(digits) == 6:
        return digits
    if len(digits) == 4:
        return digits + "00"
    return None


# ── Row Processing ───────────────────────────────────────────

def process_raw_lines(raw_lines: list[RawTariffLine]) -> tuple[list[TariffLine], ReconcileDebug]:
    """
    Turn raw rows into validated tariff lines.

    Rows are processed in order because position and col2/col3 are
    inherited from previous rows when a cell is blank.
    """
    results: list[TariffLine] = []
    debug = ReconcileDebug()

    last_pos6: Optional[str] = None
    last_col2: Optional[str] = None
    last_col3: Optional[str] = None

    for i, line in enumerate(raw_lines):
        if line.position_6 and is_reserved_code(line.position_6):
            debug.parsing_warnings.append(f"Line {i}: reserved code [{line.position_6}] ignored")
            debug.skipped_lines += 1
            continue

        pos6 = _position_digits(line.position_6)
        nc_from_line = normalize10(line.national_code)
        if not pos6 and nc_from_line:
            pos6 = nc_from_line[:6]
        if not pos6 and last_pos6:
            pos6 = last_pos6
        if not pos6:
            debug.parsing_warnings.append(f"Line {i}: no valid position_6, skipped")
            debug.skipped_lines += 1
            continue

        if line.position_6:
            last_pos6 = pos6

        if nc_from_line and nc_from_line[:6] != pos6:
            debug.parsing_warnings.append(
                f'Line {i}: national_code prefix "{nc_from_line[:6]}" differs from pos6 "{pos6}", using pos6'
            )

        cand_a = normalize2(line.col2) or (nc_from_line[6:8] if nc_from_line else None)
        cand_b = normalize2(line.col3) or (nc_from_line[8:10] if nc_from_line else None)

        col2: Optional[str]
        col3: Optional[str]
        national_code: Optional[str] = None

        if cand_a and cand_b:
            resolution = resolve_col2_col3(pos6, cand_a, cand_b)
            if resolution is not None:
                col2, col3 = resolution.col2, resolution.col3
            else:
                col2, col3 = cand_a, cand_b
            national_code = pos6 + col2 + col3
        else:
            col2 = cand_a or last_col2
            col3 = cand_b or last_col3
            if col2 and col3:
                national_code = pos6 + col2 + col3
                debug.lines_from_fallback += 1

        if not national_code or not re.fullmatch(r"\d{10}", national_code):
            debug.parsing_warnings.append(f'Line {i}: invalid national_code "{national_code}", skipped')
            debug.skipped_lines += 1
            tariff_rows_skipped_total.inc()
            continue

        rate_unit = fix_rate_unit_swap(line, debug)

        last_pos6 = pos6
        last_col2 = col2
        last_col3 = col3

        if rate_unit.duty_rate is None:
            # Header rows carry no rate; they still feed inheritance
            continue

        results.append(TariffLine(
            national_code=national_code,
            hs_code_6=national_code[:6],
            description=_LEADING_DASHES_RE.sub("", line.description or "").strip(),
            duty_rate=rate_unit.duty_rate,
            duty_note=extract_duty_note(line.duty_rate),
            unit_norm=rate_unit.unit_norm,
            unit_comp=(line.unit_comp or None),
            is_inherited=rate_unit.swapped or not line.national_code,
            page_number=line.page_number,
        ))

    tariff_lines_extracted_total.inc(len(results))
    if debug.skipped_lines:
        logger.info(
            "tariff_rows_skipped",
            skipped=debug.skipped_lines,
            kept=len(results),
            warnings=debug.parsing_warnings[:5],
        )
    return results, debug


def extract_hs_codes_from_tariff_lines(lines: list[TariffLine]) -> list[HSCodeEntry]:
    """One subheading entry per distinct hs_code_6, first description wins."""
    seen: dict[str, HSCodeEntry] = {}
    for line in lines:
        code6 = line.hs_code_6
        if not re.fullmatch(r"\d{6}", code6 or "") or code6 in seen:
            continue
        seen[code6] = HSCodeEntry(
            code=f"{code6[:4]}.{code6[4:6]}",
            code_clean=code6,
            description=line.description,
            level=HSLevel.SUBHEADING,
        )
    return list(seen.values())


def build_source_evidence(line: TariffLine) -> str:
    """Stable one-line trace of the cells a tariff row was built from."""
    if line.duty_rate is None:
        rate = ""
    elif float(line.duty_rate).is_integer():
        rate = str(int(line.duty_rate))
    else:
        rate = str(line.duty_rate)
    parts = [
        line.hs_code_6 or "",
        line.national_code[6:8] if line.national_code else "",
        line.national_code[8:10] if line.national_code else "",
        "|",
        rate,
        "|",
        line.unit_norm or "",
        line.unit_comp or "",
    ]
    return " ".join(p for p in parts if p).strip()
