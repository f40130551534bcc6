"""
Resilient JSON parsing for LLM output.

Strategies, in order:
1. direct parse
2. fenced code block (```json ... ``` or a bare fence), repaired if truncated
3. truncation repair on the whole text
4. largest balanced object embedded in prose
5. regex extraction of top-level scalar/array fields
A result is only "failed" when every strategy yields nothing.
"""

import json
import re
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from customs_intel.models.enums import ParseStrategy
from customs_intel.observability.metrics import llm_json_parse_total

logger = structlog.get_logger(__name__)

_JSON_FENCE_RE = re.compile(r"```(?:json|JSON)\s*(.*?)(?:```|\Z)", re.DOTALL)
_ANY_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*(.*?)(?:```|\Z)", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_STRING_FIELD_RE = re.compile(r'"([^"]+)"\s*:\s*"((?:[^"\\]|\\.)*)"')
_NUMBER_FIELD_RE = re.compile(r'"([^"]+)"\s*:\s*(-?\d+(?:\.\d+)?)(?=\s*[,}\]\n]|\s*$)')
_BOOL_FIELD_RE = re.compile(r'"([^"]+)"\s*:\s*(true|false)\b')
_NULL_FIELD_RE = re.compile(r'"([^"]+)"\s*:\s*null\b')
_ARRAY_FIELD_RE = re.compile(r'"([^"]+)"\s*:\s*\[(.*?)\]', re.DOTALL)

_CLOSERS = {"{": "}", "[": "]"}


class ParseResult(BaseModel):
    success: bool
    data: Any = None
    partial: bool = False
    strategy: ParseStrategy
    error: Optional[str] = None
    recovered_fields: list[str] = Field(default_factory=list)


class ParseFailure(Exception):
    """Raised by parse_json_strict when nothing could be recovered."""

    def __init__(self, message: str, raw_excerpt: str = ""):
        self.message = message
        self.raw_excerpt = raw_excerpt
        super().__init__(message)


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        pass
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", text)
    if cleaned != text:
        try:
            return True, json.loads(cleaned)
        except (ValueError, RecursionError):
            pass
    return False, None


def _closing_sequence(stack: list[str]) -> str:
    return "".join(_CLOSERS[opener] for opener in reversed(stack))


def repair_truncated_json(text: str) -> Optional[str]:
    """
    Cut a truncated JSON document back to its last complete element and
    close every open container.

    Elements interrupted by the truncation (an unterminated string, a
    dangling key, a trailing number that may have lost digits) are dropped
    rather than guessed at. Text following a complete document is ignored.
    Returns None when no opening brace or bracket exists.
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    s = text[min(starts):]

    stack: list[str] = []
    key_expected: list[bool] = []
    checkpoint: Optional[tuple[int, str]] = None
    in_string = False
    escape = False
    string_is_key = False

    for i, ch in enumerate(s):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                if not string_is_key:
                    checkpoint = (i + 1, _closing_sequence(stack))
            continue

        if ch == '"':
            in_string = True
            string_is_key = bool(stack) and stack[-1] == "{" and key_expected[-1]
        elif ch in "{[":
            stack.append(ch)
            key_expected.append(ch == "{")
            # an unfinished nested container is dropped whole, never emptied
            if len(stack) == 1:
                checkpoint = (i + 1, _closing_sequence(stack))
        elif ch in "}]":
            if not stack:
                break
            stack.pop()
            key_expected.pop()
            if not stack:
                return s[: i + 1]
            checkpoint = (i + 1, _closing_sequence(stack))
        elif ch == ":":
            if stack and stack[-1] == "{":
                key_expected[-1] = False
        elif ch == ",":
            if stack and stack[-1] == "{":
                key_expected[-1] = True
            checkpoint = (i, _closing_sequence(stack))

    if checkpoint is None:
        return None
    end, closers = checkpoint
    return s[:end].rstrip().rstrip(",") + closers


def _balanced_objects(text: str) -> list[str]:
    """Every top-level {...} span in text, string-aware."""
    spans = []
    depth = 0
    start = -1
    in_string = False
    escape = False
    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start: i + 1])
    return spans


def _extract_fields(text: str) -> dict[str, Any]:
    result: dict[str, Any] = {}

    for key, value in _STRING_FIELD_RE.findall(text):
        result[key] = value.replace('\\"', '"').replace("\\n", "\n")
    for key, value in _NUMBER_FIELD_RE.findall(text):
        result[key] = float(value) if "." in value else int(value)
    for key, value in _BOOL_FIELD_RE.findall(text):
        result[key] = value == "true"
    for key in _NULL_FIELD_RE.findall(text):
        result[key] = None
    for key, content in _ARRAY_FIELD_RE.findall(text):
        ok, parsed = _loads(f"[{content}]")
        if ok:
            result[key] = parsed
        else:
            result[key] = [
                part.strip().strip("\"'") for part in content.split(",") if part.strip()
            ]
    return result


def _finish(result: ParseResult) -> ParseResult:
    llm_json_parse_total.labels(strategy=result.strategy.value).inc()
    if result.partial:
        logger.info(
            "llm_json_recovered",
            strategy=result.strategy.value,
            recovered_fields=result.recovered_fields[:10],
        )
    return result


def parse_json_resilient(text: Optional[str]) -> ParseResult:
    """Parse LLM output through the fallback chain. Never raises."""
    if not text or not isinstance(text, str) or not text.strip():
        return _finish(ParseResult(success=False, strategy=ParseStrategy.FAILED, error="empty input"))

    clean = text.strip()

    ok, data = _loads(clean)
    if ok:
        return _finish(ParseResult(success=True, data=data, strategy=ParseStrategy.DIRECT))

    fence = _JSON_FENCE_RE.search(clean) or _ANY_FENCE_RE.search(clean)
    if fence:
        fenced = fence.group(1).strip()
        ok, data = _loads(fenced)
        if ok:
            return _finish(ParseResult(success=True, data=data, strategy=ParseStrategy.FENCED))
        repaired = repair_truncated_json(fenced)
        if repaired is not None:
            ok, data = _loads(repaired)
            if ok:
                return _finish(ParseResult(
                    success=True, data=data, partial=True,
                    strategy=ParseStrategy.REPAIRED,
                    recovered_fields=["repaired_from_fence"],
                ))

    repaired = repair_truncated_json(clean)
    if repaired is not None:
        ok, data = _loads(repaired)
        if ok:
            return _finish(ParseResult(
                success=True, data=data, partial=True,
                strategy=ParseStrategy.REPAIRED,
                recovered_fields=["repaired_truncation"],
            ))

    for candidate in sorted(_balanced_objects(clean), key=len, reverse=True):
        ok, data = _loads(candidate)
        if ok:
            return _finish(ParseResult(
                success=True, data=data, partial=True,
                strategy=ParseStrategy.LARGEST_OBJECT,
                recovered_fields=["extracted_object"],
            ))

    fields = _extract_fields(clean)
    if fields:
        return _finish(ParseResult(
            success=True, data=fields, partial=True,
            strategy=ParseStrategy.PARTIAL_FIELDS,
            error="partial extraction only",
            recovered_fields=list(fields),
        ))

    return _finish(ParseResult(
        success=False,
        strategy=ParseStrategy.FAILED,
        error="no JSON recoverable after all fallback strategies",
    ))


def parse_json_strict(text: Optional[str]) -> ParseResult:
    """parse_json_resilient, raising ParseFailure instead of returning a failure."""
    result = parse_json_resilient(text)
    if not result.success:
        raise ParseFailure(result.error or "unparseable", (text or "")[:200])
    return result
