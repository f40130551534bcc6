"""
Legal text chunking and HS code detection.

Chunks follow paragraphs, split on article boundaries, and carry the
Titre > Chapitre > Section path they sit under (French and Arabic headings).
"""

import re
from typing import Optional

from pydantic import BaseModel, Field

from customs_intel.config import settings
from customs_intel.models.enums import ChunkType
from customs_intel.pipeline.hs_codes import parse_detected_code

MAX_KEYWORDS = 15
MAX_MENTIONED_CODES = 20
CONTEXT_CHARS = 50
MAX_HEADING_CHARS = 80

_AR_ORDINALS = "الأول|الثاني|الثالث|الرابع|الخامس|السادس|السابع|الثامن|التاسع|العاشر"


class PageText(BaseModel):
    page_number: int
    text: str


class TextChunk(BaseModel):
    chunk_index: int
    text: str
    page_number: Optional[int] = None
    char_start: int = 0
    char_end: int = 0
    article_number: Optional[str] = None
    section_title: Optional[str] = None
    parent_section: Optional[str] = None
    chunk_type: ChunkType = ChunkType.GENERAL
    hierarchy_path: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    mentioned_hs_codes: list[str] = Field(default_factory=list)


class DetectedCode(BaseModel):
    code: str
    hs_code_6: Optional[str] = None
    national_code: Optional[str] = None
    context: str
    page_number: Optional[int] = None


# ── Metadata extraction ──────────────────────────────────────

_ARTICLE_PATTERNS = [
    re.compile(
        r"\bArt(?:icle)?\.?\s*(\d+(?:\s*(?:bis|ter|quater|quinquies|sexies|septies|octies|novies|decies))?"
        r"(?:\s*[-–]\s*\d+)?)",
        re.IGNORECASE,
    ),
    re.compile(r"§\s*(\d+(?:\.\d+)*)"),
    re.compile(r"(?:المادة|الفصل|البند)\s*[:.]?\s*(\d+(?:\s*[-–]\s*\d+)?)"),
    re.compile(rf"(?:المادة|الفصل)\s+((?:{_AR_ORDINALS})[ىة]?)"),
]

_SECTION_TITLE_PATTERNS = [
    re.compile(
        r"^((?:CHAPITRE|TITRE|SECTION|SOUS-SECTION|PARTIE)\s+[IVXLCDM\d]+(?:\s*[-–:]\s*.{5,80})?)",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(
        rf"^((?:الباب|الفصل|القسم|الجزء|العنوان)\s+(?:[IVXLCDM\d]+|{_AR_ORDINALS})(?:\s*[-–:]\s*.{{5,80}})?)",
        re.MULTILINE,
    ),
]

# broadest first; a heading at level N replaces everything at N and deeper
_HIERARCHY_LEVELS = [
    (0, [re.compile(r"^(?:PARTIE|LIVRE)\s+[IVXLCDM\d]+", re.IGNORECASE),
         re.compile(rf"^الجزء\s+(?:[IVXLCDM\d]+|{_AR_ORDINALS})")]),
    (1, [re.compile(r"^TITRE\s+[IVXLCDM\d]+", re.IGNORECASE),
         re.compile(rf"^(?:الباب|العنوان)\s+(?:[IVXLCDM\d]+|{_AR_ORDINALS})")]),
    (2, [re.compile(r"^CHAPITRE\s+[IVXLCDM\d]+", re.IGNORECASE),
         re.compile(rf"^الفصل\s+(?:[IVXLCDM\d]+|{_AR_ORDINALS})")]),
    (3, [re.compile(r"^SECTION\s+[IVXLCDM\d]+", re.IGNORECASE),
         re.compile(rf"^القسم\s+(?:[IVXLCDM\d]+|{_AR_ORDINALS})")]),
    (4, [re.compile(r"^SOUS-SECTION\s+[IVXLCDM\d]+", re.IGNORECASE)]),
]

_ARTICLE_BOUNDARY_RE = re.compile(r"^(?:(?:Article|Art\.?)\s*\d+|(?:المادة|الفصل|البند)\s*\d+)", re.IGNORECASE)

# (chunk type, french pattern, arabic pattern); first match wins
_CHUNK_TYPE_RULES = [
    (ChunkType.DEFINITION,
     re.compile(r"\b(?:définition|définit|entend par|au sens du présent)", re.IGNORECASE),
     re.compile(r"تعريف|يقصد ب|يراد ب|المقصود ب")),
    (ChunkType.HEADER,
     re.compile(r"^(?:CHAPITRE|TITRE|SECTION)", re.IGNORECASE),
     re.compile(r"^(?:الباب|الفصل|القسم|الجزء)")),
    (ChunkType.ARTICLE,
     re.compile(r"\bart(?:icle)?\.?\s*\d+", re.IGNORECASE),
     re.compile(r"(?:المادة|الفصل|البند)\s*\d+")),
    (ChunkType.NOTE,
     re.compile(r"\b(?:note|nota|n\.b\.)", re.IGNORECASE),
     re.compile(r"ملاحظة|ملحوظة|تنبيه")),
    (ChunkType.EXCLUSION,
     re.compile(r"\b(?:exception|exclut|ne comprend pas|à l'exclusion)", re.IGNORECASE),
     re.compile(r"استثناء|لا يشمل|باستثناء|يستثنى")),
    (ChunkType.PROCEDURE,
     re.compile(r"\b(?:procédure|formalité|déclaration|document)", re.IGNORECASE),
     re.compile(r"إجراء|إجراءات|تصريح|وثيقة|مستند")),
    (ChunkType.SANCTION,
     re.compile(r"\b(?:pénalité|sanction|amende|infraction)", re.IGNORECASE),
     re.compile(r"عقوبة|غرامة|جزاء|مخالفة")),
    (ChunkType.TARIFF,
     re.compile(r"\b(?:taux|droit|taxe)|%", re.IGNORECASE),
     re.compile(r"رسم|ضريبة|تعريفة|نسبة")),
]

_FRENCH_KEYWORD_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\b(importation|exportation|transit|admission temporaire|dédouanement|régime douanier)\b",
        r"\b(certificat d'origine|EUR\.?\s*1|déclaration en douane|DUM)\b",
        r"\b(franchise|exonération|suspension|drawback)\b",
        r"\b(contrôle|visite|vérification|inspection)\b",
        r"\b(valeur en douane|valeur transactionnelle|CIF|FOB)\b",
        r"\b(origine préférentielle|origine non préférentielle|cumul)\b",
        r"\b(contingent|quota|licence d'importation)\b",
    )
]

_ARABIC_KEYWORD_PATTERNS = [
    re.compile(p) for p in (
        r"(استيراد|تصدير|عبور|إدخال مؤقت|تخليص جمركي|نظام جمركي)",
        r"(شهادة المنشأ|التصريح الجمركي|وثيقة الاستيراد)",
        r"(إعفاء|تعليق|امتياز جمركي)",
        r"(مراقبة|تفتيش|فحص|معاينة)",
        r"(القيمة الجمركية|قيمة المعاملة)",
        r"(المنشأ التفضيلي|المنشأ غير التفضيلي|التراكم)",
        r"(حصة|رخصة استيراد|ترخيص)",
    )
]

_MENTIONED_10_RE = re.compile(r"\b(\d{10})\b")
_MENTIONED_FORMATTED_RE = re.compile(
    r"\b(\d{4}\.\d{2}(?:\.\d{2}){0,2}|\d{2}[.\s]\d{2}[.\s]\d{2}(?:[.\s]\d{2}){0,2})\b"
)

_DETECTION_PATTERNS = [
    re.compile(r"\b(\d{10})\b"),
    re.compile(r"\b(\d{4}\.\d{2}(?:\.\d{2}){0,2})\b"),
    re.compile(r"\b(\d{2}[.\s]\d{2}[.\s]\d{2}[.\s]?\d{2}[.\s]?\d{2})\b"),
    re.compile(r"\b(\d{2}[.\s]\d{2}[.\s]\d{2})\b"),
    re.compile(r"\b(\d{4})\b(?=\s*[-–:.]|\s+[A-Za-zÀ-ÿ])"),
]
_YEAR_RE = re.compile(r"^(?:19|20)\d{2}$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n+")
_WHITESPACE_RE = re.compile(r"\s+")


def extract_article_number(text: str) -> Optional[str]:
    for pattern in _ARTICLE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def extract_section_title(text: str) -> Optional[str]:
    for pattern in _SECTION_TITLE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()[:200]
    return None


def detect_chunk_type(text: str) -> ChunkType:
    stripped = text.strip()
    for chunk_type, french, arabic in _CHUNK_TYPE_RULES:
        if french.search(stripped) or arabic.search(stripped):
            return chunk_type
    return ChunkType.GENERAL


def extract_keywords(text: str) -> list[str]:
    keywords: dict[str, None] = {}
    for pattern in _FRENCH_KEYWORD_PATTERNS:
        for match in pattern.finditer(text):
            keywords.setdefault(match.group(1).lower().strip(), None)
    for pattern in _ARABIC_KEYWORD_PATTERNS:
        for match in pattern.finditer(text):
            keywords.setdefault(match.group(1).strip(), None)
    return list(keywords)[:MAX_KEYWORDS]


def extract_mentioned_hs_codes(text: str) -> list[str]:
    codes: dict[str, None] = {}
    for match in _MENTIONED_10_RE.finditer(text):
        codes.setdefault(match.group(1), None)
    for match in _MENTIONED_FORMATTED_RE.finditer(text):
        normalized = re.sub(r"[\s.]", "", match.group(1))
        if len(normalized) >= 6:
            codes.setdefault(normalized, None)
    return list(codes)[:MAX_MENTIONED_CODES]


class HierarchyTracker:
    """Stack of the headings the current paragraph sits under."""

    def __init__(self):
        self._stack: list[tuple[int, str]] = []

    def update(self, paragraph: str) -> bool:
        stripped = paragraph.strip()
        for level, patterns in _HIERARCHY_LEVELS:
            if any(p.search(stripped) for p in patterns):
                label = stripped.split("\n", 1)[0][:MAX_HEADING_CHARS]
                self._stack = [entry for entry in self._stack if entry[0] < level]
                self._stack.append((level, label))
                return True
        return False

    def path(self, article_number: Optional[str] = None) -> Optional[str]:
        parts = [label for _, label in self._stack]
        if article_number:
            parts.append(f"Art. {article_number}")
        return " > ".join(parts) if parts else None

    @property
    def current_section(self) -> Optional[str]:
        return self._stack[-1][1] if self._stack else None

    @property
    def parent_section(self) -> Optional[str]:
        return self._stack[-2][1] if len(self._stack) >= 2 else None


def create_chunks(
    pages: list[PageText],
    start_index: int = 0,
    target_size: Optional[int] = None,
    overlap: Optional[int] = None,
    min_size: Optional[int] = None,
) -> list[TextChunk]:
    """
    Split page texts into overlapping chunks.

    A chunk closes when the next paragraph would push it past target_size,
    or at an article heading once it holds min_size characters. Chunks
    shorter than min_size are dropped; the next chunk starts with the last
    `overlap` characters of the previous one.
    """
    target_size = target_size or settings.CHUNK_SIZE_TARGET
    overlap = settings.CHUNK_OVERLAP if overlap is None else overlap
    min_size = settings.MIN_CHUNK_SIZE if min_size is None else min_size

    chunks: list[TextChunk] = []
    hierarchy = HierarchyTracker()
    index = start_index

    def emit(body: str, page_number: int, char_start: int) -> None:
        nonlocal index
        chunk_text = body.strip()
        article = extract_article_number(chunk_text)
        path = hierarchy.path(article)
        chunks.append(TextChunk(
            chunk_index=index,
            text=f"[{path}]\n{chunk_text}" if path else chunk_text,
            page_number=page_number,
            char_start=char_start,
            char_end=char_start + len(body),
            article_number=article,
            section_title=extract_section_title(chunk_text) or hierarchy.current_section,
            parent_section=hierarchy.parent_section,
            chunk_type=detect_chunk_type(chunk_text),
            hierarchy_path=path,
            keywords=extract_keywords(chunk_text),
            mentioned_hs_codes=extract_mentioned_hs_codes(chunk_text),
        ))
        index += 1

    for page in pages:
        text = page.text.strip()
        if not text:
            continue

        current = ""
        char_start = 0
        for raw_paragraph in _PARAGRAPH_SPLIT_RE.split(text):
            paragraph = raw_paragraph.strip()
            if not paragraph:
                continue
            hierarchy.update(paragraph)

            is_article = bool(_ARTICLE_BOUNDARY_RE.match(paragraph))
            should_split = bool(current) and (
                len(current) + len(paragraph) > target_size
                or (is_article and len(current) >= min_size)
            )
            if should_split:
                if len(current) >= min_size:
                    emit(current, page.page_number, char_start)
                overlap_start = max(0, len(current) - overlap)
                current = current[overlap_start:] + "\n\n" + paragraph
                char_start += overlap_start
            else:
                current = f"{current}\n\n{paragraph}" if current else paragraph

        if len(current) >= min_size:
            emit(current, page.page_number, char_start)

    return chunks


def detect_hs_codes(pages: list[PageText]) -> list[DetectedCode]:
    """
    HS codes cited in the text, first occurrence only, with surrounding
    context. Years and numbers under 100 are ignored. Nothing is padded:
    a 4-digit heading has no hs_code_6, only 10 digits make a national_code.
    """
    detected: list[DetectedCode] = []
    seen: set[str] = set()
    for page in pages:
        text = page.text
        # spans already read by a longer pattern; their fragments are not codes
        covered: list[tuple[int, int]] = []
        for pattern in _DETECTION_PATTERNS:
            for match in pattern.finditer(text):
                if any(start < match.end() and match.start() < end for start, end in covered):
                    continue
                covered.append(match.span())
                raw = match.group(1)
                normalized = re.sub(r"[\s.]", "", raw)
                if len(normalized) < 4 or normalized in seen:
                    continue
                if _YEAR_RE.match(normalized) or int(normalized) < 100:
                    continue
                start = max(0, match.start() - CONTEXT_CHARS)
                end = min(len(text), match.end() + CONTEXT_CHARS)
                parsed = parse_detected_code(normalized)
                detected.append(DetectedCode(
                    code=raw,
                    hs_code_6=parsed.hs_code_6,
                    national_code=parsed.national_code,
                    context=_WHITESPACE_RE.sub(" ", text[start:end]).strip(),
                    page_number=page.page_number,
                ))
                seen.add(normalized)
    return detected
