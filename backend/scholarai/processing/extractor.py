"""
Text Extraction Orchestrator
════════════════════════════

Selects the structural strategy for a content type, decides whether OCR is
needed and builds the page_map used by the chunker.

Strategy selection flow:
  1.  Structural strategy by mime type:
        application/pdf   → PyMuPDFExtractor
        DOCX              → DocxExtractor
        text/*            → PlainTextExtractor
        anything else     → UnsupportedFileError
  2.  PDF with ≥ 1 page and fewer than ocr_min_text_chars of text
        → the configured OCR backend, exactly once
  3.  OCR text is used only if non-empty; otherwise the structural text stays
  4.  Normalize each page, join with "\\n\\n", detect language, count words

This module is the only place that knows about the strategy cascade.
Workers and other callers only see ExtractionResult.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import time
from collections import Counter
from dataclasses import dataclass

from scholarai.core.config import Settings
from scholarai.core.errors import ConfigurationError, UnsupportedFileError
from scholarai.processing.chunking import build_page_map, normalize_text
from scholarai.processing.ocr import (
    BaseTextExtractor,
    DocxExtractor,
    ExtractionStrategyResult,
    PlainTextExtractor,
    PyMuPDFExtractor,
    TesseractOCRExtractor,
    UnstructuredOCRExtractor,
)
from scholarai.schemas.documents import DOCX_CONTENT_TYPE, PDF_CONTENT_TYPE

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Full extraction output returned to the worker pipeline.

    full_text     : normalized non-empty pages joined with "\\n\\n"
    pages         : (page_number, normalized text) for every page
    page_map      : char_offset → page_number into full_text
    strategy_used : "pymupdf" | "python-docx" | "plaintext" | "tesseract" | "unstructured"
    used_ocr      : True if image-based OCR produced the text
    language      : ISO 639-1 code (best effort)
    """
    full_text:     str
    pages:         list[tuple[int, str]]
    page_map:      dict[int, int]
    strategy_used: str
    used_ocr:      bool
    language:      str
    total_chars:   int
    word_count:    int
    elapsed_ms:    float
    page_count:    int


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TextExtractorOrchestrator:
    """
    Stateless orchestrator; safe to share across worker tasks.

    Usage:
        orchestrator = TextExtractorOrchestrator.from_settings(settings)
        result = await orchestrator.extract(data, "application/pdf", "paper.pdf")
    """

    def __init__(
        self,
        ocr_extractor:      BaseTextExtractor | None = None,
        ocr_min_text_chars: int = 100,
        fallback_language:  str = "en",
    ) -> None:
        self._ocr              = ocr_extractor or TesseractOCRExtractor()
        self._min_text_chars   = ocr_min_text_chars
        self._fallback_language = fallback_language
        self._pdf   = PyMuPDFExtractor()
        self._docx  = DocxExtractor()
        self._plain = PlainTextExtractor()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TextExtractorOrchestrator":
        return cls(
            ocr_extractor=build_ocr_extractor(settings),
            ocr_min_text_chars=settings.ocr_min_text_chars,
            fallback_language=settings.fallback_language,
        )

    async def extract(self, data: bytes, content_type: str, filename: str = "") -> ExtractionResult:
        """
        ┌─────────────────────────────────────────────────────────────────┐
        │  1. structural strategy ──► enough text (or not a PDF)?         │
        │                                YES → done ✓                     │
        │                                NO  → scanned PDF                │
        │  2. OCR backend, once ──► non-empty? use it : keep structural   │
        └─────────────────────────────────────────────────────────────────┘
        """
        t0 = time.monotonic()
        content_type = resolve_content_type(content_type, filename)
        extractor = self._structural_for(content_type)

        result = await extractor.extract(data)
        structural_chars = len(result.full_text.strip())

        logger.info(
            "Extraction | strategy=%s pages=%d chars=%d file=%s",
            result.strategy_name, len(result.pages), structural_chars, filename,
        )

        if (
            content_type == PDF_CONTENT_TYPE
            and len(result.pages) >= 1
            and structural_chars < self._min_text_chars
        ):
            logger.info(
                "Document appears scanned (%d chars < %d). Falling back to OCR backend: %s",
                structural_chars, self._min_text_chars, self._ocr.strategy_name,
            )
            ocr_result = await self._ocr.extract(data)
            if ocr_result.full_text.strip():
                result = ocr_result
            else:
                logger.warning(
                    "OCR produced no text for %s; keeping structural text", filename or "document",
                )

        return self._build_result(result, time.monotonic() - t0)

    def _structural_for(self, content_type: str) -> BaseTextExtractor:
        if content_type == PDF_CONTENT_TYPE:
            return self._pdf
        if content_type == DOCX_CONTENT_TYPE:
            return self._docx
        if content_type.startswith("text/"):
            return self._plain
        raise UnsupportedFileError(content_type)

    def _build_result(
        self,
        strategy_result: ExtractionStrategyResult,
        elapsed_sec:     float,
    ) -> ExtractionResult:
        """Convert a strategy result into the unified ExtractionResult."""
        pages = [(p.page_number, normalize_text(p.text)) for p in strategy_result.pages]
        non_empty = [(num, text) for num, text in pages if text]
        full_text = "\n\n".join(text for _, text in non_empty)

        return ExtractionResult(
            full_text=full_text,
            pages=pages,
            page_map=build_page_map(non_empty),
            strategy_used=strategy_result.strategy_name,
            used_ocr=strategy_result.used_ocr,
            language=detect_language(full_text, self._fallback_language),
            total_chars=len(full_text),
            word_count=len(full_text.split()),
            elapsed_ms=elapsed_sec * 1000,
            page_count=len(pages),
        )


def build_ocr_extractor(settings: Settings) -> BaseTextExtractor:
    backend = settings.ocr_backend.lower()
    if backend == "tesseract":
        return TesseractOCRExtractor(
            language=settings.ocr_language,
            dpi=settings.ocr_dpi,
            timeout_seconds=settings.ocr_timeout_seconds,
        )
    if backend == "unstructured":
        return UnstructuredOCRExtractor(timeout_seconds=settings.ocr_timeout_seconds)
    raise ConfigurationError(f"unknown OCR backend: {settings.ocr_backend}")


_EXTENSION_TYPES = {
    ".pdf":  PDF_CONTENT_TYPE,
    ".docx": DOCX_CONTENT_TYPE,
    ".md":   "text/markdown",
    ".txt":  "text/plain",
}


def resolve_content_type(content_type: str, filename: str = "") -> str:
    """Strip parameters; fall back to the extension for generic binary types."""
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype and ctype != "application/octet-stream":
        return ctype
    suffix = filename[filename.rfind("."):].lower() if "." in filename else ""
    return _EXTENSION_TYPES.get(suffix) or mimetypes.guess_type(filename)[0] or ctype


# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------

_STOPWORDS: dict[str, frozenset[str]] = {
    "en": frozenset("the and of to in is that for it with as was on are this be by".split()),
    "es": frozenset("el la de que y en los se del las un por con una para es".split()),
    "fr": frozenset("le la les de et des un une du est pour que dans qui sur pas".split()),
    "de": frozenset("der die und das ist nicht den mit sich des auf ein eine dem zu".split()),
    "pt": frozenset("o os de que e do da em um uma para com não se na no".split()),
    "it": frozenset("il di che e la per un una non sono del della gli con le".split()),
}

_WORD_RE = re.compile(r"[^\W\d_]+", re.UNICODE)

# Below this many stopword hits the vote is not trusted
_MIN_STOPWORD_HITS = 3


def detect_language(text: str, fallback: str = "en") -> str:
    """
    Best-effort stopword vote over a sample of the text.
    Returns `fallback` on empty input, a tie, or too little evidence.
    """
    words = [w.lower() for w in _WORD_RE.findall(text[:20_000])]
    if not words:
        return fallback

    votes: Counter[str] = Counter()
    for word in words:
        for lang, stopwords in _STOPWORDS.items():
            if word in stopwords:
                votes[lang] += 1

    ranked = votes.most_common(2)
    if not ranked or ranked[0][1] < _MIN_STOPWORD_HITS:
        return fallback
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return fallback
    return ranked[0][0]
