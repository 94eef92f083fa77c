"""
Extraction Strategies  —  Text from PDFs, DOCX and plain text
═════════════════════════════════════════════════════════════

Design: Strategy pattern
────────────────────────
Structural strategies read the text the file already carries:

  PyMuPDFExtractor     native PDF text layer (fitz), sub-millisecond per page
  DocxExtractor        python-docx paragraphs (one logical page)
  PlainTextExtractor   utf-8, falling back to latin-1

OCR strategies render and recognise scanned pages:

  TesseractOCRExtractor     fitz renders each page to a PNG, pytesseract reads it
  UnstructuredOCRExtractor  unstructured.partition_pdf(strategy="ocr_only")

Error policy
────────────
  Structural strategies RAISE InputError on a corrupt / unreadable file:
  nothing downstream can succeed, so the attempt fails with a message the
  user can act on.
  OCR strategies NEVER raise: a failed OCR pass is logged and yields an empty
  result, and the orchestrator keeps the structural text.

All strategies return the same ExtractionStrategyResult of PageText, so the
orchestrator never needs to know which backend ran.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from scholarai.core.errors import InputError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number       : 1-based page index
    text              : raw extracted text (may be empty for image-only pages)
    confidence        : OCR confidence (0.0–1.0); -1.0 = not applicable
    extraction_method : strategy name that produced the text
    """
    page_number:       int
    text:              str
    confidence:        float = -1.0
    extraction_method: str  = "unknown"


@dataclass
class ExtractionStrategyResult:
    """What one strategy returned for one file. total_chars counts page text only."""
    pages:         list[PageText]
    total_chars:   int
    strategy_name: str
    elapsed_ms:    float = 0.0
    used_ocr:      bool = False

    @classmethod
    def from_pages(cls, pages: list[PageText], strategy_name: str, used_ocr: bool = False) -> "ExtractionStrategyResult":
        return cls(
            pages=pages,
            total_chars=sum(len(p.text) for p in pages),
            strategy_name=strategy_name,
            used_ocr=used_ocr,
        )

    @classmethod
    def empty(cls, strategy_name: str, used_ocr: bool = False) -> "ExtractionStrategyResult":
        return cls(pages=[], total_chars=0, strategy_name=strategy_name, used_ocr=used_ocr)

    @property
    def full_text(self) -> str:
        """Concatenate all pages with page separators."""
        return "\n\n".join(p.text for p in self.pages if p.text.strip())


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for text extraction strategies.

    All implementations:
      - Accept the raw upload bytes, never a path
      - Return ExtractionStrategyResult
      - Run blocking parsers in the default thread executor
      - Are safe for concurrent use (no shared mutable state)
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    async def extract(self, data: bytes) -> ExtractionStrategyResult:
        ...

    async def _run_blocking(self, fn, data: bytes) -> ExtractionStrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, fn, data)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "%s | pages=%d total_chars=%d elapsed_ms=%.0f",
            self.strategy_name, len(result.pages), result.total_chars, result.elapsed_ms,
        )
        return result


# ---------------------------------------------------------------------------
# Structural strategies
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(BaseTextExtractor):
    """
    Reads the native PDF text layer with PyMuPDF.

    Image-only pages come back as empty strings; that is what triggers the
    OCR fallback in the orchestrator. Encrypted or corrupt PDFs raise
    InputError.
    """

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    async def extract(self, data: bytes) -> ExtractionStrategyResult:
        return await self._run_blocking(self._extract_sync, data)

    def _extract_sync(self, data: bytes) -> ExtractionStrategyResult:
        import fitz  # PyMuPDF

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise InputError(f"could not open PDF: {exc}") from exc

        pages: list[PageText] = []
        with doc:
            if doc.needs_pass:
                raise InputError("PDF is password-protected")
            try:
                for page_num, page in enumerate(doc, start=1):
                    raw = page.get_text("text") or ""
                    pages.append(PageText(
                        page_number=page_num,
                        text=raw.strip(),
                        extraction_method=self.strategy_name,
                    ))
            except Exception as exc:
                raise InputError(f"could not read PDF page {len(pages) + 1}: {exc}") from exc

        return ExtractionStrategyResult.from_pages(pages, self.strategy_name)


class DocxExtractor(BaseTextExtractor):
    """python-docx has no page model; the whole body is reported as page 1."""

    @property
    def strategy_name(self) -> str:
        return "python-docx"

    async def extract(self, data: bytes) -> ExtractionStrategyResult:
        return await self._run_blocking(self._extract_sync, data)

    def _extract_sync(self, data: bytes) -> ExtractionStrategyResult:
        from docx import Document as DocxDocument

        try:
            document = DocxDocument(io.BytesIO(data))
        except Exception as exc:
            raise InputError(f"could not open DOCX: {exc}") from exc

        paragraphs = [p.text.strip() for p in document.paragraphs if p.text.strip()]
        page = PageText(page_number=1, text="\n\n".join(paragraphs), extraction_method=self.strategy_name)
        return ExtractionStrategyResult.from_pages([page], self.strategy_name)


class PlainTextExtractor(BaseTextExtractor):

    @property
    def strategy_name(self) -> str:
        return "plaintext"

    async def extract(self, data: bytes) -> ExtractionStrategyResult:
        if b"\x00" in data[:4096]:
            raise InputError("unsupported file encoding: binary content in a text file")
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
        page = PageText(page_number=1, text=text.strip(), extraction_method=self.strategy_name)
        return ExtractionStrategyResult.from_pages([page], self.strategy_name)


# ---------------------------------------------------------------------------
# OCR strategies
# ---------------------------------------------------------------------------

class BaseOCRExtractor(BaseTextExtractor):
    """Timeout + never-raise wrapper shared by the OCR backends."""

    def __init__(self, timeout_seconds: float = 120.0) -> None:
        self._timeout = timeout_seconds

    async def extract(self, data: bytes) -> ExtractionStrategyResult:
        try:
            return await asyncio.wait_for(
                self._run_blocking(self._extract_sync, data),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("%s OCR timed out after %.0fs", self.strategy_name, self._timeout)
        except Exception as exc:
            logger.error("%s OCR failed: %s", self.strategy_name, exc, exc_info=True)
        return ExtractionStrategyResult.empty(self.strategy_name, used_ocr=True)

    @abstractmethod
    def _extract_sync(self, data: bytes) -> ExtractionStrategyResult:
        ...


class TesseractOCRExtractor(BaseOCRExtractor):
    """
    Renders every PDF page with PyMuPDF and runs Tesseract on the bitmap.
    Requires the tesseract binary in the container (apt install tesseract-ocr).
    """

    def __init__(self, language: str = "eng", dpi: int = 200, timeout_seconds: float = 120.0) -> None:
        super().__init__(timeout_seconds)
        self._language = language
        self._dpi = dpi

    @property
    def strategy_name(self) -> str:
        return "tesseract"

    def _extract_sync(self, data: bytes) -> ExtractionStrategyResult:
        import fitz
        import pytesseract
        from PIL import Image

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                pix = page.get_pixmap(dpi=self._dpi)
                image = Image.open(io.BytesIO(pix.tobytes("png")))
                text = pytesseract.image_to_string(image, lang=self._language) or ""
                pages.append(PageText(
                    page_number=page_num,
                    text=text.strip(),
                    extraction_method=self.strategy_name,
                ))
        return ExtractionStrategyResult.from_pages(pages, self.strategy_name, used_ocr=True)


class UnstructuredOCRExtractor(BaseOCRExtractor):
    """
    OCR fallback using the open-source Unstructured library
    (pip install "scholarai[unstructured]"; needs poppler + tesseract).
    """

    @property
    def strategy_name(self) -> str:
        return "unstructured"

    def _extract_sync(self, data: bytes) -> ExtractionStrategyResult:
        from unstructured.partition.pdf import partition_pdf

        elements = partition_pdf(
            file=io.BytesIO(data),
            strategy="ocr_only",             # force tesseract on every page
            include_page_breaks=True,
        )

        pages_dict: dict[int, list[str]] = {}
        for elem in elements:
            page_num = (elem.metadata.page_number if elem.metadata else None) or 1
            text = str(elem).strip()
            if text:
                pages_dict.setdefault(page_num, []).append(text)

        pages = [
            PageText(
                page_number=pn,
                text="\n".join(texts),
                extraction_method=self.strategy_name,
            )
            for pn, texts in sorted(pages_dict.items())
        ]
        return ExtractionStrategyResult.from_pages(pages, self.strategy_name, used_ocr=True)
