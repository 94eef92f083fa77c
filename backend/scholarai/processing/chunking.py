"""
Text Chunker  —  Recursive boundary-aware segmentation
══════════════════════════════════════════════════════

Splits a document's normalized text into overlapping windows sized for the
embedding model, preferring the largest natural boundary that fits:

    "\\n\\n"  →  "\\n"  →  ". " / "? " / "! "  →  " "  →  ""

LangChain's RecursiveCharacterTextSplitter does the splitting; this module
adds what the index needs on top of it:

  - a [start, end) span into the source text for every chunk
    (text[start:end] == chunk.text), used for citations and page lookup
  - removal of fragments shorter than min_chunk_chars, then contiguous
    re-indexing from 0; a short but non-empty text is kept as one chunk
  - deterministic chunk ids, so re-processing a document produces the same
    ids and replace_document() is idempotent

The chunker is pure: same text + document id + page map ⇒ same chunks.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass
from uuid import UUID

from langchain_text_splitters import RecursiveCharacterTextSplitter

from scholarai.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SEPARATORS = ["\n\n", "\n", ". ", "? ", "! ", " ", ""]


@dataclass(frozen=True)
class ChunkResult:
    """One chunk ready for embedding and vector storage."""
    chunk_id:    str     # sha256(document_id:chunk_index)
    document_id: UUID
    chunk_index: int     # 0-based, contiguous within the document
    text:        str
    start_char:  int     # span into the normalized document text
    end_char:    int
    page_number: int     # page where the chunk starts (1-based)

    @property
    def char_count(self) -> int:
        return len(self.text)

    @property
    def token_est(self) -> int:
        return max(1, len(self.text) // 4)


class TextChunker:
    """
    Usage:
        chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
        chunks = chunker.chunk(extraction.full_text, document_id, extraction.page_map)
    """

    def __init__(
        self,
        chunk_size:      int = 1000,
        chunk_overlap:   int = 200,
        min_chunk_chars: int = 50,
    ) -> None:
        if chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
        if not 0 <= chunk_overlap < chunk_size:
            raise ConfigurationError(
                f"chunk_overlap ({chunk_overlap}) must be >= 0 and smaller "
                f"than chunk_size ({chunk_size})"
            )
        self.chunk_size      = chunk_size
        self.chunk_overlap   = chunk_overlap
        self.min_chunk_chars = min_chunk_chars
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=SEPARATORS,
            keep_separator="end",
            add_start_index=True,
            strip_whitespace=True,
        )

    def chunk(
        self,
        text:        str,
        document_id: UUID,
        page_map:    dict[int, int] | None = None,   # char_offset → page_number
    ) -> list[ChunkResult]:
        """
        Segment already-normalized `text` into ordered chunks.

        Returns [] for empty / whitespace-only text. Non-empty text always
        yields at least one chunk: when every piece falls under
        min_chunk_chars, the whole stripped text becomes chunk 0.
        """
        if not text.strip():
            logger.info("TextChunker | doc=%s empty text, no chunks", document_id)
            return []

        spans: list[tuple[int, str]] = []
        dropped = 0
        cursor = 0
        for piece in self._splitter.create_documents([text]):
            body = piece.page_content
            start = self._locate(text, body, piece.metadata.get("start_index", -1), cursor)
            cursor = start + 1
            if len(body.strip()) < self.min_chunk_chars:
                dropped += 1
                continue
            spans.append((start, body))

        if not spans:
            body = text.strip()
            spans.append((len(text) - len(text.lstrip()), body))
            logger.info(
                "TextChunker | doc=%s all %d pieces under min_chunk_chars, kept whole text",
                document_id, dropped,
            )

        results = [
            ChunkResult(
                chunk_id=make_chunk_id(document_id, idx),
                document_id=document_id,
                chunk_index=idx,
                text=body,
                start_char=start,
                end_char=start + len(body),
                page_number=_lookup_page(start, page_map),
            )
            for idx, (start, body) in enumerate(spans)
        ]

        logger.info(
            "TextChunker | doc=%s chunks=%d dropped=%d avg_chars=%.0f",
            document_id, len(results), dropped,
            sum(c.char_count for c in results) / max(1, len(results)),
        )
        return results

    @staticmethod
    def _locate(text: str, body: str, hint: int, cursor: int) -> int:
        """
        Offset of `body` in `text`. The splitter's start_index is used when it
        matches; otherwise search forward from the previous piece, so a
        repeated passage maps to its own occurrence and not the first one.
        """
        if hint >= 0 and text[hint:hint + len(body)] == body:
            return hint
        start = text.find(body, cursor)
        if start < 0:
            start = text.find(body)
        return start


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    """
    Normalize Unicode, strip zero-width characters, collapse excess blank
    lines. Preserves paragraph breaks (double newlines).
    """
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.rstrip() for line in text.splitlines()]
    return "\n".join(lines).strip()


def _lookup_page(char_offset: int, page_map: dict[int, int] | None) -> int:
    """
    Page number for a character offset; page_map keys are page start offsets.
    Returns 1 if page_map is empty.
    """
    if not page_map:
        return 1
    page = 1
    for offset_start, page_num in sorted(page_map.items()):
        if char_offset >= offset_start:
            page = page_num
        else:
            break
    return page


def make_chunk_id(document_id: UUID, chunk_index: int) -> str:
    raw = f"{document_id}:{chunk_index}"
    return hashlib.sha256(raw.encode()).hexdigest()


def build_page_map(pages_text: list[tuple[int, str]]) -> dict[int, int]:
    """
    Build a char_offset → page_number map for pages joined with "\\n\\n".

    Example:
        build_page_map([(1, "intro text"), (2, "body text")])
        → {0: 1, 12: 2}
    """
    page_map: dict[int, int] = {}
    offset = 0
    for page_num, text in pages_text:
        page_map[offset] = page_num
        offset += len(text) + 2   # +2 for the "\n\n" separator
    return page_map
