"""
Document Processing Package
════════════════════════════

The per-document transformation stages run by the ingestion pipeline:

  Text Extraction → Chunking → Embedding  (+ derived metadata)

Modules
───────
  ocr.py        Strategy pattern for text extraction (PyMuPDF, python-docx, Tesseract, Unstructured)
  extractor.py  Orchestrator: structural strategy, OCR fallback, language detection
  chunking.py   Recursive boundary-aware chunker with char spans and page lookup
  embeddings.py Embedding providers and the retrying, order-preserving batcher
  metadata.py   Difficulty / subject / summary heuristics

Every component is stateless and dependency-injected; blocking parsers run
in the default executor so the worker's event loop stays responsive.
"""

from scholarai.processing.chunking import ChunkResult, TextChunker
from scholarai.processing.embeddings import EmbeddingBatcher, EmbeddingProvider
from scholarai.processing.extractor import ExtractionResult, TextExtractorOrchestrator

__all__ = [
    "ChunkResult",
    "TextChunker",
    "EmbeddingBatcher",
    "EmbeddingProvider",
    "ExtractionResult",
    "TextExtractorOrchestrator",
]
