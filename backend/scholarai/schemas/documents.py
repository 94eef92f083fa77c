"""
Document Ingestion — Pydantic Schemas

Covers everything the ingestion core exchanges with its callers:
  - SourceFile         : what the web layer hands to accept_upload()
  - ProcessingState    : closed set of pipeline states (see state/machine.py)
  - ProcessingError    : structured error payload {kind, message, attempt}
  - DocumentStatus     : pure read returned by get_status()
  - RetrievalContext   : ranked chunks + assembled text + citations

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - State is a closed enum, errors are structured (not free text only).
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from scholarai.core.errors import ErrorKind


# ---------------------------------------------------------------------------
# Supported source types
# ---------------------------------------------------------------------------

PDF_CONTENT_TYPE  = "application/pdf"
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        PDF_CONTENT_TYPE,
        DOCX_CONTENT_TYPE,
        "text/plain",
        "text/markdown",
    }
)


class SourceFile(BaseModel):
    """Metadata of an accepted upload; the bytes stay in storage."""
    filename:     str
    size_bytes:   int = Field(..., ge=0)
    content_type: str
    location:     str = Field(..., description="Local path or s3://bucket/key")


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingState(str, Enum):
    """
    Maps to documents.state.
    Transitions: queued → processing → extracting → vectorizing → indexed
                 any non-terminal → failed;  failed (non-final) → queued
    """
    QUEUED      = "queued"        # job created, not yet claimed
    PROCESSING  = "processing"    # worker holds the lease, loading the file
    EXTRACTING  = "extracting"    # structural text / OCR
    VECTORIZING = "vectorizing"   # chunking done, embedding + persisting
    INDEXED     = "indexed"       # all chunks stored, queryable
    FAILED      = "failed"        # see error payload


class ProcessingError(BaseModel):
    kind:    ErrorKind
    message: str
    attempt: int  = Field(..., ge=0)
    final:   bool = Field(False, description="True once no further retry will run")


class DocumentStatus(BaseModel):
    """Polled by clients to track async processing progress."""
    document_id: UUID
    state:       ProcessingState
    progress:    int = Field(0, ge=0, le=100)
    error:       ProcessingError | None = None
    attempts:    int = 0
    chunk_count: int = 0
    updated_at:  datetime | None = None


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class RankedChunk(BaseModel):
    chunk_id:    str
    document_id: UUID
    chunk_index: int
    page_number: int
    text:        str
    score:       float


class Citation(BaseModel):
    """Lets the chat layer attribute a claim to a document page."""
    document_id: UUID
    chunk_id:    str
    chunk_index: int
    page_number: int
    excerpt:     str
    score:       float


class RetrievalContext(BaseModel):
    """
    Ephemeral result of ContextAssembler.retrieve().

    status="no_relevant_context" is the explicit empty result: nothing cleared
    the similarity threshold. It is not an error.
    """
    query:          str
    status:         Literal["ok", "no_relevant_context"] = "ok"
    text:           str = ""
    chunks:         list[RankedChunk] = Field(default_factory=list)
    citations:      list[Citation]    = Field(default_factory=list)
    token_estimate: int = 0

    @property
    def is_empty(self) -> bool:
        return self.status == "no_relevant_context"

    @classmethod
    def empty(cls, query: str) -> "RetrievalContext":
        return cls(query=query, status="no_relevant_context")
