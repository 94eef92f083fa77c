"""
SQLAlchemy ORM Models — Documents, Chunks & Ingestion Jobs

Using SQLAlchemy mapped classes (2.x style) for full async support.
Column types are the portable ones (Uuid, JSON) so the same models run on
PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.

Tables:
  documents       one row per uploaded file + its processing state
  chunks          immutable indexed text segments (vector stored as JSON)
  ingestion_jobs  durable job queue (see jobs/sql.py)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → extraction → chunking → indexing.

    State machine (state column), see state/machine.py:
        queued → processing → extracting → vectorizing → indexed
        any non-terminal → failed;  failed (error.final = false) → queued

    lease_owner holds the lease token of the worker allowed to write this row;
    every worker write is conditional on it (single-writer discipline).
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "state IN ('queued', 'processing', 'extracting', 'vectorizing', 'indexed', 'failed')",
            name="documents_state_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="documents_progress_check"),
        Index("idx_documents_owner_id", "owner_id"),
        Index("idx_documents_state",    "state"),
    )

    id:       Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Source metadata
    filename:         Mapped[str] = mapped_column(Text, nullable=False)
    content_type:     Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes:       Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_location: Mapped[str] = mapped_column(Text, nullable=False)

    # Processing state
    state:       Mapped[str]  = mapped_column(Text, nullable=False, default="queued")
    progress:    Mapped[int]  = mapped_column(Integer, nullable=False, default=0)
    attempts:    Mapped[int]  = mapped_column(Integer, nullable=False, default=0)
    error:       Mapped[Optional[dict]] = mapped_column(
        JSON, nullable=True, comment="{kind, message, attempt, final}",
    )
    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Extracted attributes
    page_count:       Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    word_count:       Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    language:         Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    raw_text_excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    used_ocr:         Mapped[bool]          = mapped_column(Boolean, nullable=False, default=False)
    extraction_strategy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Derived attributes — written together with state='indexed'
    chunk_count: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    difficulty:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    subjects:    Mapped[list]          = mapped_column(JSON, nullable=False, default=list)
    summary:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_topics:  Mapped[list]          = mapped_column(JSON, nullable=False, default=list)

    # Timestamps
    created_at:   Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at:   Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} owner={self.owner_id} "
            f"state={self.state} progress={self.progress} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model — chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One immutable text chunk of a Document, with its embedding.
    Rows for a document are replaced as a set (vectorstore/sql.py), never edited.
    """

    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_position"),
        Index("idx_chunks_document_id", "document_id"),
    )

    id:          Mapped[str]       = mapped_column(String(64), primary_key=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False,
    )
    chunk_index: Mapped[int]         = mapped_column(Integer, nullable=False)
    text:        Mapped[str]         = mapped_column(Text, nullable=False)
    embedding:   Mapped[list]        = mapped_column(JSON, nullable=False)
    start_char:  Mapped[int]         = mapped_column(Integer, nullable=False)
    end_char:    Mapped[int]         = mapped_column(Integer, nullable=False)
    page_number: Mapped[int]         = mapped_column(Integer, nullable=False, default=1)
    topics:      Mapped[list]        = mapped_column(JSON, nullable=False, default=list)
    entities:    Mapped[list]        = mapped_column(JSON, nullable=False, default=list)
    created_at:  Mapped[datetime]    = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Ingestion job model — ingestion_jobs
# ---------------------------------------------------------------------------

class IngestionJob(Base):
    """
    Durable queue row. id is job_id_for(document_id), so the primary key
    itself rejects a second job for the same document.

    state:
        queued  waiting for available_at
        leased  claimed; lease_token/lease_expires_at identify the holder
        dead    dead-lettered after max attempts or a non-retryable error
    """

    __tablename__ = "ingestion_jobs"
    __table_args__ = (
        CheckConstraint("state IN ('queued', 'leased', 'dead')", name="ingestion_jobs_state_check"),
        Index("idx_ingestion_jobs_claim", "state", "priority", "sequence"),
    )

    id:          Mapped[str]       = mapped_column(String(128), primary_key=True)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    owner_id:    Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    location:    Mapped[str]       = mapped_column(Text, nullable=False)
    content_type: Mapped[str]      = mapped_column(Text, nullable=False, default="")
    filename:    Mapped[str]       = mapped_column(Text, nullable=False, default="")

    priority:     Mapped[int]      = mapped_column(Integer, nullable=False, default=0)
    sequence:     Mapped[int]      = mapped_column(BigInteger, nullable=False)
    state:        Mapped[str]      = mapped_column(Text, nullable=False, default="queued")
    attempts:     Mapped[int]      = mapped_column(Integer, nullable=False, default=0)
    stall_count:  Mapped[int]      = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lease_token:      Mapped[Optional[str]]      = mapped_column(String(64), nullable=True)
    leased_by:        Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<IngestionJob id={self.id} state={self.state} "
            f"attempts={self.attempts} priority={self.priority}>"
        )
