"""
Document store — the persistence seam under the state machine.

DocumentRecord is the plain in-process view of one documents row.
DocumentStore implementations (in-memory here, SQL in state/sql.py) apply
changes atomically and, when `expected_owner` is given, only if the row's
lease_owner still matches — the single-writer check.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from scholarai.core.errors import DocumentNotFoundError, StaleLeaseError
from scholarai.jobs.base import utcnow
from scholarai.schemas.documents import (
    DocumentStatus,
    ProcessingError,
    ProcessingState,
    SourceFile,
)

logger = logging.getLogger(__name__)


@dataclass
class DocumentRecord:
    id:               uuid.UUID
    owner_id:         uuid.UUID
    filename:         str
    content_type:     str
    size_bytes:       int
    storage_location: str

    state:       ProcessingState = ProcessingState.QUEUED
    progress:    int = 0
    attempts:    int = 0
    error:       ProcessingError | None = None
    lease_owner: str | None = None

    page_count:          int | None = None
    word_count:          int | None = None
    language:            str | None = None
    raw_text_excerpt:    str | None = None
    used_ocr:            bool = False
    extraction_strategy: str | None = None

    chunk_count: int = 0
    difficulty:  str | None = None
    subjects:    list[str] = field(default_factory=list)
    summary:     str | None = None
    key_topics:  list[str] = field(default_factory=list)

    created_at:   datetime = field(default_factory=utcnow)
    started_at:   datetime | None = None
    completed_at: datetime | None = None
    updated_at:   datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, owner_id: uuid.UUID, source: SourceFile) -> "DocumentRecord":
        return cls(
            id=uuid.uuid4(),
            owner_id=owner_id,
            filename=source.filename,
            content_type=source.content_type,
            size_bytes=source.size_bytes,
            storage_location=source.location,
        )

    def to_status(self) -> DocumentStatus:
        return DocumentStatus(
            document_id=self.id,
            state=self.state,
            progress=self.progress,
            error=self.error,
            attempts=self.attempts,
            chunk_count=self.chunk_count,
            updated_at=self.updated_at,
        )


# Fields a caller may change; identity and timestamps are managed here
_FIELDS = frozenset(f.name for f in dataclasses.fields(DocumentRecord)) - {
    "id", "created_at", "updated_at",
}


def check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _FIELDS
    if unknown:
        raise ValueError(f"unknown document fields: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentStore(ABC):

    @abstractmethod
    async def create(self, record: DocumentRecord) -> DocumentRecord:
        ...

    @abstractmethod
    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def update(
        self,
        document_id:    uuid.UUID,
        changes:        dict[str, Any],
        expected_owner: str | None = None,
    ) -> DocumentRecord:
        """
        Apply `changes` atomically and return the new record.

        Raises:
            DocumentNotFoundError  if the document was deleted
            StaleLeaseError        if expected_owner no longer matches lease_owner
        """

    @abstractmethod
    async def delete(self, document_id: uuid.UUID) -> bool:
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryDocumentStore(DocumentStore):

    def __init__(self) -> None:
        self._docs: dict[uuid.UUID, DocumentRecord] = {}
        self._lock = threading.Lock()

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        with self._lock:
            self._docs[record.id] = dataclasses.replace(record)
        return dataclasses.replace(record)

    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        with self._lock:
            record = self._docs.get(document_id)
            return dataclasses.replace(record) if record else None

    async def update(
        self,
        document_id:    uuid.UUID,
        changes:        dict[str, Any],
        expected_owner: str | None = None,
    ) -> DocumentRecord:
        check_changes(changes)
        with self._lock:
            record = self._docs.get(document_id)
            if record is None:
                raise DocumentNotFoundError(document_id)
            if expected_owner is not None and record.lease_owner != expected_owner:
                raise StaleLeaseError(
                    f"document {document_id} is owned by another lease"
                )
            updated = dataclasses.replace(record, **changes, updated_at=utcnow())
            self._docs[document_id] = updated
            return dataclasses.replace(updated)

    async def delete(self, document_id: uuid.UUID) -> bool:
        with self._lock:
            return self._docs.pop(document_id, None) is not None
