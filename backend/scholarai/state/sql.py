"""
SQL-backed DocumentStore on the documents table.

update() is a single conditional UPDATE:
    UPDATE documents SET ... WHERE id = :id [AND lease_owner = :owner]
rowcount 0 is disambiguated afterwards (deleted vs. owned by another lease).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scholarai.core.errors import DocumentNotFoundError, StaleLeaseError
from scholarai.db.session import transaction
from scholarai.jobs.base import as_utc, utcnow
from scholarai.models.documents import Document
from scholarai.schemas.documents import ProcessingError, ProcessingState
from scholarai.state.store import DocumentRecord, DocumentStore, check_changes

logger = logging.getLogger(__name__)


class SQLDocumentStore(DocumentStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        async with transaction(self._session_factory) as session:
            session.add(Document(
                id=record.id,
                owner_id=record.owner_id,
                filename=record.filename,
                content_type=record.content_type,
                size_bytes=record.size_bytes,
                storage_location=record.storage_location,
                created_at=record.created_at,
                updated_at=record.updated_at,
                **_to_columns(_mutable_fields(record)),
            ))
        logger.info("Document created | doc=%s owner=%s", record.id, record.owner_id)
        return record

    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Document, document_id)
            return _to_record(row) if row else None

    async def update(
        self,
        document_id:    uuid.UUID,
        changes:        dict[str, Any],
        expected_owner: str | None = None,
    ) -> DocumentRecord:
        check_changes(changes)
        async with transaction(self._session_factory) as session:
            stmt = update(Document).where(Document.id == document_id)
            if expected_owner is not None:
                stmt = stmt.where(Document.lease_owner == expected_owner)
            result = await session.execute(
                stmt.values(**_to_columns(changes), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            row = await session.get(Document, document_id, populate_existing=True)

        if row is None:
            raise DocumentNotFoundError(document_id)
        if result.rowcount != 1:
            raise StaleLeaseError(f"document {document_id} is owned by another lease")
        return _to_record(row)

    async def delete(self, document_id: uuid.UUID) -> bool:
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                delete(Document)
                .where(Document.id == document_id)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Row <-> record mapping
# ---------------------------------------------------------------------------

def _mutable_fields(record: DocumentRecord) -> dict[str, Any]:
    return {
        "state":               record.state,
        "progress":            record.progress,
        "attempts":            record.attempts,
        "error":               record.error,
        "lease_owner":         record.lease_owner,
        "page_count":          record.page_count,
        "word_count":          record.word_count,
        "language":            record.language,
        "raw_text_excerpt":    record.raw_text_excerpt,
        "used_ocr":            record.used_ocr,
        "extraction_strategy": record.extraction_strategy,
        "chunk_count":         record.chunk_count,
        "difficulty":          record.difficulty,
        "subjects":            list(record.subjects),
        "summary":             record.summary,
        "key_topics":          list(record.key_topics),
        "started_at":          record.started_at,
        "completed_at":        record.completed_at,
    }


def _to_columns(changes: dict[str, Any]) -> dict[str, Any]:
    columns = dict(changes)
    if isinstance(columns.get("state"), ProcessingState):
        columns["state"] = columns["state"].value
    if "error" in columns and columns["error"] is not None:
        columns["error"] = ProcessingError.model_validate(columns["error"]).model_dump(mode="json")
    return columns


def _to_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        owner_id=row.owner_id,
        filename=row.filename,
        content_type=row.content_type,
        size_bytes=row.size_bytes,
        storage_location=row.storage_location,
        state=ProcessingState(row.state),
        progress=row.progress,
        attempts=row.attempts,
        error=ProcessingError.model_validate(row.error) if row.error else None,
        lease_owner=row.lease_owner,
        page_count=row.page_count,
        word_count=row.word_count,
        language=row.language,
        raw_text_excerpt=row.raw_text_excerpt,
        used_ocr=row.used_ocr,
        extraction_strategy=row.extraction_strategy,
        chunk_count=row.chunk_count,
        difficulty=row.difficulty,
        subjects=list(row.subjects or []),
        summary=row.summary,
        key_topics=list(row.key_topics or []),
        created_at=as_utc(row.created_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        updated_at=as_utc(row.updated_at),
    )
