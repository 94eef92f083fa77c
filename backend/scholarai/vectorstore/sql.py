"""
SQL-backed vector index on the `chunks` table.

Vectors are stored as JSON arrays and scored in-process with numpy, which is
adequate for per-user document scopes (hundreds to low thousands of chunks).
replace_document() is one transaction: DELETE the document's rows, then a
bulk INSERT of the new set.
"""

from __future__ import annotations

import logging
from typing import Sequence
from uuid import UUID

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scholarai.db.session import transaction
from scholarai.models.documents import Chunk
from scholarai.vectorstore.base import ScoredChunk, StoredChunk, VectorIndex, rank_by_cosine

logger = logging.getLogger(__name__)


class SQLVectorIndex(VectorIndex):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], dimension: int) -> None:
        super().__init__(dimension)
        self._session_factory = session_factory

    async def replace_document(self, document_id: UUID, chunks: Sequence[StoredChunk]) -> int:
        self._validate(document_id, chunks)
        async with transaction(self._session_factory) as session:
            await session.execute(delete(Chunk).where(Chunk.document_id == document_id))
            if chunks:
                await session.execute(
                    insert(Chunk),
                    [
                        {
                            "id":          c.chunk_id,
                            "document_id": c.document_id,
                            "chunk_index": c.chunk_index,
                            "text":        c.text,
                            "embedding":   list(c.embedding),
                            "start_char":  c.start_char,
                            "end_char":    c.end_char,
                            "page_number": c.page_number,
                            "topics":      list(c.topics),
                            "entities":    list(c.entities),
                        }
                        for c in chunks
                    ],
                )
        logger.info("SQLVectorIndex | doc=%s replaced chunks=%d", document_id, len(chunks))
        return len(chunks)

    async def similarity_search(
        self,
        document_ids: Sequence[UUID],
        query_vector: Sequence[float],
        k: int,
    ) -> list[ScoredChunk]:
        if k <= 0 or not document_ids:
            return []
        self._validate_query(query_vector)
        async with self._session_factory() as session:
            rows = (
                await session.scalars(
                    select(Chunk).where(Chunk.document_id.in_(set(document_ids)))
                )
            ).all()
        return rank_by_cosine([_to_stored(r) for r in rows], query_vector, k)

    async def delete_document(self, document_id: UUID) -> int:
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                delete(Chunk).where(Chunk.document_id == document_id)
            )
        return result.rowcount or 0

    async def count(self, document_id: UUID) -> int:
        async with self._session_factory() as session:
            return await session.scalar(
                select(func.count()).select_from(Chunk).where(Chunk.document_id == document_id)
            ) or 0


def _to_stored(row: Chunk) -> StoredChunk:
    return StoredChunk(
        chunk_id=row.id,
        document_id=row.document_id,
        chunk_index=row.chunk_index,
        text=row.text,
        embedding=list(row.embedding),
        start_char=row.start_char,
        end_char=row.end_char,
        page_number=row.page_number,
        topics=list(row.topics or []),
        entities=list(row.entities or []),
    )
