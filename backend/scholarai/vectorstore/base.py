"""
Vector Index — Abstract Base

Every backend (in-memory, SQL) implements this interface; the pipeline and
the context assembler only speak this protocol.

Contract (enforced by ALL implementations):
  - replace_document() swaps a document's whole chunk set atomically:
    readers see either the old set or the new one, never a mix.
  - Input is validated before anything is written: chunk indices are
    contiguous from 0 and every vector has exactly `dimension` floats.
  - similarity_search() is scoped to the given document ids ONLY.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

import numpy as np

from scholarai.core.errors import ConfigurationError, DimensionMismatchError


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StoredChunk:
    """One chunk + its embedding, as persisted in the index."""
    chunk_id:    str
    document_id: UUID
    chunk_index: int
    text:        str
    embedding:   list[float]
    start_char:  int = 0
    end_char:    int = 0
    page_number: int = 1
    topics:      list[str] = field(default_factory=list)
    entities:    list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ScoredChunk:
    """One result of a similarity search."""
    chunk: StoredChunk
    score: float        # cosine similarity in [-1, 1]

    @property
    def text(self) -> str:
        return self.chunk.text


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorIndex(ABC):

    def __init__(self, dimension: int) -> None:
        if dimension <= 0:
            raise ConfigurationError(f"vector dimension must be positive, got {dimension}")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @abstractmethod
    async def replace_document(self, document_id: UUID, chunks: Sequence[StoredChunk]) -> int:
        """Atomically replace all chunks of `document_id`. Returns the stored count."""

    @abstractmethod
    async def similarity_search(
        self,
        document_ids: Sequence[UUID],
        query_vector: Sequence[float],
        k: int,
    ) -> list[ScoredChunk]:
        """
        Top-k chunks of the given documents by cosine similarity.
        Order: score desc, chunk_index asc, document_id asc.
        """

    @abstractmethod
    async def delete_document(self, document_id: UUID) -> int:
        """Delete ALL chunks of a document. Returns the number removed."""

    @abstractmethod
    async def count(self, document_id: UUID) -> int:
        ...

    # ------------------------------------------------------------------
    # Shared validation
    # ------------------------------------------------------------------

    def _validate(self, document_id: UUID, chunks: Sequence[StoredChunk]) -> None:
        for position, chunk in enumerate(chunks):
            if chunk.document_id != document_id:
                raise ValueError(
                    f"chunk {chunk.chunk_id} belongs to {chunk.document_id}, not {document_id}"
                )
            if chunk.chunk_index != position:
                raise ValueError(
                    f"chunk indices must be contiguous from 0: expected {position}, "
                    f"got {chunk.chunk_index}"
                )
            if len(chunk.embedding) != self._dimension:
                raise DimensionMismatchError(position, self._dimension, len(chunk.embedding))

    def _validate_query(self, query_vector: Sequence[float]) -> None:
        if len(query_vector) != self._dimension:
            raise DimensionMismatchError(0, self._dimension, len(query_vector))


def rank_by_cosine(
    candidates:   Sequence[StoredChunk],
    query_vector: Sequence[float],
    k:            int,
) -> list[ScoredChunk]:
    """
    Cosine similarity dot(a,b)/(‖a‖‖b‖) with numpy; a zero-norm side scores 0.
    Ties break on chunk_index, then document id.
    """
    if k <= 0 or not candidates:
        return []

    matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
    query  = np.asarray(query_vector, dtype=np.float64)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots  = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    ranked = sorted(
        (ScoredChunk(chunk=c, score=float(s)) for c, s in zip(candidates, scores)),
        key=lambda sc: (-sc.score, sc.chunk.chunk_index, str(sc.chunk.document_id)),
    )
    return ranked[:k]
