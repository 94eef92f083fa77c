"""
Context Assembler — query-time retrieval for the chat feature
═════════════════════════════════════════════════════════════

  query ──► embed_query (same provider + dimension as ingestion)
        ──► similarity_search over the document scope (top k)
        ──► drop scores < similarity_threshold
        ──► greedy packing in rank order under token_budget
        ──► RetrievalContext(text, ranked chunks, citations)

Token estimate is ceil(chars / 4) over the assembled text, "\\n\\n"
separators included. Packing stops before the first chunk that would exceed
the budget; a budget of zero or less yields the empty context. With a
DocumentStore attached, the scope is narrowed to INDEXED documents first, so
chunks of a FAILED, in-flight or deleted document are never served.
When nothing clears the threshold the result is the explicit
"no_relevant_context" value, which the chat layer must handle distinctly
from an answer the model declined to give.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence
from uuid import UUID

from scholarai.core.config import Settings
from scholarai.core.errors import ConfigurationError, DimensionMismatchError
from scholarai.processing.embeddings import EmbeddingBatcher
from scholarai.schemas.documents import (
    Citation,
    ProcessingState,
    RankedChunk,
    RetrievalContext,
)
from scholarai.state.store import DocumentStore
from scholarai.vectorstore.base import ScoredChunk, VectorIndex

logger = logging.getLogger(__name__)

SEPARATOR = "\n\n"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class ContextAssembler:

    def __init__(
        self,
        batcher:              EmbeddingBatcher,
        index:                VectorIndex,
        top_k:                int   = 5,
        similarity_threshold: float = 0.3,
        token_budget:         int   = 2000,
        excerpt_chars:        int   = 200,
        store:                DocumentStore | None = None,
    ) -> None:
        if batcher.dimension != index.dimension:
            raise ConfigurationError(
                f"query embedding dimension {batcher.dimension} does not match "
                f"index dimension {index.dimension}"
            )
        self._batcher   = batcher
        self._index     = index
        self._top_k     = top_k
        self._threshold = similarity_threshold
        self._budget    = token_budget
        self._excerpt_chars = excerpt_chars
        self._store     = store

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        batcher:  EmbeddingBatcher,
        index:    VectorIndex,
        store:    DocumentStore | None = None,
    ) -> "ContextAssembler":
        return cls(
            batcher,
            index,
            top_k=settings.retrieval_top_k,
            similarity_threshold=settings.similarity_threshold,
            token_budget=settings.context_token_budget,
            excerpt_chars=settings.citation_excerpt_chars,
            store=store,
        )

    async def retrieve(
        self,
        query:                str,
        document_ids:         Sequence[UUID],
        k:                    int | None = None,
        similarity_threshold: float | None = None,
        token_budget:         int | None = None,
    ) -> RetrievalContext:
        k = self._top_k if k is None else k
        threshold = self._threshold if similarity_threshold is None else similarity_threshold
        budget = self._budget if token_budget is None else token_budget

        if not query.strip() or not document_ids or k <= 0 or budget <= 0:
            return RetrievalContext.empty(query)

        document_ids = await self._indexed_only(document_ids)
        if not document_ids:
            return RetrievalContext.empty(query)

        try:
            query_vector = await self._batcher.embed_query(query)
        except DimensionMismatchError as exc:
            raise ConfigurationError(f"query embedding: {exc.message}") from exc

        scored = await self._index.similarity_search(document_ids, query_vector, k)
        relevant = [sc for sc in scored if sc.score >= threshold]

        logger.info(
            "Retrieval | docs=%d candidates=%d relevant=%d threshold=%.2f",
            len(document_ids), len(scored), len(relevant), threshold,
        )
        if not relevant:
            return RetrievalContext.empty(query)

        selected, text = self._pack(relevant, budget)
        return RetrievalContext(
            query=query,
            status="ok",
            text=text,
            chunks=[
                RankedChunk(
                    chunk_id=sc.chunk.chunk_id,
                    document_id=sc.chunk.document_id,
                    chunk_index=sc.chunk.chunk_index,
                    page_number=sc.chunk.page_number,
                    text=sc.chunk.text,
                    score=sc.score,
                )
                for sc in selected
            ],
            citations=[self._citation(sc) for sc in selected],
            token_estimate=estimate_tokens(text),
        )

    async def _indexed_only(self, document_ids: Sequence[UUID]) -> list[UUID]:
        if self._store is None:
            return list(document_ids)
        kept: list[UUID] = []
        for document_id in dict.fromkeys(document_ids):
            record = await self._store.get(document_id)
            if record is not None and record.state is ProcessingState.INDEXED:
                kept.append(document_id)
        if len(kept) < len(document_ids):
            logger.info(
                "Retrieval scope narrowed to indexed documents | requested=%d kept=%d",
                len(document_ids), len(kept),
            )
        return kept

    def _pack(self, ranked: list[ScoredChunk], budget: int) -> tuple[list[ScoredChunk], str]:
        selected: list[ScoredChunk] = []
        text = ""
        for sc in ranked:
            candidate = f"{text}{SEPARATOR}{sc.chunk.text}" if text else sc.chunk.text
            if estimate_tokens(candidate) > budget:
                break
            selected.append(sc)
            text = candidate

        if not selected:
            # The best chunk alone is over budget: keep its head
            best = ranked[0]
            text = best.chunk.text[: budget * 4]
            selected = [best]
            logger.debug("Top chunk truncated to budget | chunk=%s", best.chunk.chunk_id)
        return selected, text

    def _citation(self, sc: ScoredChunk) -> Citation:
        return Citation(
            document_id=sc.chunk.document_id,
            chunk_id=sc.chunk.chunk_id,
            chunk_index=sc.chunk.chunk_index,
            page_number=sc.chunk.page_number,
            excerpt=sc.chunk.text[: self._excerpt_chars],
            score=sc.score,
        )
