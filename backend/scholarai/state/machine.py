"""
Document State Machine
══════════════════════

Authoritative per-document processing status, progress and error record.

  QUEUED ──► PROCESSING ──► EXTRACTING ──► VECTORIZING ──► INDEXED
     │            │              │               │
     └────────────┴──────────────┴───────────────┴──► FAILED
                                                        │
                     (error.final == False) ◄───────────┘ back to QUEUED

Rules
─────
  • Only transitions in ALLOWED_TRANSITIONS are legal; a same-state write
    only carries progress.
  • Progress is non-decreasing within an attempt and restarts only in
    begin_attempt().
  • started_at is set once (first attempt) and never overwritten.
  • Every write goes through DocumentStore.update(expected_owner=lease_token):
    a worker whose job lease was taken over gets StaleLeaseError instead of
    clobbering the new owner's progress.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable
from uuid import UUID

from scholarai.core.errors import (
    DocumentNotFoundError,
    ErrorKind,
    IngestionError,
    InvalidTransitionError,
    StaleLeaseError,
)
from scholarai.jobs.base import utcnow
from scholarai.schemas.documents import ProcessingError, ProcessingState
from scholarai.state.store import DocumentRecord, DocumentStore

logger = logging.getLogger(__name__)

S = ProcessingState

ALLOWED_TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    S.QUEUED:      frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING:  frozenset({S.EXTRACTING, S.FAILED}),
    S.EXTRACTING:  frozenset({S.VECTORIZING, S.FAILED}),
    S.VECTORIZING: frozenset({S.INDEXED, S.FAILED}),
    S.FAILED:      frozenset({S.QUEUED}),
    S.INDEXED:     frozenset(),
}

IN_FLIGHT_STATES = frozenset({S.PROCESSING, S.EXTRACTING, S.VECTORIZING})


def can_transition(current: ProcessingState, target: ProcessingState) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def is_terminal(record: DocumentRecord) -> bool:
    """INDEXED, or FAILED with no retry left."""
    if record.state is S.INDEXED:
        return True
    return record.state is S.FAILED and record.error is not None and record.error.final


@dataclass
class DerivedMetadata:
    """Attributes written together with the INDEXED transition."""
    difficulty: str | None = None
    subjects:   list[str] = field(default_factory=list)
    summary:    str | None = None
    key_topics: list[str] = field(default_factory=list)


class DocumentStateMachine:
    """
    Writer handle for one document, bound to one job lease.

    Usage (inside the pipeline):
        sm = DocumentStateMachine(store, document_id, lease.token)
        await sm.begin_attempt()
        await sm.advance(ProcessingState.EXTRACTING, 15)
        ...
        await sm.complete(chunk_count=5, derived=DerivedMetadata(...))
    """

    def __init__(
        self,
        store:       DocumentStore,
        document_id: UUID,
        lease_token: str,
        clock:       Callable = utcnow,
    ) -> None:
        self._store       = store
        self._document_id = document_id
        self._token       = lease_token
        self._clock       = clock
        self._record: DocumentRecord | None = None

    @property
    def started(self) -> bool:
        return self._record is not None

    @property
    def record(self) -> DocumentRecord:
        if self._record is None:
            raise RuntimeError("begin_attempt() has not run")
        return self._record

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------

    async def begin_attempt(self) -> DocumentRecord:
        """
        Take ownership and move to PROCESSING for a fresh attempt.

        A FAILED (non-final) document passes through QUEUED first. A document
        left in an in-flight state by a crashed worker is first recorded as a
        stalled failure, so the history stays within the transition table.
        """
        record = await self._store.get(self._document_id)
        if record is None:
            raise DocumentNotFoundError(self._document_id)
        if is_terminal(record):
            raise InvalidTransitionError(record.state.value, S.PROCESSING.value)

        # Take the single-writer token before anything else
        record = await self._store.update(self._document_id, {"lease_owner": self._token})
        self._record = record

        if record.state in IN_FLIGHT_STATES:
            logger.warning(
                "Previous attempt stalled | doc=%s state=%s attempt=%d",
                self._document_id, record.state.value, record.attempts,
            )
            await self._write({
                "state": S.FAILED,
                "error": ProcessingError(
                    kind=ErrorKind.TRANSIENT,
                    message="previous attempt stalled (worker lease expired)",
                    attempt=record.attempts,
                ),
            })
        if self.record.state is S.FAILED:
            await self._transition(S.QUEUED)

        changes: dict = {
            "state":    S.PROCESSING,
            "progress": 10,
            "attempts": self.record.attempts + 1,
            "error":    None,
        }
        if self.record.started_at is None:
            changes["started_at"] = self._clock()
        self._check(S.PROCESSING)
        await self._write(changes)

        logger.info(
            "Attempt started | doc=%s attempt=%d", self._document_id, self.record.attempts,
        )
        return self.record

    async def advance(self, state: ProcessingState, progress: int) -> DocumentRecord:
        self._check(state)
        changes: dict = {"state": state}
        if progress > self.record.progress:
            changes["progress"] = progress
        await self._write(changes)
        logger.info(
            "State advanced | doc=%s state=%s progress=%d",
            self._document_id, state.value, self.record.progress,
        )
        return self.record

    async def update_progress(self, progress: int) -> DocumentRecord:
        if progress <= self.record.progress:
            logger.debug(
                "Progress regression ignored | doc=%s current=%d requested=%d",
                self._document_id, self.record.progress, progress,
            )
            return self.record
        await self._write({"progress": min(progress, 100)})
        return self.record

    async def record_extraction(
        self,
        *,
        page_count:       int,
        word_count:       int,
        language:         str,
        raw_text_excerpt: str,
        used_ocr:         bool,
        strategy:         str,
    ) -> DocumentRecord:
        await self._write({
            "page_count":          page_count,
            "word_count":          word_count,
            "language":            language,
            "raw_text_excerpt":    raw_text_excerpt,
            "used_ocr":            used_ocr,
            "extraction_strategy": strategy,
        })
        return self.record

    async def confirm_ownership(self) -> DocumentRecord:
        """
        Re-read the document before a side effect outside the store (index
        writes): it must still exist, still carry this lease and still be in
        the state this attempt left it in.
        """
        record = await self._store.get(self._document_id)
        if record is None:
            raise DocumentNotFoundError(self._document_id)
        if record.lease_owner != self._token:
            raise StaleLeaseError(f"document {self._document_id} is owned by another lease")
        if record.state is not self.record.state:
            raise StaleLeaseError(
                f"document {self._document_id} moved to {record.state.value} "
                f"outside this attempt"
            )
        self._record = record
        return record

    async def complete(self, chunk_count: int, derived: DerivedMetadata) -> DocumentRecord:
        """INDEXED + chunk count + derived attributes in one write."""
        self._check(S.INDEXED)
        await self._write({
            "state":        S.INDEXED,
            "progress":     100,
            "chunk_count":  chunk_count,
            "difficulty":   derived.difficulty,
            "subjects":     list(derived.subjects),
            "summary":      derived.summary,
            "key_topics":   list(derived.key_topics),
            "completed_at": self._clock(),
            "error":        None,
        })
        logger.info(
            "Document indexed | doc=%s chunks=%d attempt=%d",
            self._document_id, chunk_count, self.record.attempts,
        )
        return self.record

    async def fail(self, error: IngestionError) -> ProcessingError:
        """Mark FAILED for this attempt; the queue decides whether it retries."""
        payload = ProcessingError(
            kind=error.kind,
            message=error.message,
            attempt=self.record.attempts,
            final=not error.retryable,
        )
        self._check(S.FAILED)
        await self._write({"state": S.FAILED, "error": payload})
        logger.error(
            "Attempt failed | doc=%s attempt=%d kind=%s error=%s",
            self._document_id, payload.attempt, payload.kind.value, payload.message,
        )
        return payload

    async def finalize_failure(self) -> ProcessingError:
        """
        The job was dead-lettered: make the recorded error terminal.
        Non-retryable errors are already final; retryable ones become EXHAUSTED.
        """
        current = self.record.error
        if current is None:
            raise RuntimeError("finalize_failure() without a recorded failure")
        if current.final:
            return current
        final = ProcessingError(
            kind=ErrorKind.EXHAUSTED,
            message=f"gave up after {current.attempt} attempts: {current.message}",
            attempt=current.attempt,
            final=True,
        )
        await self._write({"error": final})
        return final

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check(self, target: ProcessingState) -> None:
        current = self.record.state
        if not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

    async def _transition(self, target: ProcessingState) -> None:
        self._check(target)
        await self._write({"state": target})

    async def _write(self, changes: dict) -> None:
        self._record = await self._store.update(
            self._document_id, changes, expected_owner=self._token,
        )
