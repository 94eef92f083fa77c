"""
Job Queue — Abstract Base

Every queue backend (in-memory, SQL) implements this interface. Workers and
the ingestion service only speak this protocol.

Delivery contract (at-least-once):
  - enqueue() is idempotent on the deterministic job id: a second enqueue
    for the same document returns the existing job and creates nothing.
  - claim() atomically hands ONE eligible job to ONE worker under a lease.
    Eligible = queued and available_at <= now, or leased with an expired
    lease (stalled-job recovery). Order: priority desc, then FIFO.
  - renew() extends a live lease; ack() deletes the job; fail() either
    re-schedules with exponential backoff or dead-letters.
  - A lease token identifies the holder. Calls carrying a token that no
    longer owns the job raise StaleLeaseError.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable
from uuid import UUID

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything in the queue is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def job_id_for(document_id: UUID | str) -> str:
    """
    Deterministic job id for a document's ingestion job.

    One document → one id, so the queue's dedup and claim rules guarantee
    that at most one job per document is queued or in flight.
    """
    return f"ingest:{document_id}"


_sequence_lock = threading.Lock()
_last_sequence = 0


def next_sequence() -> int:
    """Strictly increasing enqueue stamp (ns) used for FIFO within a priority."""
    global _last_sequence
    with _sequence_lock:
        _last_sequence = max(_last_sequence + 1, time.time_ns())
        return _last_sequence


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """delay = base * 2**attempts, capped; attempts counts failures so far."""
    return min(base * (2 ** attempts), cap)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

class JobState(str, Enum):
    QUEUED = "queued"
    LEASED = "leased"
    DEAD   = "dead"


class FailOutcome(str, Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED   = "dead_lettered"
    DISCARDED       = "discarded"      # job was cancelled while leased


@dataclass(frozen=True)
class Lease:
    job_id:     str
    token:      str
    worker_id:  str
    expires_at: datetime


@dataclass
class Job:
    """
    One request to run the ingestion pipeline for a document.

    id           : job_id_for(document_id)
    location     : storage location of the source file
    attempts     : failed attempts so far (only ever increases)
    available_at : next-eligible time (backoff)
    """
    id:           str
    document_id:  UUID
    owner_id:     UUID
    location:     str
    content_type: str = ""
    filename:     str = ""
    priority:     int = 0
    attempts:     int = 0
    state:        JobState = JobState.QUEUED
    available_at: datetime = field(default_factory=utcnow)
    sequence:     int = field(default_factory=next_sequence)
    stall_count:  int = 0
    last_error:   str | None = None
    lease:        Lease | None = None

    @classmethod
    def for_document(
        cls,
        document_id:  UUID,
        owner_id:     UUID,
        location:     str,
        content_type: str = "",
        filename:     str = "",
        priority:     int = 0,
    ) -> "Job":
        return cls(
            id=job_id_for(document_id),
            document_id=document_id,
            owner_id=owner_id,
            location=location,
            content_type=content_type,
            filename=filename,
            priority=priority,
        )


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class JobQueue(ABC):
    """
    Backoff/dead-letter policy is shared by all backends; storage differs.

    Constructor args:
        max_attempts  : failures before a job is dead-lettered
        backoff_base  : seconds; retry delay = base * 2**attempts
        backoff_max   : cap on the retry delay
        clock         : injectable "now" (tests drive lease expiry with it)
    """

    def __init__(
        self,
        max_attempts: int   = 3,
        backoff_base: float = 1.0,
        backoff_max:  float = 300.0,
        clock:        Clock = utcnow,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max  = backoff_max
        self._clock       = clock

    def _now(self) -> datetime:
        return self._clock()

    def _retry_at(self, attempts: int) -> datetime:
        return self._now() + timedelta(
            seconds=backoff_delay(attempts, self.backoff_base, self.backoff_max)
        )

    @abstractmethod
    async def enqueue(self, job: Job) -> Job:
        """Insert the job, or return the existing one with the same id."""

    @abstractmethod
    async def claim(self, worker_id: str, lease_seconds: float) -> Job | None:
        """Lease the next eligible job, or return None."""

    @abstractmethod
    async def renew(self, job_id: str, token: str, lease_seconds: float) -> Lease:
        """Extend the lease held by `token`."""

    @abstractmethod
    async def ack(self, job_id: str, token: str | None = None) -> None:
        """Remove a finished job."""

    @abstractmethod
    async def fail(
        self,
        job_id:    str,
        error:     str,
        retryable: bool = True,
        token:     str | None = None,
    ) -> FailOutcome:
        """Record a failed attempt; re-schedule with backoff or dead-letter."""

    @abstractmethod
    async def requeue_expired(self) -> int:
        """Return stalled leased jobs to the queue; returns how many moved."""

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Drop the job in any state; True if something was removed."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def dead_letters(self) -> list[Job]:
        ...

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Job count per JobState value."""
