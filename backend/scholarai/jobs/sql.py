"""
Durable job queue on the ingestion_jobs table.

Atomic claim without database-specific locking:
  1. SELECT the best eligible candidate (priority desc, sequence asc).
  2. UPDATE ... WHERE id = :id AND state = :seen_state
                 AND lease_token IS NOT DISTINCT FROM :seen_token
     i.e. compare-and-swap on the row we saw. rowcount == 1 means we won;
     0 means another worker claimed it first, so we pick again.

The same CAS on lease_token guards renew/ack/fail, which is what makes a
worker whose lease expired (and was re-claimed) unable to touch the job.
Works unchanged on PostgreSQL (asyncpg) and SQLite (aiosqlite).
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scholarai.core.errors import StaleLeaseError
from scholarai.db.session import transaction
from scholarai.jobs.base import FailOutcome, Job, JobQueue, JobState, Lease, as_utc
from scholarai.models.documents import IngestionJob

logger = logging.getLogger(__name__)

# Give up on a claim round after this many lost CAS races; caller polls again
_MAX_CLAIM_RACES = 5


class SQLJobQueue(JobQueue):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], **kwargs) -> None:
        super().__init__(**kwargs)
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job) -> Job:
        existing = await self.get(job.id)
        if existing is not None:
            logger.info("Enqueue no-op | job=%s state=%s", job.id, existing.state.value)
            return existing

        try:
            async with transaction(self._session_factory) as session:
                session.add(IngestionJob(
                    id=job.id,
                    document_id=job.document_id,
                    owner_id=job.owner_id,
                    location=job.location,
                    content_type=job.content_type,
                    filename=job.filename,
                    priority=job.priority,
                    sequence=job.sequence,
                    state=JobState.QUEUED.value,
                    attempts=job.attempts,
                    stall_count=0,
                    available_at=job.available_at,
                ))
        except IntegrityError:
            # Lost a concurrent enqueue race on the primary key
            existing = await self.get(job.id)
            logger.info("Enqueue no-op (race) | job=%s", job.id)
            if existing is None:
                raise
            return existing

        logger.info("Job enqueued | job=%s priority=%d", job.id, job.priority)
        return await self.get(job.id)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def claim(self, worker_id: str, lease_seconds: float) -> Job | None:
        for _ in range(_MAX_CLAIM_RACES):
            now = self._now()
            async with transaction(self._session_factory) as session:
                row = (await session.execute(
                    select(IngestionJob)
                    .where(self._eligible(now))
                    .order_by(IngestionJob.priority.desc(), IngestionJob.sequence, IngestionJob.id)
                    .limit(1)
                )).scalars().first()
                if row is None:
                    return None

                stalled = row.state == JobState.LEASED.value
                token = uuid.uuid4().hex
                expires_at = now + timedelta(seconds=lease_seconds)

                result = await session.execute(
                    update(IngestionJob)
                    .where(
                        IngestionJob.id == row.id,
                        IngestionJob.state == row.state,
                        self._token_is(row.lease_token),
                    )
                    .values(
                        state=JobState.LEASED.value,
                        lease_token=token,
                        leased_by=worker_id,
                        lease_expires_at=expires_at,
                        stall_count=IngestionJob.stall_count + (1 if stalled else 0),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue

                if stalled:
                    logger.warning(
                        "Stalled job reclaimed | job=%s previous_worker=%s",
                        row.id, row.leased_by,
                    )
                job = self._to_job(row)
                job.state = JobState.LEASED
                job.stall_count += 1 if stalled else 0
                job.lease = Lease(job_id=row.id, token=token, worker_id=worker_id, expires_at=expires_at)
                return job

        logger.debug("Claim round lost every race | worker=%s", worker_id)
        return None

    async def renew(self, job_id: str, token: str, lease_seconds: float) -> Lease:
        expires_at = self._now() + timedelta(seconds=lease_seconds)
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                update(IngestionJob)
                .where(
                    IngestionJob.id == job_id,
                    IngestionJob.state == JobState.LEASED.value,
                    IngestionJob.lease_token == token,
                )
                .values(lease_expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleLeaseError(f"lease on job {job_id} is no longer held by this worker")
            worker_id = (await session.execute(
                select(IngestionJob.leased_by).where(IngestionJob.id == job_id)
            )).scalar_one()
        return Lease(job_id=job_id, token=token, worker_id=worker_id or "", expires_at=expires_at)

    async def ack(self, job_id: str, token: str | None = None) -> None:
        async with transaction(self._session_factory) as session:
            stmt = delete(IngestionJob).where(IngestionJob.id == job_id)
            if token is not None:
                stmt = stmt.where(IngestionJob.lease_token == token)
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 1:
                logger.info("Job acked | job=%s", job_id)
                return
            still_there = await session.get(IngestionJob, job_id)
        if still_there is not None:
            raise StaleLeaseError(f"lease on job {job_id} is no longer held by this worker")
        logger.info("Ack for unknown job ignored | job=%s", job_id)

    async def fail(
        self,
        job_id:    str,
        error:     str,
        retryable: bool = True,
        token:     str | None = None,
    ) -> FailOutcome:
        async with transaction(self._session_factory) as session:
            row = await session.get(IngestionJob, job_id)
            if row is None:
                logger.info("Fail for unknown job discarded | job=%s", job_id)
                return FailOutcome.DISCARDED
            if token is not None and row.lease_token != token:
                raise StaleLeaseError(f"lease on job {job_id} is no longer held by this worker")

            attempts = row.attempts + 1
            dead = not retryable or attempts >= self.max_attempts
            values: dict = {
                "attempts":         attempts,
                "last_error":       error,
                "lease_token":      None,
                "leased_by":        None,
                "lease_expires_at": None,
                "state":            JobState.DEAD.value if dead else JobState.QUEUED.value,
            }
            if not dead:
                values["available_at"] = self._retry_at(attempts)

            result = await session.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, self._token_is(row.lease_token))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleLeaseError(f"job {job_id} changed hands while failing it")

        if dead:
            logger.error(
                "Job dead-lettered | job=%s attempts=%d retryable=%s error=%s",
                job_id, attempts, retryable, error,
            )
            return FailOutcome.DEAD_LETTERED
        logger.warning(
            "Job retry scheduled | job=%s attempts=%d available_at=%s error=%s",
            job_id, attempts, values["available_at"].isoformat(), error,
        )
        return FailOutcome.RETRY_SCHEDULED

    # ------------------------------------------------------------------
    # Maintenance / reads
    # ------------------------------------------------------------------

    async def requeue_expired(self) -> int:
        now = self._now()
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                update(IngestionJob)
                .where(
                    IngestionJob.state == JobState.LEASED.value,
                    IngestionJob.lease_expires_at <= now,
                )
                .values(
                    state=JobState.QUEUED.value,
                    lease_token=None,
                    leased_by=None,
                    lease_expires_at=None,
                    stall_count=IngestionJob.stall_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
        moved = result.rowcount or 0
        if moved:
            logger.warning("Requeued stalled jobs | count=%d", moved)
        return moved

    async def cancel(self, job_id: str) -> bool:
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                delete(IngestionJob)
                .where(IngestionJob.id == job_id)
                .execution_options(synchronize_session=False)
            )
        removed = result.rowcount == 1
        if removed:
            logger.info("Job cancelled | job=%s", job_id)
        return removed

    async def get(self, job_id: str) -> Job | None:
        async with self._session_factory() as session:
            row = await session.get(IngestionJob, job_id)
            return self._to_job(row) if row else None

    async def dead_letters(self) -> list[Job]:
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(IngestionJob)
                .where(IngestionJob.state == JobState.DEAD.value)
                .order_by(IngestionJob.sequence)
            )).scalars().all()
            return [self._to_job(r) for r in rows]

    async def stats(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        async with self._session_factory() as session:
            rows = await session.execute(
                select(IngestionJob.state, func.count()).group_by(IngestionJob.state)
            )
            for state, count in rows:
                counts[state] = count
        return counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _eligible(now):
        return or_(
            and_(IngestionJob.state == JobState.QUEUED.value, IngestionJob.available_at <= now),
            and_(IngestionJob.state == JobState.LEASED.value, IngestionJob.lease_expires_at <= now),
        )

    @staticmethod
    def _token_is(token: str | None):
        if token is None:
            return IngestionJob.lease_token.is_(None)
        return IngestionJob.lease_token == token

    @staticmethod
    def _to_job(row: IngestionJob) -> Job:
        lease = None
        if row.lease_token:
            lease = Lease(
                job_id=row.id,
                token=row.lease_token,
                worker_id=row.leased_by or "",
                expires_at=as_utc(row.lease_expires_at),
            )
        return Job(
            id=row.id,
            document_id=row.document_id,
            owner_id=row.owner_id,
            location=row.location,
            content_type=row.content_type,
            filename=row.filename,
            priority=row.priority,
            attempts=row.attempts,
            state=JobState(row.state),
            available_at=as_utc(row.available_at),
            sequence=row.sequence,
            stall_count=row.stall_count,
            last_error=row.last_error,
            lease=lease,
        )
