"""Job queue stored in the service database.

Claims use optimistic locking on `queue_jobs.version`: a worker reads the
next due job and leases it with a compare-and-set UPDATE, so two workers can
never hold the same job. Every later write by the holder is guarded by its
lease token. A job whose lease expired (crashed or stuck worker) is due
again and is reclaimed without consuming an attempt, up to `max_stalled`
times; the next expiry exhausts it.

Exhaustion is two-phase. The final failure moves the job to EXHAUSTING and
the holder runs the failure handler; only when the handler succeeds does the
job become FAILED. An EXHAUSTING job that was deferred, or whose holder
died, is claimed again for another handler run.

Lease deadlines are computed from the database clock unless a clock is
injected, so workers on hosts with skewed clocks agree on expiry.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ortenberg.errors import InfrastructureError
from ortenberg.ledger.database import Database
from ortenberg.ledger.models import JobState, QueueJob
from ortenberg.queue.base import (
    Job,
    JobOutcome,
    JobQueue,
    OutcomeKind,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# Claim attempts before giving up on a contended queue for this poll
CLAIM_RETRIES = 5

# Reclaims after lease expiry before the job is exhausted
MAX_STALLED_COUNT = 1

_LEASED_STATES = (JobState.ACTIVE.value, JobState.EXHAUSTING.value)


class SqlJobQueue(JobQueue):
    """JobQueue backed by the `queue_jobs` table."""

    def __init__(
        self,
        database: Database,
        clock: Optional[Callable[[], datetime]] = None,
        max_stalled: int = MAX_STALLED_COUNT,
    ):
        """Initialize queue.

        Args:
            database: Shared database component
            clock: Source of naive-UTC "now"; the database clock when None
            max_stalled: Lease expiries tolerated before a job is exhausted
        """
        self.db = database
        self.clock = clock
        self.max_stalled = max_stalled

    async def _now(self, session: AsyncSession) -> datetime:
        """Naive-UTC current time from the injected clock or the database."""
        if self.clock is not None:
            return self.clock()
        now = await session.scalar(select(func.now()))
        if isinstance(now, str):
            # SQLite CURRENT_TIMESTAMP
            now = datetime.fromisoformat(now)
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        return now

    async def enqueue(
        self,
        queue: str,
        name: str,
        db_id: int,
        policy: RetryPolicy,
        delay: float = 0.0,
    ) -> int:
        """Add a job with payload {"dbId": db_id}."""
        async with self.db.session() as session:
            now = await self._now(session)
            job = QueueJob(
                queue=queue,
                name=name,
                payload={"dbId": db_id},
                state=JobState.WAITING.value,
                attempts_made=0,
                max_attempts=policy.max_attempts,
                backoff_seconds=policy.backoff_seconds,
                available_at=now + timedelta(seconds=delay),
                created_at=now,
            )
            session.add(job)
            await session.flush()
            job_id = job.id

        logger.debug(f"Enqueued job {job_id} on {queue} for DB id {db_id}")
        return job_id

    async def claim(self, queue: str, worker_id: str, lease_seconds: float) -> Optional[Job]:
        """Lease the oldest due job of `queue`.

        Due means waiting (or deferred exhausting) past `available_at`, or
        leased with an expired deadline.
        """
        for _ in range(CLAIM_RETRIES):
            async with self.db.session() as session:
                now = await self._now(session)
                stmt = (
                    select(QueueJob)
                    .where(
                        QueueJob.queue == queue,
                        or_(
                            and_(
                                QueueJob.state.in_(
                                    [JobState.WAITING.value, JobState.EXHAUSTING.value]
                                ),
                                QueueJob.lease_token.is_(None),
                                QueueJob.available_at <= now,
                            ),
                            and_(
                                QueueJob.state.in_(_LEASED_STATES),
                                QueueJob.lease_token.is_not(None),
                                QueueJob.locked_until < now,
                            ),
                        ),
                    )
                    .order_by(QueueJob.available_at, QueueJob.id)
                    .limit(1)
                )
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is None:
                    return None

                stalled = row.lease_token is not None
                stalled_count = row.stalled_count + (1 if stalled else 0)
                state = row.state
                last_error = row.last_error
                if state == JobState.ACTIVE.value:
                    if stalled_count > self.max_stalled:
                        state = JobState.EXHAUSTING.value
                        last_error = (
                            f"Job stalled {stalled_count} times; "
                            f"its worker stopped renewing the lease"
                        )
                elif state == JobState.WAITING.value:
                    state = JobState.ACTIVE.value

                token = uuid.uuid4().hex
                result = await session.execute(
                    update(QueueJob)
                    .where(QueueJob.id == row.id, QueueJob.version == row.version)
                    .values(
                        state=state,
                        lease_token=token,
                        locked_by=worker_id,
                        locked_until=now + timedelta(seconds=lease_seconds),
                        stalled_count=stalled_count,
                        last_error=last_error,
                        version=row.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another worker won the race for this row
                    continue

                if stalled:
                    logger.warning(
                        f"Reclaimed stalled job {row.id} on {queue} "
                        f"(previous holder {row.locked_by}, stalled {stalled_count}x)"
                    )
                exhausting = state == JobState.EXHAUSTING.value
                if exhausting and row.state == JobState.ACTIVE.value:
                    logger.error(f"Job {row.id} on {queue} exhausted: {last_error}")

                return Job(
                    id=row.id,
                    queue=row.queue,
                    name=row.name,
                    db_id=int(row.payload["dbId"]),
                    attempts_made=row.attempts_made,
                    max_attempts=row.max_attempts,
                    backoff_seconds=row.backoff_seconds,
                    lease_token=token,
                    exhausting=exhausting,
                    last_error=last_error,
                )

        return None

    async def renew(self, job: Job, lease_seconds: float) -> bool:
        """Push the lease deadline forward."""
        async with self.db.session() as session:
            now = await self._now(session)
            return await self._update_leased(
                session,
                job,
                _LEASED_STATES,
                locked_until=now + timedelta(seconds=lease_seconds),
            )

    async def complete(self, job: Job) -> JobOutcome:
        """Mark the job completed."""
        async with self.db.session() as session:
            now = await self._now(session)
            done = await self._update_leased(
                session,
                job,
                (JobState.ACTIVE.value,),
                state=JobState.COMPLETED.value,
                finished_at=now,
                lease_token=None,
                locked_until=None,
            )
        if not done:
            return JobOutcome.lease_lost(job)
        return JobOutcome.completed(job)

    async def fail(self, job: Job, error: str) -> JobOutcome:
        """Count the failed attempt; reschedule with backoff or exhaust.

        An exhausted job keeps its lease in EXHAUSTING so the caller can run
        the failure handler and then finalize or defer it.
        """
        attempts = job.attempts_made + 1

        async with self.db.session() as session:
            now = await self._now(session)
            if attempts >= job.max_attempts:
                exhausted = await self._update_leased(
                    session,
                    job,
                    (JobState.ACTIVE.value,),
                    state=JobState.EXHAUSTING.value,
                    attempts_made=attempts,
                    last_error=error,
                )
                if not exhausted:
                    return JobOutcome.lease_lost(job, error)
                return JobOutcome(OutcomeKind.EXHAUSTED, job, attempts=attempts, error=error)

            delay = job.policy.delay_for(attempts)
            rescheduled = await self._update_leased(
                session,
                job,
                (JobState.ACTIVE.value,),
                state=JobState.WAITING.value,
                attempts_made=attempts,
                last_error=error,
                available_at=now + timedelta(seconds=delay),
                lease_token=None,
                locked_by=None,
                locked_until=None,
            )
        if not rescheduled:
            return JobOutcome.lease_lost(job, error)
        return JobOutcome(
            OutcomeKind.RETRY_SCHEDULED, job, attempts=attempts, error=error, retry_delay=delay
        )

    async def release(self, job: Job) -> bool:
        """Give the job back immediately, keeping its attempt count."""
        async with self.db.session() as session:
            now = await self._now(session)
            return await self._update_leased(
                session,
                job,
                (JobState.ACTIVE.value,),
                state=JobState.WAITING.value,
                available_at=now,
                lease_token=None,
                locked_by=None,
                locked_until=None,
            )

    async def finalize_exhausted(self, job: Job) -> bool:
        """EXHAUSTING -> FAILED after the failure handler succeeded."""
        async with self.db.session() as session:
            now = await self._now(session)
            return await self._update_leased(
                session,
                job,
                (JobState.EXHAUSTING.value,),
                state=JobState.FAILED.value,
                finished_at=now,
                lease_token=None,
                locked_until=None,
            )

    async def defer_exhausted(self, job: Job, delay: float) -> bool:
        """Unlease an EXHAUSTING job so its failure handler is retried later."""
        async with self.db.session() as session:
            now = await self._now(session)
            return await self._update_leased(
                session,
                job,
                (JobState.EXHAUSTING.value,),
                available_at=now + timedelta(seconds=delay),
                lease_token=None,
                locked_by=None,
                locked_until=None,
            )

    async def get(self, job_id: int) -> Optional[QueueJob]:
        """Load the raw job row (inspection and tests)."""
        async with self.db.session() as session:
            return await session.get(QueueJob, job_id)

    async def counts(self, queue: str) -> dict[str, int]:
        """Number of jobs per state for one queue."""
        async with self.db.session() as session:
            stmt = (
                select(QueueJob.state, func.count(QueueJob.id))
                .where(QueueJob.queue == queue)
                .group_by(QueueJob.state)
            )
            rows = (await session.execute(stmt)).all()
        counts = {state.value: 0 for state in JobState}
        counts.update({str(state): int(count) for state, count in rows})
        return counts

    async def ping(self) -> None:
        """Check the queue table is reachable."""
        try:
            async with self.db.session() as session:
                await session.execute(select(func.count(QueueJob.id)).limit(1))
        except Exception as e:
            raise InfrastructureError(f"Queue unreachable: {e}") from e

    async def _update_leased(
        self, session: AsyncSession, job: Job, states: tuple[str, ...], **values
    ) -> bool:
        """Apply `values` only while `job` still holds its lease in one of `states`."""
        result = await session.execute(
            update(QueueJob)
            .where(
                QueueJob.id == job.id,
                QueueJob.lease_token == job.lease_token,
                QueueJob.state.in_(states),
            )
            .values(version=QueueJob.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
