"""Queue consumer loop.

A Worker leases one job at a time from its processor's queue, keeps the
lease alive while the processor runs, and turns the result into a typed
JobOutcome. The outcome is dispatched in one place: exhaustion is the only
path to the processor's terminal-failure handler, and an exhausted job is
only finalized as FAILED after that handler succeeds.
"""

import asyncio
import logging
import os
import socket
import uuid
from typing import Awaitable, Optional

from ortenberg.processors.base import JobProcessor
from ortenberg.queue.base import Job, JobOutcome, JobQueue, OutcomeKind

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Worker:
    """Consumes one queue with one processor."""

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        worker_id: Optional[str] = None,
        lease_seconds: float = 30.0,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.processor = processor
        self.worker_id = worker_id or default_worker_id()
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._stop_event = asyncio.Event()

    @property
    def queue_name(self) -> str:
        return self.processor.queue_name

    async def run_once(self) -> Optional[JobOutcome]:
        """Claim and execute at most one job.

        Returns:
            The job's outcome, or None if nothing was due
        """
        job = await self.queue.claim(self.queue_name, self.worker_id, self.lease_seconds)
        if job is None:
            return None

        if job.exhausting:
            # Attempts already used up; only the failure handler is left to run
            outcome = JobOutcome(
                OutcomeKind.EXHAUSTED, job, attempts=job.attempts_made, error=job.last_error
            )
            await self._dispatch(outcome)
            return outcome

        tag = self.processor.log_tag
        error: Optional[str] = None
        try:
            await self._leased(job, self.processor.process(job))
        except asyncio.CancelledError:
            # Shutdown mid-job: hand it back without burning an attempt
            if await self.queue.release(job):
                logger.info(f"[{tag}] Released job {job.id} on shutdown")
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"[{tag}-ERROR] Attempt #{job.attempt} failed for job {job.id}: {error}")

        if error is None:
            outcome = await self.queue.complete(job)
        else:
            outcome = await self.queue.fail(job, error)

        await self._dispatch(outcome)
        return outcome

    async def _dispatch(self, outcome: JobOutcome) -> None:
        job = outcome.job
        tag = self.processor.log_tag

        if outcome.kind == OutcomeKind.COMPLETED:
            logger.info(f"[{tag}] Job {job.id} completed")
        elif outcome.kind == OutcomeKind.RETRY_SCHEDULED:
            logger.info(
                f"[{tag}] Job {job.id} will retry in {outcome.retry_delay:.0f}s "
                f"({outcome.attempts}/{job.max_attempts} attempts used)"
            )
        elif outcome.kind == OutcomeKind.LEASE_LOST:
            logger.warning(
                f"[{tag}] Lost lease on job {job.id}; another worker owns it now, result discarded"
            )
        elif outcome.kind == OutcomeKind.EXHAUSTED:
            await self._settle_exhausted(outcome)

    async def _settle_exhausted(self, outcome: JobOutcome) -> None:
        """Run the failure handler; the job only becomes FAILED once it succeeds."""
        job = outcome.job
        tag = self.processor.log_tag
        try:
            await self._leased(job, self.processor.on_exhausted(job, outcome))
        except asyncio.CancelledError:
            await self.queue.defer_exhausted(job, delay=0)
            raise
        except Exception as e:
            retry_in = job.policy.delay_for(1)
            logger.exception(
                f"[{tag}-FATAL] Failure handler crashed for job {job.id}, "
                f"retrying in {retry_in:.0f}s: {e}"
            )
            await self.queue.defer_exhausted(job, delay=retry_in)
            return

        if not await self.queue.finalize_exhausted(job):
            logger.warning(f"[{tag}] Lost lease on exhausted job {job.id} before finalizing")

    async def _leased(self, job: Job, work: Awaitable[None]) -> None:
        """Await `work` while a heartbeat keeps the lease alive."""
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            await work
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, job: Job) -> None:
        """Renew the lease until cancelled or lost."""
        interval = max(self.lease_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.queue.renew(job, self.lease_seconds)
            except Exception as e:
                logger.warning(f"Lease renewal for job {job.id} failed: {e}")
                continue
            if not renewed:
                logger.warning(f"Lease on job {job.id} expired before renewal")
                return

    async def run(self) -> None:
        """Consume until stop() is called."""
        logger.info(f"Worker {self.worker_id} consuming {self.queue_name}")
        while not self._stop_event.is_set():
            try:
                outcome = await self.run_once()
            except Exception as e:
                logger.exception(f"Worker {self.worker_id} error on {self.queue_name}: {e}")
                outcome = None

            if outcome is None:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Worker {self.worker_id} stopped")

    def stop(self) -> None:
        self._stop_event.set()
