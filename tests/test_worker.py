"""Tests for the queue worker loop."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ortenberg.queue.base import WITHDRAWAL_POLICY, WITHDRAWAL_QUEUE, OutcomeKind
from ortenberg.queue.worker import Worker


class TestRunOnce:
    """Tests for a single worker iteration."""

    @pytest.mark.asyncio
    async def test_idle_returns_none(self, withdrawal_worker):
        """Test an empty queue yields no outcome."""
        assert await withdrawal_worker.run_once() is None

    @pytest.mark.asyncio
    async def test_error_is_recorded_on_job(self, withdrawal_worker, tx_processor, queue):
        """Test a processor error becomes a retry with the message kept on the job."""
        tx_processor.process = AsyncMock(side_effect=RuntimeError("node exploded"))
        job_id = await queue.enqueue(WITHDRAWAL_QUEUE, "process-withdrawal", 1, WITHDRAWAL_POLICY)

        outcome = await withdrawal_worker.run_once()

        assert outcome.kind == OutcomeKind.RETRY_SCHEDULED
        assert outcome.error == "node exploded"
        assert (await queue.get(job_id)).last_error == "node exploded"

    @pytest.mark.asyncio
    async def test_cancellation_releases_job(self, withdrawal_worker, tx_processor, queue):
        """Test shutdown mid-job returns the job without consuming an attempt."""
        started = asyncio.Event()

        async def hang(job):
            started.set()
            await asyncio.Event().wait()

        tx_processor.process = hang
        job_id = await queue.enqueue(WITHDRAWAL_QUEUE, "process-withdrawal", 1, WITHDRAWAL_POLICY)

        task = asyncio.create_task(withdrawal_worker.run_once())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        row = await queue.get(job_id)
        assert row.state == "waiting"
        assert row.attempts_made == 0
        assert row.lease_token is None

    @pytest.mark.asyncio
    async def test_heartbeat_renews_lease(self, queue, tx_processor):
        """Test the lease is renewed while a long job runs."""
        worker = Worker(queue, tx_processor, worker_id="w", lease_seconds=0.3, poll_interval=0.01)

        async def slow(job):
            await asyncio.sleep(0.35)

        tx_processor.process = slow
        await queue.enqueue(WITHDRAWAL_QUEUE, "process-withdrawal", 1, WITHDRAWAL_POLICY)

        with patch.object(queue, "renew", wraps=queue.renew) as renew:
            outcome = await worker.run_once()

        assert outcome.kind == OutcomeKind.COMPLETED
        assert renew.await_count >= 2

    @pytest.mark.asyncio
    async def test_exhaustion_calls_failure_handler_once(self, queue, tx_processor):
        """Test only the EXHAUSTED outcome reaches the failure handler."""
        worker = Worker(queue, tx_processor, worker_id="w")
        tx_processor.process = AsyncMock(side_effect=RuntimeError("x"))
        tx_processor.on_exhausted = AsyncMock()
        await queue.enqueue(WITHDRAWAL_QUEUE, "process-withdrawal", 1, WITHDRAWAL_POLICY)

        for _ in range(5):
            queue.clock.advance(3600)
            outcome = await worker.run_once()

        assert outcome.kind == OutcomeKind.EXHAUSTED
        tx_processor.on_exhausted.assert_awaited_once()
        job, passed = tx_processor.on_exhausted.await_args.args
        assert passed.attempts == 5
        assert job.db_id == 1
        assert (await queue.get(job.id)).state == "failed"


    @pytest.mark.asyncio
    async def test_exhausted_job_failed_after_handler_succeeds(self, queue, tx_processor):
        """Test the job only reaches the failed state once the handler returned."""
        worker = Worker(queue, tx_processor, worker_id="w")
        tx_processor.process = AsyncMock(side_effect=RuntimeError("x"))
        tx_processor.on_exhausted = AsyncMock(side_effect=[RuntimeError("db gone"), None])
        job_id = await queue.enqueue(WITHDRAWAL_QUEUE, "process-withdrawal", 1, WITHDRAWAL_POLICY)

        for _ in range(5):
            queue.clock.advance(3600)
            await worker.run_once()

        row = await queue.get(job_id)
        assert row.state == "exhausting"
        assert row.lease_token is None

        queue.clock.advance(WITHDRAWAL_POLICY.backoff_seconds)
        outcome = await worker.run_once()

        assert outcome.kind == OutcomeKind.EXHAUSTED
        assert outcome.attempts == 5
        assert outcome.error == "x"
        assert tx_processor.on_exhausted.await_count == 2
        assert tx_processor.process.await_count == 5
        assert (await queue.get(job_id)).state == "failed"
        assert await worker.run_once() is None

    @pytest.mark.asyncio
    async def test_stalled_too_often_goes_to_failure_handler(self, queue, tx_processor):
        """Test a job that keeps losing its lease is handed to the failure handler."""
        worker = Worker(queue, tx_processor, worker_id="w")
        tx_processor.process = AsyncMock()
        tx_processor.on_exhausted = AsyncMock()
        job_id = await queue.enqueue(WITHDRAWAL_QUEUE, "process-withdrawal", 1, WITHDRAWAL_POLICY)

        # Two holders that die without renewing
        for holder in ("dead-1", "dead-2"):
            await queue.claim(WITHDRAWAL_QUEUE, holder, 30)
            queue.clock.advance(31)

        outcome = await worker.run_once()

        assert outcome.kind == OutcomeKind.EXHAUSTED
        assert "stalled 2 times" in outcome.error
        tx_processor.process.assert_not_awaited()
        tx_processor.on_exhausted.assert_awaited_once()
        assert (await queue.get(job_id)).state == "failed"


class TestRunLoop:
    """Tests for the long-running loop."""

    @pytest.mark.asyncio
    async def test_processes_until_stopped(
        self, submit_withdrawal, withdrawal_worker, database, chain
    ):
        """Test the loop drains due jobs and exits on stop()."""
        await submit_withdrawal("loop-1")
        await submit_withdrawal("loop-2")

        task = asyncio.create_task(withdrawal_worker.run())
        for _ in range(200):
            if len(chain.waits) == 2:
                break
            await asyncio.sleep(0.01)
        withdrawal_worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert len(chain.submitted) == 2

    @pytest.mark.asyncio
    async def test_loop_survives_queue_errors(self, queue, tx_processor):
        """Test an exception while claiming does not kill the loop."""
        worker = Worker(queue, tx_processor, worker_id="w", poll_interval=0.01)
        calls = 0
        original_claim = queue.claim

        async def flaky_claim(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db blip")
            return await original_claim(*args, **kwargs)

        queue.claim = flaky_claim
        task = asyncio.create_task(worker.run())
        for _ in range(100):
            if calls >= 3:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert calls >= 3
