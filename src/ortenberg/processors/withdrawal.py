"""Transaction processor for multi-sig withdrawal requests.

State machine:
    PENDING_SIGNATURE -> PROCESSING -> BROADCASTED -> COMPLETED
    PENDING_SIGNATURE -> CANCELLED   (intake, before processing)
    PROCESSING -> FAILED             (retries exhausted)

One delivery:
1. Load the request; missing or terminal rows are a successful no-op
2. Open the processing episode (PENDING_SIGNATURE -> PROCESSING) once
3. Read token decimals and scale the amount
4. Fetch fresh fee data
5. Submit the transfer
6. Record BROADCASTED with the hash
7. Wait for confirmation
8. Record COMPLETED

Step 5 first reserves the submission for the job's current lease. A delivery
that finds the reservation held by another lease does not submit; the holder
records the hash, or the job exhausts and the request is failed for manual
review. A row already BROADCASTED resumes at step 7 with its stored hash, so
a retry after a failed confirmation wait never sends the transfer twice.
"""

import logging
from typing import Optional

from ortenberg.chain.units import to_base_units
from ortenberg.errors import ChainError, ConflictError
from ortenberg.ledger.models import (
    WITHDRAWAL_TERMINAL,
    WithdrawalRequest,
    WithdrawalStatus,
)
from ortenberg.ledger.repository import WithdrawalRepository
from ortenberg.processors.base import JobProcessor
from ortenberg.queue.base import WITHDRAWAL_POLICY, WITHDRAWAL_QUEUE, Job

logger = logging.getLogger(__name__)


class TransactionProcessor(JobProcessor):
    """Drives withdrawal requests from intent to confirmation."""

    queue_name = WITHDRAWAL_QUEUE
    policy = WITHDRAWAL_POLICY
    kind = "withdrawal"
    alert_title = "Multi-Sig Withdrawal Job Failed"

    async def process(self, job: Job) -> None:
        """Make one attempt at advancing the withdrawal referenced by `job`."""
        logger.info(
            f"[WORKER] Processing job {job.id} (Attempt #{job.attempt}) for DB request {job.db_id}"
        )
        async with self.locks.hold(self.kind, job.db_id, operation=f"job {job.id}"):
            await self._process(job)

    async def _process(self, job: Job) -> None:
        request = await self._load(job.db_id)
        if not self._should_process(job, request):
            return

        status = WithdrawalStatus(request.status)

        if status == WithdrawalStatus.BROADCASTED:
            if not request.tx_hash:
                raise ConflictError(
                    f"Withdrawal {job.db_id} is BROADCASTED without a transaction hash",
                    current_status=status.value,
                )
            logger.info(
                f"[WORKER] Request {request.request_id} already broadcasted as "
                f"{request.tx_hash}, resuming confirmation wait"
            )
            tx_hash = request.tx_hash
        else:
            if not await self._open_episode(job, request):
                return
            tx_hash = await self._broadcast(job, request)

        await self._confirm(job, request, tx_hash)

    def _should_process(self, job: Job, request: Optional[WithdrawalRequest]) -> bool:
        """Idempotency guard against redelivered or duplicate jobs."""
        if request is None:
            logger.info(f"[WORKER] Skipping job {job.id}, DB request {job.db_id} not found.")
            return False

        if WithdrawalStatus(request.status) in WITHDRAWAL_TERMINAL:
            logger.info(
                f"[WORKER] Skipping job {job.id}, request already in a final state: {request.status}."
            )
            return False

        owner = request.processing_job_id
        if owner is not None and owner != job.id:
            logger.warning(
                f"[WORKER] Skipping job {job.id}, request {request.request_id} is being "
                f"processed by job {owner}."
            )
            return False

        return True

    async def _open_episode(self, job: Job, request: WithdrawalRequest) -> bool:
        """Move to PROCESSING on the first attempt; returns False if a race was lost."""
        status = WithdrawalStatus(request.status)

        if status == WithdrawalStatus.PENDING_SIGNATURE:
            async with self.db.session() as session:
                repo = WithdrawalRepository(session)
                started = await repo.transition(
                    job.db_id,
                    WithdrawalStatus.PROCESSING,
                    error_message=None,
                    processing_job_id=job.id,
                )
            if not started:
                # Cancelled, or claimed by another job, since we loaded it
                current = await self._load(job.db_id)
                logger.info(
                    f"[WORKER] Skipping job {job.id}, request {request.request_id} moved to "
                    f"{current.status if current else 'deleted'} before processing started."
                )
                return False
            return True

        if job.attempts_made == 0:
            # New episode on a row left in PROCESSING by an earlier job lineage
            async with self.db.session() as session:
                repo = WithdrawalRepository(session)
                await repo.record_error(job.db_id, None)
        return True

    async def _broadcast(self, job: Job, request: WithdrawalRequest) -> str:
        """Resolve amount and fees, submit the transfer and record BROADCASTED."""
        decimals = await self.chain.get_token_decimals(request.token_contract_address)
        amount_units = to_base_units(request.amount, decimals)

        fees = await self.chain.get_fee_data()
        logger.info(f"[WORKER] Current network fee data: {fees}")

        await self._reserve_submission(job, request)

        logger.info(
            f"[WORKER] Broadcasting ERC20 transfer for request {request.request_id} "
            f"({request.amount} = {amount_units} base units at {decimals} decimals)"
        )
        try:
            tx_hash = await self.chain.submit_token_transfer(
                request.token_contract_address,
                request.destination_address,
                amount_units,
                fees,
            )
        except ChainError:
            # Rejected by the client or node; anything else keeps the reservation
            async with self.db.session() as session:
                await WithdrawalRepository(session).release_submission(job.db_id, job.lease_token)
            raise

        async with self.db.session() as session:
            repo = WithdrawalRepository(session)
            recorded = await repo.transition(
                job.db_id,
                WithdrawalStatus.BROADCASTED,
                tx_hash=tx_hash,
                owner_job_id=job.id,
                submission_lease=job.lease_token,
            )
        if not recorded:
            raise ConflictError(
                f"Withdrawal {job.db_id} left PROCESSING while job {job.id} "
                f"broadcast transaction {tx_hash}"
            )

        logger.info(
            f"[WORKER] Transaction broadcasted for {request.request_id}. TxHash: {tx_hash}"
        )
        return tx_hash

    async def _reserve_submission(self, job: Job, request: WithdrawalRequest) -> None:
        """Claim the right to submit for this lease, or raise ConflictError."""
        async with self.db.session() as session:
            repo = WithdrawalRepository(session)
            if await repo.claim_submission(job.db_id, job.id, job.lease_token):
                return
            current = await repo.get_withdrawal(job.db_id)

        if current is not None and current.submitting_lease is not None:
            # The earlier holder may still be running, or may have died mid-submit
            raise ConflictError(
                f"Withdrawal {request.request_id} has a submission in flight from an "
                f"earlier delivery of job {job.id}; not sending the transfer again",
                current_status=current.status,
            )
        raise ConflictError(
            f"Withdrawal {job.db_id} moved to "
            f"{current.status if current else 'deleted'} before job {job.id} could submit",
            current_status=current.status if current else None,
        )

    async def _confirm(self, job: Job, request: WithdrawalRequest, tx_hash: str) -> None:
        """Wait for confirmation and record COMPLETED."""
        receipt = await self.chain.wait_for_confirmations(tx_hash, self.confirmations)

        async with self.db.session() as session:
            repo = WithdrawalRepository(session)
            completed = await repo.transition(
                job.db_id,
                WithdrawalStatus.COMPLETED,
                owner_job_id=job.id,
            )
        if not completed:
            current = await self._load(job.db_id)
            if current is not None and current.status == WithdrawalStatus.COMPLETED.value:
                return
            raise ConflictError(
                f"Withdrawal {job.db_id} could not be completed from status "
                f"{current.status if current else 'deleted'}",
                current_status=current.status if current else None,
            )

        logger.info(
            f"[WORKER] Transaction confirmed for {request.request_id} "
            f"in block {receipt.block_number}."
        )

    async def mark_failed(self, job: Job, error: str) -> None:
        """Record FAILED and the error for an exhausted job."""
        async with self.db.session() as session:
            repo = WithdrawalRepository(session)
            request = await repo.get_withdrawal(job.db_id)
            if request is None:
                logger.warning(f"[WORKER-FATAL] DB request {job.db_id} no longer exists")
                return

            if await repo.transition(
                job.db_id,
                WithdrawalStatus.FAILED,
                error_message=error,
                owner_job_id=job.id,
            ):
                return

            status = WithdrawalStatus(request.status)
            owner = request.processing_job_id
            if status in WITHDRAWAL_TERMINAL or owner not in (None, job.id):
                logger.warning(
                    f"[WORKER-FATAL] Leaving request {request.request_id} in {status.value}"
                )
                return

            # PENDING_SIGNATURE or BROADCASTED have no edge to FAILED
            await repo.record_error(job.db_id, error)
            logger.warning(
                f"[WORKER-FATAL] Request {request.request_id} stays {status.value}; "
                f"error recorded for manual review"
            )

    async def _load(self, db_id: int) -> Optional[WithdrawalRequest]:
        async with self.db.session() as session:
            return await WithdrawalRepository(session).get_withdrawal(db_id)
