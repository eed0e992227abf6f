"""Raw transaction broadcast processor.

PENDING -> BROADCASTED -> CONFIRMED, or PENDING -> FAILED when retries are
exhausted. Clients sign their own transactions; this processor only relays
and tracks them.
"""

import logging
from typing import Optional

from ortenberg.errors import ConflictError
from ortenberg.ledger.models import BroadcastStatus, RawTransactionBroadcast
from ortenberg.ledger.repository import BroadcastRepository
from ortenberg.processors.base import JobProcessor
from ortenberg.queue.base import RAW_BROADCAST_POLICY, RAW_BROADCAST_QUEUE, Job

logger = logging.getLogger(__name__)


class RawBroadcastProcessor(JobProcessor):
    """Relays client-signed transactions and waits for confirmation."""

    queue_name = RAW_BROADCAST_QUEUE
    policy = RAW_BROADCAST_POLICY
    kind = "broadcast"
    alert_title = "Raw Transaction Broadcast Job Failed"

    async def process(self, job: Job) -> None:
        """Broadcast the referenced transaction if it is still PENDING."""
        logger.info(
            f"[RAW-TX-WORKER] Processing job {job.id} (Attempt #{job.attempt}) "
            f"for DB request {job.db_id}"
        )
        async with self.locks.hold(self.kind, job.db_id, operation=f"job {job.id}"):
            broadcast = await self._load(job.db_id)
            if broadcast is None or broadcast.status != BroadcastStatus.PENDING.value:
                logger.info(
                    f"[RAW-TX-WORKER] Skipping job {job.id}, request not found "
                    f"or not in pending state."
                )
                return

            logger.info(f"[RAW-TX-WORKER] Broadcasting raw transaction for request {broadcast.id}")
            tx_hash = await self.chain.broadcast_raw_transaction(broadcast.raw_tx)

            await self._advance(job, BroadcastStatus.BROADCASTED, tx_hash=tx_hash)
            logger.info(
                f"[RAW-TX-WORKER] Transaction broadcasted for {broadcast.id}. TxHash: {tx_hash}"
            )

            await self.chain.wait_for_confirmations(tx_hash, self.confirmations)

            await self._advance(job, BroadcastStatus.CONFIRMED)
            logger.info(f"[RAW-TX-WORKER] Transaction confirmed for {broadcast.id}.")

    async def _advance(
        self, job: Job, target: BroadcastStatus, tx_hash: Optional[str] = None
    ) -> None:
        async with self.db.session() as session:
            moved = await BroadcastRepository(session).transition(
                job.db_id, target, tx_hash=tx_hash
            )
        if not moved:
            raise ConflictError(
                f"Broadcast {job.db_id} could not move to {target.value}"
                + (f" after sending {tx_hash}" if tx_hash else "")
            )

    async def mark_failed(self, job: Job, error: str) -> None:
        """Record FAILED and the error for an exhausted job."""
        async with self.db.session() as session:
            repo = BroadcastRepository(session)
            if await repo.transition(job.db_id, BroadcastStatus.FAILED, error_message=error):
                return

            broadcast = await repo.get_broadcast(job.db_id)
            if broadcast is None:
                logger.warning(f"[RAW-TX-WORKER-FATAL] DB request {job.db_id} no longer exists")
                return

            if broadcast.status == BroadcastStatus.BROADCASTED.value:
                # Already on the network; keep the hash visible
                await repo.record_error(job.db_id, error)
            logger.warning(
                f"[RAW-TX-WORKER-FATAL] Leaving request {broadcast.id} in {broadcast.status}"
            )

    async def _load(self, db_id: int) -> Optional[RawTransactionBroadcast]:
        async with self.db.session() as session:
            return await BroadcastRepository(session).get_broadcast(db_id)
