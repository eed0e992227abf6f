"""Repositories for withdrawal requests and raw transaction broadcasts.

Every status change is a single conditional UPDATE guarded by the allowed
predecessor statuses, followed by the history insert in the same
transaction. A transition method returns False when the guard did not match,
so callers can tell a lost race from a database error.
"""

import logging
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ortenberg.errors import ConflictError, DuplicateError, NotFoundError
from ortenberg.ledger.models import (
    BROADCAST_TRANSITIONS,
    WITHDRAWAL_TRANSITIONS,
    BroadcastStatus,
    RawTransactionBroadcast,
    WithdrawalHistory,
    WithdrawalRequest,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class WithdrawalRepository:
    """Database operations for withdrawal requests and their history."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_withdrawal(
        self,
        request_id: str,
        treasury_contract_address: str,
        destination_address: str,
        token_contract_address: str,
        amount: str,
        partially_signed_tx: str,
    ) -> WithdrawalRequest:
        """Persist a new request in PENDING_SIGNATURE with its first history entry.

        Raises:
            DuplicateError: if request_id already exists
        """
        if await self.get_by_request_id(request_id) is not None:
            raise DuplicateError("Duplicate request_id. This request has already been submitted.")

        withdrawal = WithdrawalRequest(
            request_id=request_id,
            status=WithdrawalStatus.PENDING_SIGNATURE.value,
            treasury_contract_address=treasury_contract_address,
            destination_address=destination_address,
            token_contract_address=token_contract_address,
            amount=amount,
            partially_signed_tx=partially_signed_tx,
        )
        self.session.add(withdrawal)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Lost a race with a concurrent submission of the same id
            raise DuplicateError(
                "Duplicate request_id. This request has already been submitted."
            ) from e

        self.session.add(
            WithdrawalHistory(
                withdrawal_id=withdrawal.id,
                status=WithdrawalStatus.PENDING_SIGNATURE.value,
            )
        )
        await self.session.flush()
        return withdrawal

    async def get_withdrawal(self, db_id: int) -> Optional[WithdrawalRequest]:
        """Get request by internal id."""
        stmt = select(WithdrawalRequest).where(WithdrawalRequest.id == db_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_request_id(self, request_id: str) -> Optional[WithdrawalRequest]:
        """Get request by the bank-supplied request id."""
        stmt = select(WithdrawalRequest).where(WithdrawalRequest.request_id == request_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_withdrawals(
        self, page: int = 1, page_size: int = 10
    ) -> tuple[list[WithdrawalRequest], int]:
        """Get one page of requests, newest first, plus the total count."""
        stmt = (
            select(WithdrawalRequest)
            .order_by(WithdrawalRequest.created_at.desc(), WithdrawalRequest.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(stmt)
        total = await self.session.scalar(select(func.count(WithdrawalRequest.id)))
        return list(result.scalars().all()), int(total or 0)

    async def get_history(self, db_id: int) -> list[WithdrawalHistory]:
        """Get the audit trail of a request in insertion order."""
        stmt = (
            select(WithdrawalHistory)
            .where(WithdrawalHistory.withdrawal_id == db_id)
            .order_by(WithdrawalHistory.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        db_id: int,
        target: WithdrawalStatus,
        *,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = _UNSET,
        processing_job_id: Optional[int] = _UNSET,
        owner_job_id: Optional[int] = None,
        submission_lease: Optional[str] = None,
    ) -> bool:
        """Move a request to `target` if its current status allows it.

        Args:
            db_id: Internal request id
            target: New status
            tx_hash: Transaction hash to store alongside the change
            error_message: New error message (None clears it)
            processing_job_id: New episode owner
            owner_job_id: Only apply when the episode is unowned or owned by this job
            submission_lease: Only apply when this lease started the pending submission

        Returns:
            True if the row changed and a history entry was written
        """
        values: dict[str, Any] = {"status": target.value}
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        if error_message is not _UNSET:
            values["error_message"] = error_message
        if processing_job_id is not _UNSET:
            values["processing_job_id"] = processing_job_id

        sources = [s.value for s in WITHDRAWAL_TRANSITIONS[target]]
        stmt = (
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == db_id, WithdrawalRequest.status.in_(sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if owner_job_id is not None:
            stmt = stmt.where(
                (WithdrawalRequest.processing_job_id.is_(None))
                | (WithdrawalRequest.processing_job_id == owner_job_id)
            )
        if submission_lease is not None:
            stmt = stmt.where(WithdrawalRequest.submitting_lease == submission_lease)

        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False

        self.session.add(WithdrawalHistory(withdrawal_id=db_id, status=target.value))
        await self.session.flush()
        return True

    async def claim_submission(self, db_id: int, job_id: int, lease_token: str) -> bool:
        """Reserve the transfer submission of a PROCESSING request for one lease.

        Succeeds only while no other lease holds the reservation, so a job
        redelivered after a lost lease cannot send the transfer again.
        """
        stmt = (
            update(WithdrawalRequest)
            .where(
                WithdrawalRequest.id == db_id,
                WithdrawalRequest.status == WithdrawalStatus.PROCESSING.value,
                WithdrawalRequest.processing_job_id == job_id,
                WithdrawalRequest.submitting_lease.is_(None),
            )
            .values(submitting_lease=lease_token)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_submission(self, db_id: int, lease_token: str) -> bool:
        """Drop a reservation after a submission that the node rejected."""
        stmt = (
            update(WithdrawalRequest)
            .where(
                WithdrawalRequest.id == db_id,
                WithdrawalRequest.submitting_lease == lease_token,
            )
            .values(submitting_lease=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def record_error(self, db_id: int, error_message: Optional[str]) -> None:
        """Store an error message without changing status."""
        stmt = (
            update(WithdrawalRequest)
            .where(WithdrawalRequest.id == db_id)
            .values(error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def cancel(self, request_id: str) -> WithdrawalRequest:
        """Cancel a request that has not been picked up yet.

        Raises:
            NotFoundError: unknown request_id
            ConflictError: status is not PENDING_SIGNATURE
        """
        withdrawal = await self.get_by_request_id(request_id)
        if withdrawal is None:
            raise NotFoundError("Request not found.")

        if not await self.transition(withdrawal.id, WithdrawalStatus.CANCELLED):
            await self.session.refresh(withdrawal, attribute_names=["status"])
            raise ConflictError(
                f"Cannot cancel request. Status is already '{withdrawal.status}'.",
                current_status=str(withdrawal.status),
            )

        await self.session.refresh(withdrawal)
        return withdrawal


class BroadcastRepository:
    """Database operations for raw transaction broadcasts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_broadcast(
        self, raw_tx: str, client_id: Optional[str] = None
    ) -> RawTransactionBroadcast:
        """Persist a new relay request in PENDING."""
        broadcast = RawTransactionBroadcast(
            raw_tx=raw_tx,
            client_id=client_id,
            status=BroadcastStatus.PENDING.value,
        )
        self.session.add(broadcast)
        await self.session.flush()
        return broadcast

    async def get_broadcast(self, db_id: int) -> Optional[RawTransactionBroadcast]:
        """Get relay request by id."""
        stmt = select(RawTransactionBroadcast).where(RawTransactionBroadcast.id == db_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        db_id: int,
        target: BroadcastStatus,
        *,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = _UNSET,
    ) -> bool:
        """Move a relay request to `target` if its current status allows it."""
        values: dict[str, Any] = {"status": target.value}
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        if error_message is not _UNSET:
            values["error_message"] = error_message

        sources = [s.value for s in BROADCAST_TRANSITIONS[target]]
        stmt = (
            update(RawTransactionBroadcast)
            .where(
                RawTransactionBroadcast.id == db_id,
                RawTransactionBroadcast.status.in_(sources),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def record_error(self, db_id: int, error_message: Optional[str]) -> None:
        """Store an error message without changing status."""
        stmt = (
            update(RawTransactionBroadcast)
            .where(RawTransactionBroadcast.id == db_id)
            .values(error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
