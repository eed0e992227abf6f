"""Withdrawal manager: intake, cancel, status and relay submission.

Intake persists a request row and enqueues one job referencing it. All
on-chain work happens in the processors; nothing here talks to the chain.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Optional

from ortenberg.errors import InfrastructureError, NotFoundError
from ortenberg.ledger.database import Database
from ortenberg.ledger.models import WithdrawalHistory, WithdrawalRequest
from ortenberg.ledger.repository import BroadcastRepository, WithdrawalRepository
from ortenberg.queue.base import (
    RAW_BROADCAST_POLICY,
    RAW_BROADCAST_QUEUE,
    WITHDRAWAL_POLICY,
    WITHDRAWAL_QUEUE,
    JobQueue,
)

logger = logging.getLogger(__name__)

# Job names, kept for broker inspection
PROCESS_WITHDRAWAL_JOB = "process-withdrawal"
BROADCAST_RAW_TX_JOB = "broadcast-raw-tx"

MAX_PAGE_SIZE = 100


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def serialize_history(entry: WithdrawalHistory) -> dict[str, Any]:
    return {
        "id": entry.id,
        "status": str(entry.status),
        "createdAt": _isoformat(entry.created_at),
    }


def serialize_withdrawal(
    request: WithdrawalRequest, history: Optional[list[WithdrawalHistory]] = None
) -> dict[str, Any]:
    """API representation of a request row."""
    data = {
        "id": request.id,
        "requestId": request.request_id,
        "status": str(request.status),
        "treasuryContractAddress": request.treasury_contract_address,
        "destinationAddress": request.destination_address,
        "tokenContractAddress": request.token_contract_address,
        "amount": request.amount,
        "partiallySignedTx": request.partially_signed_tx,
        "txHash": request.tx_hash,
        "errorMessage": request.error_message,
        "createdAt": _isoformat(request.created_at),
        "updatedAt": _isoformat(request.updated_at),
    }
    if history is not None:
        data["history"] = [serialize_history(h) for h in history]
    return data


class WithdrawalManager:
    """Front door for bank-authorized withdrawals and raw relays."""

    def __init__(self, database: Database, queue: JobQueue):
        self.db = database
        self.queue = queue

    async def submit_withdrawal(
        self,
        request_id: str,
        treasury_contract_address: str,
        destination_address: str,
        token_contract_address: str,
        amount: str,
        partially_signed_tx: str,
    ) -> dict[str, Any]:
        """Persist a new withdrawal and enqueue it.

        Raises:
            DuplicateError: request_id already submitted
        """
        async with self.db.session() as session:
            request = await WithdrawalRepository(session).create_withdrawal(
                request_id=request_id,
                treasury_contract_address=treasury_contract_address,
                destination_address=destination_address,
                token_contract_address=token_contract_address,
                amount=amount,
                partially_signed_tx=partially_signed_tx,
            )
            db_id = request.id

        await self._enqueue(WITHDRAWAL_QUEUE, PROCESS_WITHDRAWAL_JOB, db_id, WITHDRAWAL_POLICY)
        logger.info(f"[INFO] New request {request_id} saved and enqueued for processing.")

        return {
            "requestId": request_id,
            "receivedAt": _isoformat(datetime.now(timezone.utc)),
        }

    async def cancel_request(self, request_id: str) -> dict[str, Any]:
        """Cancel a request still awaiting processing.

        Raises:
            NotFoundError: unknown request_id
            ConflictError: request already picked up or finished
        """
        async with self.db.session() as session:
            request = await WithdrawalRepository(session).cancel(request_id)
            status = str(request.status)

        logger.info(f"[INFO] Request cancelled by client: {request_id}")
        return {"requestId": request_id, "status": status}

    async def get_request_status(self, request_id: str) -> dict[str, Any]:
        """Current state of a request with its full history."""
        async with self.db.session() as session:
            repo = WithdrawalRepository(session)
            request = await repo.get_by_request_id(request_id)
            if request is None:
                raise NotFoundError("Request not found.")
            history = await repo.get_history(request.id)
            return serialize_withdrawal(request, history)

    async def list_requests(self, page: int = 1, page_size: int = 10) -> dict[str, Any]:
        """One page of requests, newest first."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        async with self.db.session() as session:
            requests, total = await WithdrawalRepository(session).list_withdrawals(
                page=page, page_size=page_size
            )
            data = [serialize_withdrawal(r) for r in requests]

        return {
            "data": data,
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "total": total,
                "totalPages": math.ceil(total / page_size),
            },
        }

    async def submit_raw_broadcast(
        self, raw_tx: str, client_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Persist a client-signed transaction and enqueue its relay."""
        async with self.db.session() as session:
            broadcast = await BroadcastRepository(session).create_broadcast(raw_tx, client_id)
            db_id = broadcast.id

        await self._enqueue(RAW_BROADCAST_QUEUE, BROADCAST_RAW_TX_JOB, db_id, RAW_BROADCAST_POLICY)
        logger.info(f"[INFO] New raw transaction {db_id} received and enqueued for broadcasting.")

        return {"broadcastId": db_id, "status": "PENDING"}

    async def check_health(self) -> tuple[dict[str, Any], bool]:
        """Probe the database and the queue.

        Returns:
            (health report, is_healthy)
        """
        health: dict[str, Any] = {
            "database": {"status": "OK", "message": "Connected"},
            "queue": {"status": "OK", "message": "Connected"},
            "overallStatus": "OK",
            "timestamp": _isoformat(datetime.now(timezone.utc)),
        }
        healthy = True

        try:
            await self.db.ping()
        except InfrastructureError as e:
            health["database"] = {"status": "ERROR", "message": str(e)}
            healthy = False
            logger.error(f"[HEALTH-CHECK] Database connection failed: {e}")

        try:
            await self.queue.ping()
        except InfrastructureError as e:
            health["queue"] = {"status": "ERROR", "message": str(e)}
            healthy = False
            logger.error(f"[HEALTH-CHECK] Queue connection failed: {e}")

        if not healthy:
            health["overallStatus"] = "ERROR"
        return health, healthy

    async def _enqueue(self, queue: str, name: str, db_id: int, policy) -> None:
        try:
            await self.queue.enqueue(queue, name, db_id, policy)
        except Exception as e:
            # Row is persisted but has no job; surface it for manual re-enqueue
            logger.error(f"[ERROR] Failed to enqueue {name} for DB id {db_id}: {e}")
            raise InfrastructureError(f"Failed to enqueue {name} for DB id {db_id}") from e
