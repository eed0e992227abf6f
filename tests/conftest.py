"""Pytest configuration and fixtures."""

import os
from collections import defaultdict
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["ALERTING_WEBHOOK_URL"] = ""
os.environ["API_KEY"] = ""
os.environ["DRY_RUN"] = "true"
os.environ["DEBUG"] = "true"

from ortenberg.alerts.base import Alert, AlertSink
from ortenberg.chain.base import ChainClient, FeeData, TransactionReceipt
from ortenberg.errors import TransientChainError
from ortenberg.ledger.database import Database
from ortenberg.ledger.repository import WithdrawalRepository
from ortenberg.processors.raw_broadcast import RawBroadcastProcessor
from ortenberg.processors.withdrawal import TransactionProcessor
from ortenberg.queue.sql import SqlJobQueue
from ortenberg.queue.worker import Worker
from ortenberg.services.withdrawal_manager import WithdrawalManager
from ortenberg.utils.locks import RequestLocks

TREASURY = "0x" + "11" * 20
DESTINATION = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20


class FrozenClock:
    """Controllable naive-UTC clock for the job queue."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeChainClient(ChainClient):
    """In-memory chain client with scriptable failures."""

    def __init__(self, decimals: int = 6):
        self.decimals = decimals
        self.fee_calls = 0
        self.decimals_calls = 0
        self.submitted: list[dict] = []
        self.broadcasts: list[str] = []
        self.waits: list[str] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.closed = False

    def fail(self, method: str, times: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next `times` calls of `method` raise."""
        for _ in range(times):
            self.failures[method].append(error or TransientChainError(f"{method} unavailable"))

    def _maybe_fail(self, method: str) -> None:
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def get_fee_data(self) -> FeeData:
        self.fee_calls += 1
        self._maybe_fail("get_fee_data")
        # Fees move between calls so tests can tell fetches apart
        return FeeData(
            max_fee_per_gas=(20 + self.fee_calls) * 10**9,
            max_priority_fee_per_gas=10**9,
        )

    async def get_token_decimals(self, token_address: str) -> int:
        self.decimals_calls += 1
        self._maybe_fail("get_token_decimals")
        return self.decimals

    async def submit_token_transfer(
        self,
        token_address: str,
        destination: str,
        amount_units: int,
        fees: FeeData,
    ) -> str:
        self._maybe_fail("submit_token_transfer")
        tx_hash = "0x" + f"{len(self.submitted) + 1:064x}"
        self.submitted.append(
            {
                "token": token_address,
                "destination": destination,
                "amount_units": amount_units,
                "fees": fees,
                "tx_hash": tx_hash,
            }
        )
        return tx_hash

    async def broadcast_raw_transaction(self, raw_tx: str) -> str:
        self._maybe_fail("broadcast_raw_transaction")
        self.broadcasts.append(raw_tx)
        return "0x" + f"{0xB000 + len(self.broadcasts):064x}"

    async def wait_for_confirmations(
        self, tx_hash: str, confirmations: int = 1
    ) -> TransactionReceipt:
        self.waits.append(tx_hash)
        self._maybe_fail("wait_for_confirmations")
        return TransactionReceipt(tx_hash=tx_hash, block_number=100, confirmations=confirmations)

    async def close(self) -> None:
        self.closed = True


class RecordingAlertSink(AlertSink):
    """Collects alerts instead of delivering them."""

    def __init__(self):
        self.alerts: list[Alert] = []

    async def send_alert(self, alert: Alert) -> bool:
        self.alerts.append(alert)
        return True


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database, fresh per test."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def queue(database, clock) -> SqlJobQueue:
    return SqlJobQueue(database, clock=clock)


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def locks() -> RequestLocks:
    return RequestLocks()


@pytest.fixture
def manager(database, queue) -> WithdrawalManager:
    return WithdrawalManager(database, queue)


@pytest.fixture
def tx_processor(database, chain, alerts, locks) -> TransactionProcessor:
    return TransactionProcessor(database, chain, alerts, locks=locks)


@pytest.fixture
def broadcast_processor(database, chain, alerts, locks) -> RawBroadcastProcessor:
    return RawBroadcastProcessor(database, chain, alerts, locks=locks)


@pytest.fixture
def withdrawal_worker(queue, tx_processor) -> Worker:
    return Worker(queue, tx_processor, worker_id="worker-a", lease_seconds=30, poll_interval=0.01)


@pytest.fixture
def broadcast_worker(queue, broadcast_processor) -> Worker:
    return Worker(queue, broadcast_processor, worker_id="worker-b", lease_seconds=30, poll_interval=0.01)


@pytest.fixture
def submit_withdrawal(manager, database):
    """Submit a withdrawal through the manager and return its DB id."""

    async def _submit(request_id: str = "req-1", amount: str = "150.25") -> int:
        await manager.submit_withdrawal(
            request_id=request_id,
            treasury_contract_address=TREASURY,
            destination_address=DESTINATION,
            token_contract_address=TOKEN,
            amount=amount,
            partially_signed_tx="0xdeadbeef",
        )
        async with database.session() as session:
            request = await WithdrawalRepository(session).get_by_request_id(request_id)
            return request.id

    return _submit


@pytest.fixture
def drain(clock):
    """Run a worker until no job is due, jumping the clock over backoff delays."""

    async def _drain(worker: Worker, max_runs: int = 20) -> list:
        outcomes = []
        for _ in range(max_runs):
            outcome = await worker.run_once()
            if outcome is None:
                clock.advance(3600)
                outcome = await worker.run_once()
                if outcome is None:
                    break
            outcomes.append(outcome)
        return outcomes

    return _drain
