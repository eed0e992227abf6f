"""Dry-run chain client (no real transactions)."""

import hashlib
import logging

from ortenberg.chain.base import ChainClient, FeeData, TransactionReceipt

logger = logging.getLogger(__name__)


class DryRunChainClient(ChainClient):
    """Simulated client that returns deterministic fake hashes.

    Every submission is "mined" immediately, so withdrawals flow through the
    full state machine without touching a network.
    """

    def __init__(self, decimals: int = 6):
        self.decimals = decimals
        self._counter = 0
        self._block = 1

    async def get_fee_data(self) -> FeeData:
        """Return a fixed fee estimate."""
        return FeeData(max_fee_per_gas=30 * 10**9, max_priority_fee_per_gas=1 * 10**9)

    async def get_token_decimals(self, token_address: str) -> int:
        """Same decimals for every token."""
        return self.decimals

    async def submit_token_transfer(
        self,
        token_address: str,
        destination: str,
        amount_units: int,
        fees: FeeData,
    ) -> str:
        """Simulate an ERC20 transfer."""
        tx_hash = self._fake_hash(f"{token_address}:{destination}:{amount_units}")
        logger.info(
            f"[DRY-RUN] Transfer of {amount_units} base units of {token_address} "
            f"to {destination} ({fees}) -> {tx_hash}"
        )
        return tx_hash

    async def broadcast_raw_transaction(self, raw_tx: str) -> str:
        """Simulate broadcasting a signed transaction."""
        tx_hash = self._fake_hash(raw_tx)
        logger.info(f"[DRY-RUN] Raw transaction broadcast -> {tx_hash}")
        return tx_hash

    async def wait_for_confirmations(
        self, tx_hash: str, confirmations: int = 1
    ) -> TransactionReceipt:
        """Simulated transactions are confirmed immediately."""
        self._block += 1
        return TransactionReceipt(
            tx_hash=tx_hash,
            block_number=self._block,
            confirmations=confirmations,
        )

    def _fake_hash(self, seed: str) -> str:
        self._counter += 1
        return "0x" + hashlib.sha256(f"{seed}:{self._counter}".encode()).hexdigest()
