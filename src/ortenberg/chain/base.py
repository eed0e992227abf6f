"""Base interface for chain RPC access.

Transfer flow used by the withdrawal processor:
1. Read token decimals from the contract
2. Scale the requested amount to base units
3. Fetch fresh EIP-1559 fee data
4. Sign and submit the ERC20 transfer with the service wallet
5. Wait for confirmations

Implementations raise ChainError subclasses and never return fallback
values for a failed call: the queue's retry policy decides what happens next.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeData:
    """EIP-1559 fee parameters in wei."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def __str__(self) -> str:
        return (
            f"maxFeePerGas={self.max_fee_per_gas / 10**9:.3f} gwei, "
            f"maxPriorityFeePerGas={self.max_priority_fee_per_gas / 10**9:.3f} gwei"
        )


@dataclass(frozen=True)
class TransactionReceipt:
    """Confirmation details of a mined transaction."""
    tx_hash: str
    block_number: int
    confirmations: int
    success: bool = True
    gas_used: Optional[int] = None


class ChainClient(ABC):
    """Abstract chain client used by the processors."""

    @abstractmethod
    async def get_fee_data(self) -> FeeData:
        """Fetch the current network fee estimate. Never cached."""
        pass

    @abstractmethod
    async def get_token_decimals(self, token_address: str) -> int:
        """Read decimals() from an ERC20 contract."""
        pass

    @abstractmethod
    async def submit_token_transfer(
        self,
        token_address: str,
        destination: str,
        amount_units: int,
        fees: FeeData,
    ) -> str:
        """Sign and submit an ERC20 transfer from the service wallet.

        Args:
            token_address: ERC20 contract address
            destination: Recipient address
            amount_units: Amount in token base units
            fees: Fee parameters fetched for this submission

        Returns:
            Transaction hash
        """
        pass

    @abstractmethod
    async def broadcast_raw_transaction(self, raw_tx: str) -> str:
        """Broadcast an already-signed transaction and return its hash."""
        pass

    @abstractmethod
    async def wait_for_confirmations(
        self, tx_hash: str, confirmations: int = 1
    ) -> TransactionReceipt:
        """Block until the transaction has `confirmations` confirmations.

        Raises:
            TransactionRevertedError: if the transaction was mined but failed
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
