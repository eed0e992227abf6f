"""Ethereum JSON-RPC chain client.

Talks to the node over plain JSON-RPC with httpx and signs EIP-1559
transactions locally with eth-account. ERC20 calldata is encoded by hand
from the function selectors.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from eth_account import Account
from web3 import Web3

from ortenberg.chain.base import ChainClient, FeeData, TransactionReceipt
from ortenberg.config import NetworkConfig
from ortenberg.errors import ChainError, TransactionRevertedError, TransientChainError

logger = logging.getLogger(__name__)

# ERC20 function selectors
TRANSFER_SELECTOR = "0xa9059cbb"  # transfer(address,uint256)
DECIMALS_SELECTOR = "0x313ce567"  # decimals()

# Used when the node does not implement eth_maxPriorityFeePerGas
DEFAULT_PRIORITY_FEE = 1 * 10**9

# Headroom on top of eth_estimateGas
GAS_LIMIT_MULTIPLIER = 1.2


def encode_transfer(destination: str, amount_units: int) -> str:
    """Build calldata for transfer(address,uint256)."""
    return (
        TRANSFER_SELECTOR
        + destination[2:].lower().zfill(64)  # address padded to 32 bytes
        + hex(amount_units)[2:].zfill(64)  # uint256
    )


class JsonRpcChainClient(ChainClient):
    """Chain client for one EVM network."""

    def __init__(
        self,
        network: NetworkConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize client.

        Args:
            network: Resolved network configuration (RPC URL, chain id, key)
            http_client: Optional shared client (tests inject a mock transport)
        """
        self.network = network
        self.rpc_url = network.rpc_url
        self._client = http_client or httpx.AsyncClient(timeout=network.rpc_timeout)
        self._owns_client = http_client is None
        self._account = Account.from_key(network.private_key) if network.private_key else None
        self._request_id = 0
        # Serializes nonce lookup and submission for the shared service wallet
        self._submit_lock = asyncio.Lock()

    @property
    def address(self) -> Optional[str]:
        """Service wallet address, if a key is configured."""
        return self._account.address if self._account else None

    async def _call(self, method: str, params: Optional[list] = None) -> Any:
        """Perform one JSON-RPC call and return its result."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": self._request_id,
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise TransientChainError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise TransientChainError(f"RPC {method} returned invalid JSON") from e

        error = data.get("error")
        if error:
            message = error.get("message", error) if isinstance(error, dict) else error
            raise TransientChainError(f"RPC {method} error: {message}")

        if "result" not in data:
            raise TransientChainError(f"RPC {method} returned no result")

        return data["result"]

    async def get_fee_data(self) -> FeeData:
        """Fetch EIP-1559 fee data from the latest block."""
        block = await self._call("eth_getBlockByNumber", ["latest", False])
        if not block or block.get("baseFeePerGas") is None:
            raise TransientChainError("Latest block has no baseFeePerGas (EIP-1559 unsupported?)")
        base_fee = int(block["baseFeePerGas"], 16)

        try:
            priority_fee = int(await self._call("eth_maxPriorityFeePerGas"), 16)
        except TransientChainError as e:
            logger.warning(f"eth_maxPriorityFeePerGas unavailable ({e}), using 1 gwei")
            priority_fee = DEFAULT_PRIORITY_FEE

        return FeeData(
            max_fee_per_gas=base_fee * 2 + priority_fee,
            max_priority_fee_per_gas=priority_fee,
        )

    async def get_token_decimals(self, token_address: str) -> int:
        """Read decimals() from the token contract."""
        result = await self._call(
            "eth_call",
            [{"to": token_address, "data": DECIMALS_SELECTOR}, "latest"],
        )
        if not result or result == "0x":
            raise TransientChainError(f"Token {token_address} returned no decimals")
        return int(result, 16)

    async def submit_token_transfer(
        self,
        token_address: str,
        destination: str,
        amount_units: int,
        fees: FeeData,
    ) -> str:
        """Sign an ERC20 transfer with the service wallet and broadcast it."""
        if self._account is None:
            raise ChainError("SERVICE_WALLET_PRIVATE_KEY is not configured")

        data = encode_transfer(destination, amount_units)
        token = Web3.to_checksum_address(token_address)

        async with self._submit_lock:
            nonce = int(
                await self._call("eth_getTransactionCount", [self._account.address, "pending"]),
                16,
            )
            estimated_gas = int(
                await self._call(
                    "eth_estimateGas",
                    [{"from": self._account.address, "to": token, "data": data}],
                ),
                16,
            )

            tx = {
                "type": 2,
                "chainId": self.network.chain_id,
                "nonce": nonce,
                "to": token,
                "value": 0,
                "data": data,
                "gas": int(estimated_gas * GAS_LIMIT_MULTIPLIER),
                "maxFeePerGas": fees.max_fee_per_gas,
                "maxPriorityFeePerGas": fees.max_priority_fee_per_gas,
            }

            signed_tx = self._account.sign_transaction(tx)
            return await self.broadcast_raw_transaction(Web3.to_hex(signed_tx.raw_transaction))

    async def broadcast_raw_transaction(self, raw_tx: str) -> str:
        """Broadcast a signed transaction."""
        raw_hex = raw_tx if raw_tx.startswith("0x") else f"0x{raw_tx}"
        tx_hash = await self._call("eth_sendRawTransaction", [raw_hex])
        if not tx_hash:
            raise TransientChainError("eth_sendRawTransaction returned no hash")
        return tx_hash

    async def wait_for_confirmations(
        self, tx_hash: str, confirmations: int = 1
    ) -> TransactionReceipt:
        """Poll for the receipt until the requested depth is reached.

        There is no timeout: a transaction stuck in the mempool keeps the
        caller waiting until it is mined or the job lease is reclaimed.
        """
        while True:
            receipt = await self._call("eth_getTransactionReceipt", [tx_hash])

            if receipt and receipt.get("blockNumber"):
                mined_in = int(receipt["blockNumber"], 16)
                head = int(await self._call("eth_blockNumber"), 16)
                depth = head - mined_in + 1

                if depth >= confirmations:
                    if int(receipt.get("status", "0x1"), 16) != 1:
                        raise TransactionRevertedError(tx_hash)
                    gas_used = receipt.get("gasUsed")
                    return TransactionReceipt(
                        tx_hash=tx_hash,
                        block_number=mined_in,
                        confirmations=depth,
                        success=True,
                        gas_used=int(gas_used, 16) if gas_used else None,
                    )

            await asyncio.sleep(self.network.confirmation_poll_interval)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
