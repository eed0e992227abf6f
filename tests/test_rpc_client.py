"""Tests for the JSON-RPC chain client against a mocked node."""

import json

import httpx
import pytest
from eth_account import Account

from ortenberg.chain.base import FeeData
from ortenberg.chain.dryrun import DryRunChainClient
from ortenberg.chain.factory import create_chain_client
from ortenberg.chain.rpc import JsonRpcChainClient, encode_transfer
from ortenberg.config import NetworkConfig, Settings
from ortenberg.errors import ChainError, TransactionRevertedError, TransientChainError

# Well-known throwaway key from the web3.py documentation
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TOKEN = "0x" + "33" * 20
DESTINATION = "0x" + "22" * 20


class FakeNode:
    """Answers JSON-RPC calls from a method -> result table."""

    def __init__(self, **results):
        self.results = results
        self.calls: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        result = self.results.get(body["method"])
        if callable(result):
            result = result(body["params"])
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **result})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def methods(self) -> list[str]:
        return [call["method"] for call in self.calls]


def make_client(node: FakeNode, private_key=None) -> JsonRpcChainClient:
    network = NetworkConfig(
        name="sepolia",
        chain_id=11155111,
        rpc_url="https://rpc.example",
        private_key=private_key,
        confirmation_poll_interval=0,
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(node))
    return JsonRpcChainClient(network, http_client=http_client)


class TestFeeData:
    """Tests for EIP-1559 fee estimation."""

    @pytest.mark.asyncio
    async def test_fee_from_base_fee_and_tip(self):
        """Test maxFeePerGas is twice the base fee plus the tip."""
        node = FakeNode(
            eth_getBlockByNumber={"baseFeePerGas": hex(10 * 10**9)},
            eth_maxPriorityFeePerGas=hex(2 * 10**9),
        )
        client = make_client(node)

        fees = await client.get_fee_data()

        assert fees.max_priority_fee_per_gas == 2 * 10**9
        assert fees.max_fee_per_gas == 22 * 10**9

    @pytest.mark.asyncio
    async def test_priority_fee_fallback(self):
        """Test a node without eth_maxPriorityFeePerGas gets a 1 gwei tip."""
        node = FakeNode(
            eth_getBlockByNumber={"baseFeePerGas": hex(10 * 10**9)},
            eth_maxPriorityFeePerGas={"error": {"code": -32601, "message": "method not found"}},
        )
        client = make_client(node)

        fees = await client.get_fee_data()

        assert fees.max_priority_fee_per_gas == 10**9
        assert fees.max_fee_per_gas == 21 * 10**9

    @pytest.mark.asyncio
    async def test_pre_london_block_is_an_error(self):
        """Test a block without a base fee raises instead of guessing."""
        client = make_client(FakeNode(eth_getBlockByNumber={"number": "0x1"}))

        with pytest.raises(TransientChainError, match="baseFeePerGas"):
            await client.get_fee_data()


class TestCalls:
    """Tests for call error mapping and contract reads."""

    @pytest.mark.asyncio
    async def test_token_decimals(self):
        """Test decimals() is read via eth_call."""
        node = FakeNode(eth_call="0x" + "6".zfill(64))
        client = make_client(node)

        assert await client.get_token_decimals(TOKEN) == 6
        assert node.calls[0]["params"][0] == {"to": TOKEN, "data": "0x313ce567"}

    @pytest.mark.asyncio
    async def test_empty_decimals_result(self):
        """Test a non-contract address raises."""
        client = make_client(FakeNode(eth_call="0x"))

        with pytest.raises(TransientChainError, match="no decimals"):
            await client.get_token_decimals(TOKEN)

    @pytest.mark.asyncio
    async def test_rpc_error_is_transient(self):
        """Test a JSON-RPC error object is raised as a retryable error."""
        client = make_client(
            FakeNode(eth_sendRawTransaction={"error": {"code": -32000, "message": "nonce too low"}})
        )

        with pytest.raises(TransientChainError, match="nonce too low"):
            await client.broadcast_raw_transaction("0x02")

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self):
        """Test an HTTP failure is raised as a retryable error."""
        client = make_client(FakeNode(eth_blockNumber=httpx.Response(502)))

        with pytest.raises(TransientChainError, match="eth_blockNumber"):
            await client._call("eth_blockNumber")

    @pytest.mark.asyncio
    async def test_broadcast_adds_hex_prefix(self):
        """Test raw transactions without 0x are prefixed."""
        node = FakeNode(eth_sendRawTransaction="0x" + "ab" * 32)
        client = make_client(node)

        tx_hash = await client.broadcast_raw_transaction("02f86b")

        assert tx_hash == "0x" + "ab" * 32
        assert node.calls[0]["params"] == ["0x02f86b"]


class TestSubmit:
    """Tests for signing and submitting ERC20 transfers."""

    @pytest.mark.asyncio
    async def test_requires_service_wallet(self):
        """Test submission without a key fails."""
        client = make_client(FakeNode())

        with pytest.raises(ChainError, match="SERVICE_WALLET_PRIVATE_KEY"):
            await client.submit_token_transfer(TOKEN, DESTINATION, 1, None)

    @pytest.mark.asyncio
    async def test_signs_and_sends(self):
        """Test a type-2 transfer is signed with the service key and sent."""
        node = FakeNode(
            eth_getTransactionCount="0x5",
            eth_estimateGas=hex(50_000),
            eth_sendRawTransaction="0x" + "cd" * 32,
        )
        client = make_client(node, private_key=TEST_KEY)

        tx_hash = await client.submit_token_transfer(
            TOKEN, DESTINATION, 1_500_000, FeeData(30 * 10**9, 10**9)
        )

        assert tx_hash == "0x" + "cd" * 32
        assert node.methods() == [
            "eth_getTransactionCount",
            "eth_estimateGas",
            "eth_sendRawTransaction",
        ]
        assert node.calls[0]["params"] == [Account.from_key(TEST_KEY).address, "pending"]
        assert node.calls[1]["params"][0]["data"] == encode_transfer(DESTINATION, 1_500_000)

        raw = node.calls[2]["params"][0]
        assert raw.startswith("0x02")
        assert client.address == Account.from_key(TEST_KEY).address


class TestConfirmations:
    """Tests for receipt polling."""

    @pytest.mark.asyncio
    async def test_waits_until_depth_reached(self):
        """Test polling continues until enough blocks are on top."""
        heads = iter([hex(100), hex(101), hex(102)])
        mined = {"blockNumber": hex(100), "status": "0x1", "gasUsed": hex(21000)}
        receipts = iter([None])

        node = FakeNode(
            # Not yet mined on the first poll
            eth_getTransactionReceipt=lambda params: next(receipts, mined),
            eth_blockNumber=lambda params: next(heads),
        )
        client = make_client(node)

        result = await client.wait_for_confirmations("0xaa", confirmations=3)

        assert result.block_number == 100
        assert result.confirmations == 3
        assert result.gas_used == 21000
        assert node.methods().count("eth_blockNumber") == 3

    @pytest.mark.asyncio
    async def test_revert_raises(self):
        """Test a failed receipt status raises TransactionRevertedError."""
        node = FakeNode(
            eth_getTransactionReceipt={"blockNumber": hex(100), "status": "0x0"},
            eth_blockNumber=hex(100),
        )
        client = make_client(node)

        with pytest.raises(TransactionRevertedError) as exc_info:
            await client.wait_for_confirmations("0xbad")
        assert exc_info.value.tx_hash == "0xbad"


class TestEncoding:
    """Tests for calldata encoding."""

    def test_encode_transfer(self):
        """Test selector, padded address and padded amount."""
        data = encode_transfer("0x" + "AB" * 20, 255)

        assert data.startswith("0xa9059cbb")
        assert data[10:74] == "0" * 24 + "ab" * 20
        assert data[74:] == "0" * 62 + "ff"


class TestFactory:
    """Tests for selecting the chain client."""

    def test_dry_run_selected_by_default(self):
        """Test dry-run mode never builds a network client."""
        settings = Settings(dry_run=True)
        network = NetworkConfig("sepolia", 11155111, "", None)

        assert isinstance(create_chain_client(settings, network), DryRunChainClient)

    @pytest.mark.asyncio
    async def test_live_mode_uses_rpc(self):
        """Test live mode builds the JSON-RPC client for the network."""
        settings = Settings(dry_run=False, sepolia_rpc_url="https://rpc.example")
        network = NetworkConfig("sepolia", 11155111, "https://rpc.example", None)

        client = create_chain_client(settings, network)

        assert isinstance(client, JsonRpcChainClient)
        assert client.rpc_url == "https://rpc.example"
        await client.close()
