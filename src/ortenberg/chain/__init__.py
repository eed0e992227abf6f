"""Chain access: RPC client interface, implementations and unit conversion."""

from ortenberg.chain.base import ChainClient, FeeData, TransactionReceipt
from ortenberg.chain.factory import create_chain_client
from ortenberg.chain.units import to_base_units

__all__ = [
    "ChainClient",
    "FeeData",
    "TransactionReceipt",
    "create_chain_client",
    "to_base_units",
]
