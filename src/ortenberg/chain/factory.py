"""Factory for creating the chain client."""

import logging

from ortenberg.chain.base import ChainClient
from ortenberg.config import NetworkConfig, Settings

logger = logging.getLogger(__name__)


def create_chain_client(settings: Settings, network: NetworkConfig) -> ChainClient:
    """Build the chain client for the resolved network.

    DRY_RUN=true (default) selects the simulated client; otherwise the
    JSON-RPC client for `network` is used.
    """
    if settings.dry_run:
        from ortenberg.chain.dryrun import DryRunChainClient

        logger.warning("DRY_RUN enabled - no transactions will reach the network")
        return DryRunChainClient()

    from ortenberg.chain.rpc import JsonRpcChainClient

    logger.info(f"Using {network.name} (chain {network.chain_id}) via {network.rpc_url}")
    return JsonRpcChainClient(network)
