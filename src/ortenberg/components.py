"""Process-wide components, built once at startup and closed on shutdown."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ortenberg.alerts.base import AlertSink
from ortenberg.alerts.factory import create_alert_sink
from ortenberg.chain.base import ChainClient
from ortenberg.chain.factory import create_chain_client
from ortenberg.config import NetworkConfig, Settings, get_settings, resolve_network
from ortenberg.ledger.database import Database
from ortenberg.processors.base import JobProcessor
from ortenberg.processors.raw_broadcast import RawBroadcastProcessor
from ortenberg.processors.withdrawal import TransactionProcessor
from ortenberg.queue.base import JobQueue
from ortenberg.queue.sql import SqlJobQueue
from ortenberg.services.withdrawal_manager import WithdrawalManager
from ortenberg.utils.locks import RequestLocks

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything a worker or API process needs, passed by reference."""

    settings: Settings
    network: NetworkConfig
    database: Database
    queue: JobQueue
    chain: ChainClient
    alerts: AlertSink
    manager: WithdrawalManager
    locks: RequestLocks = field(default_factory=RequestLocks)
    processors: list[JobProcessor] = field(default_factory=list)

    async def close(self) -> None:
        """Release network clients and database connections."""
        await self.chain.close()
        await self.alerts.close()
        await self.database.close()


def create_components(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    queue: Optional[JobQueue] = None,
    chain: Optional[ChainClient] = None,
    alerts: Optional[AlertSink] = None,
) -> Components:
    """Build components from settings; any of them can be supplied pre-built.

    Raises:
        ConfigurationError: if the network cannot be resolved
    """
    settings = settings or get_settings()
    network = resolve_network(settings)
    logger.info(f"Resolved network: {network!r}")

    database = database or Database(settings.database_url, echo=settings.debug)
    queue = queue or SqlJobQueue(database, max_stalled=settings.max_stalled_count)
    chain = chain or create_chain_client(settings, network)
    alerts = alerts or create_alert_sink(settings)
    locks = RequestLocks()

    processors: list[JobProcessor] = [
        TransactionProcessor(database, chain, alerts, locks=locks),
        RawBroadcastProcessor(database, chain, alerts, locks=locks),
    ]

    return Components(
        settings=settings,
        network=network,
        database=database,
        queue=queue,
        chain=chain,
        alerts=alerts,
        manager=WithdrawalManager(database, queue),
        locks=locks,
        processors=processors,
    )
