"""Shared processor interface and terminal-failure glue.

A processor makes one attempt at progress per delivery and lets errors
propagate; the dispatch loop turns them into retry or exhaustion outcomes.
Only `on_exhausted` writes the FAILED state. It runs once per exhausted job,
and again only if an earlier run raised before finishing.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ortenberg.alerts.base import Alert, AlertSink
from ortenberg.chain.base import ChainClient
from ortenberg.errors import TerminalProcessingError
from ortenberg.ledger.database import Database
from ortenberg.queue.base import Job, JobOutcome, RetryPolicy
from ortenberg.utils.locks import RequestLocks

logger = logging.getLogger(__name__)

# Confirmations required before a transaction counts as final
REQUIRED_CONFIRMATIONS = 1


class JobProcessor(ABC):
    """Drives one kind of persisted request through its state machine."""

    #: Queue this processor consumes
    queue_name: str
    #: Retry contract required from the queue
    policy: RetryPolicy
    #: Entity kind, used for lock keys and log tags
    kind: str
    #: Title of the exhaustion alert
    alert_title: str

    def __init__(
        self,
        database: Database,
        chain: ChainClient,
        alerts: AlertSink,
        locks: Optional[RequestLocks] = None,
        confirmations: int = REQUIRED_CONFIRMATIONS,
    ):
        self.db = database
        self.chain = chain
        self.alerts = alerts
        self.locks = locks or RequestLocks()
        self.confirmations = confirmations

    @property
    def log_tag(self) -> str:
        return self.kind.upper()

    @abstractmethod
    async def process(self, job: Job) -> None:
        """Attempt to advance the referenced request. Errors propagate."""
        pass

    @abstractmethod
    async def mark_failed(self, job: Job, error: str) -> None:
        """Persist the terminal failure for the referenced request."""
        pass

    async def on_exhausted(self, job: Job, outcome: JobOutcome) -> None:
        """Terminal-failure handler: persist FAILED, then alert.

        A persistence error propagates before any alert is sent; the worker
        keeps the job exhausting and calls this handler again later, so a
        crashed FAILED write is attempted again.
        """
        failure = TerminalProcessingError(
            job.id, outcome.attempts, outcome.error or "unknown error"
        )
        logger.error(f"[{self.log_tag}-FATAL] {failure}")

        await self.mark_failed(job, failure.cause)

        await self.alerts.send_alert(
            Alert(
                title=self.alert_title,
                details={
                    "job_id": failure.job_id,
                    "database_id": job.db_id,
                    "attempts": failure.attempts,
                    "error": failure.cause,
                },
            )
        )
