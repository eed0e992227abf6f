"""Job queue contract.

Delivery guarantees required by the processors:
- at-least-once delivery, a job is never leased to two consumers at once
- attempts counted per job and exposed as `attempts_made`
- exponential backoff between attempts, up to a fixed maximum
- exactly one EXHAUSTED outcome once the maximum is reached, redelivered to
  the failure handler until the handler reports success
- a job whose lease keeps expiring is exhausted after a bounded number of reclaims
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# Queue names
WITHDRAWAL_QUEUE = "withdrawal-processing"
RAW_BROADCAST_QUEUE = "raw-tx-broadcasting"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt limit and exponential backoff for one queue."""
    max_attempts: int
    backoff_seconds: float

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt after `attempts_made` failures.

        10s policy: 10, 20, 40, 80 ...
        """
        return self.backoff_seconds * 2 ** max(attempts_made - 1, 0)


# Fixed policy, not runtime-tunable
WITHDRAWAL_POLICY = RetryPolicy(max_attempts=5, backoff_seconds=10.0)
# Failures here are more often bad client input than network trouble
RAW_BROADCAST_POLICY = RetryPolicy(max_attempts=3, backoff_seconds=5.0)


@dataclass(frozen=True)
class Job:
    """A leased job as seen by a processor."""
    id: int
    queue: str
    name: str
    db_id: int
    attempts_made: int
    max_attempts: int
    backoff_seconds: float
    lease_token: str
    #: Leased only to run the failure handler again
    exhausting: bool = False
    last_error: Optional[str] = None

    @property
    def attempt(self) -> int:
        """1-based number of the current attempt."""
        return self.attempts_made + 1

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(self.max_attempts, self.backoff_seconds)


class OutcomeKind(str, Enum):
    """What happened to a job after one execution."""
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"
    LEASE_LOST = "lease_lost"


@dataclass(frozen=True)
class JobOutcome:
    """Typed result of one job execution, consumed by the dispatch loop."""
    kind: OutcomeKind
    job: Job
    attempts: int
    error: Optional[str] = None
    retry_delay: Optional[float] = None

    @classmethod
    def completed(cls, job: Job) -> "JobOutcome":
        return cls(OutcomeKind.COMPLETED, job, attempts=job.attempt)

    @classmethod
    def lease_lost(cls, job: Job, error: Optional[str] = None) -> "JobOutcome":
        return cls(OutcomeKind.LEASE_LOST, job, attempts=job.attempt, error=error)


class JobQueue(ABC):
    """Durable multi-consumer queue."""

    @abstractmethod
    async def enqueue(
        self,
        queue: str,
        name: str,
        db_id: int,
        policy: RetryPolicy,
        delay: float = 0.0,
    ) -> int:
        """Add a job referencing `db_id`. Returns the job id."""
        pass

    @abstractmethod
    async def claim(self, queue: str, worker_id: str, lease_seconds: float) -> Optional[Job]:
        """Lease the next due job, or return None when nothing is due."""
        pass

    @abstractmethod
    async def renew(self, job: Job, lease_seconds: float) -> bool:
        """Extend the lease of a running job. False if the lease was lost."""
        pass

    @abstractmethod
    async def complete(self, job: Job) -> JobOutcome:
        """Mark a job as successfully processed."""
        pass

    @abstractmethod
    async def fail(self, job: Job, error: str) -> JobOutcome:
        """Record a failed attempt and schedule a retry or mark it exhausted."""
        pass

    @abstractmethod
    async def release(self, job: Job) -> bool:
        """Return a job to the queue without consuming an attempt (shutdown)."""
        pass

    @abstractmethod
    async def finalize_exhausted(self, job: Job) -> bool:
        """Mark an exhausted job FAILED once its failure handler succeeded."""
        pass

    @abstractmethod
    async def defer_exhausted(self, job: Job, delay: float) -> bool:
        """Hand an exhausted job back so its failure handler runs again after `delay`."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Raise InfrastructureError if the queue backend is unreachable."""
        pass
