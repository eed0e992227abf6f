"""Durable job queue and worker loop."""

from ortenberg.queue.base import (
    RAW_BROADCAST_POLICY,
    RAW_BROADCAST_QUEUE,
    WITHDRAWAL_POLICY,
    WITHDRAWAL_QUEUE,
    Job,
    JobOutcome,
    JobQueue,
    OutcomeKind,
    RetryPolicy,
)
from ortenberg.queue.sql import SqlJobQueue

__all__ = [
    "Job",
    "JobOutcome",
    "JobQueue",
    "OutcomeKind",
    "RAW_BROADCAST_POLICY",
    "RAW_BROADCAST_QUEUE",
    "RetryPolicy",
    "SqlJobQueue",
    "WITHDRAWAL_POLICY",
    "WITHDRAWAL_QUEUE",
]
