"""Ledger module: request store, audit history and queue tables."""

from ortenberg.ledger.database import Database
from ortenberg.ledger.models import (
    BroadcastStatus,
    JobState,
    QueueJob,
    RawTransactionBroadcast,
    WithdrawalHistory,
    WithdrawalRequest,
    WithdrawalStatus,
)
from ortenberg.ledger.repository import BroadcastRepository, WithdrawalRepository

__all__ = [
    # Models
    "WithdrawalRequest",
    "WithdrawalHistory",
    "RawTransactionBroadcast",
    "QueueJob",
    # Enums
    "WithdrawalStatus",
    "BroadcastStatus",
    "JobState",
    # Database
    "Database",
    "WithdrawalRepository",
    "BroadcastRepository",
]
