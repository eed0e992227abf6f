"""Queue processors for withdrawals and raw broadcasts."""

from ortenberg.processors.base import JobProcessor
from ortenberg.processors.raw_broadcast import RawBroadcastProcessor
from ortenberg.processors.withdrawal import TransactionProcessor

__all__ = ["JobProcessor", "RawBroadcastProcessor", "TransactionProcessor"]
