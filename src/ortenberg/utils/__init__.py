"""Utility modules for Ortenberg."""

from ortenberg.utils.locks import LockTimeoutError, RequestLocks

__all__ = ["LockTimeoutError", "RequestLocks"]
