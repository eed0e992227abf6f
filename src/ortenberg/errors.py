"""Error taxonomy for the withdrawal activation service.

Intake errors (validation, duplicates, lookups, cancel conflicts) never reach
the processors. Chain errors raised during processing are always re-raised so
the queue can retry the job.
"""

from typing import Optional


class OrtenbergError(Exception):
    """Base class for all service errors."""

    pass


class ConfigurationError(OrtenbergError):
    """Raised when required configuration is missing or invalid."""

    pass


class ValidationError(OrtenbergError):
    """Raised for a malformed intake payload."""

    pass


class AmountConversionError(ValidationError, ValueError):
    """Raised when a decimal amount cannot be scaled to token base units."""

    pass


class DuplicateError(OrtenbergError):
    """Raised when a request_id has already been submitted."""

    pass


class NotFoundError(OrtenbergError):
    """Raised when a request lookup misses."""

    pass


class ConflictError(OrtenbergError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class ChainError(OrtenbergError):
    """Base class for errors raised by the chain RPC client."""

    pass


class TransientChainError(ChainError):
    """RPC timeout, nonce, gas or node error. Always retried by the queue."""

    pass


class TransactionRevertedError(ChainError):
    """A mined transaction reported a failed execution status."""

    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} reverted on-chain")
        self.tx_hash = tx_hash


class TerminalProcessingError(OrtenbergError):
    """Retries exhausted for a job. Recorded as FAILED and alerted."""

    def __init__(self, job_id: int, attempts: int, cause: str):
        super().__init__(f"Job {job_id} failed after {attempts} attempts: {cause}")
        self.job_id = job_id
        self.attempts = attempts
        self.cause = cause


class InfrastructureError(OrtenbergError):
    """Store or queue unreachable."""

    pass
