"""SQLAlchemy models for the request store and the job queue."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class WithdrawalStatus(str, Enum):
    """Status of a multi-sig withdrawal request."""

    PENDING_SIGNATURE = "PENDING_SIGNATURE"  # Accepted, awaiting processing
    PROCESSING = "PROCESSING"                # Picked up by a worker
    BROADCASTED = "BROADCASTED"              # Sent to network
    COMPLETED = "COMPLETED"                  # Confirmed on-chain
    CANCELLED = "CANCELLED"                  # Cancelled by the bank
    FAILED = "FAILED"                        # Retries exhausted


class BroadcastStatus(str, Enum):
    """Status of a raw transaction relay request."""

    PENDING = "PENDING"
    BROADCASTED = "BROADCASTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class JobState(str, Enum):
    """Broker-side state of a queued job."""

    WAITING = "waiting"      # Ready (or delayed until available_at)
    ACTIVE = "active"        # Leased by a worker
    COMPLETED = "completed"
    EXHAUSTING = "exhausting"  # Attempts used up, failure handler not yet finished
    FAILED = "failed"        # Attempts exhausted and failure recorded


# Allowed predecessors for each target status.
WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PROCESSING: frozenset({WithdrawalStatus.PENDING_SIGNATURE}),
    WithdrawalStatus.CANCELLED: frozenset({WithdrawalStatus.PENDING_SIGNATURE}),
    WithdrawalStatus.BROADCASTED: frozenset({WithdrawalStatus.PROCESSING}),
    WithdrawalStatus.COMPLETED: frozenset({WithdrawalStatus.BROADCASTED}),
    WithdrawalStatus.FAILED: frozenset({WithdrawalStatus.PROCESSING}),
}

BROADCAST_TRANSITIONS: dict[BroadcastStatus, frozenset[BroadcastStatus]] = {
    BroadcastStatus.BROADCASTED: frozenset({BroadcastStatus.PENDING}),
    BroadcastStatus.CONFIRMED: frozenset({BroadcastStatus.BROADCASTED}),
    BroadcastStatus.FAILED: frozenset({BroadcastStatus.PENDING}),
}

WITHDRAWAL_TERMINAL = frozenset(
    {WithdrawalStatus.COMPLETED, WithdrawalStatus.CANCELLED, WithdrawalStatus.FAILED}
)


class WithdrawalRequest(Base):
    """A bank-submitted multi-sig withdrawal intent."""

    __tablename__ = "withdrawal_requests"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    status: Mapped[WithdrawalStatus] = mapped_column(
        String(32), default=WithdrawalStatus.PENDING_SIGNATURE, nullable=False, index=True
    )
    treasury_contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    destination_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)  # Decimal string
    partially_signed_tx: Mapped[str] = mapped_column(Text, nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Job owning the current processing episode
    processing_job_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    # Lease that started a transfer submission whose result is not yet recorded
    submitting_lease: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    history: Mapped[list["WithdrawalHistory"]] = relationship(
        back_populates="withdrawal",
        lazy="selectin",
        order_by="WithdrawalHistory.id",
    )


class WithdrawalHistory(Base):
    """Immutable audit record of one status transition."""

    __tablename__ = "withdrawal_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    withdrawal_id: Mapped[int] = mapped_column(
        ForeignKey("withdrawal_requests.id"), nullable=False, index=True
    )
    status: Mapped[WithdrawalStatus] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    withdrawal: Mapped["WithdrawalRequest"] = relationship(back_populates="history")


class RawTransactionBroadcast(Base):
    """A client-signed transaction relayed to the network."""

    __tablename__ = "raw_transaction_broadcasts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    raw_tx: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[BroadcastStatus] = mapped_column(
        String(32), default=BroadcastStatus.PENDING, nullable=False
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), unique=True, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class QueueJob(Base):
    """Durable job record owned by the queue.

    Timestamps are naive UTC so claim ordering compares the same way on
    SQLite and PostgreSQL.
    """

    __tablename__ = "queue_jobs"
    __table_args__ = (Index("ix_queue_jobs_claim", "queue", "state", "available_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    state: Mapped[JobState] = mapped_column(String(16), default=JobState.WAITING, nullable=False)
    attempts_made: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(nullable=False)
    backoff_seconds: Mapped[float] = mapped_column(nullable=False)
    available_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    lease_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    stalled_count: Mapped[int] = mapped_column(default=0, nullable=False)
    version: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
