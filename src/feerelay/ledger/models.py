"""SQLAlchemy models for transfers, used nonces and relayed operations."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TransferStatus(str, Enum):
    """Status of a transfer."""

    PENDING = "PENDING"          # Created, authorization being checked
    PROCESSING = "PROCESSING"    # Handed to the relay executor
    COMPLETED = "COMPLETED"      # Receipt status 1
    FAILED = "FAILED"            # Rejected, reverted or failed validation
    CANCELLED = "CANCELLED"      # Cancelled before execution

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TransferStatus.COMPLETED, TransferStatus.FAILED, TransferStatus.CANCELLED}
)

# Allowed one-directional transitions
ALLOWED_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset(
        {TransferStatus.PROCESSING, TransferStatus.FAILED, TransferStatus.CANCELLED}
    ),
    TransferStatus.PROCESSING: frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED}),
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.FAILED: frozenset(),
    TransferStatus.CANCELLED: frozenset(),
}


class OperationStatus(str, Enum):
    """Status of a relayed DeFi or faucet operation."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Transfer(Base):
    """A quote bound to a signed authorization and its execution state."""

    __tablename__ = "transfers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    # Unique: a quote is consumed by exactly one transfer
    quote_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    sender_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    recipient_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)

    # Copied from the quote at bind time
    from_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    from_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    to_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=TransferStatus.PENDING.value, nullable=False
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_transfers_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Transfer {self.id} {self.from_amount} {self.from_currency} [{self.status}]>"


class UsedNonce(Base):
    """A consumed authorization nonce."""

    __tablename__ = "used_nonces"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    signer: Mapped[str] = mapped_column(String(42), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    # uint256 does not fit a BIGINT column
    nonce: Mapped[str] = mapped_column(String(78), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("signer", "kind", "nonce", name="uq_used_nonce"),
    )


class Operation(Base):
    """A relayed DeFi or faucet operation."""

    __tablename__ = "operations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    target_address: Mapped[str] = mapped_column(String(42), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=OperationStatus.PROCESSING.value, nullable=False
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    # Raw on-chain integer, stringified
    result_amount: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Operation {self.kind} {self.user_address} [{self.status}]>"
