"""
SQLAlchemy models for the indexer tables.

These tables are consumed verbatim by the external query layer.
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from ..core import LegStatus, SwapStatus


class Uint256(TypeDecorator):
    """uint256 stored as a decimal string so no backend truncates it."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    """Base class for all indexer models."""

    pass


# =============================================================================
# Leg store
# =============================================================================

class SrcEscrow(Base):
    """Source-chain escrow (one per contract)."""

    __tablename__ = "src_escrow"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)   # "{chainId}-{escrow}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_address: Mapped[str] = mapped_column(String(42), nullable=False)
    order_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    hashlock: Mapped[str] = mapped_column(String(66), nullable=False)
    maker: Mapped[str] = mapped_column(String(42), nullable=False)
    taker: Mapped[str] = mapped_column(String(42), nullable=False)
    src_token: Mapped[str] = mapped_column(String(42), nullable=False)
    src_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    src_safety_deposit: Mapped[int] = mapped_column(Uint256, nullable=False)
    dst_maker: Mapped[str] = mapped_column(String(42), nullable=False)
    dst_token: Mapped[str] = mapped_column(String(42), nullable=False)
    dst_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    dst_safety_deposit: Mapped[int] = mapped_column(Uint256, nullable=False)
    dst_chain_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    timelocks: Mapped[int] = mapped_column(Uint256, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=LegStatus.CREATED.value)

    __table_args__ = (
        Index("idx_src_escrow_hashlock", "hashlock"),
        Index("idx_src_escrow_order_hash", "order_hash"),
    )


class DstEscrow(Base):
    """Destination-chain escrow (one per contract)."""

    __tablename__ = "dst_escrow"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_address: Mapped[str] = mapped_column(String(42), nullable=False)
    hashlock: Mapped[str] = mapped_column(String(66), nullable=False)
    taker: Mapped[str] = mapped_column(String(42), nullable=False)
    src_cancellation_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=LegStatus.CREATED.value)

    __table_args__ = (
        Index("idx_dst_escrow_hashlock", "hashlock"),
    )


# =============================================================================
# Swap aggregate
# =============================================================================

class AtomicSwap(Base):
    """
    Reconciled view of one swap.

    `id` is a stable internal identifier. `hashlock` is always set and unique;
    `order_hash` is unique once known and NULL while the row is a placeholder
    (destination leg seen before the source leg).
    """

    __tablename__ = "atomic_swap"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, unique=True)
    hashlock: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)

    src_chain_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    dst_chain_id: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)   # Any uint256 from the complement
    src_escrow_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    dst_escrow_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    src_maker: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    src_taker: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    dst_maker: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    dst_taker: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    src_token: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    src_amount: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    dst_token: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    dst_amount: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    src_safety_deposit: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    dst_safety_deposit: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    timelocks: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    src_created_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    dst_created_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    cancelled_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    secret: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    __table_args__ = (
        Index("idx_atomic_swap_status", "status"),
    )

    @property
    def is_placeholder(self) -> bool:
        return self.order_hash is None

    @property
    def swap_status(self) -> SwapStatus:
        return SwapStatus(self.status)

    def to_dict(self) -> dict:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


# =============================================================================
# Statistics
# =============================================================================

class ChainStatistics(Base):
    """Running per-chain counters."""

    __tablename__ = "chain_statistics"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_src_escrows: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_dst_escrows: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_withdrawals: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cancellations: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_funds_rescued: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_volume_locked: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    total_volume_withdrawn: Mapped[int] = mapped_column(Uint256, nullable=False, default=0)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


# =============================================================================
# Raw lifecycle events and anomalies
# =============================================================================

class EscrowWithdrawal(Base):
    __tablename__ = "escrow_withdrawal"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)  # "{chain}-{escrow}-{tx}-{logIndex}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_address: Mapped[str] = mapped_column(String(42), nullable=False)
    secret: Mapped[str] = mapped_column(String(66), nullable=False)
    withdrawn_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_escrow_withdrawal_escrow", "chain_id", "escrow_address"),
    )


class EscrowCancellation(Base):
    __tablename__ = "escrow_cancellation"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_address: Mapped[str] = mapped_column(String(42), nullable=False)
    cancelled_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_escrow_cancellation_escrow", "chain_id", "escrow_address"),
    )


class FundsRescued(Base):
    __tablename__ = "funds_rescued"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    rescued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Anomaly(Base):
    """Recoverable condition kept for later reconciliation."""

    __tablename__ = "anomaly"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    escrow_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    hashlock: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    detail: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("chain_id", "transaction_hash", "log_index", "kind",
                         name="uq_anomaly_event"),
    )


# =============================================================================
# Factory administration (enhanced factory)
# =============================================================================

class ResolverWhitelist(Base):
    """
    Current whitelist state of one resolver on one chain.

    `block_number`/`log_index` point at the last event applied to the row;
    older events are ignored so redelivery never rolls the state back.
    """

    __tablename__ = "resolver_whitelist"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)   # "{chainId}-{resolver}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resolver: Mapped[str] = mapped_column(String(42), nullable=False)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    added_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    added_by: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    suspended_until: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    total_transactions: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    failed_transactions: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_activity_block: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)


class ResolverSuspension(Base):
    """One row per ResolverSuspended event."""

    __tablename__ = "resolver_suspension"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)  # "{chainId}-{resolver}-{tx}-{logIndex}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    resolver: Mapped[str] = mapped_column(String(42), nullable=False)
    suspended_until: Mapped[int] = mapped_column(Uint256, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)

    __table_args__ = (
        Index("idx_resolver_suspension_resolver", "chain_id", "resolver"),
    )


class FactoryAdmin(Base):
    __tablename__ = "factory_admin"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)   # "{chainId}-{admin}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    admin: Mapped[str] = mapped_column(String(42), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    added_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    removed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)


class EmergencyPause(Base):
    """Pause history; the latest row per chain is the current state."""

    __tablename__ = "emergency_pause"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)  # "{chainId}-{tx}-{logIndex}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False)
    paused_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)

    __table_args__ = (
        Index("idx_emergency_pause_chain", "chain_id", "block_number", "log_index"),
    )


class SwapMetrics(Base):
    """
    Factory-reported swap metrics.

    SwapInitiated rows are keyed by event ("{chainId}-initiated-{tx}-{logIndex}"),
    SwapCompleted rows by order ("{chainId}-{orderHash}").
    """

    __tablename__ = "swap_metrics"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    order_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    escrow_src: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    maker: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    resolver: Mapped[str] = mapped_column(String(42), nullable=False)
    volume: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    src_chain_id: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    dst_chain_id: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    completion_time: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(Uint256, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)

    __table_args__ = (
        Index("idx_swap_metrics_order_hash", "order_hash"),
        Index("idx_swap_metrics_resolver", "chain_id", "resolver"),
    )


class InteractionTracking(Base):
    __tablename__ = "interaction_tracking"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    order_maker: Mapped[str] = mapped_column(String(42), nullable=False)
    interaction_target: Mapped[str] = mapped_column(String(42), nullable=False)
    interaction_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_at: Mapped[int] = mapped_column(Uint256, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)


class FactoryMetrics(Base):
    """Global metrics snapshot published by the factory."""

    __tablename__ = "factory_metrics"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)  # "{chainId}-{tx}-{logIndex}"
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_volume: Mapped[int] = mapped_column(Uint256, nullable=False)
    success_rate: Mapped[int] = mapped_column(Uint256, nullable=False)
    avg_completion_time: Mapped[int] = mapped_column(Uint256, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
