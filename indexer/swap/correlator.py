"""
Swap Correlator - merges escrow legs into one atomic_swap row per hashlock.

The two legs of a swap are created on different chains and reach the
indexer through independent streams, in any order:

    source first:       (none) -> src_created -> both_created
    destination first:  (none) -> dst_created_only -> both_created

A destination leg seen first creates a placeholder: an atomic_swap row with
the hashlock but no order hash. When the source leg arrives, the same row is
promoted in place by assigning the order hash, inside the source leg's
transaction. No second row is ever created for a hashlock.

Each leg only writes the fields it is authoritative for, so processing the
legs in either order (or more than once) converges to the same row:

    source leg       order_hash, src_*, dst_maker, dst_token, dst_amount,
                     dst_safety_deposit, timelocks, src_created_at
                     dst_chain_id / dst_taker only while still NULL
    destination leg  dst_chain_id, dst_escrow_address, dst_taker,
                     dst_created_at

Completion is driven by the withdrawal on the source escrow. A withdrawal on
the destination escrow only updates that leg.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core import MAX_ANOMALY_DETAIL, AnomalyKind, LegStatus, SwapStatus
from ..escrow.normalizer import (
    Cancellation,
    DestinationLeg,
    FundsRescue,
    SourceLeg,
    Withdrawal,
    leg_id,
)
from ..store.database import insert_ignore
from ..store.models import (
    Anomaly,
    AtomicSwap,
    DstEscrow,
    EscrowCancellation,
    EscrowWithdrawal,
    FundsRescued,
    SrcEscrow,
)

log = logging.getLogger(__name__)

SIDE_SRC = "src"
SIDE_DST = "dst"

LegRow = Union[SrcEscrow, DstEscrow]


@dataclass
class MergeResult:
    """What one event did to the store."""
    swap: Optional[AtomicSwap] = None
    changed: bool = False                   # Leg or aggregate state moved
    duplicate: bool = False                 # Event already fully applied
    anomaly: Optional[AnomalyKind] = None
    side: Optional[str] = None              # Leg the lifecycle event hit
    amount: int = 0                         # Volume attributable to the event

    @property
    def status(self) -> Optional[SwapStatus]:
        return self.swap.swap_status if self.swap is not None else None


def _short(value: Optional[str]) -> str:
    return f"{value[:10]}..." if value else "-"


class SwapCorrelator:
    """
    Leg store writes and aggregate merges.

    All methods run inside the caller's transaction and never commit.
    """

    # =========================================================================
    # Lookups
    # =========================================================================

    def find_by_hashlock(self, session: Session, hashlock: str, lock: bool = False) -> Optional[AtomicSwap]:
        stmt = select(AtomicSwap).where(AtomicSwap.hashlock == hashlock.lower())
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return session.execute(stmt).scalar_one_or_none()

    def find_by_order_hash(self, session: Session, order_hash: str, lock: bool = False) -> Optional[AtomicSwap]:
        stmt = select(AtomicSwap).where(AtomicSwap.order_hash == order_hash.lower())
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return session.execute(stmt).scalar_one_or_none()

    def find_leg(self, session: Session, chain_id: int, escrow_address: str,
                 lock: bool = False) -> Tuple[Optional[str], Optional[LegRow]]:
        """
        Locate the leg for an escrow contract.

        Returns:
            (side, row) with side "src" or "dst", or (None, None)
        """
        key = leg_id(chain_id, escrow_address)
        for side, model in ((SIDE_SRC, SrcEscrow), (SIDE_DST, DstEscrow)):
            stmt = select(model).where(model.id == key)
            if lock:
                stmt = stmt.with_for_update().execution_options(populate_existing=True)
            row = session.execute(stmt).scalar_one_or_none()
            if row is not None:
                return side, row
        return None, None

    # =========================================================================
    # Leg store
    # =========================================================================

    def store_source_leg(self, session: Session, leg: SourceLeg) -> bool:
        """Insert the source escrow row. Returns False if it already existed."""
        return insert_ignore(session, SrcEscrow, {
            "id": leg.id,
            "chain_id": leg.chain_id,
            "escrow_address": leg.escrow_address,
            "order_hash": leg.order_hash,
            "hashlock": leg.hashlock,
            "maker": leg.maker,
            "taker": leg.taker,
            "src_token": leg.token,
            "src_amount": leg.amount,
            "src_safety_deposit": leg.safety_deposit,
            "dst_maker": leg.dst_maker,
            "dst_token": leg.dst_token,
            "dst_amount": leg.dst_amount,
            "dst_safety_deposit": leg.dst_safety_deposit,
            "dst_chain_id": leg.dst_chain_id,
            "timelocks": leg.timelocks,
            "created_at": leg.created_at,
            "block_number": leg.block_number,
            "transaction_hash": leg.transaction_hash,
            "status": LegStatus.CREATED.value,
        })

    def store_destination_leg(self, session: Session, leg: DestinationLeg) -> bool:
        """Insert the destination escrow row. Returns False if it already existed."""
        return insert_ignore(session, DstEscrow, {
            "id": leg.id,
            "chain_id": leg.chain_id,
            "escrow_address": leg.escrow_address,
            "hashlock": leg.hashlock,
            "taker": leg.taker,
            "src_cancellation_timestamp": leg.src_cancellation_timestamp,
            "created_at": leg.created_at,
            "block_number": leg.block_number,
            "transaction_hash": leg.transaction_hash,
            "status": LegStatus.CREATED.value,
        })

    # =========================================================================
    # Creation merges
    # =========================================================================

    def merge_source(self, session: Session, leg: SourceLeg) -> MergeResult:
        """Create the aggregate for a source leg, or promote its placeholder."""
        created = insert_ignore(session, AtomicSwap, {
            "order_hash": leg.order_hash,
            "hashlock": leg.hashlock,
            "status": SwapStatus.SRC_CREATED.value,
            "dst_chain_id": leg.dst_chain_id,
            "dst_taker": leg.taker,
            **self._source_fields(leg),
        })
        swap = self.find_by_hashlock(session, leg.hashlock, lock=True)

        if created:
            log.info(f"Swap {_short(leg.order_hash)} created from source escrow {leg.escrow_address} "
                     f"on chain {leg.chain_id}")
            return MergeResult(swap=swap, changed=True)

        if swap is None:
            # Insert hit the order_hash constraint: order already bound to another hashlock
            other = self.find_by_order_hash(session, leg.order_hash)
            return self._hashlock_conflict(session, leg, other)

        if not swap.is_placeholder and swap.order_hash != leg.order_hash:
            return self._hashlock_conflict(session, leg, swap)

        if swap.order_hash == leg.order_hash and swap.src_escrow_address is not None:
            log.debug(f"Source leg {leg.id} already merged into swap {_short(leg.order_hash)}")
            return MergeResult(swap=swap, duplicate=True)

        other = self.find_by_order_hash(session, leg.order_hash)
        if other is not None and other.id != swap.id:
            return self._hashlock_conflict(session, leg, other)

        # Promote the placeholder in place
        swap.order_hash = leg.order_hash
        for field, value in self._source_fields(leg).items():
            setattr(swap, field, value)
        if swap.dst_chain_id is None:
            swap.dst_chain_id = leg.dst_chain_id
        if swap.dst_taker is None:
            swap.dst_taker = leg.taker

        if not swap.swap_status.is_terminal:
            swap.status = (SwapStatus.BOTH_CREATED if swap.dst_escrow_address
                           else SwapStatus.SRC_CREATED).value

        log.info(f"Swap {_short(leg.order_hash)} promoted from placeholder "
                 f"(hashlock {_short(leg.hashlock)}), status {swap.status}")
        return MergeResult(swap=swap, changed=True)

    def merge_destination(self, session: Session, leg: DestinationLeg) -> MergeResult:
        """Attach a destination leg, creating a placeholder if no source leg is known."""
        created = insert_ignore(session, AtomicSwap, {
            "order_hash": None,
            "hashlock": leg.hashlock,
            "status": SwapStatus.DST_CREATED_ONLY.value,
            **self._destination_fields(leg),
        })
        swap = self.find_by_hashlock(session, leg.hashlock, lock=True)

        if created:
            log.info(f"Placeholder swap for hashlock {_short(leg.hashlock)} created from "
                     f"destination escrow {leg.escrow_address} on chain {leg.chain_id}")
            return MergeResult(swap=swap, changed=True)

        if swap is None:
            raise RuntimeError(f"Swap for hashlock {leg.hashlock} neither inserted nor found")

        if swap.dst_escrow_address is not None:
            if swap.dst_escrow_address == leg.escrow_address:
                log.debug(f"Destination leg {leg.id} already merged")
                return MergeResult(swap=swap, duplicate=True)
            anomaly = self.record_anomaly(
                session, AnomalyKind.HASHLOCK_CONFLICT,
                chain_id=leg.chain_id,
                block_number=leg.block_number,
                transaction_hash=leg.transaction_hash,
                log_index=leg.log_index,
                escrow_address=leg.escrow_address,
                hashlock=leg.hashlock,
                detail=f"hashlock already has destination escrow {swap.dst_escrow_address}",
            )
            return MergeResult(swap=swap, anomaly=anomaly)

        for field, value in self._destination_fields(leg).items():
            setattr(swap, field, value)
        if swap.status == SwapStatus.SRC_CREATED.value:
            swap.status = SwapStatus.BOTH_CREATED.value

        log.info(f"Swap {_short(swap.order_hash)} matched destination escrow {leg.escrow_address}, "
                 f"status {swap.status}")
        return MergeResult(swap=swap, changed=True)

    @staticmethod
    def _source_fields(leg: SourceLeg) -> dict:
        return {
            "src_chain_id": leg.chain_id,
            "src_escrow_address": leg.escrow_address,
            "src_maker": leg.maker,
            "src_taker": leg.taker,
            "dst_maker": leg.dst_maker,
            "src_token": leg.token,
            "src_amount": leg.amount,
            "dst_token": leg.dst_token,
            "dst_amount": leg.dst_amount,
            "src_safety_deposit": leg.safety_deposit,
            "dst_safety_deposit": leg.dst_safety_deposit,
            "timelocks": leg.timelocks,
            "src_created_at": leg.created_at,
        }

    @staticmethod
    def _destination_fields(leg: DestinationLeg) -> dict:
        return {
            "dst_chain_id": leg.chain_id,
            "dst_escrow_address": leg.escrow_address,
            "dst_taker": leg.taker,
            "dst_created_at": leg.created_at,
        }

    def _hashlock_conflict(self, session: Session, leg: SourceLeg,
                           existing: Optional[AtomicSwap]) -> MergeResult:
        detail = (
            f"order {leg.order_hash} / hashlock {leg.hashlock} collides with swap "
            f"order {existing.order_hash if existing else None} / "
            f"hashlock {existing.hashlock if existing else None}"
        )
        anomaly = self.record_anomaly(
            session, AnomalyKind.HASHLOCK_CONFLICT,
            chain_id=leg.chain_id,
            block_number=leg.block_number,
            transaction_hash=leg.transaction_hash,
            log_index=leg.log_index,
            escrow_address=leg.escrow_address,
            hashlock=leg.hashlock,
            detail=detail,
        )
        return MergeResult(swap=existing, anomaly=anomaly)

    # =========================================================================
    # Lifecycle events
    # =========================================================================

    def apply_withdrawal(self, session: Session, event: Withdrawal) -> MergeResult:
        """Record a withdrawal; completes the swap when it hits the source escrow."""
        inserted = insert_ignore(session, EscrowWithdrawal, {
            "id": event.id,
            "chain_id": event.chain_id,
            "escrow_address": event.escrow_address,
            "secret": event.secret,
            "withdrawn_at": event.withdrawn_at,
            "block_number": event.block_number,
            "transaction_hash": event.transaction_hash,
            "log_index": event.log_index,
        })

        side, leg = self.find_leg(session, event.chain_id, event.escrow_address, lock=True)
        if leg is None:
            anomaly = self.record_anomaly(
                session, AnomalyKind.ORPHAN_WITHDRAWAL,
                chain_id=event.chain_id,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                escrow_address=event.escrow_address,
                detail=f"withdrawal for unknown escrow, secret {event.secret}",
            )
            return MergeResult(anomaly=anomaly, duplicate=not inserted)

        result = self._transition_leg(session, event, side, leg, LegStatus.WITHDRAWN, inserted)
        if not result.changed:
            return result

        if side == SIDE_SRC:
            result.amount = leg.src_amount
            swap = result.swap
            if swap is not None and swap.order_hash == leg.order_hash:
                if not swap.swap_status.is_terminal:
                    swap.status = SwapStatus.COMPLETED.value
                    swap.completed_at = event.withdrawn_at
                    swap.secret = event.secret
                    log.info(f"Swap {_short(swap.order_hash)} completed, secret revealed on chain {event.chain_id}")
                elif swap.swap_status is SwapStatus.COMPLETED and swap.secret is None:
                    # Completion already reported by the factory
                    swap.secret = event.secret
        else:
            log.info(f"Destination escrow {event.escrow_address} withdrawn on chain {event.chain_id}")
        return result

    def apply_cancellation(self, session: Session, event: Cancellation) -> MergeResult:
        """Record a cancellation; cancels the swap unless it is already terminal."""
        inserted = insert_ignore(session, EscrowCancellation, {
            "id": event.id,
            "chain_id": event.chain_id,
            "escrow_address": event.escrow_address,
            "cancelled_at": event.cancelled_at,
            "block_number": event.block_number,
            "transaction_hash": event.transaction_hash,
            "log_index": event.log_index,
        })

        side, leg = self.find_leg(session, event.chain_id, event.escrow_address, lock=True)
        if leg is None:
            anomaly = self.record_anomaly(
                session, AnomalyKind.ORPHAN_CANCELLATION,
                chain_id=event.chain_id,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                escrow_address=event.escrow_address,
                detail="cancellation for unknown escrow",
            )
            return MergeResult(anomaly=anomaly, duplicate=not inserted)

        result = self._transition_leg(session, event, side, leg, LegStatus.CANCELLED, inserted)
        if not result.changed:
            return result

        swap = result.swap
        if swap is not None and self._owns_swap(side, leg, swap) and not swap.swap_status.is_terminal:
            swap.status = SwapStatus.CANCELLED.value
            swap.cancelled_at = event.cancelled_at
            log.info(f"Swap for hashlock {_short(swap.hashlock)} cancelled via {side} escrow "
                     f"{event.escrow_address}")
        return result

    def apply_swap_completed(self, session: Session, event) -> MergeResult:
        """
        Factory-reported completion (SwapCompleted): closes the swap for the
        order if it is still open. The secret arrives with the source escrow
        withdrawal.
        """
        swap = self.find_by_order_hash(session, event.order_hash, lock=True)
        if swap is None:
            anomaly = self.record_anomaly(
                session, AnomalyKind.ORPHAN_COMPLETION,
                chain_id=event.chain_id,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                detail=f"completion reported for unknown order {event.order_hash}",
            )
            return MergeResult(anomaly=anomaly)

        status = swap.swap_status
        if status is SwapStatus.COMPLETED:
            log.debug(f"Swap {_short(swap.order_hash)} already completed")
            return MergeResult(swap=swap, duplicate=True)
        if status.is_terminal:
            anomaly = self.record_anomaly(
                session, AnomalyKind.TERMINAL_SWAP,
                chain_id=event.chain_id,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                hashlock=swap.hashlock,
                detail=f"completion reported for {status.value} swap {event.order_hash}",
            )
            return MergeResult(swap=swap, anomaly=anomaly)

        swap.status = SwapStatus.COMPLETED.value
        swap.completed_at = event.block_timestamp
        log.info(f"Swap {_short(swap.order_hash)} completed (reported by factory on chain {event.chain_id})")
        return MergeResult(swap=swap, changed=True)

    def _transition_leg(self, session: Session, event: Union[Withdrawal, Cancellation],
                        side: str, leg: LegRow, target: LegStatus, inserted: bool) -> MergeResult:
        swap = self.find_by_hashlock(session, leg.hashlock, lock=True)
        current = LegStatus(leg.status)

        if current is target:
            log.debug(f"Leg {leg.id} already {target.value}")
            return MergeResult(swap=swap, side=side, duplicate=True)

        if current.is_terminal:
            anomaly = self.record_anomaly(
                session, AnomalyKind.TERMINAL_LEG,
                chain_id=event.chain_id,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                escrow_address=event.escrow_address,
                hashlock=leg.hashlock,
                detail=f"{target.value} event for {current.value} leg",
            )
            return MergeResult(swap=swap, side=side, anomaly=anomaly, duplicate=not inserted)

        leg.status = target.value
        return MergeResult(swap=swap, side=side, changed=True)

    @staticmethod
    def _owns_swap(side: str, leg: LegRow, swap: AtomicSwap) -> bool:
        if side == SIDE_SRC:
            return swap.order_hash == leg.order_hash
        return swap.dst_escrow_address == leg.escrow_address

    def record_funds_rescue(self, session: Session, event: FundsRescue) -> bool:
        """Store a FundsRescued event. Returns False for a redelivery."""
        inserted = insert_ignore(session, FundsRescued, {
            "id": event.id,
            "chain_id": event.chain_id,
            "escrow_address": event.escrow_address,
            "token": event.token,
            "amount": event.amount,
            "rescued_at": event.rescued_at,
            "block_number": event.block_number,
            "transaction_hash": event.transaction_hash,
            "log_index": event.log_index,
        })
        if inserted:
            log.info(f"Funds rescued from {event.escrow_address} on chain {event.chain_id}: "
                     f"{event.amount} of {event.token}")
        return inserted

    # =========================================================================
    # Anomalies
    # =========================================================================

    def record_anomaly(self, session: Session, kind: AnomalyKind, *, chain_id: int,
                       block_number: int, transaction_hash: str, log_index: int = 0,
                       escrow_address: Optional[str] = None, hashlock: Optional[str] = None,
                       detail: str = "") -> AnomalyKind:
        """Persist an anomaly (once per event and kind) and return its kind."""
        inserted = insert_ignore(session, Anomaly, {
            "kind": kind.value,
            "chain_id": chain_id,
            "escrow_address": escrow_address,
            "hashlock": hashlock,
            "block_number": block_number,
            "transaction_hash": transaction_hash,
            "log_index": log_index,
            "detail": detail[:MAX_ANOMALY_DETAIL],
        })
        if inserted:
            log.warning(f"Anomaly {kind.value} on chain {chain_id} at block {block_number} "
                        f"(tx {_short(transaction_hash)}): {detail}")
        return kind
