"""
Statistics Aggregator - running per-chain counters.

Counters are updated inside the caller's event transaction, so they stay
consistent with the rows that triggered them. The caller only records a
delta when the triggering row was newly inserted; duplicates never
double-count.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..store.database import insert_ignore
from ..store.models import ChainStatistics

log = logging.getLogger(__name__)


class DeltaKind(Enum):
    SRC_ESCROW = "src_escrow"
    DST_ESCROW = "dst_escrow"
    WITHDRAWAL = "withdrawal"
    CANCELLATION = "cancellation"
    FUNDS_RESCUED = "funds_rescued"


@dataclass(frozen=True)
class StatsDelta:
    """One counter change; `amount` feeds the volume totals."""
    kind: DeltaKind
    amount: int = 0

    @classmethod
    def src_escrow(cls, amount: int) -> "StatsDelta":
        return cls(DeltaKind.SRC_ESCROW, amount)

    @classmethod
    def dst_escrow(cls) -> "StatsDelta":
        return cls(DeltaKind.DST_ESCROW)

    @classmethod
    def withdrawal(cls, amount: int = 0) -> "StatsDelta":
        return cls(DeltaKind.WITHDRAWAL, amount)

    @classmethod
    def cancellation(cls) -> "StatsDelta":
        return cls(DeltaKind.CANCELLATION)

    @classmethod
    def funds_rescued(cls) -> "StatsDelta":
        return cls(DeltaKind.FUNDS_RESCUED)


_EMPTY_ROW = {
    "total_src_escrows": 0,
    "total_dst_escrows": 0,
    "total_withdrawals": 0,
    "total_cancellations": 0,
    "total_funds_rescued": 0,
    "total_volume_locked": 0,
    "total_volume_withdrawn": 0,
    "last_processed_block": 0,
}


class StatisticsAggregator:
    """Maintains the chain_statistics rows."""

    def ensure_chains(self, session: Session, chain_ids: Iterable[int]) -> int:
        """Create zeroed rows for `chain_ids`. Returns the number created."""
        created = 0
        for chain_id in chain_ids:
            if insert_ignore(session, ChainStatistics, {"chain_id": chain_id, **_EMPTY_ROW}):
                log.info(f"Initialized statistics for chain {chain_id}")
                created += 1
        return created

    def _lock_row(self, session: Session, chain_id: int) -> ChainStatistics:
        insert_ignore(session, ChainStatistics, {"chain_id": chain_id, **_EMPTY_ROW})
        stmt = (
            select(ChainStatistics)
            .where(ChainStatistics.chain_id == chain_id)
            .with_for_update()
        )
        return session.execute(stmt).scalar_one()

    def record(self, session: Session, chain_id: int, delta: StatsDelta,
               block_number: int) -> ChainStatistics:
        """Apply `delta` and advance the watermark."""
        row = self._lock_row(session, chain_id)

        if delta.kind is DeltaKind.SRC_ESCROW:
            row.total_src_escrows += 1
            row.total_volume_locked += delta.amount
        elif delta.kind is DeltaKind.DST_ESCROW:
            row.total_dst_escrows += 1
        elif delta.kind is DeltaKind.WITHDRAWAL:
            row.total_withdrawals += 1
            row.total_volume_withdrawn += delta.amount
        elif delta.kind is DeltaKind.CANCELLATION:
            row.total_cancellations += 1
        elif delta.kind is DeltaKind.FUNDS_RESCUED:
            row.total_funds_rescued += 1

        self._advance(row, block_number)
        return row

    def touch(self, session: Session, chain_id: int, block_number: int) -> ChainStatistics:
        """Advance the watermark only (duplicates, orphans)."""
        row = self._lock_row(session, chain_id)
        self._advance(row, block_number)
        return row

    @staticmethod
    def _advance(row: ChainStatistics, block_number: int) -> None:
        if block_number > row.last_processed_block:
            row.last_processed_block = block_number

    def get(self, session: Session, chain_id: int) -> Dict:
        row = session.get(ChainStatistics, chain_id)
        return row.to_dict() if row else {"chain_id": chain_id, **_EMPTY_ROW}

    def all(self, session: Session) -> List[Dict]:
        rows = session.execute(select(ChainStatistics).order_by(ChainStatistics.chain_id)).scalars()
        return [row.to_dict() for row in rows]
