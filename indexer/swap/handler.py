"""
Per-event handler.

Every event is applied in exactly one database transaction:

    typed event -> normalizer (+ address resolver) -> leg store write
                -> correlator merge -> statistics update -> commit

Factory administration events skip the leg store: they go to the factory
recorder and only advance the chain watermark.

Decoding happens before the transaction is opened and its errors propagate
to the caller. Transactional conflicts (locked database, unique races
between two chains touching the same swap) roll the whole event back and
retry it from the start.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..core import DEFAULT_MAX_RETRIES, RETRY_BACKOFF_SECONDS, ProcessResult, TransactionConflictError
from ..escrow.events import FACTORY_EVENT_TYPES, EscrowEvent, SwapInitiated, decode_log, parse_event
from ..escrow.normalizer import (
    Cancellation,
    DestinationLeg,
    EventNormalizer,
    FundsRescue,
    NormalizedEvent,
    SourceLeg,
    Withdrawal,
)
from ..store.database import Database
from .correlator import SwapCorrelator
from .factory import FactoryRecorder
from .stats import StatisticsAggregator, StatsDelta

log = logging.getLogger(__name__)

# SQLSTATE for unique_violation (PostgreSQL)
UNIQUE_VIOLATION = "23505"


@dataclass
class HandlerContext:
    """Collaborators needed to process events; passed explicitly."""
    database: Database
    normalizer: EventNormalizer
    correlator: SwapCorrelator = field(default_factory=SwapCorrelator)
    stats: StatisticsAggregator = field(default_factory=StatisticsAggregator)
    factory: FactoryRecorder = field(default_factory=FactoryRecorder)
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff: float = RETRY_BACKOFF_SECONDS

    @classmethod
    def from_config(cls, config) -> "HandlerContext":
        """Build a context from an IndexerConfig and prepare the database."""
        database = Database(config.database_url)
        database.create_all()
        ctx = cls(
            database=database,
            normalizer=EventNormalizer(config.factory_address, config.src_implementation),
            max_retries=config.max_retries,
        )
        with database.transaction() as session:
            ctx.stats.ensure_chains(session, config.chain_ids)
        return ctx


def to_event(payload: Union[EscrowEvent, Mapping[str, Any]]) -> EscrowEvent:
    """Accept a typed event, a typed-event dict or a raw log dict."""
    if isinstance(payload, Mapping):
        if "topics" in payload:
            return decode_log(payload)
        return parse_event(payload)
    return payload


def process_event(event: Union[EscrowEvent, Mapping[str, Any]], ctx: HandlerContext) -> ProcessResult:
    """
    Apply one event atomically.

    Raises:
        DecodingError: event does not decode (never skipped)
        TransactionConflictError: event kept conflicting after max_retries attempts
        IntegrityError: non-unique constraint violation, not retried
    """
    event = to_event(event)
    record = ctx.normalizer.normalize(event)

    attempts = max(1, ctx.max_retries)
    for attempt in range(1, attempts + 1):
        try:
            with ctx.database.transaction() as session:
                result = _apply(session, record, event.kind, ctx)
            result.attempts = attempt
            return result
        except (OperationalError, IntegrityError) as e:
            if not is_conflict(e):
                log.error(f"{event.kind} {event.transaction_hash}:{event.log_index} on chain "
                          f"{event.chain_id} violates a constraint: {e.orig.__class__.__name__}: {e.orig}")
                raise
            if attempt == attempts:
                log.error(f"{event.kind} {event.transaction_hash}:{event.log_index} on chain "
                          f"{event.chain_id} failed after {attempt} attempts: {e}")
                raise TransactionConflictError(
                    f"{event.kind} {event.transaction_hash}:{event.log_index} conflicted {attempt} times"
                ) from e
            delay = ctx.retry_backoff * attempt
            log.warning(f"Transaction conflict on {event.kind} (attempt {attempt}/{attempts}), "
                        f"retrying in {delay:.2f}s: {e.__class__.__name__}")
            time.sleep(delay)


def is_conflict(error: Exception) -> bool:
    """
    Whether a database error is a transient conflict worth retrying.

    OperationalError (locks, serialization failures) is always transient.
    Of the integrity errors only unique violations are: two chains inserting
    the same swap at once. NOT NULL or CHECK failures repeat on every attempt.
    """
    if isinstance(error, OperationalError):
        return True
    if not isinstance(error, IntegrityError):
        return False
    orig = error.orig
    if getattr(orig, "sqlstate", None) == UNIQUE_VIOLATION:
        return True
    return "UNIQUE constraint failed" in str(orig)


def process_log(entry: Mapping[str, Any], ctx: HandlerContext) -> ProcessResult:
    """Decode a raw EVM log and apply it."""
    return process_event(decode_log(entry), ctx)


def _apply(session: Session, record: NormalizedEvent, kind: str, ctx: HandlerContext) -> ProcessResult:
    correlator = ctx.correlator
    stats = ctx.stats

    if isinstance(record, SourceLeg):
        new_leg = correlator.store_source_leg(session, record)
        merge = correlator.merge_source(session, record)
        if new_leg:
            stats.record(session, record.chain_id, StatsDelta.src_escrow(record.amount), record.block_number)
        else:
            stats.touch(session, record.chain_id, record.block_number)
        return ProcessResult(
            kind=kind,
            chain_id=record.chain_id,
            escrow_address=record.escrow_address,
            hashlock=record.hashlock,
            swap_status=merge.status,
            duplicate=not new_leg and not merge.changed,
            anomaly=merge.anomaly,
        )

    if isinstance(record, DestinationLeg):
        new_leg = correlator.store_destination_leg(session, record)
        merge = correlator.merge_destination(session, record)
        if new_leg:
            stats.record(session, record.chain_id, StatsDelta.dst_escrow(), record.block_number)
        else:
            stats.touch(session, record.chain_id, record.block_number)
        return ProcessResult(
            kind=kind,
            chain_id=record.chain_id,
            escrow_address=record.escrow_address,
            hashlock=record.hashlock,
            swap_status=merge.status,
            duplicate=not new_leg and not merge.changed,
            anomaly=merge.anomaly,
        )

    if isinstance(record, (Withdrawal, Cancellation)):
        if isinstance(record, Withdrawal):
            merge = correlator.apply_withdrawal(session, record)
            delta = StatsDelta.withdrawal(merge.amount)
        else:
            merge = correlator.apply_cancellation(session, record)
            delta = StatsDelta.cancellation()
        if merge.changed:
            log.debug(f"{kind} applied to {merge.side} escrow {record.escrow_address} on chain {record.chain_id}")
            stats.record(session, record.chain_id, delta, record.block_number)
        else:
            stats.touch(session, record.chain_id, record.block_number)
        return ProcessResult(
            kind=kind,
            chain_id=record.chain_id,
            escrow_address=record.escrow_address,
            hashlock=merge.swap.hashlock if merge.swap is not None else None,
            swap_status=merge.status,
            duplicate=merge.duplicate,
            anomaly=merge.anomaly,
        )

    if isinstance(record, FundsRescue):
        new = correlator.record_funds_rescue(session, record)
        if new:
            stats.record(session, record.chain_id, StatsDelta.funds_rescued(), record.block_number)
        else:
            stats.touch(session, record.chain_id, record.block_number)
        return ProcessResult(
            kind=kind,
            chain_id=record.chain_id,
            escrow_address=record.escrow_address,
            duplicate=not new,
        )

    if isinstance(record, FACTORY_EVENT_TYPES):
        merge = ctx.factory.apply(session, record, correlator)
        stats.touch(session, record.chain_id, record.block_number)
        return ProcessResult(
            kind=kind,
            chain_id=record.chain_id,
            escrow_address=record.escrow_src if isinstance(record, SwapInitiated) else None,
            hashlock=merge.swap.hashlock if merge.swap is not None else None,
            swap_status=merge.status,
            duplicate=merge.duplicate,
            anomaly=merge.anomaly,
        )

    raise TypeError(f"Unhandled record type: {type(record).__name__}")
