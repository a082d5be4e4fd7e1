"""
BMN Escrow Indexer - cross-chain atomic swap correlation.

Escrow events from two chains (source leg on one, destination leg on the
other) are merged into one atomic_swap row per hashlock, whatever order the
legs arrive in.

Usage:
    from indexer import IndexerConfig, HandlerContext, process_event

    config = IndexerConfig.from_env()
    ctx = HandlerContext.from_config(config)

    result = process_event({"kind": "Withdrawal", ...}, ctx)
    print(result.swap_status)
"""

from .core import (
    LegStatus,
    SwapStatus,
    AnomalyKind,
    ProcessResult,
    DecodingError,
    TransactionConflictError,
    decode_packed_address,
)

from .config import IndexerConfig

from .escrow.address import Immutables, compute_escrow_address, compute_salt
from .escrow.events import decode_log, parse_event
from .escrow.normalizer import EventNormalizer

from .store.database import Database

from .swap.correlator import SwapCorrelator
from .swap.stats import StatisticsAggregator
from .swap.handler import HandlerContext, process_event, process_log

__version__ = "0.1.0"
__all__ = [
    # Core types
    "LegStatus",
    "SwapStatus",
    "AnomalyKind",
    "ProcessResult",
    "DecodingError",
    "TransactionConflictError",
    "decode_packed_address",
    # Config
    "IndexerConfig",
    # Escrow
    "Immutables",
    "compute_escrow_address",
    "compute_salt",
    "decode_log",
    "parse_event",
    "EventNormalizer",
    # Store
    "Database",
    # Swap
    "SwapCorrelator",
    "StatisticsAggregator",
    "HandlerContext",
    "process_event",
    "process_log",
]
