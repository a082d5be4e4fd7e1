#!/usr/bin/env python3
"""
Replay escrow events from a JSON-lines file.

Each line is one event, either a typed event ({"kind": ...}) or a raw EVM log
({"address", "topics", "data", ...}). Lines are processed in file order, one
transaction each. Processing stops at the first event that does not decode:
skipping it would leave its swap uncorrelated forever.

Usage:
    python -m indexer.replay events.jsonl
    python -m indexer.replay --database-url sqlite:///replay.db events.jsonl
    cat events.jsonl | python -m indexer.replay -
"""

import argparse
import json
import logging
import sys
from collections import Counter
from typing import IO, Iterator, List, Optional, Tuple

from .chains.evm import parse_chain_ids
from .config import IndexerConfig
from .core import DecodingError, TransactionConflictError
from .swap.handler import HandlerContext, process_event

log = logging.getLogger(__name__)


def read_events(stream: IO[str]) -> Iterator[Tuple[int, dict]]:
    """Yield (line number, payload) for every non-blank line."""
    for lineno, line in enumerate(stream, start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            raise DecodingError(f"line {lineno}: invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise DecodingError(f"line {lineno}: expected a JSON object")
        yield lineno, payload


def replay(stream: IO[str], ctx: HandlerContext) -> Counter:
    """
    Process every event of `stream`.

    Returns:
        Counter of outcomes: processed, duplicates, anomalies

    Raises:
        DecodingError: with the offending line number
    """
    summary = Counter()
    for lineno, payload in read_events(stream):
        try:
            result = process_event(payload, ctx)
        except DecodingError as e:
            raise DecodingError(f"line {lineno}: {e}", kind=e.kind) from e
        summary["processed"] += 1
        if result.duplicate:
            summary["duplicates"] += 1
        if result.anomaly is not None:
            summary["anomalies"] += 1
    return summary


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Replay escrow events (JSON lines) into the indexer database"
    )
    parser.add_argument(
        "path",
        help="JSON-lines file with one event per line ('-' for stdin)"
    )
    parser.add_argument(
        "--database-url", type=str,
        help="SQLAlchemy database URL (default: $DATABASE_URL)"
    )
    parser.add_argument(
        "--chains", type=str,
        help="Comma separated chain ids or names to initialize (default: $INDEXER_CHAIN_IDS)"
    )
    parser.add_argument(
        "--log-level", type=str,
        help="Log level (default: $INDEXER_LOG_LEVEL or INFO)"
    )
    args = parser.parse_args(argv)

    try:
        config = IndexerConfig.from_env()
        if args.database_url:
            config.database_url = args.database_url
        if args.chains:
            config.chain_ids = parse_chain_ids(args.chains)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    if args.log_level:
        config.log_level = args.log_level.upper()
    config.configure_logging()

    ctx = HandlerContext.from_config(config)
    try:
        if args.path == "-":
            summary = replay(sys.stdin, ctx)
        else:
            with open(args.path, "r", encoding="utf-8") as f:
                summary = replay(f, ctx)
    except DecodingError as e:
        log.error(f"Decoding failed, stopping replay: {e}")
        return 1
    except TransactionConflictError as e:
        log.error(f"Giving up: {e}")
        return 1
    except OSError as e:
        log.error(f"Cannot read {args.path}: {e}")
        return 2
    finally:
        ctx.database.dispose()

    log.info(f"Replay done: {summary['processed']} events, "
             f"{summary['duplicates']} duplicates, {summary['anomalies']} anomalies")
    return 0


if __name__ == "__main__":
    sys.exit(main())
