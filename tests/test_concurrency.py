#!/usr/bin/env python3
"""
Concurrent Chain Processing Tests

Two threads play the two chains' event streams against one file-backed
SQLite database: source legs on Base, destination legs on Etherlink, in
opposite order. Every swap must end up paired, with no placeholder left.

Usage:
    python test_concurrency.py
"""

import sys
import os
import shutil
import tempfile
import threading
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from indexer.core import SwapStatus, TransactionConflictError
from indexer.store.models import AtomicSwap, ChainStatistics
from indexer.swap import handler
from indexer.swap.handler import is_conflict, process_event

from sample_events import BASE, ETHERLINK, addr, destination_event, h32, make_context, source_event

SWAPS = 20


class TestConcurrentChains(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="bmn-indexer-")
        url = f"sqlite:///{os.path.join(self.tmpdir, 'indexer.db')}"
        self.ctx = make_context(url, max_retries=10)

    def tearDown(self):
        self.ctx.database.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_opposite_order_streams(self):
        src_stream = [
            source_event(h32(f"O{i}"), h32(f"H{i}"), escrow=addr(0x5000 + i), block=100 + i)
            for i in range(SWAPS)
        ]
        dst_stream = [
            destination_event(h32(f"H{i}"), addr(0xD000 + i), block=200 + i)
            for i in reversed(range(SWAPS))
        ]
        errors = []

        def run(stream):
            try:
                for payload in stream:
                    process_event(payload, self.ctx)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(s,)) for s in (src_stream, dst_stream)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=120)

        self.assertEqual(errors, [])
        with self.ctx.database.session() as session:
            total = session.execute(select(func.count()).select_from(AtomicSwap)).scalar_one()
            placeholders = session.execute(
                select(func.count()).select_from(AtomicSwap).where(AtomicSwap.order_hash.is_(None))
            ).scalar_one()
            statuses = set(session.execute(select(AtomicSwap.status)).scalars())
            base = session.get(ChainStatistics, BASE)
            etherlink = session.get(ChainStatistics, ETHERLINK)

            self.assertEqual(total, SWAPS)
            self.assertEqual(placeholders, 0)
            self.assertEqual(statuses, {"both_created"})
            self.assertEqual(base.total_src_escrows, SWAPS)
            self.assertEqual(base.last_processed_block, 100 + SWAPS - 1)
            self.assertEqual(etherlink.total_dst_escrows, SWAPS)
            self.assertEqual(etherlink.last_processed_block, 200 + SWAPS - 1)


class TestRetries(unittest.TestCase):
    """Conflicting transactions are retried, then reported."""

    def setUp(self):
        self.ctx = make_context(max_retries=3)

    def tearDown(self):
        self.ctx.database.dispose()

    def test_retried_until_success(self):
        real_apply = handler._apply
        locked = OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
        calls = []

        def flaky_apply(*args):
            calls.append(1)
            if len(calls) < 3:
                raise locked
            return real_apply(*args)

        with patch.object(handler, "_apply", side_effect=flaky_apply):
            result = process_event(source_event(h32("O1"), h32("H1"), escrow=addr(0x51)), self.ctx)
        self.assertEqual(len(calls), 3)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.swap_status, SwapStatus.SRC_CREATED)

    def test_gives_up(self):
        locked = OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
        with patch.object(handler, "_apply", side_effect=locked):
            with self.assertRaises(TransactionConflictError):
                process_event(source_event(h32("O1"), h32("H1"), escrow=addr(0x51)), self.ctx)

        with self.ctx.database.session() as session:
            self.assertEqual(session.execute(select(func.count()).select_from(AtomicSwap)).scalar_one(), 0)

    def test_unique_race_retried(self):
        real_apply = handler._apply
        race = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: atomic_swap.hashlock"))
        calls = []

        def racing_apply(*args):
            calls.append(1)
            if len(calls) == 1:
                raise race
            return real_apply(*args)

        with patch.object(handler, "_apply", side_effect=racing_apply):
            result = process_event(source_event(h32("O1"), h32("H1"), escrow=addr(0x51)), self.ctx)
        self.assertEqual(result.attempts, 2)

    def test_other_constraint_violation_not_retried(self):
        """A NOT NULL failure repeats on every attempt; it surfaces as itself."""
        broken = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: atomic_swap.status"))
        calls = []

        def broken_apply(*args):
            calls.append(1)
            raise broken

        with patch.object(handler, "_apply", side_effect=broken_apply):
            with self.assertRaises(IntegrityError):
                process_event(source_event(h32("O1"), h32("H1"), escrow=addr(0x51)), self.ctx)
        self.assertEqual(len(calls), 1)

    def test_is_conflict(self):
        class PgError(Exception):
            sqlstate = None

        unique = PgError("duplicate key value violates unique constraint")
        unique.sqlstate = "23505"
        not_null = PgError("null value in column")
        not_null.sqlstate = "23502"

        self.assertTrue(is_conflict(OperationalError("SELECT", {}, Exception("database is locked"))))
        self.assertTrue(is_conflict(IntegrityError("INSERT", {}, unique)))
        self.assertFalse(is_conflict(IntegrityError("INSERT", {}, not_null)))
        self.assertFalse(is_conflict(IntegrityError("INSERT", {}, Exception("CHECK constraint failed: amount"))))
        self.assertFalse(is_conflict(ValueError("not a database error")))


if __name__ == "__main__":
    unittest.main(verbosity=2)
