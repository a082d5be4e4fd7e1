#!/usr/bin/env python3
"""
Statistics Aggregator Tests

Usage:
    python test_stats.py
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from indexer.store.database import Database
from indexer.swap.stats import StatisticsAggregator, StatsDelta


class TestStatisticsAggregator(unittest.TestCase):

    def setUp(self):
        self.db = Database("sqlite://")
        self.db.create_all()
        self.stats = StatisticsAggregator()

    def tearDown(self):
        self.db.dispose()

    def test_lazy_row_creation(self):
        with self.db.transaction() as session:
            self.stats.record(session, 1, StatsDelta.dst_escrow(), 10)
        with self.db.transaction() as session:
            row = self.stats.get(session, 1)
        self.assertEqual(row["total_dst_escrows"], 1)
        self.assertEqual(row["last_processed_block"], 10)

    def test_ensure_chains(self):
        with self.db.transaction() as session:
            self.assertEqual(self.stats.ensure_chains(session, [8453, 42793]), 2)
            self.assertEqual(self.stats.ensure_chains(session, [8453]), 0)
            rows = self.stats.all(session)
        self.assertEqual([r["chain_id"] for r in rows], [8453, 42793])
        self.assertTrue(all(r["total_src_escrows"] == 0 for r in rows))

    def test_volumes_beyond_64_bits(self):
        big = 2 ** 200
        with self.db.transaction() as session:
            self.stats.record(session, 1, StatsDelta.src_escrow(big), 1)
            self.stats.record(session, 1, StatsDelta.src_escrow(big), 2)
            self.stats.record(session, 1, StatsDelta.withdrawal(big), 3)
        with self.db.transaction() as session:
            row = self.stats.get(session, 1)
        self.assertEqual(row["total_src_escrows"], 2)
        self.assertEqual(row["total_volume_locked"], 2 * big)
        self.assertEqual(row["total_volume_withdrawn"], big)
        self.assertEqual(row["total_withdrawals"], 1)

    def test_watermark_never_moves_back(self):
        with self.db.transaction() as session:
            self.stats.record(session, 1, StatsDelta.cancellation(), 500)
            self.stats.touch(session, 1, 100)
        with self.db.transaction() as session:
            row = self.stats.get(session, 1)
        self.assertEqual(row["last_processed_block"], 500)
        self.assertEqual(row["total_cancellations"], 1)

    def test_touch_only_moves_watermark(self):
        with self.db.transaction() as session:
            self.stats.touch(session, 1, 42)
        with self.db.transaction() as session:
            row = self.stats.get(session, 1)
        self.assertEqual(row["last_processed_block"], 42)
        self.assertEqual(row["total_withdrawals"], 0)
        self.assertEqual(row["total_funds_rescued"], 0)

    def test_rolled_back_with_transaction(self):
        with self.assertRaises(RuntimeError):
            with self.db.transaction() as session:
                self.stats.record(session, 1, StatsDelta.funds_rescued(), 7)
                raise RuntimeError("abort")
        with self.db.transaction() as session:
            row = self.stats.get(session, 1)
        self.assertEqual(row["total_funds_rescued"], 0)

    def test_unknown_chain_defaults(self):
        with self.db.transaction() as session:
            row = self.stats.get(session, 999)
        self.assertEqual(row["chain_id"], 999)
        self.assertEqual(row["total_volume_locked"], 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
