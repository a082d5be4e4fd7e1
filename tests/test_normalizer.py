#!/usr/bin/env python3
"""
Event Normalizer Tests

Packed address decoding, CREATE2 fallback for legacy source events, and
canonical record identities.

Usage:
    python test_normalizer.py
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from indexer.core import DecodingError, decode_packed_address
from indexer.escrow.address import Immutables, resolve_escrow_address
from indexer.escrow.events import parse_event
from indexer.escrow.normalizer import (
    Cancellation,
    DestinationLeg,
    EventNormalizer,
    FundsRescue,
    SourceLeg,
    Withdrawal,
)

from sample_events import (
    BASE,
    ETHERLINK,
    FACTORY,
    PACKED_FLAGS,
    SRC_IMPL,
    addr,
    cancellation_event,
    destination_event,
    funds_rescued_event,
    h32,
    source_event,
    withdrawal_event,
)


class TestPackedAddress(unittest.TestCase):

    def test_low_160_bits(self):
        value = PACKED_FLAGS | int(addr(0xA1), 16)
        self.assertEqual(decode_packed_address(value), addr(0xA1))

    def test_hex_string(self):
        self.assertEqual(decode_packed_address("0x" + "ff" * 12 + "ab" * 20), "0x" + "ab" * 20)

    def test_zero(self):
        self.assertEqual(decode_packed_address(0), "0x" + "00" * 20)


class TestNormalizer(unittest.TestCase):

    def setUp(self):
        self.normalizer = EventNormalizer(FACTORY, SRC_IMPL)

    def normalize(self, payload):
        return self.normalizer.normalize(parse_event(payload))

    def test_source_leg_with_address(self):
        leg = self.normalize(source_event(h32("O1"), h32("H1"), escrow=addr(0x51),
                                          maker=addr(0xA1), taker=addr(0xB1)))
        self.assertIsInstance(leg, SourceLeg)
        self.assertEqual(leg.escrow_address, addr(0x51))
        self.assertEqual(leg.id, f"{BASE}-{addr(0x51)}")
        self.assertEqual(leg.maker, addr(0xA1))     # flag bits dropped
        self.assertEqual(leg.taker, addr(0xB1))
        self.assertEqual(leg.token, addr(0x70C))
        self.assertEqual(leg.dst_token, addr(0x70D))
        self.assertEqual(leg.dst_chain_id, ETHERLINK)
        self.assertEqual(leg.created_at, 1_700_000_100)

    def test_source_leg_resolved_with_create2(self):
        payload = source_event(h32("O2"), h32("H2"))
        event = parse_event(payload)
        expected = resolve_escrow_address(FACTORY, SRC_IMPL, Immutables(
            order_hash=event.order_hash,
            hashlock=event.hashlock,
            maker=event.maker,
            taker=event.taker,
            token=event.token,
            amount=event.amount,
            safety_deposit=event.safety_deposit,
            timelocks=event.timelocks,
        ))
        leg = self.normalizer.normalize(event)
        self.assertEqual(leg.escrow_address, expected)

    def test_emitting_factory_preferred(self):
        payload = source_event(h32("O2"), h32("H2"))
        without_log_address = self.normalize(payload).escrow_address
        payload["logAddress"] = addr(0xFAC)
        with_log_address = self.normalize(payload).escrow_address
        self.assertNotEqual(without_log_address, with_log_address)

    def test_no_implementation_configured(self):
        normalizer = EventNormalizer(FACTORY, None)
        with self.assertRaises(DecodingError):
            normalizer.normalize(parse_event(source_event(h32("O2"), h32("H2"))))

    def test_destination_leg(self):
        leg = self.normalize(destination_event(h32("H1"), addr(0xD1), taker=addr(0xB2)))
        self.assertIsInstance(leg, DestinationLeg)
        self.assertEqual(leg.hashlock, h32("H1"))
        self.assertEqual(leg.taker, addr(0xB2))
        self.assertEqual(leg.src_cancellation_timestamp, 0)
        self.assertEqual(leg.id, f"{ETHERLINK}-{addr(0xD1)}")

    def test_lifecycle_records(self):
        withdrawal = self.normalize(withdrawal_event(addr(0x51), h32("S"), block=300, log_index=2))
        self.assertIsInstance(withdrawal, Withdrawal)
        self.assertEqual(withdrawal.leg_id, f"{BASE}-{addr(0x51)}")
        self.assertTrue(withdrawal.id.endswith("-2"))
        self.assertEqual(withdrawal.withdrawn_at, 1_700_000_300)

        cancellation = self.normalize(cancellation_event(addr(0x51)))
        self.assertIsInstance(cancellation, Cancellation)
        self.assertEqual(cancellation.leg_id, withdrawal.leg_id)

    def test_funds_rescue(self):
        record = self.normalize(funds_rescued_event(addr(0x51), addr(0x70C), 7))
        self.assertIsInstance(record, FundsRescue)
        self.assertEqual(record.token, addr(0x70C))
        self.assertEqual(record.amount, 7)


if __name__ == "__main__":
    unittest.main(verbosity=2)
