#!/usr/bin/env python3
"""
HTTP Surface Tests

POST /api/events and GET /api/status through FastAPI's TestClient.

Usage:
    python test_server.py
"""

import sys
import os
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fastapi.testclient import TestClient

import server
from indexer.core import TransactionConflictError
from routes import events

from sample_events import (
    BASE,
    ETHERLINK,
    addr,
    destination_event,
    factory_event,
    h32,
    make_context,
    source_event,
    withdrawal_event,
)


class TestEventsEndpoint(unittest.TestCase):

    def setUp(self):
        self.ctx = make_context()
        with self.ctx.database.transaction() as session:
            self.ctx.stats.ensure_chains(session, [BASE, ETHERLINK])
        events.configure(self.ctx)
        # Not used as a context manager: startup would replace the context
        self.client = TestClient(server.app)

    def tearDown(self):
        events.shutdown()

    def test_process_source_then_destination(self):
        resp = self.client.post("/api/events", json=source_event(h32("O1"), h32("H1"), escrow=addr(0x51)))
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["swap_status"], "src_created")
        self.assertEqual(body["hashlock"], h32("H1"))

        resp = self.client.post("/api/events", json=destination_event(h32("H1"), addr(0xD1)))
        self.assertEqual(resp.json()["swap_status"], "both_created")

    def test_orphan_is_not_an_error(self):
        resp = self.client.post("/api/events", json=withdrawal_event(addr(0xDEAD), h32("S")))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["anomaly"], "orphan_withdrawal")

    def test_decoding_error_is_422(self):
        payload = destination_event(h32("H1"), addr(0xD1))
        payload["hashlock"] = "0x1234"
        resp = self.client.post("/api/events", json=payload)
        self.assertEqual(resp.status_code, 422)
        self.assertIn("hashlock", resp.json()["detail"])

    def test_conflict_is_503(self):
        with patch.object(events, "process_event", side_effect=TransactionConflictError("busy")):
            resp = self.client.post("/api/events", json=withdrawal_event(addr(0x51), h32("S")))
        self.assertEqual(resp.status_code, 503)

    def test_not_initialized_is_503(self):
        events.shutdown()
        resp = self.client.get("/api/status")
        self.assertEqual(resp.status_code, 503)

    def test_status(self):
        self.client.post("/api/events", json=destination_event(h32("H2"), addr(0xD2)))
        resp = self.client.get("/api/status")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["database"], "sqlite")
        self.assertEqual(body["placeholders"], 1)
        self.assertEqual(body["anomalies"], 0)
        chains = {c["chain_id"]: c for c in body["chains"]}
        self.assertEqual(chains[ETHERLINK]["name"], "etherlink")
        self.assertEqual(chains[ETHERLINK]["total_dst_escrows"], 1)
        self.assertEqual(chains[BASE]["total_volume_locked"], "0")
        self.assertFalse(chains[BASE]["paused"])

    def test_hex_envelope(self):
        payload = source_event(h32("O1"), h32("H1"), escrow=addr(0x51))
        payload.update(chainId=hex(BASE), blockNumber="0x64", blockTimestamp=hex(1_700_000_100), logIndex="0x0")
        resp = self.client.post("/api/events", json=payload)
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["chain_id"], BASE)

    def test_chain_id_out_of_range_is_422(self):
        payload = source_event(h32("O1"), h32("H1"), escrow=addr(0x51))
        payload["chainId"] = 2 ** 64
        resp = self.client.post("/api/events", json=payload)
        self.assertEqual(resp.status_code, 422)

    def test_paused_factory_in_status(self):
        resp = self.client.post("/api/events", json=factory_event("EmergencyPause", paused=True))
        self.assertEqual(resp.status_code, 200, resp.text)
        chains = {c["chain_id"]: c for c in self.client.get("/api/status").json()["chains"]}
        self.assertTrue(chains[BASE]["paused"])
        self.assertFalse(chains[ETHERLINK]["paused"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
