#!/usr/bin/env python3
"""
Address Resolver Tests

1. CREATE2 reference vectors (EIP-1014)
2. EIP-1167 proxy init code layout
3. Salt derivation from the escrow immutables
4. Determinism and input validation

Usage:
    python test_address.py
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from eth_abi import encode as abi_encode
from web3 import Web3

from indexer.escrow.address import (
    CLONE_PROXY_PREFIX,
    CLONE_PROXY_SUFFIX,
    IMPLEMENTATION_OFFSET,
    SALT_TYPES,
    Immutables,
    compute_escrow_address,
    compute_salt,
    create2_address,
    proxy_init_code,
    resolve_escrow_address,
)

ZERO_SALT = "0x" + "00" * 32
FACTORY = "0x75ee15F6BfDd06Aee499ed95e8D92a114659f4d1"
SRC_IMPL = "0x77CC1A51dC5855bcF0d9f1c1FceaeE7fb855a535"


def sample_immutables(**overrides) -> Immutables:
    values = dict(
        order_hash="0x" + "11" * 32,
        hashlock="0x" + "22" * 32,
        maker=int("0x" + "a1" * 20, 16),
        taker=int("0x" + "b1" * 20, 16),
        token=int("0x" + "c1" * 20, 16),
        amount=10 ** 18,
        safety_deposit=10 ** 15,
        timelocks=(1 << 224) | 3600,
    )
    values.update(overrides)
    return Immutables(**values)


class TestCreate2Vectors(unittest.TestCase):
    """EIP-1014 examples with init_code 0x00."""

    def setUp(self):
        self.init_code_hash = bytes(Web3.keccak(b"\x00"))

    def test_zero_deployer_zero_salt(self):
        address = create2_address("0x" + "00" * 20, ZERO_SALT, self.init_code_hash)
        self.assertEqual(address, "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38".lower())

    def test_deadbeef_deployer_zero_salt(self):
        address = create2_address("0xdeadbeef00000000000000000000000000000000",
                                  ZERO_SALT, self.init_code_hash)
        self.assertEqual(address, "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3".lower())

    def test_deadbeef_deployer_feed_salt(self):
        salt = "0x000000000000000000000000feed000000000000000000000000000000000000"
        address = create2_address("0xdeadbeef00000000000000000000000000000000",
                                  salt, self.init_code_hash)
        self.assertEqual(address, "0xD04116cDd17beBE565EB2422F2497E06cC1C9833".lower())

    def test_bytes_and_hex_inputs_agree(self):
        deployer = bytes.fromhex("deadbeef" + "00" * 16)
        a = create2_address(deployer, bytes(32), self.init_code_hash)
        b = create2_address("0xdeadbeef" + "00" * 16, ZERO_SALT, "0x" + self.init_code_hash.hex())
        self.assertEqual(a, b)

    def test_result_is_lowercase(self):
        address = create2_address("0x" + "00" * 20, ZERO_SALT, self.init_code_hash)
        self.assertEqual(address, address.lower())
        self.assertEqual(len(address), 42)


class TestProxyInitCode(unittest.TestCase):
    """EIP-1167 minimal proxy creation code."""

    def test_layout(self):
        code = proxy_init_code(SRC_IMPL)
        self.assertEqual(len(code), 55)
        self.assertEqual(code[:IMPLEMENTATION_OFFSET], CLONE_PROXY_PREFIX)
        self.assertEqual(code[IMPLEMENTATION_OFFSET:IMPLEMENTATION_OFFSET + 20],
                         bytes.fromhex(SRC_IMPL[2:]))
        self.assertEqual(code[IMPLEMENTATION_OFFSET + 20:], CLONE_PROXY_SUFFIX)

    def test_rejects_short_implementation(self):
        with self.assertRaises(ValueError):
            proxy_init_code("0x1234")


class TestSalt(unittest.TestCase):
    """Salt = keccak256 of the eight immutables, one 32-byte word each."""

    def test_matches_abi_encoding(self):
        imm = sample_immutables()
        values = [
            bytes.fromhex(imm.order_hash[2:]),
            bytes.fromhex(imm.hashlock[2:]),
            imm.maker, imm.taker, imm.token,
            imm.amount, imm.safety_deposit, imm.timelocks,
        ]
        expected = bytes(Web3.keccak(abi_encode(SALT_TYPES, values)))
        self.assertEqual(compute_salt(imm), expected)

    def test_every_field_changes_salt(self):
        base = compute_salt(sample_immutables())
        changed = [
            sample_immutables(order_hash="0x" + "12" * 32),
            sample_immutables(hashlock="0x" + "23" * 32),
            sample_immutables(maker=1),
            sample_immutables(taker=2),
            sample_immutables(token=3),
            sample_immutables(amount=1),
            sample_immutables(safety_deposit=1),
            sample_immutables(timelocks=1),
        ]
        for imm in changed:
            self.assertNotEqual(compute_salt(imm), base, imm)

    def test_rejects_short_hashlock(self):
        with self.assertRaises(ValueError):
            compute_salt(sample_immutables(hashlock="0x" + "22" * 31))


class TestEscrowAddress(unittest.TestCase):
    """Deterministic escrow address resolution."""

    def test_deterministic(self):
        imm = sample_immutables()
        first = resolve_escrow_address(FACTORY, SRC_IMPL, imm)
        second = resolve_escrow_address(FACTORY, SRC_IMPL, sample_immutables())
        self.assertEqual(first, second)

    def test_matches_manual_create2(self):
        salt = compute_salt(sample_immutables())
        init_code_hash = bytes(Web3.keccak(
            CLONE_PROXY_PREFIX + bytes.fromhex(SRC_IMPL[2:]) + CLONE_PROXY_SUFFIX
        ))
        preimage = b"\xff" + bytes.fromhex(FACTORY[2:]) + salt + init_code_hash
        expected = "0x" + bytes(Web3.keccak(preimage))[12:].hex()
        self.assertEqual(compute_escrow_address(FACTORY, SRC_IMPL, salt), expected)

    def test_checksum_case_is_irrelevant(self):
        salt = compute_salt(sample_immutables())
        self.assertEqual(
            compute_escrow_address(FACTORY, SRC_IMPL, salt),
            compute_escrow_address(FACTORY.lower(), SRC_IMPL.lower(), salt),
        )

    def test_factory_and_implementation_matter(self):
        salt = compute_salt(sample_immutables())
        base = compute_escrow_address(FACTORY, SRC_IMPL, salt)
        self.assertNotEqual(compute_escrow_address("0x" + "01" * 20, SRC_IMPL, salt), base)
        self.assertNotEqual(compute_escrow_address(FACTORY, "0x" + "02" * 20, salt), base)

    def test_rejects_bad_salt_length(self):
        with self.assertRaises(ValueError):
            compute_escrow_address(FACTORY, SRC_IMPL, b"\x00" * 31)


if __name__ == "__main__":
    unittest.main(verbosity=2)
