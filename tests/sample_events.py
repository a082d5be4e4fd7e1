"""
Event builders shared by the indexer tests.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from web3 import Web3

from indexer.escrow.normalizer import EventNormalizer
from indexer.store.database import Database
from indexer.swap.handler import HandlerContext

BASE = 8453
ETHERLINK = 42793

FACTORY = "0x75ee15f6bfdd06aee499ed95e8d92a114659f4d1"
SRC_IMPL = "0x77cc1a51dc5855bcf0d9f1c1fceaee7fb855a535"

# Flag bits above the low 160 bits of a packed address
PACKED_FLAGS = 1 << 200


def h32(label: str) -> str:
    """Deterministic bytes32 hex for a label."""
    return "0x" + bytes(Web3.keccak(text=label)).hex()


def addr(n: int) -> str:
    return "0x" + format(n, "040x")


def packed(address: str, flags: int = 0) -> int:
    return flags | int(address, 16)


def _envelope(chain_id, block, tx, log_index, timestamp=None):
    return {
        "chainId": chain_id,
        "blockNumber": block,
        "blockTimestamp": timestamp if timestamp is not None else 1_700_000_000 + block,
        "transactionHash": tx,
        "logIndex": log_index,
    }


def source_event(order: str, hashlock: str, escrow: str = None, chain_id: int = BASE,
                 dst_chain_id: int = ETHERLINK, amount: int = 1000, block: int = 100,
                 log_index: int = 0, maker: str = addr(0xA1), taker: str = addr(0xB1)) -> dict:
    event = {
        "kind": "SourceLegCreated",
        **_envelope(chain_id, block, h32(f"tx-src-{order}"), log_index),
        "orderHash": order,
        "hashlock": hashlock,
        "maker": packed(maker, PACKED_FLAGS),
        "taker": packed(taker),
        "token": packed(addr(0x70C)),
        "amount": amount,
        "safetyDeposit": 10,
        "timelocks": 0x1234,
        "dstMaker": packed(maker),
        "dstToken": packed(addr(0x70D)),
        "dstAmount": amount * 2,
        "dstSafetyDeposit": 20,
        "dstChainId": dst_chain_id,
    }
    if escrow is not None:
        event["escrowAddress"] = escrow
    return event


def destination_event(hashlock: str, escrow: str, chain_id: int = ETHERLINK, block: int = 200,
                      log_index: int = 0, taker: str = addr(0xB2)) -> dict:
    return {
        "kind": "DestinationLegCreated",
        **_envelope(chain_id, block, h32(f"tx-dst-{escrow}"), log_index),
        "escrowAddress": escrow,
        "hashlock": hashlock,
        "taker": hex(packed(taker, PACKED_FLAGS)),
    }


def withdrawal_event(escrow: str, secret: str, chain_id: int = BASE, block: int = 300,
                     log_index: int = 0) -> dict:
    return {
        "kind": "Withdrawal",
        **_envelope(chain_id, block, h32(f"tx-wd-{escrow}"), log_index),
        "escrowAddress": escrow,
        "secret": secret,
    }


def cancellation_event(escrow: str, chain_id: int = BASE, block: int = 400,
                       log_index: int = 0) -> dict:
    return {
        "kind": "Cancellation",
        **_envelope(chain_id, block, h32(f"tx-cancel-{escrow}"), log_index),
        "escrowAddress": escrow,
    }


def funds_rescued_event(escrow: str, token: str, amount: int, chain_id: int = BASE,
                        block: int = 500, log_index: int = 0) -> dict:
    return {
        "kind": "FundsRescued",
        **_envelope(chain_id, block, h32(f"tx-rescue-{escrow}"), log_index),
        "escrowAddress": escrow,
        "token": token,
        "amount": str(amount),
    }


def factory_event(kind: str, chain_id: int = BASE, block: int = 600, log_index: int = 0,
                  tx: str = None, **fields) -> dict:
    """Factory administration event; `fields` use the camelCase payload keys."""
    return {
        "kind": kind,
        **_envelope(chain_id, block, tx or h32(f"tx-{kind}-{block}-{log_index}"), log_index),
        **fields,
    }


def make_context(url: str = "sqlite://", max_retries: int = 3) -> HandlerContext:
    """Fresh database + handler context."""
    database = Database(url)
    database.create_all()
    return HandlerContext(
        database=database,
        normalizer=EventNormalizer(FACTORY, SRC_IMPL),
        max_retries=max_retries,
        retry_backoff=0.01,
    )
