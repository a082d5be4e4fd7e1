"""
Escrow events: decoding, address resolution and normalization.
"""

from .address import compute_escrow_address, create2_address, resolve_escrow_address
from .events import EscrowEvent, decode_log, parse_event
from .normalizer import EventNormalizer

__all__ = [
    "compute_escrow_address",
    "create2_address",
    "resolve_escrow_address",
    "EscrowEvent",
    "decode_log",
    "parse_event",
    "EventNormalizer",
]
