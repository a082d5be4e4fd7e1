"""
Core types and helpers for the BMN escrow indexer.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union


class LegStatus(Enum):
    """Escrow (leg) lifecycle states."""
    CREATED = "created"       # Escrow deployed, funds locked
    WITHDRAWN = "withdrawn"   # Secret revealed, funds released (terminal)
    CANCELLED = "cancelled"   # Timelock expired, funds returned (terminal)

    @property
    def is_terminal(self) -> bool:
        return self is not LegStatus.CREATED


class SwapStatus(Enum):
    """Swap aggregate lifecycle states.

    PENDING is never persisted: it is the state of a swap no leg has been
    seen for yet.

      (none) -> SRC_CREATED -> BOTH_CREATED -> COMPLETED
      (none) -> DST_CREATED_ONLY -> BOTH_CREATED -> COMPLETED
      any non-terminal -> CANCELLED
    """
    PENDING = "pending"
    SRC_CREATED = "src_created"             # Source escrow seen
    DST_CREATED_ONLY = "dst_created_only"   # Placeholder: destination escrow seen first
    BOTH_CREATED = "both_created"           # Both escrows seen
    COMPLETED = "completed"                 # Source escrow withdrawn, secret public
    CANCELLED = "cancelled"                 # Either escrow cancelled

    @property
    def is_terminal(self) -> bool:
        return self in (SwapStatus.COMPLETED, SwapStatus.CANCELLED)


class AnomalyKind(Enum):
    """Recoverable conditions recorded for later reconciliation."""
    ORPHAN_WITHDRAWAL = "orphan_withdrawal"
    ORPHAN_CANCELLATION = "orphan_cancellation"
    HASHLOCK_CONFLICT = "hashlock_conflict"
    TERMINAL_LEG = "terminal_leg"
    TERMINAL_SWAP = "terminal_swap"             # Factory completion for a cancelled swap
    ORPHAN_COMPLETION = "orphan_completion"     # Factory completion for an unknown order
    UNKNOWN_ACCOUNT = "unknown_account"         # Resolver or admin change for an account never added


# =============================================================================
# Errors
# =============================================================================

class DecodingError(ValueError):
    """Event payload does not match the expected shape (ABI mismatch)."""

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind


class TransactionConflictError(RuntimeError):
    """Event transaction kept conflicting after all retries."""


# =============================================================================
# Address / hex helpers
# =============================================================================

ADDRESS_MASK = (1 << 160) - 1
UINT256_MAX = (1 << 256) - 1


def decode_packed_address(packed: Union[int, str]) -> str:
    """
    Decode an address packed into the low 160 bits of a uint256.

    The high bits may carry flags; they are discarded.

    Returns:
        Lowercase 0x-prefixed address
    """
    if isinstance(packed, str):
        packed = int(packed, 16)
    return "0x" + format(packed & ADDRESS_MASK, "040x")


def normalize_address(address: str) -> str:
    """Validate a 20-byte hex address and return it lowercase."""
    if not is_hex_of_length(address, 20):
        raise ValueError(f"Invalid address: {address!r}")
    return address.lower()


def normalize_bytes32(value: str) -> str:
    """Validate a 32-byte hex word and return it lowercase."""
    if not is_hex_of_length(value, 32):
        raise ValueError(f"Invalid bytes32: {value!r}")
    return value.lower()


def is_hex_of_length(value: str, num_bytes: int) -> bool:
    """Check for a 0x-prefixed hex string of exactly num_bytes bytes."""
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        return False
    if len(value) != 2 + 2 * num_bytes:
        return False
    try:
        int(value[2:], 16)
        return True
    except ValueError:
        return False


def parse_uint(value: Union[int, str]) -> int:
    """Parse a uint256 given as int, decimal string or 0x hex string."""
    if isinstance(value, bool):
        raise ValueError("Boolean is not an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        result = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
    else:
        raise ValueError(f"Not an integer: {value!r}")
    if not 0 <= result <= UINT256_MAX:
        raise ValueError(f"Out of uint256 range: {value!r}")
    return result


# =============================================================================
# Result of processing one event
# =============================================================================

@dataclass
class ProcessResult:
    """Outcome of processing a single event."""
    kind: str
    chain_id: int
    escrow_address: Optional[str] = None
    hashlock: Optional[str] = None
    swap_status: Optional[SwapStatus] = None
    duplicate: bool = False
    anomaly: Optional[AnomalyKind] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "kind": self.kind,
            "chain_id": self.chain_id,
            "escrow_address": self.escrow_address,
            "hashlock": self.hashlock,
            "swap_status": self.swap_status.value if self.swap_status else None,
            "duplicate": self.duplicate,
            "anomaly": self.anomaly.value if self.anomaly else None,
            "attempts": self.attempts,
        }


# =============================================================================
# Constants
# =============================================================================

# Anomaly detail strings are truncated to this length before storage
MAX_ANOMALY_DETAIL = 512

# Default number of attempts for an event transaction before giving up
DEFAULT_MAX_RETRIES = 5

# Backoff between conflicting attempts (seconds, multiplied by attempt number)
RETRY_BACKOFF_SECONDS = 0.05

# Largest chain id wallets and clients agree on (EIP-2294)
MAX_CHAIN_ID = 4611686018427387903

# Block numbers and timestamps fit a signed 64-bit column
MAX_BLOCK_VALUE = (1 << 63) - 1

# Log indices fit a signed 32-bit column
MAX_LOG_INDEX = (1 << 31) - 1
