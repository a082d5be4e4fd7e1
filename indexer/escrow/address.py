"""
Deterministic escrow address resolution.

The escrow factory deploys every escrow as an EIP-1167 minimal proxy with
CREATE2, salted by the hash of the escrow's immutable parameters. Legacy
SrcEscrowCreated events do not carry the escrow address, so the indexer
recomputes it here:

    salt      = keccak256(orderHash | hashlock | maker | taker | token |
                          amount | safetyDeposit | timelocks)    (32 bytes each)
    init_code = PROXY_PREFIX | implementation | PROXY_SUFFIX
    address   = keccak256(0xff | factory | salt | keccak256(init_code))[12:]

Any divergence from the on-chain scheme silently yields an address that never
sees activity, so every input is length-checked.
"""

from dataclasses import dataclass
from typing import Union

from web3 import Web3

# EIP-1167 creation code around the 20-byte implementation address
CLONE_PROXY_PREFIX = bytes.fromhex("3d602d80600a3d3981f3363d3d373d3d3d363d73")
CLONE_PROXY_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")

# Offset of the implementation address inside the init code
IMPLEMENTATION_OFFSET = len(CLONE_PROXY_PREFIX)

SALT_TYPES = [
    "bytes32",  # orderHash
    "bytes32",  # hashlock
    "uint256",  # maker (packed Address)
    "uint256",  # taker (packed Address)
    "uint256",  # token (packed Address)
    "uint256",  # amount
    "uint256",  # safetyDeposit
    "uint256",  # timelocks
]


@dataclass(frozen=True)
class Immutables:
    """Immutable escrow parameters, exactly as emitted on-chain."""
    order_hash: str      # bytes32 hex
    hashlock: str        # bytes32 hex
    maker: int           # uint256, address in the low 160 bits
    taker: int
    token: int
    amount: int
    safety_deposit: int
    timelocks: int       # packed timelock schedule


def _to_bytes(value: Union[str, bytes], length: int, name: str) -> bytes:
    if isinstance(value, str):
        value = Web3.to_bytes(hexstr=value)
    if len(value) != length:
        raise ValueError(f"{name} must be {length} bytes, got {len(value)}")
    return bytes(value)


def proxy_init_code(implementation: Union[str, bytes]) -> bytes:
    """Build the EIP-1167 creation code cloning `implementation`."""
    impl = _to_bytes(implementation, 20, "implementation")
    return CLONE_PROXY_PREFIX + impl + CLONE_PROXY_SUFFIX


def compute_salt(immutables: Immutables) -> bytes:
    """Hash the immutables into the CREATE2 salt."""
    values = [
        _to_bytes(immutables.order_hash, 32, "order_hash"),
        _to_bytes(immutables.hashlock, 32, "hashlock"),
        immutables.maker,
        immutables.taker,
        immutables.token,
        immutables.amount,
        immutables.safety_deposit,
        immutables.timelocks,
    ]
    return bytes(Web3.solidity_keccak(SALT_TYPES, values))


def create2_address(deployer: Union[str, bytes], salt: Union[str, bytes],
                    init_code_hash: Union[str, bytes]) -> str:
    """
    EIP-1014 address of a CREATE2 deployment.

    Returns:
        Lowercase 0x-prefixed address
    """
    preimage = (
        b"\xff"
        + _to_bytes(deployer, 20, "deployer")
        + _to_bytes(salt, 32, "salt")
        + _to_bytes(init_code_hash, 32, "init_code_hash")
    )
    digest = bytes(Web3.keccak(preimage))
    return "0x" + digest[12:].hex()


def compute_escrow_address(factory: str, implementation: str,
                           salt: Union[str, bytes]) -> str:
    """
    Address of the escrow clone the factory deploys for `salt`.

    Args:
        factory: Factory (CREATE2 deployer) address
        implementation: Escrow implementation the proxy delegates to
        salt: 32-byte salt, see compute_salt()

    Returns:
        Lowercase 0x-prefixed address
    """
    init_code_hash = bytes(Web3.keccak(proxy_init_code(implementation)))
    return create2_address(factory, salt, init_code_hash)


def resolve_escrow_address(factory: str, implementation: str,
                           immutables: Immutables) -> str:
    """Shortcut: salt the immutables and compute the clone address."""
    return compute_escrow_address(factory, implementation, compute_salt(immutables))
