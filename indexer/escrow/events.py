"""
Typed escrow events, decoded once at the system boundary.

Two input shapes are accepted:

1. Typed events (JSON objects with a "kind" discriminator), as handed over by
   the log-delivery engine after ABI decoding:

       {"kind": "Withdrawal", "chainId": 8453, "blockNumber": 123,
        "blockTimestamp": 1700000000, "transactionHash": "0x..",
        "logIndex": 0, "escrowAddress": "0x..", "secret": "0x.."}

2. Raw EVM logs (address + topics + data), decoded here with eth_abi by
   their topic0 and then validated as typed events.

Besides the escrow lifecycle, the enhanced factory emits administration
events (resolver whitelist, admins, emergency pause, swap metrics,
interactions). Their kinds are the Solidity event names and their payload
keys the parameter names.

Anything that does not fit raises DecodingError. Such an event is never
dropped: losing a creation event breaks correlation for that swap forever.
"""

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Union, get_args

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError as ABIDecodingError
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel
from web3 import Web3

from ..core import (
    MAX_BLOCK_VALUE,
    MAX_CHAIN_ID,
    MAX_LOG_INDEX,
    DecodingError,
    normalize_address,
    normalize_bytes32,
    parse_uint,
)

log = logging.getLogger(__name__)


# =============================================================================
# Field types
# =============================================================================

Uint256 = Annotated[int, BeforeValidator(parse_uint)]
Address = Annotated[str, AfterValidator(normalize_address)]
Bytes32 = Annotated[str, AfterValidator(normalize_bytes32)]

# Envelope integers: JSON number or 0x hex, bounded to what the tables store
ChainId = Annotated[int, BeforeValidator(parse_uint), Field(gt=0, le=MAX_CHAIN_ID)]
BlockValue = Annotated[int, BeforeValidator(parse_uint), Field(ge=0, le=MAX_BLOCK_VALUE)]
LogIndex = Annotated[int, BeforeValidator(parse_uint), Field(ge=0, le=MAX_LOG_INDEX)]

# Address packed in the low 160 bits of a uint256, decoded by the normalizer
PackedAddress = Uint256


class _EscrowEvent(BaseModel):
    """Envelope shared by every event kind."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    chain_id: ChainId
    block_number: BlockValue
    block_timestamp: BlockValue
    transaction_hash: Bytes32
    log_index: LogIndex = 0
    log_address: Optional[Address] = None   # Emitting contract, when known
    transaction_from: Optional[Address] = None   # Sender of the emitting transaction, when known


class SourceLegCreated(_EscrowEvent):
    """Factory: source escrow deployed (SrcEscrowCreated)."""
    kind: Literal["SourceLegCreated"]

    order_hash: Bytes32
    hashlock: Bytes32
    maker: PackedAddress
    taker: PackedAddress
    token: PackedAddress
    amount: Uint256
    safety_deposit: Uint256
    timelocks: Uint256

    # DstImmutablesComplement
    dst_maker: PackedAddress
    dst_token: PackedAddress
    dst_amount: Uint256
    dst_safety_deposit: Uint256
    dst_chain_id: Uint256

    # Only emitted by the enhanced factory; otherwise resolved via CREATE2
    escrow_address: Optional[Address] = None


class DestinationLegCreated(_EscrowEvent):
    """Factory: destination escrow deployed (DstEscrowCreated)."""
    kind: Literal["DestinationLegCreated"]

    escrow_address: Address
    hashlock: Bytes32
    taker: PackedAddress


class Withdrawal(_EscrowEvent):
    """Escrow: funds withdrawn, secret revealed (EscrowWithdrawal)."""
    kind: Literal["Withdrawal"]

    escrow_address: Address
    secret: Bytes32


class Cancellation(_EscrowEvent):
    """Escrow: funds returned after timelock (EscrowCancelled)."""
    kind: Literal["Cancellation"]

    escrow_address: Address


class FundsRescued(_EscrowEvent):
    """Escrow: stray tokens rescued by the taker (FundsRescued)."""
    kind: Literal["FundsRescued"]

    escrow_address: Address
    token: Address
    amount: Uint256


# =============================================================================
# Factory administration events (enhanced factory)
# =============================================================================

class ResolverWhitelisted(_EscrowEvent):
    """Resolver put on the whitelist; the adder is the transaction sender."""
    kind: Literal["ResolverWhitelisted"]

    resolver: Address


class ResolverAdded(_EscrowEvent):
    kind: Literal["ResolverAdded"]

    resolver: Address
    added_by: Address


class ResolverRemoved(_EscrowEvent):
    kind: Literal["ResolverRemoved"]

    resolver: Address


class ResolverSuspended(_EscrowEvent):
    """Resolver deactivated until a timestamp."""
    kind: Literal["ResolverSuspended"]

    resolver: Address
    until: Uint256
    reason: str = ""


class ResolverReactivated(_EscrowEvent):
    kind: Literal["ResolverReactivated"]

    resolver: Address


class AdminAdded(_EscrowEvent):
    kind: Literal["AdminAdded"]

    admin: Address


class AdminRemoved(_EscrowEvent):
    kind: Literal["AdminRemoved"]

    admin: Address


class EmergencyPause(_EscrowEvent):
    """Factory paused (or unpaused) by an admin."""
    kind: Literal["EmergencyPause"]

    paused: bool


class SwapInitiated(_EscrowEvent):
    """Source escrow deployed through a resolver; volume in source token units."""
    kind: Literal["SwapInitiated"]

    escrow_src: Address
    maker: Address
    resolver: Address
    volume: Uint256
    src_chain_id: Uint256
    dst_chain_id: Uint256


class SwapCompleted(_EscrowEvent):
    """Factory-side completion report for an order."""
    kind: Literal["SwapCompleted"]

    order_hash: Bytes32
    resolver: Address
    completion_time: Uint256
    gas_used: Uint256


class InteractionExecuted(_EscrowEvent):
    kind: Literal["InteractionExecuted"]

    order_maker: Address
    interaction_target: Address
    interaction_hash: Bytes32
    timestamp: Uint256


class InteractionFailed(_EscrowEvent):
    """Post-interaction reverted; charged to the transaction sender."""
    kind: Literal["InteractionFailed"]

    order_maker: Address
    interaction_target: Address
    reason: str = ""


class MetricsUpdated(_EscrowEvent):
    kind: Literal["MetricsUpdated"]

    total_volume: Uint256
    success_rate: Uint256          # Basis points
    avg_completion_time: Uint256   # Seconds


FactoryEvent = Union[
    ResolverWhitelisted,
    ResolverAdded,
    ResolverRemoved,
    ResolverSuspended,
    ResolverReactivated,
    AdminAdded,
    AdminRemoved,
    EmergencyPause,
    SwapInitiated,
    SwapCompleted,
    InteractionExecuted,
    InteractionFailed,
    MetricsUpdated,
]

FACTORY_EVENT_TYPES = get_args(FactoryEvent)

EscrowEvent = Annotated[
    Union[SourceLegCreated, DestinationLegCreated, Withdrawal, Cancellation, FundsRescued, FactoryEvent],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(EscrowEvent)


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_event(payload: Mapping[str, Any]) -> EscrowEvent:
    """
    Validate a typed event payload.

    Raises:
        DecodingError: payload does not match any event kind
    """
    kind = payload.get("kind") if isinstance(payload, Mapping) else None
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as e:
        raise DecodingError(f"Invalid {kind or 'event'} payload: {_format_errors(e)}", kind=kind) from e


def parse_event_json(text: Union[str, bytes]) -> EscrowEvent:
    """Validate a typed event given as a JSON document."""
    try:
        return _event_adapter.validate_json(text)
    except ValidationError as e:
        raise DecodingError(f"Invalid event JSON: {_format_errors(e)}") from e


# =============================================================================
# Raw EVM log decoding
# =============================================================================

IMMUTABLES_TUPLE = "(bytes32,bytes32,uint256,uint256,uint256,uint256,uint256,uint256)"
COMPLEMENT_TUPLE = "(uint256,uint256,uint256,uint256,uint256)"


@dataclass(frozen=True)
class EventABI:
    """Minimal description of a Solidity event."""
    name: str
    indexed: List[str]    # Types carried in topics[1:]
    data: List[str]       # Types ABI-encoded in data
    signature: str
    names: List[str] = field(default_factory=list)   # Payload keys, factory events only

    @property
    def topic(self) -> str:
        return "0x" + bytes(Web3.keccak(text=self.signature)).hex()


def _event_abi(name: str, indexed: List[str], data: List[str], params: List[str]) -> EventABI:
    return EventABI(name=name, indexed=indexed, data=data,
                    signature=f"{name}({','.join(params)})")


# Legacy factory: escrow address must be computed with CREATE2
SRC_ESCROW_CREATED = _event_abi(
    "SrcEscrowCreated", [], [IMMUTABLES_TUPLE, COMPLEMENT_TUPLE],
    [IMMUTABLES_TUPLE, COMPLEMENT_TUPLE],
)
# Enhanced factory: escrow address emitted as first (indexed) parameter
SRC_ESCROW_CREATED_V2 = _event_abi(
    "SrcEscrowCreated", ["address"], [IMMUTABLES_TUPLE, COMPLEMENT_TUPLE],
    ["address", IMMUTABLES_TUPLE, COMPLEMENT_TUPLE],
)
DST_ESCROW_CREATED = _event_abi(
    "DstEscrowCreated", [], ["address", "bytes32", "uint256"],
    ["address", "bytes32", "uint256"],
)
ESCROW_WITHDRAWAL = _event_abi("EscrowWithdrawal", [], ["bytes32"], ["bytes32"])
ESCROW_CANCELLED = _event_abi("EscrowCancelled", [], [], [])
FUNDS_RESCUED = _event_abi("FundsRescued", [], ["address", "uint256"], ["address", "uint256"])


def _factory_abi(name: str, indexed: List[Tuple[str, str]], data: List[Tuple[str, str]]) -> EventABI:
    """Factory event whose payload fields are named after its parameters (indexed first)."""
    params = indexed + data
    return EventABI(
        name=name,
        indexed=[typ for typ, _ in indexed],
        data=[typ for typ, _ in data],
        signature=f"{name}({','.join(typ for typ, _ in params)})",
        names=[param for _, param in params],
    )


FACTORY_ABIS = [
    _factory_abi("ResolverWhitelisted", [("address", "resolver")], []),
    _factory_abi("ResolverAdded", [("address", "resolver"), ("address", "addedBy")], []),
    _factory_abi("ResolverRemoved", [("address", "resolver")], []),
    _factory_abi("ResolverSuspended", [("address", "resolver")],
                 [("uint256", "until"), ("string", "reason")]),
    _factory_abi("ResolverReactivated", [("address", "resolver")], []),
    _factory_abi("AdminAdded", [("address", "admin")], []),
    _factory_abi("AdminRemoved", [("address", "admin")], []),
    _factory_abi("EmergencyPause", [], [("bool", "paused")]),
    _factory_abi("SwapInitiated",
                 [("address", "escrowSrc"), ("address", "maker"), ("address", "resolver")],
                 [("uint256", "volume"), ("uint256", "srcChainId"), ("uint256", "dstChainId")]),
    _factory_abi("SwapCompleted", [("bytes32", "orderHash"), ("address", "resolver")],
                 [("uint256", "completionTime"), ("uint256", "gasUsed")]),
    _factory_abi("InteractionExecuted",
                 [("address", "orderMaker"), ("address", "interactionTarget")],
                 [("bytes32", "interactionHash"), ("uint256", "timestamp")]),
    _factory_abi("InteractionFailed",
                 [("address", "orderMaker"), ("address", "interactionTarget")],
                 [("string", "reason")]),
    _factory_abi("MetricsUpdated", [],
                 [("uint256", "totalVolume"), ("uint256", "successRate"), ("uint256", "avgCompletionTime")]),
]

EVENT_ABIS = [
    SRC_ESCROW_CREATED,
    SRC_ESCROW_CREATED_V2,
    DST_ESCROW_CREATED,
    ESCROW_WITHDRAWAL,
    ESCROW_CANCELLED,
    FUNDS_RESCUED,
    *FACTORY_ABIS,
]
EVENTS_BY_TOPIC: Dict[str, EventABI] = {abi.topic: abi for abi in EVENT_ABIS}


class RawLog(BaseModel):
    """An EVM log entry with its block metadata."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    chain_id: ChainId
    block_number: BlockValue
    block_timestamp: BlockValue
    transaction_hash: Bytes32
    log_index: LogIndex = 0
    address: Address
    topics: List[Bytes32] = Field(min_length=1)
    data: str = "0x"
    transaction_from: Optional[Address] = None


def _hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def _envelope(raw: RawLog) -> Dict[str, Any]:
    return {
        "chainId": raw.chain_id,
        "blockNumber": raw.block_number,
        "blockTimestamp": raw.block_timestamp,
        "transactionHash": raw.transaction_hash,
        "logIndex": raw.log_index,
        "logAddress": raw.address,
        "transactionFrom": raw.transaction_from,
    }


def decode_log(entry: Mapping[str, Any]) -> EscrowEvent:
    """
    Decode a raw EVM log into a typed event.

    Args:
        entry: Log with chainId, blockNumber, blockTimestamp,
               transactionHash, logIndex, address, topics, data

    Raises:
        DecodingError: unknown topic or ABI mismatch
    """
    try:
        raw = RawLog.model_validate(entry)
    except ValidationError as e:
        raise DecodingError(f"Invalid log: {_format_errors(e)}") from e

    abi = EVENTS_BY_TOPIC.get(raw.topics[0])
    if abi is None:
        raise DecodingError(f"Unknown event topic {raw.topics[0]} from {raw.address}")

    if len(raw.topics) - 1 != len(abi.indexed):
        raise DecodingError(
            f"{abi.name}: expected {len(abi.indexed)} indexed topics, got {len(raw.topics) - 1}",
            kind=abi.name,
        )

    try:
        indexed = [
            abi_decode([typ], Web3.to_bytes(hexstr=topic))[0]
            for typ, topic in zip(abi.indexed, raw.topics[1:])
        ]
        values = list(abi_decode(abi.data, Web3.to_bytes(hexstr=raw.data)))
    except (ABIDecodingError, ValueError) as e:
        raise DecodingError(f"{abi.name}: cannot decode log data: {e}", kind=abi.name) from e

    payload = _envelope(raw)

    if abi.names:
        payload["kind"] = abi.name
        for name, value in zip(abi.names, indexed + values):
            payload[name] = _hex(value) if isinstance(value, bytes) else value
    elif abi.name == "SrcEscrowCreated":
        src, complement = values
        payload.update({
            "kind": "SourceLegCreated",
            "orderHash": _hex(src[0]),
            "hashlock": _hex(src[1]),
            "maker": src[2],
            "taker": src[3],
            "token": src[4],
            "amount": src[5],
            "safetyDeposit": src[6],
            "timelocks": src[7],
            "dstMaker": complement[0],
            "dstAmount": complement[1],
            "dstToken": complement[2],
            "dstSafetyDeposit": complement[3],
            "dstChainId": complement[4],
        })
        if indexed:
            payload["escrowAddress"] = indexed[0]
    elif abi.name == "DstEscrowCreated":
        escrow, hashlock, taker = values
        payload.update({
            "kind": "DestinationLegCreated",
            "escrowAddress": escrow,
            "hashlock": _hex(hashlock),
            "taker": taker,
        })
    elif abi.name == "EscrowWithdrawal":
        payload.update({
            "kind": "Withdrawal",
            "escrowAddress": raw.address,
            "secret": _hex(values[0]),
        })
    elif abi.name == "EscrowCancelled":
        payload.update({"kind": "Cancellation", "escrowAddress": raw.address})
    else:
        token, amount = values
        payload.update({
            "kind": "FundsRescued",
            "escrowAddress": raw.address,
            "token": token,
            "amount": amount,
        })

    log.debug(f"Decoded {abi.name} log {raw.transaction_hash}:{raw.log_index} on chain {raw.chain_id}")
    return parse_event(payload)
