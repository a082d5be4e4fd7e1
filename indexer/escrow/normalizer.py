"""
Event Normalizer.

Maps typed chain events onto the canonical records the store understands.
Packed addresses are decoded here, once, per field:

    SourceLegCreated       maker, taker, token, dstMaker, dstToken  -> packed
    DestinationLegCreated  taker                                    -> packed
    escrowAddress (all kinds), FundsRescued.token                   -> plain

Source legs emitted by the legacy factory carry no escrow address; it is
recomputed with the Address Resolver.

Factory administration events carry plain addresses only and pass through
unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..core import DecodingError, decode_packed_address
from .address import Immutables, resolve_escrow_address
from .events import (
    Cancellation as CancellationEvent,
    DestinationLegCreated,
    EscrowEvent,
    FACTORY_EVENT_TYPES,
    FactoryEvent,
    FundsRescued,
    SourceLegCreated,
    Withdrawal as WithdrawalEvent,
)

log = logging.getLogger(__name__)


def leg_id(chain_id: int, escrow_address: str) -> str:
    """Natural key of a leg: one escrow contract on one chain."""
    return f"{chain_id}-{escrow_address.lower()}"


def event_id(chain_id: int, escrow_address: str, tx_hash: str, log_index: int) -> str:
    """Natural key of a lifecycle event."""
    return f"{chain_id}-{escrow_address.lower()}-{tx_hash.lower()}-{log_index}"


@dataclass
class SourceLeg:
    """Source escrow, fully decoded."""
    chain_id: int
    escrow_address: str
    order_hash: str
    hashlock: str
    maker: str
    taker: str
    token: str
    amount: int
    safety_deposit: int
    timelocks: int
    dst_maker: str
    dst_token: str
    dst_amount: int
    dst_safety_deposit: int
    dst_chain_id: int
    created_at: int
    block_number: int
    transaction_hash: str
    log_index: int = 0

    @property
    def id(self) -> str:
        return leg_id(self.chain_id, self.escrow_address)


@dataclass
class DestinationLeg:
    """Destination escrow, as much as DstEscrowCreated tells us."""
    chain_id: int
    escrow_address: str
    hashlock: str
    taker: str
    created_at: int
    block_number: int
    transaction_hash: str
    log_index: int = 0
    src_cancellation_timestamp: int = 0   # Not carried by the creation event

    @property
    def id(self) -> str:
        return leg_id(self.chain_id, self.escrow_address)


@dataclass
class Withdrawal:
    chain_id: int
    escrow_address: str
    secret: str
    withdrawn_at: int
    block_number: int
    transaction_hash: str
    log_index: int = 0

    @property
    def id(self) -> str:
        return event_id(self.chain_id, self.escrow_address, self.transaction_hash, self.log_index)

    @property
    def leg_id(self) -> str:
        return leg_id(self.chain_id, self.escrow_address)


@dataclass
class Cancellation:
    chain_id: int
    escrow_address: str
    cancelled_at: int
    block_number: int
    transaction_hash: str
    log_index: int = 0

    @property
    def id(self) -> str:
        return event_id(self.chain_id, self.escrow_address, self.transaction_hash, self.log_index)

    @property
    def leg_id(self) -> str:
        return leg_id(self.chain_id, self.escrow_address)


@dataclass
class FundsRescue:
    chain_id: int
    escrow_address: str
    token: str
    amount: int
    rescued_at: int
    block_number: int
    transaction_hash: str
    log_index: int = 0

    @property
    def id(self) -> str:
        return event_id(self.chain_id, self.escrow_address, self.transaction_hash, self.log_index)


NormalizedEvent = Union[SourceLeg, DestinationLeg, Withdrawal, Cancellation, FundsRescue, FactoryEvent]


class EventNormalizer:
    """
    Turns typed events into canonical records.

    Args:
        factory_address: Escrow factory, used when the event carries no
            emitting address
        src_implementation: EscrowSrc implementation cloned by the factory
    """

    def __init__(self, factory_address: str, src_implementation: Optional[str] = None):
        self.factory_address = factory_address
        self.src_implementation = src_implementation

    def normalize(self, event: EscrowEvent) -> NormalizedEvent:
        if isinstance(event, SourceLegCreated):
            return self._source_leg(event)
        if isinstance(event, DestinationLegCreated):
            return self._destination_leg(event)
        if isinstance(event, WithdrawalEvent):
            return Withdrawal(
                chain_id=event.chain_id,
                escrow_address=event.escrow_address,
                secret=event.secret,
                withdrawn_at=event.block_timestamp,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
            )
        if isinstance(event, CancellationEvent):
            return Cancellation(
                chain_id=event.chain_id,
                escrow_address=event.escrow_address,
                cancelled_at=event.block_timestamp,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
            )
        if isinstance(event, FundsRescued):
            return FundsRescue(
                chain_id=event.chain_id,
                escrow_address=event.escrow_address,
                token=event.token,
                amount=event.amount,
                rescued_at=event.block_timestamp,
                block_number=event.block_number,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
            )
        if isinstance(event, FACTORY_EVENT_TYPES):
            return event
        raise DecodingError(f"Unsupported event type: {type(event).__name__}")

    def _source_leg(self, event: SourceLegCreated) -> SourceLeg:
        escrow_address = event.escrow_address
        if escrow_address is None:
            escrow_address = self._resolve_src_escrow(event)

        return SourceLeg(
            chain_id=event.chain_id,
            escrow_address=escrow_address,
            order_hash=event.order_hash,
            hashlock=event.hashlock,
            maker=decode_packed_address(event.maker),
            taker=decode_packed_address(event.taker),
            token=decode_packed_address(event.token),
            amount=event.amount,
            safety_deposit=event.safety_deposit,
            timelocks=event.timelocks,
            dst_maker=decode_packed_address(event.dst_maker),
            dst_token=decode_packed_address(event.dst_token),
            dst_amount=event.dst_amount,
            dst_safety_deposit=event.dst_safety_deposit,
            dst_chain_id=event.dst_chain_id,
            created_at=event.block_timestamp,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
        )

    def _resolve_src_escrow(self, event: SourceLegCreated) -> str:
        if not self.src_implementation:
            raise DecodingError(
                "SrcEscrowCreated without escrow address and no source implementation configured",
                kind=event.kind,
            )
        factory = event.log_address or self.factory_address
        immutables = Immutables(
            order_hash=event.order_hash,
            hashlock=event.hashlock,
            maker=event.maker,
            taker=event.taker,
            token=event.token,
            amount=event.amount,
            safety_deposit=event.safety_deposit,
            timelocks=event.timelocks,
        )
        address = resolve_escrow_address(factory, self.src_implementation, immutables)
        log.debug(f"Resolved source escrow {address} for order {event.order_hash[:18]}...")
        return address

    def _destination_leg(self, event: DestinationLegCreated) -> DestinationLeg:
        return DestinationLeg(
            chain_id=event.chain_id,
            escrow_address=event.escrow_address,
            hashlock=event.hashlock,
            taker=decode_packed_address(event.taker),
            created_at=event.block_timestamp,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            log_index=event.log_index,
        )
