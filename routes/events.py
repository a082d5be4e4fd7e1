"""
Event ingestion endpoints.

The log-delivery engine posts every escrow event here, one at a time and in
block order per chain. Both typed events ({"kind": ...}) and raw EVM logs
({"address", "topics", "data", ...}) are accepted.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException
from pydantic import BaseModel
from sqlalchemy import func, select

from indexer import __version__
from indexer.chains.evm import chain_name
from indexer.core import DecodingError, TransactionConflictError
from indexer.store.models import Anomaly, AtomicSwap
from indexer.swap.handler import HandlerContext, process_event

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Context set by server.py at startup
# ---------------------------------------------------------------------------

_ctx: Optional[HandlerContext] = None
_config = None


def configure(ctx: HandlerContext, config=None):
    """Configure the events module. Called once at startup by server.py."""
    global _ctx, _config
    _ctx = ctx
    _config = config


def is_configured() -> bool:
    return _ctx is not None


def shutdown():
    """Release the database. Called on shutdown by server.py."""
    global _ctx
    if _ctx is not None:
        _ctx.database.dispose()
        _ctx = None


def _context() -> HandlerContext:
    if _ctx is None:
        raise HTTPException(status_code=503, detail="Indexer not initialized")
    return _ctx


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class ProcessResponse(BaseModel):
    success: bool
    kind: str
    chain_id: int
    escrow_address: Optional[str] = None
    hashlock: Optional[str] = None
    swap_status: Optional[str] = None
    duplicate: bool = False
    anomaly: Optional[str] = None
    attempts: int = 1


class ChainStatus(BaseModel):
    chain_id: int
    name: str
    total_src_escrows: int
    total_dst_escrows: int
    total_withdrawals: int
    total_cancellations: int
    total_funds_rescued: int
    total_volume_locked: str       # uint256 as decimal string
    total_volume_withdrawn: str
    last_processed_block: int
    paused: bool = False           # Latest EmergencyPause state of the factory


class StatusResponse(BaseModel):
    status: str
    version: str
    timestamp: int
    database: str
    factory_address: Optional[str] = None
    src_implementation: Optional[str] = None
    dst_implementation: Optional[str] = None
    placeholders: int
    anomalies: int
    chains: List[ChainStatus]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/api/events", response_model=ProcessResponse)
def post_event(payload: Dict[str, Any] = Body(...)):
    """Process one event in its own transaction."""
    ctx = _context()
    try:
        result = process_event(payload, ctx)
    except DecodingError as e:
        log.error(f"Rejected {e.kind or 'event'}: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    except TransactionConflictError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.get("/api/status", response_model=StatusResponse)
def get_status():
    """Health check and per-chain statistics."""
    ctx = _context()
    with ctx.database.transaction() as session:
        chains = [
            ChainStatus(
                chain_id=row["chain_id"],
                name=chain_name(row["chain_id"]),
                total_src_escrows=row["total_src_escrows"],
                total_dst_escrows=row["total_dst_escrows"],
                total_withdrawals=row["total_withdrawals"],
                total_cancellations=row["total_cancellations"],
                total_funds_rescued=row["total_funds_rescued"],
                total_volume_locked=str(row["total_volume_locked"]),
                total_volume_withdrawn=str(row["total_volume_withdrawn"]),
                last_processed_block=row["last_processed_block"],
                paused=ctx.factory.is_paused(session, row["chain_id"]),
            )
            for row in ctx.stats.all(session)
        ]
        placeholders = session.execute(
            select(func.count()).select_from(AtomicSwap).where(AtomicSwap.order_hash.is_(None))
        ).scalar_one()
        anomalies = session.execute(select(func.count()).select_from(Anomaly)).scalar_one()

    return StatusResponse(
        status="ok",
        version=__version__,
        timestamp=int(time.time()),
        database=ctx.database.dialect,
        factory_address=ctx.normalizer.factory_address,
        src_implementation=ctx.normalizer.src_implementation,
        dst_implementation=_config.dst_implementation if _config is not None else None,
        placeholders=placeholders,
        anomalies=anomalies,
        chains=chains,
    )
