#!/usr/bin/env python3
"""
BMN Escrow Indexer Server
Correlates cross-chain escrow events into one atomic_swap row per hashlock.

Chains: Base (8453) <-> Etherlink (42793)

Endpoints:
  GET  /api/status          - Health check + per-chain statistics
  POST /api/events          - Process one escrow event (typed or raw log)
"""

import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from indexer import __version__
from indexer.chains.evm import describe_chains
from indexer.config import IndexerConfig
from indexer.swap.handler import HandlerContext
from routes import events

# =============================================================================
# CONFIG / LOGGING
# =============================================================================

CONFIG = IndexerConfig.from_env()
CONFIG.configure_logging()
log = logging.getLogger(__name__)

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="BMN Escrow Indexer",
    description="Cross-chain atomic swap escrow correlation",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events.router)


@app.get("/")
async def root():
    return {
        "name": "BMN Escrow Indexer",
        "version": __version__,
        "docs": "/docs",
    }


# =============================================================================
# FASTAPI STARTUP/SHUTDOWN EVENTS
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Open the database and initialize chain statistics."""
    if events.is_configured():
        return
    ctx = HandlerContext.from_config(CONFIG)
    events.configure(ctx, CONFIG)
    log.info(f"Indexing {describe_chains(CONFIG.chain_ids)}, factory {CONFIG.factory_address}")


@app.on_event("shutdown")
async def shutdown_event():
    events.shutdown()
    log.info("Indexer stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting BMN Escrow Indexer on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
