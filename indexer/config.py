"""
Indexer configuration, read from the environment.

    DATABASE_URL             SQLAlchemy URL (default: sqlite:///bmn_indexer.db)
    FACTORY_ADDRESS          CrossChainEscrowFactory address
    BMN_SRC_IMPLEMENTATION   EscrowSrc implementation (CREATE2 resolution)
    BMN_DST_IMPLEMENTATION   EscrowDst implementation (informational)
    INDEXER_CHAIN_IDS        Comma separated chain ids or names
    INDEXER_MAX_RETRIES      Attempts per event transaction
    INDEXER_LOG_LEVEL        DEBUG, INFO, WARNING, ...
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from .chains.evm import DEFAULT_CHAIN_IDS, FACTORY_ADDRESS, SRC_IMPLEMENTATION, parse_chain_ids
from .core import DEFAULT_MAX_RETRIES, normalize_address
from .store.database import DEFAULT_DATABASE_URL

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass
class IndexerConfig:
    """Indexer configuration."""
    database_url: str = DEFAULT_DATABASE_URL
    factory_address: str = FACTORY_ADDRESS.lower()
    src_implementation: Optional[str] = SRC_IMPLEMENTATION.lower()
    dst_implementation: Optional[str] = None
    chain_ids: List[int] = field(default_factory=lambda: list(DEFAULT_CHAIN_IDS))
    max_retries: int = DEFAULT_MAX_RETRIES
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = None) -> "IndexerConfig":
        """
        Build the configuration from environment variables.

        Raises:
            ValueError: malformed address, chain list or retry count
        """
        env = os.environ if environ is None else environ
        config = cls()

        config.database_url = env.get("DATABASE_URL") or config.database_url
        if env.get("FACTORY_ADDRESS"):
            config.factory_address = normalize_address(env["FACTORY_ADDRESS"])
        if env.get("BMN_SRC_IMPLEMENTATION"):
            config.src_implementation = normalize_address(env["BMN_SRC_IMPLEMENTATION"])
        if env.get("BMN_DST_IMPLEMENTATION"):
            config.dst_implementation = normalize_address(env["BMN_DST_IMPLEMENTATION"])
        if env.get("INDEXER_CHAIN_IDS"):
            config.chain_ids = parse_chain_ids(env["INDEXER_CHAIN_IDS"])
        if env.get("INDEXER_MAX_RETRIES"):
            config.max_retries = int(env["INDEXER_MAX_RETRIES"])
            if config.max_retries < 1:
                raise ValueError("INDEXER_MAX_RETRIES must be at least 1")
        config.log_level = (env.get("INDEXER_LOG_LEVEL") or config.log_level).upper()
        return config

    def configure_logging(self) -> None:
        logging.basicConfig(level=getattr(logging, self.log_level, logging.INFO), format=LOG_FORMAT)
