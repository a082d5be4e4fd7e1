"""
Chain registry for the escrow indexer.
"""

from .evm import CHAINS, ChainInfo, chain_name, parse_chain_ids

__all__ = ["CHAINS", "ChainInfo", "chain_name", "parse_chain_ids"]
