"""
Persistence for legs, swaps, statistics and anomalies.
"""

from .database import Database
from .models import AtomicSwap, ChainStatistics, DstEscrow, SrcEscrow

__all__ = ["Database", "AtomicSwap", "ChainStatistics", "DstEscrow", "SrcEscrow"]
