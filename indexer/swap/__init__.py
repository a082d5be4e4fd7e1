"""
Swap correlation for the escrow indexer.

Merges source and destination legs into one aggregate per hashlock.
"""

from .correlator import SwapCorrelator
from .factory import FactoryRecorder
from .handler import HandlerContext, process_event

__all__ = ["SwapCorrelator", "FactoryRecorder", "HandlerContext", "process_event"]
