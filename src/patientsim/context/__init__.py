"""Context budgeting: token estimates, history digests and cache planning."""

from .tokens import TiktokenCounter, TokenEstimator
from .summarizer import HistorySummarizer
from .cache_plan import CachePlan, CachePlanner, CacheStrategy, SystemSegment, select_strategy
from .assembler import ContextAssembler, RequestPayload

__all__ = [
    "TiktokenCounter",
    "TokenEstimator",
    "HistorySummarizer",
    "CachePlan",
    "CachePlanner",
    "CacheStrategy",
    "SystemSegment",
    "select_strategy",
    "ContextAssembler",
    "RequestPayload",
]
