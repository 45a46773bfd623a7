"""
Data models for the deal analysis engine.
"""

from .criteria import Criterion, RAGBand, UNKNOWN_BAND, WeightedScore
from .deal import (
    Assessment,
    Deal,
    DealUpdate,
    EngineResult,
    EngineStatus,
    EnrichmentResult,
    FundType,
)
from .queue import Priority, QueueItem, QueueStatus, TriggerReason

__all__ = [
    'Criterion',
    'RAGBand',
    'UNKNOWN_BAND',
    'WeightedScore',
    'Assessment',
    'Deal',
    'DealUpdate',
    'EngineResult',
    'EngineStatus',
    'EnrichmentResult',
    'FundType',
    'Priority',
    'QueueItem',
    'QueueStatus',
    'TriggerReason',
]
