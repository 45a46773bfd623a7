"""
Deal Analysis: queue, orchestration and scoring engine for investment deals.

Queues analysis jobs per deal, runs enrichment and specialized engines under
a shared resilience policy, aggregates their results into a weighted score
and RAG band, persists the assessment, and notifies subscribers.
"""

from .config import config
from .errors import (
    ConfigError,
    DealAnalysisError,
    DealNotFoundError,
    EngineError,
    InvalidStateError,
    PersistenceError,
    QueueItemNotFoundError,
    TransientEngineError,
)
from .logging import configure_logging, logging_context
from .notifications import ANALYSIS_QUEUE_UPDATED, DEAL_ANALYSIS_COMPLETE, NotificationBus
from .pipeline import AnalysisCoordinator, AnalysisRunResult
from .queue import AnalysisQueueManager
from .resilience import RetryOutcome, RetryPolicy, resilient, run_resilient
from .scoring import classify, classify_score, compute
from .service import AnalysisWorker, DealAnalysisService

__version__ = '0.1.0'

__all__ = [
    'config',
    'ConfigError',
    'DealAnalysisError',
    'DealNotFoundError',
    'EngineError',
    'InvalidStateError',
    'PersistenceError',
    'QueueItemNotFoundError',
    'TransientEngineError',
    'configure_logging',
    'logging_context',
    'ANALYSIS_QUEUE_UPDATED',
    'DEAL_ANALYSIS_COMPLETE',
    'NotificationBus',
    'AnalysisCoordinator',
    'AnalysisRunResult',
    'AnalysisQueueManager',
    'RetryOutcome',
    'RetryPolicy',
    'resilient',
    'run_resilient',
    'classify',
    'classify_score',
    'compute',
    'AnalysisWorker',
    'DealAnalysisService',
]
