"""
Analysis pipeline: engines, aggregation and the orchestration coordinator.
"""

from .aggregator import aggregate, build_criteria
from .coordinator import AnalysisCoordinator, AnalysisRunResult
from .engines import (
    DEFAULT_ENGINES,
    AnalysisEngine,
    EngineAssessment,
    EngineContext,
    EnrichmentService,
    LLMAnalysisEngine,
    LLMSummarizer,
    Summarizer,
    build_llm_engines,
)

__all__ = [
    'aggregate',
    'build_criteria',
    'AnalysisCoordinator',
    'AnalysisRunResult',
    'DEFAULT_ENGINES',
    'AnalysisEngine',
    'EngineAssessment',
    'EngineContext',
    'EnrichmentService',
    'LLMAnalysisEngine',
    'LLMSummarizer',
    'Summarizer',
    'build_llm_engines',
]
