"""
Persistence and configuration collaborators.
"""

from .base import AnalysisStore, ConfigService
from .memory import DEFAULT_BANDS, DEFAULT_WEIGHTS, InMemoryAnalysisStore, StaticConfigService
from .postgres import PostgresAnalysisStore

__all__ = [
    'AnalysisStore',
    'ConfigService',
    'DEFAULT_BANDS',
    'DEFAULT_WEIGHTS',
    'InMemoryAnalysisStore',
    'StaticConfigService',
    'PostgresAnalysisStore',
]
