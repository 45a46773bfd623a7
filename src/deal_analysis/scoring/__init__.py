"""
Scoring: weighted composite calculator and RAG band classifier.
"""

from .calculator import compute, normalize_weights, round_half_up, validate_weights
from .rag import band_rank, classify, classify_score, rag_reasoning, validate_thresholds

__all__ = [
    'compute',
    'normalize_weights',
    'round_half_up',
    'validate_weights',
    'band_rank',
    'classify',
    'classify_score',
    'rag_reasoning',
    'validate_thresholds',
]
