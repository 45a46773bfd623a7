"""
Weighted scoring calculator.

Pure, deterministic aggregation of a variable set of criteria into a 0-100
composite score. Criteria without a score are excluded from both the
numerator and the denominator, so missing data never counts as a zero.

Arithmetic is done with exact fractions and rounded half-up, so identical
inputs always produce identical output regardless of summation order.
"""

import math
from fractions import Fraction
from typing import Iterable, Mapping

from ..errors import ConfigError
from ..models.criteria import Criterion, WeightedScore

_HALF = Fraction(1, 2)


def round_half_up(value: Fraction | float) -> int:
    """Round to the nearest integer, ties away from zero for positive values."""
    return math.floor(Fraction(value) + _HALF)


def compute(criteria: Iterable[Criterion]) -> WeightedScore:
    """
    Compute the normalized weighted score of a list of criteria.

    overall_score = round(sum(score_i * weight_i) / sum(weight_i)) over the
    criteria whose score is present. Returns 0 when nothing is scored or all
    scored weight is zero.

    Args:
        criteria: Criteria of one assessment (weights need not sum to 100)

    Returns:
        WeightedScore with the composite score, the scored weight, and a
        completeness label
    """
    criteria = list(criteria)
    scored = [c for c in criteria if c.score is not None]

    total_weight = sum(c.weight for c in scored)
    if total_weight > 0:
        weighted_sum = sum(Fraction(c.score) * c.weight for c in scored)
        confidence_sum = sum(Fraction(c.confidence) * c.weight for c in scored)
        overall = round_half_up(weighted_sum / total_weight)
        confidence = round_half_up(confidence_sum / total_weight)
    else:
        overall = 0
        confidence = 0

    if not scored:
        status = 'insufficient_data'
    elif len(scored) == len(criteria):
        status = 'complete'
    else:
        status = 'partial'

    return WeightedScore(
        overall_score=min(100, max(0, overall)),
        total_weight=total_weight,
        scored_count=len(scored),
        total_count=len(criteria),
        confidence=min(100, max(0, confidence)),
        status=status,
    )


def normalize_weights(weights: dict[str, int | float]) -> dict[str, int]:
    """
    Scale a weight map so it sums to 100, keeping integer weights.

    Largest-remainder rounding keeps the total exactly 100. An all-zero map
    is returned unchanged (as integers).
    """
    total = sum(Fraction(w) for w in weights.values())
    if total <= 0:
        return {name: int(w) for name, w in weights.items()}

    exact = {name: Fraction(w) * 100 / total for name, w in weights.items()}
    floored = {name: math.floor(v) for name, v in exact.items()}
    shortfall = 100 - sum(floored.values())
    # Hand out the remaining points by largest fractional part, ties by name
    order = sorted(exact, key=lambda n: (-(exact[n] - floored[n]), n))
    for name in order[:shortfall]:
        floored[name] += 1
    return floored


def validate_weights(weights: Mapping[str, int | float]) -> dict[str, int | float]:
    """
    Check a criterion weight map before it feeds aggregation.

    Every weight must be a number within 0..100 and at least one must be
    positive; an all-zero map would turn real engine scores into a 0 verdict.

    Raises:
        ConfigError: The map is empty, out of range or all zero
    """
    if not weights:
        raise ConfigError('Criterion weight map is empty')
    for name, weight in weights.items():
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ConfigError(
                f'Weight for "{name}" is not a number',
                context={'criterion': name, 'weight': repr(weight)},
            )
        if not 0 <= weight <= 100:
            raise ConfigError(
                f'Weight for "{name}" must be within 0..100',
                context={'criterion': name, 'weight': weight},
            )
    if sum(weights.values()) <= 0:
        raise ConfigError('Criterion weights must not all be zero')
    return dict(weights)
