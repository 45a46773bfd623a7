"""
RAG classifier.

Maps a composite score onto one of an ordered set of qualitative bands.
Bands are always supplied by the caller (per fund); no boundary is defined
in this module.
"""

from typing import Sequence

from ..errors import ConfigError
from ..models.criteria import RAGBand, UNKNOWN_BAND


def validate_thresholds(bands: Sequence[RAGBand]) -> tuple[RAGBand, ...]:
    """
    Check that bands are usable for classification.

    Requirements:
    - at least one band
    - strictly descending min_score (highest band first)
    - every min_score within 0..100
    - unique band names

    Raises:
        ConfigError: When any requirement is violated
    """
    bands = tuple(bands)
    if not bands:
        raise ConfigError('RAG thresholds must contain at least one band')

    names = [band.name for band in bands]
    if len(set(names)) != len(names):
        raise ConfigError('RAG band names must be unique', context={'bands': names})

    for band in bands:
        if not 0 <= band.min_score <= 100:
            raise ConfigError(
                f'RAG band "{band.name}" min_score {band.min_score} is outside 0..100',
                context={'band': band.name, 'min_score': band.min_score},
            )

    for higher, lower in zip(bands, bands[1:]):
        if lower.min_score >= higher.min_score:
            raise ConfigError(
                'RAG thresholds must be in strictly descending min_score order',
                context={
                    'bands': [(b.name, b.min_score) for b in bands],
                    'violation': (higher.name, lower.name),
                },
            )
    return bands


def classify(score: int | float, bands: Sequence[RAGBand]) -> RAGBand:
    """
    Return the first band (top-down) whose min_score <= score.

    A score below every band falls into the lowest band.

    Raises:
        ConfigError: When the bands are not monotonic
    """
    bands = validate_thresholds(bands)
    for band in bands:
        if band.min_score <= score:
            return band
    return bands[-1]


def classify_score(score: int | float | None, bands: Sequence[RAGBand]) -> RAGBand:
    """Classify, returning the unknown band when there is no score."""
    if score is None:
        return UNKNOWN_BAND
    return classify(score, bands)


def band_rank(band: RAGBand, bands: Sequence[RAGBand]) -> int:
    """Ordinal of a band, 0 for the lowest. The unknown band ranks -1."""
    if band == UNKNOWN_BAND:
        return -1
    names = [b.name for b in bands]
    try:
        return len(names) - 1 - names.index(band.name)
    except ValueError:
        raise ConfigError(f'Band "{band.name}" is not part of the supplied thresholds')


def rag_reasoning(
    score: int | None,
    bands: Sequence[RAGBand],
    factors: Sequence[str] = (),
) -> str:
    """Human-readable explanation of a classification."""
    band = classify_score(score, bands)
    if band == UNKNOWN_BAND:
        return 'No criteria had source data; the deal could not be classified.'

    reasoning = (
        f'Score of {score}/100 qualifies as "{band.display_label}" '
        f'(threshold: {band.min_score}).'
    )
    if factors:
        reasoning += f" Key factors: {', '.join(factors)}."
    return reasoning
