"""
Aggregation stage: engine results -> Assessment.

Pure functions over whatever engine results the fan-out produced. An
engine that errored or had no evidence contributes a Criterion with
score=None, which the calculator excludes instead of counting as zero.
"""

from typing import Mapping, Sequence

from ..models import Assessment, Criterion, EngineResult, EngineStatus, RAGBand, UNKNOWN_BAND
from ..prompts.engine_prompts import ENGINE_FOCUS
from ..scoring import classify_score, compute, rag_reasoning, validate_thresholds

# Engines below this score are reported as risk factors
RISK_SCORE = 60
# Engines at or above this score are reported as strengths
STRENGTH_SCORE = 70

RECOMMENDATIONS = (
    'STRONG RECOMMEND - Proceed to IC presentation',
    'QUALIFIED RECOMMEND - Conduct deeper due diligence',
    'MONITOR - Revisit when more data available',
)
PASS_RECOMMENDATION = 'PASS - Does not meet investment criteria'
NO_DATA_RECOMMENDATION = 'INSUFFICIENT DATA - Gather source data before evaluation'

NEXT_STEPS = {
    70: [
        'Schedule IC presentation',
        'Conduct financial deep dive',
        'Reference checks on founding team',
        'Competitive landscape analysis',
    ],
    50: [
        'Gather additional financial documentation',
        'Conduct market validation studies',
        'Request updated business plan',
        'Schedule follow-up call with founders',
    ],
    0: [
        'Monitor for significant developments',
        'Request major product updates',
        'Re-evaluate if funding round progresses',
    ],
}


def engine_title(engine_name: str) -> str:
    return ENGINE_FOCUS.get(engine_name, {}).get(
        'title', engine_name.replace('_', ' ').title()
    )


def build_criteria(
    engine_results: Mapping[str, EngineResult],
    weights: Mapping[str, int],
) -> list[Criterion]:
    """
    One Criterion per weighted engine, in weight-map order.

    Engines that ran but carry no weight are appended with weight 0 so they
    still appear on the assessment. Error results and missing results carry
    no score.
    """
    names = list(weights) + [name for name in engine_results if name not in weights]
    criteria = []
    for name in names:
        result = engine_results.get(name)
        score = result.score if result is not None and result.contributes else None
        criteria.append(
            Criterion(
                name=name,
                weight=weights.get(name, 0),
                score=score,
                confidence=result.confidence if score is not None else 0.0,
                aligned=score is not None and score >= RISK_SCORE,
            )
        )
    return criteria


def confidence_level(confidence: int) -> str:
    if confidence >= 80:
        return 'high'
    if confidence >= 60:
        return 'medium'
    return 'low'


def recommendation_for(band: RAGBand, bands: Sequence[RAGBand]) -> str:
    """Recommendation keyed off the band's position from the top."""
    if band == UNKNOWN_BAND:
        return NO_DATA_RECOMMENDATION
    position = [b.name for b in bands].index(band.name)
    # The lowest band always passes, however few bands a fund defines
    if position == len(bands) - 1 or position >= len(RECOMMENDATIONS):
        return PASS_RECOMMENDATION
    return RECOMMENDATIONS[position]


def next_steps_for(score: int | None) -> list[str]:
    if score is None:
        return list(NEXT_STEPS[0])
    for floor in sorted(NEXT_STEPS, reverse=True):
        if score >= floor:
            return list(NEXT_STEPS[floor])
    return list(NEXT_STEPS[0])


def risk_factors_for(engine_results: Mapping[str, EngineResult]) -> list[str]:
    risks = []
    for name, result in engine_results.items():
        if result.score is not None and result.contributes and result.score < RISK_SCORE:
            risks.append(f'{engine_title(name)} concerns ({round(result.score)}% score)')
    for result in engine_results.values():
        risks.extend(c for c in result.concerns if c not in risks)
    return risks


def strengths_for(engine_results: Mapping[str, EngineResult]) -> list[str]:
    strong = sorted(
        (
            (name, result)
            for name, result in engine_results.items()
            if result.contributes and result.score is not None and result.score >= STRENGTH_SCORE
        ),
        key=lambda pair: -pair[1].score,
    )
    return [
        f'Strong {engine_title(name).lower()} with {round(result.score)}% score'
        for name, result in strong[:3]
    ]


def completeness(engine_results: Mapping[str, EngineResult], expected: int) -> int:
    """Percent of expected engines that produced a non-error result."""
    if expected <= 0:
        return 0
    produced = sum(1 for result in engine_results.values() if result.contributes)
    return round(produced * 100 / expected)


def fallback_summary(company_name: str, overall_score: int | None) -> str:
    if overall_score is None:
        return (
            f'{company_name or "This company"} could not be scored: '
            'no criteria had source data.'
        )
    if overall_score >= 70:
        potential = 'strong'
    elif overall_score >= 50:
        potential = 'moderate'
    else:
        potential = 'limited'
    return (
        f'{company_name or "This company"} scores {overall_score}/100 across key '
        f'investment criteria. Analysis shows {potential} potential as an investment '
        'opportunity based on available data.'
    )


def aggregate(
    deal_id: str,
    engine_results: Mapping[str, EngineResult],
    weights: Mapping[str, int],
    bands: Sequence[RAGBand],
    fund_id: str | None = None,
    company_name: str = '',
    expected_engines: int | None = None,
    warnings: Sequence[str] = (),
) -> Assessment:
    """
    Build the Assessment for one analysis pass.

    Args:
        deal_id: Deal under analysis
        engine_results: Result per engine name (Error results included)
        weights: Criterion weight per engine name
        bands: Fund RAG thresholds, highest first
        fund_id: Owning fund, recorded on the assessment
        company_name: Used by the fallback executive summary
        expected_engines: Denominator for completeness (defaults to the
            number of results)
        warnings: Stage warnings collected during the run

    Raises:
        ConfigError: When the bands are not monotonic
    """
    bands = validate_thresholds(bands)
    criteria = build_criteria(engine_results, weights)
    weighted = compute(criteria)

    scored = weighted.scored_count > 0
    score = weighted.overall_score if scored else None
    band = classify_score(score, bands)
    risks = risk_factors_for(engine_results)
    factors = [
        f'{engine_title(c.name)}: {round(c.score)}'
        for c in sorted(criteria, key=lambda c: -c.weight)
        if c.score is not None
    ][:3]

    return Assessment(
        deal_id=deal_id,
        fund_id=fund_id,
        checks=criteria,
        overall_score=weighted.overall_score,
        overall_status=band.name,
        rag_label=band.display_label,
        total_weight=weighted.total_weight,
        confidence=weighted.confidence,
        confidence_level=confidence_level(weighted.confidence),
        analysis_completeness=completeness(
            engine_results,
            expected_engines if expected_engines is not None else len(engine_results),
        ),
        engine_results=dict(engine_results),
        recommendation=recommendation_for(band, bands),
        reasoning=rag_reasoning(score, bands, factors),
        executive_summary=fallback_summary(company_name, score),
        strengths=strengths_for(engine_results),
        risk_factors=risks,
        next_steps=next_steps_for(score),
        warnings=list(warnings),
    )


def has_errors(engine_results: Mapping[str, EngineResult]) -> bool:
    return any(result.status == EngineStatus.ERROR for result in engine_results.values())
