"""
Tests for the aggregation stage.

Covers:
- Error results excluded from scoring (not counted as zero)
- Completeness over expected engines
- Recommendation by band position
- Risk factors, strengths and next steps
- Unscored runs classified as unknown
"""

import pytest

from deal_analysis.errors import ConfigError
from deal_analysis.models import EngineResult, FundType, RAGBand
from deal_analysis.pipeline.aggregator import (
    NO_DATA_RECOMMENDATION,
    PASS_RECOMMENDATION,
    RECOMMENDATIONS,
    aggregate,
    build_criteria,
    completeness,
    confidence_level,
    has_errors,
    next_steps_for,
    recommendation_for,
)
from deal_analysis.store.memory import DEFAULT_BANDS, DEFAULT_WEIGHTS

VC_WEIGHTS = DEFAULT_WEIGHTS[FundType.VC]


def results(**scores):
    out = {}
    for name, score in scores.items():
        if isinstance(score, Exception):
            out[name] = EngineResult.failed(name, score)
        else:
            out[name] = EngineResult(
                engine_name=name, status='complete', score=score, confidence=80, quality_score=90
            )
    return out


class TestBuildCriteria:
    def test_error_results_carry_no_score(self):
        criteria = build_criteria(
            results(market_attractiveness=80, founder_team_strength=RuntimeError('x')),
            VC_WEIGHTS,
        )
        by_name = {c.name: c for c in criteria}

        assert by_name['market_attractiveness'].score == 80
        assert by_name['founder_team_strength'].score is None
        assert by_name['product_strength_ip'].score is None
        assert [c.name for c in criteria] == list(VC_WEIGHTS)

    def test_unweighted_engine_appended_with_zero_weight(self):
        criteria = build_criteria(results(esg=90), {'market_attractiveness': 100})

        assert criteria[-1].name == 'esg'
        assert criteria[-1].weight == 0


class TestAggregate:
    def test_two_engine_errors_still_produce_assessment(self):
        engine_results = results(
            investment_thesis_alignment=80,
            market_attractiveness=70,
            product_strength_ip=60,
            financial_feasibility=RuntimeError('timeout'),
            founder_team_strength=RuntimeError('timeout'),
        )

        assessment = aggregate('deal_1', engine_results, VC_WEIGHTS, DEFAULT_BANDS, expected_engines=5)

        # (80*25 + 70*20 + 60*20) / 65 = 70.77
        assert assessment.overall_score == 71
        assert assessment.total_weight == 65
        assert assessment.analysis_completeness == 60
        assert assessment.overall_status == 'promising'
        assert assessment.rag_label == 'Promising'
        assert assessment.recommendation == RECOMMENDATIONS[1]
        assert has_errors(engine_results)

    def test_all_strong(self):
        engine_results = results(**{name: 90 for name in VC_WEIGHTS})

        assessment = aggregate('deal_1', engine_results, VC_WEIGHTS, DEFAULT_BANDS, company_name='Acme')

        assert assessment.overall_score == 90
        assert assessment.overall_status == 'exciting'
        assert assessment.recommendation == RECOMMENDATIONS[0]
        assert assessment.analysis_completeness == 100
        assert assessment.confidence_level == 'high'
        assert len(assessment.strengths) == 3
        assert assessment.executive_summary.startswith('Acme scores 90/100')
        assert assessment.next_steps[0] == 'Schedule IC presentation'

    def test_nothing_scored_is_unknown(self):
        engine_results = results(market_attractiveness=RuntimeError('down'))

        assessment = aggregate('deal_1', engine_results, VC_WEIGHTS, DEFAULT_BANDS, expected_engines=5)

        assert assessment.overall_score == 0
        assert assessment.overall_status == 'unknown'
        assert assessment.recommendation == NO_DATA_RECOMMENDATION
        assert assessment.analysis_completeness == 0
        assert assessment.to_deal_update().overall_score is None

    def test_low_scores_become_risk_factors(self):
        engine_results = results(market_attractiveness=40, founder_team_strength=85)
        engine_results['market_attractiveness'] = engine_results['market_attractiveness'].model_copy(
            update={'concerns': ['Crowded category']}
        )

        assessment = aggregate('deal_1', engine_results, VC_WEIGHTS, DEFAULT_BANDS)

        assert assessment.risk_factors[0].endswith('concerns (40% score)')
        assert 'Crowded category' in assessment.risk_factors
        assert len(assessment.strengths) == 1
        assert '85% score' in assessment.strengths[0]

    def test_warnings_recorded(self):
        assessment = aggregate(
            'deal_1', results(market_attractiveness=70), VC_WEIGHTS, DEFAULT_BANDS,
            warnings=['enrichment skipped'],
        )

        assert assessment.warnings == ['enrichment skipped']

    def test_invalid_bands_raise(self):
        bands = [RAGBand(name='a', min_score=10), RAGBand(name='b', min_score=50)]

        with pytest.raises(ConfigError):
            aggregate('deal_1', results(market_attractiveness=70), VC_WEIGHTS, bands)


class TestHelpers:
    def test_completeness(self):
        assert completeness(results(a=50, b=RuntimeError('x')), 4) == 25
        assert completeness({}, 0) == 0

    def test_completeness_counts_results_left_pending(self):
        pending = {
            'a': EngineResult(engine_name='a', score=80, confidence=90, quality_score=90),
            'b': EngineResult.failed('b', RuntimeError('x')),
        }

        assert completeness(pending, 2) == 50

    @pytest.mark.parametrize('value,level', [(95, 'high'), (80, 'high'), (60, 'medium'), (59, 'low')])
    def test_confidence_level(self, value, level):
        assert confidence_level(value) == level

    def test_lowest_band_always_passes(self):
        two_bands = (RAGBand(name='go', min_score=60), RAGBand(name='no_go', min_score=0))

        assert recommendation_for(two_bands[1], two_bands) == PASS_RECOMMENDATION
        assert recommendation_for(two_bands[0], two_bands) == RECOMMENDATIONS[0]
        assert recommendation_for(DEFAULT_BANDS[-1], DEFAULT_BANDS) == PASS_RECOMMENDATION

    def test_next_steps_by_score(self):
        assert next_steps_for(75)[0] == 'Schedule IC presentation'
        assert next_steps_for(55)[0] == 'Gather additional financial documentation'
        assert next_steps_for(10)[0] == 'Monitor for significant developments'
        assert next_steps_for(None)[0] == 'Monitor for significant developments'
