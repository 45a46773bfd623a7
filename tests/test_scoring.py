"""
Tests for the weighted scoring calculator.

Covers:
- Normalization over scored criteria only
- Absent-score weight exclusion
- Empty and zero-weight safety
- Half-up rounding and determinism
- Completeness status and weighted confidence
- Weight map normalization and validation
"""

import random

import pytest

from deal_analysis.errors import ConfigError
from deal_analysis.models import Criterion
from deal_analysis.scoring import compute, normalize_weights, round_half_up, validate_weights


def crit(name, weight, score=None, confidence=80.0):
    return Criterion(name=name, weight=weight, score=score, confidence=confidence)


class TestCompute:
    """Tests for compute()."""

    def test_normalizes_over_scored_weight(self):
        """Market 80, Team 60, Product absent, Financial 40 -> 60 over weight 75."""
        result = compute([
            crit('Market', 25, 80),
            crit('Team', 25, 60),
            crit('Product', 25, None),
            crit('Financial', 25, 40),
        ])

        assert result.overall_score == 60
        assert result.total_weight == 75
        assert result.scored_count == 3
        assert result.total_count == 4
        assert result.status == 'partial'

    def test_empty_input_returns_zero(self):
        result = compute([])

        assert result.overall_score == 0
        assert result.total_weight == 0
        assert result.status == 'insufficient_data'

    def test_zero_weight_criterion_returns_zero(self):
        result = compute([crit('Market', 0, 90)])

        assert result.overall_score == 0
        assert result.total_weight == 0

    def test_all_absent_returns_zero_without_dividing(self):
        result = compute([crit('Market', 40), crit('Team', 60)])

        assert result.overall_score == 0
        assert result.total_weight == 0
        assert result.status == 'insufficient_data'

    @pytest.mark.parametrize('absent_weight', [0, 1, 50, 100])
    def test_absent_score_never_changes_result(self, absent_weight):
        base = [crit('Market', 30, 72), crit('Team', 70, 55)]
        with_absent = base + [crit('Product', absent_weight, None)]

        assert compute(with_absent).overall_score == compute(base).overall_score

    def test_weights_need_not_sum_to_100(self):
        result = compute([crit('Market', 3, 90), crit('Team', 1, 50)])

        # (270 + 50) / 4 = 80
        assert result.overall_score == 80
        assert result.total_weight == 4

    def test_rounds_half_up(self):
        result = compute([crit('A', 1, 62), crit('B', 1, 63)])

        assert result.overall_score == 63

    def test_all_scored_is_complete(self):
        result = compute([crit('A', 50, 70), crit('B', 50, 90)])

        assert result.status == 'complete'
        assert result.overall_score == 80

    def test_confidence_is_weight_averaged(self):
        result = compute([
            crit('A', 75, 70, confidence=90),
            crit('B', 25, 70, confidence=50),
            crit('C', 100, None, confidence=0),
        ])

        assert result.confidence == 80

    def test_deterministic_across_calls_and_order(self):
        rng = random.Random(7)
        criteria = [
            crit(f'c{i}', rng.randint(0, 100), rng.choice([None, rng.uniform(0, 100)]))
            for i in range(25)
        ]
        first = compute(criteria)
        second = compute(list(criteria))
        shuffled = list(criteria)
        rng.shuffle(shuffled)

        assert first == second
        assert compute(shuffled).overall_score == first.overall_score

    def test_fractional_scores(self):
        result = compute([crit('A', 1, 70.5), crit('B', 1, 70.4)])

        # 70.45 rounds to 70
        assert result.overall_score == 70


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        'value,expected',
        [(0.5, 1), (1.5, 2), (2.5, 3), (62.49, 62), (99.5, 100), (0, 0)],
    )
    def test_values(self, value, expected):
        assert round_half_up(value) == expected


class TestNormalizeWeights:
    def test_sums_to_100(self):
        weights = normalize_weights({'a': 1, 'b': 1, 'c': 1})

        assert sum(weights.values()) == 100
        assert sorted(weights.values()) == [33, 33, 34]

    def test_already_normalized_unchanged(self):
        weights = {'thesis': 25, 'market': 20, 'product': 20, 'financial': 20, 'team': 15}

        assert normalize_weights(weights) == weights

    def test_all_zero_returned_as_is(self):
        assert normalize_weights({'a': 0, 'b': 0}) == {'a': 0, 'b': 0}


class TestValidateWeights:
    """Tests for validate_weights()."""

    def test_valid_map_returned_as_dict(self):
        assert validate_weights({'market': 60, 'team': 40}) == {'market': 60, 'team': 40}

    def test_zero_weight_allowed_when_others_positive(self):
        assert validate_weights({'market': 100, 'team': 0})['team'] == 0

    @pytest.mark.parametrize('weights', [
        {},
        {'market': 0, 'team': 0},
        {'market': 150},
        {'market': -5, 'team': 50},
        {'market': '40'},
        {'market': True},
    ])
    def test_unusable_maps_raise_config_error(self, weights):
        with pytest.raises(ConfigError):
            validate_weights(weights)
