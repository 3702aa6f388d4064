"""Tests for the pure uncertainty, data quality, drift and UCB formulas."""

from __future__ import annotations

import math

import pytest

from conftest import make_profile

from aumos_outcome_learning.uncertainty import statistics


class TestHelpers:
    def test_clamp_maps_nan_to_lower_bound(self) -> None:
        assert statistics.clamp(float("nan")) == 0.0
        assert statistics.clamp(float("nan"), 5.0, 10.0) == 5.0

    def test_clamp_bounds(self) -> None:
        assert statistics.clamp(1.7) == 1.0
        assert statistics.clamp(-0.2) == 0.0
        assert statistics.clamp(120.0, 0.0, 100.0) == 100.0

    def test_population_variance(self) -> None:
        assert statistics.population_variance([2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]) == pytest.approx(4.0)
        assert statistics.population_variance([3.0]) == 0.0


class TestUncertaintyDecomposition:
    def test_epistemic_without_data_is_base_only(self) -> None:
        assert statistics.epistemic_uncertainty(0, []) == pytest.approx(0.6)

    def test_epistemic_shrinks_with_samples(self) -> None:
        values = [statistics.epistemic_uncertainty(n, [5.0] * n) for n in range(0, 50)]
        assert all(later <= earlier for earlier, later in zip(values, values[1:]))

    def test_epistemic_grows_with_prediction_spread(self) -> None:
        narrow = statistics.epistemic_uncertainty(4, [5.0, 5.0, 5.0, 5.0])
        wide = statistics.epistemic_uncertainty(4, [-20.0, 30.0, -20.0, 30.0])
        assert wide > narrow
        assert wide <= 1.0

    def test_aleatoric_defaults_with_fewer_than_two_pairs(self) -> None:
        assert statistics.aleatoric_uncertainty([]) == statistics.ALEATORIC_DEFAULT
        assert statistics.aleatoric_uncertainty([(1.0, 9.0)]) == statistics.ALEATORIC_DEFAULT

    def test_aleatoric_from_error_spread(self) -> None:
        # errors 0 and 20: std 10, scaled by 20
        assert statistics.aleatoric_uncertainty([(5.0, 5.0), (5.0, 25.0)]) == pytest.approx(0.5)

    def test_aleatoric_zero_for_constant_error(self) -> None:
        assert statistics.aleatoric_uncertainty([(1.0, 3.0), (4.0, 6.0), (0.0, 2.0)]) == 0.0

    def test_total_is_euclidean(self) -> None:
        assert statistics.total_uncertainty(0.6, 0.8) == pytest.approx(1.0)
        assert statistics.total_uncertainty(1.0, 1.0) == pytest.approx(math.sqrt(2))


class TestPointPrediction:
    def test_plain_profile_uses_engagement_score(self) -> None:
        assert statistics.point_prediction(make_profile(engagement_score=60.0), None) == 60.0

    def test_preferred_channel_and_tier_adjustments(self) -> None:
        profile = make_profile(engagement_score=50.0, channel_preference="email", tier="Tier 1")
        assert statistics.point_prediction(profile, "email") == pytest.approx(50.0 * 1.2 * 1.15)
        assert statistics.point_prediction(profile, "phone") == pytest.approx(50.0 * 1.15)

    def test_bottom_tier_penalty(self) -> None:
        assert statistics.point_prediction(make_profile(engagement_score=40.0, tier="Tier 3"), None) == pytest.approx(34.0)

    def test_prediction_is_capped(self) -> None:
        profile = make_profile(engagement_score=90.0, channel_preference="email", tier="Tier 1")
        assert statistics.point_prediction(profile, "email") == 100.0

    def test_confidence_interval_is_clamped(self) -> None:
        lower, upper, width = statistics.confidence_interval(99.0, 1.0)
        assert width == pytest.approx(3.92)
        assert upper == 100.0
        assert lower == pytest.approx(99.0 - 1.96)


class TestDataQuality:
    def test_required_fields_only_is_seventy_percent(self) -> None:
        profile = make_profile(institution=None, city=None, state=None, prescribing_pattern=None)
        completeness, missing = statistics.profile_completeness(profile)
        assert completeness == pytest.approx(0.7)
        assert missing == ["institution", "city", "state", "prescribing_pattern"]

    def test_empty_strings_count_as_missing(self) -> None:
        completeness, missing = statistics.profile_completeness(make_profile(name="", specialty=None))
        assert completeness == pytest.approx(4 / 6 * 0.7 + 0.3)
        assert missing == ["name", "specialty"]

    def test_recency_score(self) -> None:
        assert statistics.recency_score(None) == 0.0
        assert statistics.recency_score(0) == 1.0
        assert statistics.recency_score(45) == pytest.approx(0.5)
        assert statistics.recency_score(200) == 0.0

    def test_history_score_saturates(self) -> None:
        assert statistics.history_score(5) == 0.5
        assert statistics.history_score(30) == 1.0

    def test_channel_coverage_lists_every_channel(self) -> None:
        coverage = statistics.channel_coverage(["email", "email", "phone", "fax"])
        assert set(coverage) == set(statistics.KNOWN_CHANNELS)
        assert [channel for channel, seen in coverage.items() if seen] == ["email", "phone"]


class TestDrift:
    def test_response_rate_drift(self) -> None:
        assert statistics.response_rate_drift(1, 0) == (0.0, 1.0, 1.0)
        assert statistics.response_rate_drift(0, 20) == (1.0, 0.0, 1.0)
        assert statistics.response_rate_drift(2, 10) == (0.5, 1.0, 0.5)

    def test_engagement_drift_against_segment(self) -> None:
        expected, magnitude = statistics.engagement_drift(20.0, "Champion")
        assert expected == 80.0
        assert magnitude == pytest.approx(0.6)

    def test_unknown_segment_expects_fifty(self) -> None:
        assert statistics.engagement_drift(55.0, None) == (50.0, pytest.approx(0.05))


class TestUcbExplorationValue:
    def test_untried_pair_beats_saturated_pair(self) -> None:
        untried = statistics.ucb_exploration_value(1.41, 0, 100)
        saturated = statistics.ucb_exploration_value(1.41, 100, 100)
        assert untried == pytest.approx(0.94)
        assert saturated < untried

    def test_value_is_bounded(self) -> None:
        assert statistics.ucb_exploration_value(10.0, 0, 0) == 1.0
        assert statistics.ucb_exploration_value(1.41, 1, 1) == 0.0

    def test_decreases_with_samples(self) -> None:
        values = [statistics.ucb_exploration_value(1.41, n, 200) for n in range(1, 200)]
        assert all(later <= earlier for earlier, later in zip(values, values[1:]))


class TestUcbDecisionBonus:
    def test_untried_channel_gets_a_fixed_bonus(self) -> None:
        assert statistics.ucb_decision_bonus(0.1, 0, 50) == 2.0

    def test_bonus_uses_the_entity_sample_count(self) -> None:
        assert statistics.ucb_decision_bonus(1.41, 4, 10) == pytest.approx(1.41 * math.sqrt(math.log(11) / 4))

    def test_bonus_is_not_normalized(self) -> None:
        assert statistics.ucb_decision_bonus(5.0, 1, 10) > 1.0
