"""Pure statistics behind the uncertainty calculator.

Nothing here touches a store. Every function returns a value inside its
documented domain and never NaN, so callers can persist results directly.

Formulas:
    epistemic  = clamp(0.6 / sqrt(n + 1) + 0.4 * min(1, sqrt(var(predicted)) / 10))
    aleatoric  = clamp(std(actual - predicted) / 20), 0.5 with fewer than 2 pairs
    total      = sqrt(epistemic^2 + aleatoric^2)
    ci width   = total * 1.96 * 2, bounds clamped to [0, 100]
    ucb value  = min(1, c * sqrt(ln(N) / n) / 3), or min(1, 2c / 3) when n = 0
    ucb bonus  = c * sqrt(ln(N_entity + 1) / n), or 2 when n = 0 (explore decisions)
"""

from __future__ import annotations

import math
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

from aumos_outcome_learning.core.enums import Channel
from aumos_outcome_learning.core.models import EntityProfile

REQUIRED_PROFILE_FIELDS: tuple[str, ...] = (
    "name",
    "specialty",
    "tier",
    "segment",
    "region",
    "channel_preference",
)
OPTIONAL_PROFILE_FIELDS: tuple[str, ...] = (
    "institution",
    "city",
    "state",
    "prescribing_pattern",
)

# Expected engagement score per segment; unknown segments expect 50.
SEGMENT_BASELINES: Mapping[str, float] = MappingProxyType(
    {
        "Rising Star": 70.0,
        "Champion": 80.0,
        "Steady Performer": 60.0,
        "Disengaging": 40.0,
        "Lapsed": 30.0,
    }
)
DEFAULT_SEGMENT_BASELINE = 50.0

KNOWN_CHANNELS: tuple[str, ...] = tuple(channel.value for channel in Channel)

ALEATORIC_DEFAULT = 0.5
CI_Z_SCORE = 1.96
RESPONSE_RATE_DRIFT_THRESHOLD = 0.3
ENGAGEMENT_DRIFT_THRESHOLD = 0.2
SIGNIFICANT_DRIFT_THRESHOLD = 0.3
OLDER_WINDOW_SAMPLE = 20

_PREFERRED_CHANNEL_BOOST = 1.2
_TOP_TIER = "Tier 1"
_TOP_TIER_BOOST = 1.15
_BOTTOM_TIER = "Tier 3"
_BOTTOM_TIER_PENALTY = 0.85
_RECENCY_HORIZON_DAYS = 90
_HISTORY_SATURATION = 10
_UCB_UNTRIED_MULTIPLIER = 2.0
_UCB_NORMALIZER = 3.0


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Clamp a value into [lower, upper], mapping NaN to lower."""
    if math.isnan(value):
        return lower
    return min(upper, max(lower, value))


def population_variance(values: Sequence[float]) -> float:
    """Population variance; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return sum((value - mean) ** 2 for value in values) / len(values)


# ---------------------------------------------------------------------------
# Uncertainty decomposition
# ---------------------------------------------------------------------------


def epistemic_uncertainty(sample_size: int, predicted_deltas: Sequence[float]) -> float:
    """Reducible uncertainty from data volume and spread of past predictions.

    Args:
        sample_size: Stimuli observed for the entity/channel.
        predicted_deltas: Historical predicted engagement deltas.

    Returns:
        Epistemic uncertainty in [0, 1].
    """
    base = 1.0 / math.sqrt(max(0, sample_size) + 1)
    spread = min(1.0, math.sqrt(population_variance(predicted_deltas)) / 10)
    return clamp(0.6 * base + 0.4 * spread)


def aleatoric_uncertainty(pairs: Iterable[tuple[float, float]]) -> float:
    """Irreducible uncertainty from the noise of observed prediction errors.

    Args:
        pairs: (predicted, actual) engagement deltas.

    Returns:
        Aleatoric uncertainty in [0, 1]; 0.5 with fewer than two pairs.
    """
    errors = [actual - predicted for predicted, actual in pairs]
    if len(errors) < 2:
        return ALEATORIC_DEFAULT
    return clamp(math.sqrt(population_variance(errors)) / 20)


def total_uncertainty(epistemic: float, aleatoric: float) -> float:
    """Euclidean combination of the two components."""
    return math.sqrt(epistemic**2 + aleatoric**2)


def point_prediction(profile: EntityProfile, channel: str | None) -> float:
    """Expected engagement (0-100) from the entity's baseline score, preference and tier."""
    value = profile.engagement_score or 0.0
    if channel is not None and profile.channel_preference == channel:
        value *= _PREFERRED_CHANNEL_BOOST
    if profile.tier == _TOP_TIER:
        value *= _TOP_TIER_BOOST
    elif profile.tier == _BOTTOM_TIER:
        value *= _BOTTOM_TIER_PENALTY
    return clamp(value, 0.0, 100.0)


def confidence_interval(predicted_value: float, total: float) -> tuple[float, float, float]:
    """95% interval around a point prediction.

    Returns:
        Tuple of (lower, upper, width). Bounds are clamped to [0, 100]; width
        is the unclamped nominal width.
    """
    width = total * CI_Z_SCORE * 2
    lower = clamp(predicted_value - width / 2, 0.0, 100.0)
    upper = clamp(predicted_value + width / 2, 0.0, 100.0)
    return lower, upper, width


# ---------------------------------------------------------------------------
# Data quality
# ---------------------------------------------------------------------------


def profile_completeness(profile: EntityProfile) -> tuple[float, list[str]]:
    """Weighted share of populated profile fields (70% required, 30% optional).

    Returns:
        Tuple of (completeness in [0, 1], names of missing fields).
    """
    missing: list[str] = []
    filled_required = 0
    for field in REQUIRED_PROFILE_FIELDS:
        if getattr(profile, field, None):
            filled_required += 1
        else:
            missing.append(field)

    filled_optional = 0
    for field in OPTIONAL_PROFILE_FIELDS:
        if getattr(profile, field, None):
            filled_optional += 1
        else:
            missing.append(field)

    completeness = (
        filled_required / len(REQUIRED_PROFILE_FIELDS) * 0.7
        + filled_optional / len(OPTIONAL_PROFILE_FIELDS) * 0.3
    )
    return clamp(completeness), missing


def recency_score(days_since_last_touch: int | None) -> float:
    """1 for a touch today, falling linearly to 0 at 90 days; 0 without touches."""
    if days_since_last_touch is None:
        return 0.0
    return clamp(1 - days_since_last_touch / _RECENCY_HORIZON_DAYS)


def history_score(stimulus_count: int) -> float:
    return min(1.0, stimulus_count / _HISTORY_SATURATION)


def channel_coverage(channels_seen: Iterable[str]) -> dict[str, bool]:
    """Whether each known channel has at least one stimulus."""
    seen = set(channels_seen)
    return {channel: channel in seen for channel in KNOWN_CHANNELS}


def data_quality_score(completeness: float, recency: float, history: float, coverage: float) -> float:
    return clamp(0.3 * completeness + 0.3 * recency + 0.2 * history + 0.2 * coverage)


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


def response_rate_drift(recent_outcomes: int, older_outcomes: int) -> tuple[float, float, float]:
    """Compare outcome presence in the recent window with the older window.

    The recent rate is 1 when any outcome happened recently; the older rate
    is the share of a 20-outcome sample that was filled.

    Returns:
        Tuple of (older rate, recent rate, absolute difference).
    """
    recent_rate = 1.0 if recent_outcomes > 0 else 0.0
    older_rate = min(OLDER_WINDOW_SAMPLE, older_outcomes) / OLDER_WINDOW_SAMPLE
    return older_rate, recent_rate, abs(recent_rate - older_rate)


def engagement_drift(
    engagement_score: float,
    segment: str | None,
    baselines: Mapping[str, float] = SEGMENT_BASELINES,
) -> tuple[float, float]:
    """Distance of the engagement score from the segment baseline on a 0-1 scale.

    Returns:
        Tuple of (expected baseline, drift magnitude).
    """
    expected = baselines.get(segment or "", DEFAULT_SEGMENT_BASELINE)
    return expected, clamp(abs(engagement_score - expected) / 100)


# ---------------------------------------------------------------------------
# Exploration
# ---------------------------------------------------------------------------


def ucb_exploration_value(c: float, n: int, total_samples: int) -> float:
    """Normalized UCB bonus favouring under-sampled entity/channel pairs.

    Args:
        c: Exploration constant.
        n: Samples for this entity on the channel.
        total_samples: Samples across all entities on the channel.

    Returns:
        Exploration value in [0, 1].
    """
    if n <= 0:
        bonus = c * _UCB_UNTRIED_MULTIPLIER
    else:
        big_n = max(total_samples, n, 1)
        bonus = c * math.sqrt(math.log(big_n) / n)
    return clamp(bonus / _UCB_NORMALIZER)


def ucb_decision_bonus(c: float, n: int, entity_samples: int) -> float:
    """Raw UCB bonus used when deciding whether to explore a channel now.

    Unlike the stored exploration value it is not normalized, and N is the
    entity's own sample count across every channel.
    """
    if n <= 0:
        return _UCB_UNTRIED_MULTIPLIER
    return c * math.sqrt(math.log(entity_samples + 1) / n)


__all__ = [
    "ALEATORIC_DEFAULT",
    "KNOWN_CHANNELS",
    "OPTIONAL_PROFILE_FIELDS",
    "REQUIRED_PROFILE_FIELDS",
    "SEGMENT_BASELINES",
    "aleatoric_uncertainty",
    "channel_coverage",
    "clamp",
    "confidence_interval",
    "data_quality_score",
    "engagement_drift",
    "epistemic_uncertainty",
    "history_score",
    "point_prediction",
    "population_variance",
    "profile_completeness",
    "recency_score",
    "response_rate_drift",
    "total_uncertainty",
    "ucb_decision_bonus",
    "ucb_exploration_value",
]
