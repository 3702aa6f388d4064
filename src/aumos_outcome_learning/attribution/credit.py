"""Pure multi-touch credit assignment functions.

No I/O happens here; the attribution engine feeds these functions candidate
touches (ordered most recent first) and persists what they return.

Base weights per model (n candidates):
    first_touch     1 to the oldest touch
    last_touch      1 to the most recent touch
    linear          1/n each
    position_based  first/last weights to the extremes, middle weight shared evenly
    time_decay      1/n each; recency preference comes from the decay step

Decay factor per function (d = days since action, h = half-life):
    none            1
    linear          max(0, 1 - d/h)
    exponential     exp(-ln(2)/h * d)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from aumos_outcome_learning.attribution.policy import PositionWeights
from aumos_outcome_learning.core.enums import AttributionModel, DecayFunction, TouchPosition

_LINEAR_DEFAULT_HALF_LIFE_DAYS = 14.0
_EXPONENTIAL_DEFAULT_HALF_LIFE_DAYS = 7.0

_POSITIVE_PREDICTION_BOOST = 1.2
_STALE_TOUCH_DAYS = 21
_STALE_TOUCH_PENALTY = 0.8


@dataclass(frozen=True)
class AttributableAction:
    """A candidate cause for an outcome.

    Attributes:
        stimulus_id: Stimulus identifier.
        entity_id: Entity the stimulus was delivered to.
        channel: Delivery channel.
        stimulus_type: Kind of touch (email_send, rep_visit, ...).
        event_at: When the touch happened.
        days_since_action: Whole days between the touch and the outcome.
        predicted_engagement_delta: Engagement effect predicted at send time.
        predicted_conversion_delta: Conversion effect predicted at send time.
    """

    stimulus_id: str
    entity_id: str
    channel: str
    stimulus_type: str
    event_at: datetime
    days_since_action: int
    predicted_engagement_delta: float | None = None
    predicted_conversion_delta: float | None = None


def calculate_contributions(
    actions: Sequence[AttributableAction],
    model: AttributionModel | str,
    weights: PositionWeights | None = None,
) -> dict[str, float]:
    """Base contribution weight per stimulus for a multi-touch model.

    Args:
        actions: Candidate touches, most recent first.
        model: Model member or stored tag. Unknown tags behave as last_touch.
        weights: Position weights for position_based (defaults 0.4/0.4/0.2).

    Returns:
        Mapping of stimulus_id to base weight. Touches that receive no
        credit are absent from the mapping.
    """
    n = len(actions)
    if n == 0:
        return {}

    if not isinstance(model, AttributionModel):
        model = AttributionModel.parse(model)
    weights = weights or PositionWeights()

    most_recent = actions[0].stimulus_id
    oldest = actions[-1].stimulus_id

    if model is AttributionModel.FIRST_TOUCH:
        return {oldest: 1.0}

    if model is AttributionModel.LINEAR or model is AttributionModel.TIME_DECAY:
        share = 1.0 / n
        return {action.stimulus_id: share for action in actions}

    if model is AttributionModel.POSITION_BASED:
        return _position_based(actions, weights)

    return {most_recent: 1.0}


def _position_based(actions: Sequence[AttributableAction], weights: PositionWeights) -> dict[str, float]:
    n = len(actions)
    first = max(0.0, weights.first)
    last = max(0.0, weights.last)

    if n == 1:
        return {actions[0].stimulus_id: 1.0}

    if n == 2:
        extremes = first + last
        if extremes <= 0:
            return {actions[0].stimulus_id: 0.5, actions[1].stimulus_id: 0.5}
        return {
            actions[0].stimulus_id: last / extremes,
            actions[1].stimulus_id: first / extremes,
        }

    middle_total = weights.middle if weights.middle is not None else 1.0 - first - last
    middle_share = max(0.0, middle_total) / (n - 2)

    contributions = {action.stimulus_id: middle_share for action in actions[1:-1]}
    contributions[actions[0].stimulus_id] = last
    contributions[actions[-1].stimulus_id] = first
    return contributions


def apply_decay(
    days_since_action: float,
    decay_function: DecayFunction | str,
    half_life_days: float | None = None,
) -> float:
    """Decay factor in [0, 1] for a touch that happened days_since_action ago.

    Args:
        days_since_action: Days between touch and outcome. Negative values
            (a touch recorded after the outcome) are treated as 0.
        decay_function: Function member or stored tag. Unknown tags behave as none.
        half_life_days: Half-life; defaults to 14 for linear and 7 for exponential.

    Returns:
        The multiplicative decay factor.
    """
    if not isinstance(decay_function, DecayFunction):
        decay_function = DecayFunction.parse(decay_function)
    days = max(0.0, float(days_since_action))

    if decay_function is DecayFunction.LINEAR:
        half_life = _positive_or(half_life_days, _LINEAR_DEFAULT_HALF_LIFE_DAYS)
        return max(0.0, 1.0 - days / half_life)

    if decay_function is DecayFunction.EXPONENTIAL:
        half_life = _positive_or(half_life_days, _EXPONENTIAL_DEFAULT_HALF_LIFE_DAYS)
        return math.exp(-math.log(2) / half_life * days)

    return 1.0


def normalize_weights(weights: dict[str, float]) -> dict[str, float]:
    """Scale weights to sum to 1. All zeros when the total is not positive."""
    total = sum(weights.values())
    if total <= 0:
        return {key: 0.0 for key in weights}
    return {key: value / total for key, value in weights.items()}


def attribution_confidence(action: AttributableAction, contribution_weight: float) -> float:
    """Confidence that a touch really contributed, starting from its normalized weight.

    A touch whose predicted engagement delta was positive is boosted by 20%
    (capped at 1); a touch older than 21 days is discounted by 20%.
    """
    confidence = contribution_weight
    if action.predicted_engagement_delta is not None and action.predicted_engagement_delta > 0:
        confidence = min(1.0, confidence * _POSITIVE_PREDICTION_BOOST)
    if action.days_since_action > _STALE_TOUCH_DAYS:
        confidence *= _STALE_TOUCH_PENALTY
    return min(1.0, max(0.0, confidence))


def touch_position(index: int, total: int) -> TouchPosition:
    """Position tag for the candidate at index (0 = most recent)."""
    if index == 0:
        return TouchPosition.LAST
    if index == total - 1:
        return TouchPosition.FIRST
    return TouchPosition.MIDDLE


def _positive_or(value: float | None, fallback: float) -> float:
    if value is None or value <= 0:
        return fallback
    return value


__all__ = [
    "AttributableAction",
    "apply_decay",
    "attribution_confidence",
    "calculate_contributions",
    "normalize_weights",
    "touch_position",
]
