"""Attribution policy resolution.

An effective policy is resolved in layers, each falling back to the next
for any field it leaves unset:

    channel AttributionConfig row -> global (channel-less) row
        -> channel default -> global default

Channel defaults are a read-only mapping built once at import time and
handed to the engine by reference.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, TypeVar

from aumos_outcome_learning.core.enums import AttributionModel, Channel, DecayFunction, PredictionType
from aumos_outcome_learning.core.models import AttributionConfig
from aumos_outcome_learning.settings import Settings

_E = TypeVar("_E", bound=Enum)


@dataclass(frozen=True)
class ChannelDefaults:
    """Built-in attribution behaviour for a channel with no persisted override."""

    window_days: int
    decay_function: DecayFunction
    multi_touch_model: AttributionModel


@dataclass(frozen=True)
class PositionWeights:
    """Credit split used by the position_based model.

    Attributes:
        first: Weight of the oldest touch.
        last: Weight of the most recent touch.
        middle: Total weight shared by the middle touches. None means
            whatever remains after first and last.
    """

    first: float = 0.4
    last: float = 0.4
    middle: float | None = 0.2


@dataclass(frozen=True)
class AttributionPolicy:
    """Fully-resolved attribution policy for one attribution run."""

    channel: str
    window_days: int
    decay_function: DecayFunction
    multi_touch_model: AttributionModel
    decay_half_life_days: float
    position_weights: PositionWeights


DEFAULT_CHANNEL_POLICIES: Mapping[str, ChannelDefaults] = MappingProxyType(
    {
        Channel.EMAIL.value: ChannelDefaults(7, DecayFunction.EXPONENTIAL, AttributionModel.TIME_DECAY),
        Channel.REP_VISIT.value: ChannelDefaults(30, DecayFunction.LINEAR, AttributionModel.POSITION_BASED),
        Channel.WEBINAR.value: ChannelDefaults(14, DecayFunction.EXPONENTIAL, AttributionModel.LAST_TOUCH),
        Channel.CONFERENCE.value: ChannelDefaults(30, DecayFunction.NONE, AttributionModel.FIRST_TOUCH),
        Channel.DIGITAL_AD.value: ChannelDefaults(7, DecayFunction.EXPONENTIAL, AttributionModel.LINEAR),
        Channel.PHONE.value: ChannelDefaults(14, DecayFunction.LINEAR, AttributionModel.LAST_TOUCH),
    }
)

# Channel whose window governs the search for candidates of each outcome kind.
# Unmapped kinds fall back to email; see DESIGN.md for the caveat.
OUTCOME_TYPE_CHANNELS: Mapping[str, str] = MappingProxyType(
    {
        "email_open": Channel.EMAIL.value,
        "email_click": Channel.EMAIL.value,
        "webinar_register": Channel.WEBINAR.value,
        "webinar_attend": Channel.WEBINAR.value,
        "content_download": Channel.DIGITAL_AD.value,
        "sample_request": Channel.REP_VISIT.value,
        "meeting_scheduled": Channel.REP_VISIT.value,
        "meeting_completed": Channel.REP_VISIT.value,
        "rx_written": Channel.REP_VISIT.value,
        "form_submit": Channel.DIGITAL_AD.value,
        "call_completed": Channel.PHONE.value,
        "referral": Channel.CONFERENCE.value,
    }
)

# Prediction types validated by each outcome kind.
OUTCOME_VALIDATES: Mapping[str, tuple[PredictionType, ...]] = MappingProxyType(
    {
        "email_open": (PredictionType.ENGAGEMENT, PredictionType.CHANNEL_RESPONSE),
        "email_click": (PredictionType.ENGAGEMENT, PredictionType.CHANNEL_RESPONSE, PredictionType.CONVERSION),
        "webinar_attend": (PredictionType.ENGAGEMENT, PredictionType.CONVERSION),
        "rx_written": (PredictionType.CONVERSION,),
        "meeting_completed": (PredictionType.ENGAGEMENT,),
    }
)


def channel_for_outcome_type(outcome_type: str) -> str:
    """Channel whose attribution window applies to an outcome kind."""
    return OUTCOME_TYPE_CHANNELS.get(outcome_type, Channel.default().value)


def prediction_types_validated_by(outcome_type: str) -> tuple[PredictionType, ...]:
    """Prediction types an outcome kind counts as ground truth for."""
    return OUTCOME_VALIDATES.get(outcome_type, (PredictionType.ENGAGEMENT,))


def resolve_window_days(
    config: AttributionConfig | None,
    channel: str,
    settings: Settings,
    channel_defaults: Mapping[str, ChannelDefaults] = DEFAULT_CHANNEL_POLICIES,
    global_config: AttributionConfig | None = None,
) -> int:
    """Attribution window length for a channel."""
    stored = _stored(config, global_config, "window_days")
    if stored is not None:
        return stored
    defaults = channel_defaults.get(channel)
    if defaults is not None:
        return defaults.window_days
    return settings.default_attribution_window_days


def resolve_policy(
    config: AttributionConfig | None,
    channel: str,
    settings: Settings,
    channel_defaults: Mapping[str, ChannelDefaults] = DEFAULT_CHANNEL_POLICIES,
    global_config: AttributionConfig | None = None,
) -> AttributionPolicy:
    """Resolve the effective policy for a channel.

    Unknown model or decay tags stored on a config row are skipped as if
    unset, falling through to the next layer and finally to last_touch / none.

    Args:
        config: Persisted override for the channel, if any.
        channel: Channel being attributed.
        settings: Service settings providing the global defaults.
        channel_defaults: Built-in per-channel defaults.
        global_config: Persisted channel-less row, if any.

    Returns:
        The effective AttributionPolicy.
    """
    defaults = channel_defaults.get(channel)
    rows = [row for row in (config, global_config) if row is not None]

    model = next(
        (tag for tag in (_coerce(AttributionModel, row.multi_touch_model) for row in rows) if tag is not None),
        None,
    )
    if model is None:
        model = defaults.multi_touch_model if defaults is not None else AttributionModel.default()

    decay = next(
        (tag for tag in (_coerce(DecayFunction, row.decay_function) for row in rows) if tag is not None),
        None,
    )
    if decay is None:
        decay = defaults.decay_function if defaults is not None else DecayFunction.default()

    half_life = next(
        (
            row.decay_half_life_days
            for row in rows
            if row.decay_half_life_days is not None and row.decay_half_life_days > 0
        ),
        settings.default_decay_half_life_days,
    )

    weights = PositionWeights(
        first=_first_not_none(
            _stored(config, global_config, "first_touch_weight"),
            settings.default_first_touch_weight,
        ),
        last=_first_not_none(
            _stored(config, global_config, "last_touch_weight"),
            settings.default_last_touch_weight,
        ),
        middle=_first_not_none(
            _stored(config, global_config, "middle_touch_weight"),
            settings.default_middle_touch_weight,
        ),
    )

    return AttributionPolicy(
        channel=channel,
        window_days=resolve_window_days(config, channel, settings, channel_defaults, global_config),
        decay_function=decay,
        multi_touch_model=model,
        decay_half_life_days=half_life,
        position_weights=weights,
    )


def _stored(config: AttributionConfig | None, global_config: AttributionConfig | None, field: str) -> Any:
    """First value of a field set on the channel row, then the global row."""
    for row in (config, global_config):
        value = getattr(row, field, None) if row is not None else None
        if value is not None:
            return value
    return None


def _coerce(enum_cls: type[_E], value: str | None) -> _E | None:
    """Enum member for a stored tag, or None when missing or unrecognised."""
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _first_not_none(value: float | None, fallback: float) -> float:
    return fallback if value is None else value


__all__ = [
    "AttributionPolicy",
    "ChannelDefaults",
    "DEFAULT_CHANNEL_POLICIES",
    "OUTCOME_TYPE_CHANNELS",
    "OUTCOME_VALIDATES",
    "PositionWeights",
    "channel_for_outcome_type",
    "prediction_types_validated_by",
    "resolve_policy",
    "resolve_window_days",
]
