"""Closed sets of named strategies and categories used across the core.

Stored rows carry these as plain strings. ``parse`` maps unknown or legacy
tags onto the documented default member instead of raising.
"""

from __future__ import annotations

from enum import Enum


class _TaggedEnum(str, Enum):
    """String enum with a lenient parser."""

    @classmethod
    def default(cls) -> "_TaggedEnum":
        raise NotImplementedError

    @classmethod
    def parse(cls, value: str | None) -> "_TaggedEnum":
        """Return the member for ``value``, or the default member when unknown."""
        if value is None:
            return cls.default()
        try:
            return cls(value)
        except ValueError:
            return cls.default()


class Channel(_TaggedEnum):
    """Engagement channels a stimulus can be delivered through."""

    EMAIL = "email"
    REP_VISIT = "rep_visit"
    WEBINAR = "webinar"
    CONFERENCE = "conference"
    DIGITAL_AD = "digital_ad"
    PHONE = "phone"

    @classmethod
    def default(cls) -> "Channel":
        return cls.EMAIL


class AttributionModel(_TaggedEnum):
    """Multi-touch credit assignment rules."""

    FIRST_TOUCH = "first_touch"
    LAST_TOUCH = "last_touch"
    LINEAR = "linear"
    POSITION_BASED = "position_based"
    TIME_DECAY = "time_decay"

    @classmethod
    def default(cls) -> "AttributionModel":
        return cls.LAST_TOUCH


class DecayFunction(_TaggedEnum):
    """How a touch's credit shrinks with days elapsed before the outcome."""

    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"

    @classmethod
    def default(cls) -> "DecayFunction":
        return cls.NONE


class PredictionType(_TaggedEnum):
    """Kinds of stored predictions tracked for staleness."""

    ENGAGEMENT = "engagement"
    CONVERSION = "conversion"
    CHANNEL_RESPONSE = "channel_response"
    CHURN = "churn"

    @classmethod
    def default(cls) -> "PredictionType":
        return cls.ENGAGEMENT


class ExplorationMode(_TaggedEnum):
    """Exploration policies a decision layer can run."""

    EPSILON_GREEDY = "epsilon_greedy"
    UCB = "ucb"
    THOMPSON_SAMPLING = "thompson_sampling"

    @classmethod
    def default(cls) -> "ExplorationMode":
        return cls.EPSILON_GREEDY


class TouchPosition(int, Enum):
    """Position tag of a candidate touch inside its attribution window."""

    LAST = -1
    MIDDLE = 0
    FIRST = 1


__all__ = [
    "AttributionModel",
    "Channel",
    "DecayFunction",
    "ExplorationMode",
    "PredictionType",
    "TouchPosition",
]
