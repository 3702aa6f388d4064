"""Pydantic input models for the AumOS outcome learning core.

Callers (API handlers, ingestion jobs, admin tools) validate their payloads
through these models before handing them to the services. Invalid payloads
raise pydantic.ValidationError before any store access happens.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from aumos_outcome_learning.core.enums import AttributionModel, DecayFunction, ExplorationMode


# ---------------------------------------------------------------------------
# Outcome ingestion
# ---------------------------------------------------------------------------


class RecordOutcomeRequest(BaseModel):
    """An observed response to attribute to prior stimuli.

    Attributes:
        entity_id: Target entity the outcome was observed on.
        outcome_type: Outcome kind (email_open, rx_written, ...).
        channel: Channel the outcome was observed on.
        occurred_at: Event time. Defaults to "now" when absent.
        outcome_value: Observed value, if any.
        quality_score: Observed quality score, if any.
        stimulus_id: Explicitly declared causing stimulus, if known.
        campaign_id: Campaign the outcome belongs to.
        content_id: Content item the outcome relates to.
    """

    entity_id: str = Field(..., min_length=1, description="Target entity identifier")
    outcome_type: str = Field(..., min_length=1, max_length=50, description="Outcome kind")
    channel: str = Field(..., min_length=1, max_length=20, description="Channel the outcome was observed on")
    occurred_at: datetime | None = Field(default=None, description="Event time (UTC); defaults to now")
    outcome_value: float | None = Field(default=None, description="Observed value")
    quality_score: float | None = Field(default=None, ge=0, le=100, description="Quality score (0-100)")
    stimulus_id: str | None = Field(default=None, description="Explicit causing stimulus")
    campaign_id: str | None = Field(default=None, description="Campaign identifier")
    content_id: str | None = Field(default=None, description="Content identifier")


# ---------------------------------------------------------------------------
# Operator configuration
# ---------------------------------------------------------------------------


class AttributionConfigUpdate(BaseModel):
    """Partial update of a channel's attribution policy.

    Unset fields keep their stored value; on insert they are seeded from the
    channel default.
    """

    window_days: int | None = Field(default=None, ge=1, le=365, description="Attribution window in days")
    decay_function: DecayFunction | None = Field(default=None, description="Decay function")
    multi_touch_model: AttributionModel | None = Field(default=None, description="Multi-touch model")
    first_touch_weight: float | None = Field(default=None, ge=0, le=1)
    last_touch_weight: float | None = Field(default=None, ge=0, le=1)
    middle_touch_weight: float | None = Field(default=None, ge=0, le=1)
    decay_half_life_days: float | None = Field(default=None, gt=0, description="Decay half-life in days")


class ExplorationConfigUpdate(BaseModel):
    """Partial update of a channel's (or the global) exploration parameters."""

    exploration_mode: ExplorationMode | None = Field(default=None, description="Exploration policy")
    uncertainty_threshold: float | None = Field(default=None, ge=0, le=1)
    min_sample_size: int | None = Field(default=None, ge=0)
    ucb_c: float | None = Field(default=None, gt=0, description="UCB exploration constant")
    epsilon: float | None = Field(default=None, ge=0, le=1)
    epsilon_decay: float | None = Field(default=None, gt=0, le=1)
    min_epsilon: float | None = Field(default=None, ge=0, le=1)
    prior_alpha: float | None = Field(default=None, gt=0, description="Beta prior alpha (thompson sampling)")
    prior_beta: float | None = Field(default=None, gt=0, description="Beta prior beta (thompson sampling)")


__all__ = [
    "AttributionConfigUpdate",
    "ExplorationConfigUpdate",
    "RecordOutcomeRequest",
]
