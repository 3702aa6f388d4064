"""SQLAlchemy ORM models for the AumOS outcome learning core.

All tables use the `ol_` prefix. Every table extends OutcomeLearningModel,
which supplies id (string UUID), created_at, and updated_at columns.

Domain model:
  EntityProfile: read-only target entity profile (tier, segment, channel preference)
  Stimulus: a marketing touch delivered to an entity
  Outcome: an observed response, back-filled with its primary cause
  AttributionConfig: per-channel (or global) attribution policy override
  OutcomeAttribution: one credited (outcome, stimulus) pair
  PredictionStaleness: age and validation state of the latest prediction per type
  UncertaintyMetrics: latest uncertainty decomposition per (entity, channel, type)
  ExplorationConfig: per-channel (or global) exploration parameters
  ExplorationHistory: log of exploratory / exploitative picks and their resolution

Rows keyed by a nullable channel use NULLS NOT DISTINCT unique constraints so
that the channel-less global row participates in ON CONFLICT upserts.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Declarative base holding the metadata for every ol_ table."""


class OutcomeLearningModel(Base):
    """Abstract base with surrogate key and audit timestamps."""

    __abstract__ = True
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class EntityProfile(OutcomeLearningModel):
    """Target entity profile. Owned by the profile store; read-only here.

    Table: ol_entity_profiles
    """

    __tablename__ = "ol_entity_profiles"

    # Required profile fields
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    specialty: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tier: Mapped[str | None] = mapped_column(String(20), nullable=True, comment="Tier 1 | Tier 2 | Tier 3")
    segment: Mapped[str | None] = mapped_column(String(50), nullable=True)
    region: Mapped[str | None] = mapped_column(String(50), nullable=True)
    channel_preference: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Optional profile fields
    institution: Mapped[str | None] = mapped_column(String(200), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(10), nullable=True)
    prescribing_pattern: Mapped[str | None] = mapped_column(String(50), nullable=True)

    engagement_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
        comment="Baseline engagement score (0-100)",
    )


class Stimulus(OutcomeLearningModel):
    """A marketing touch delivered to an entity.

    Immutable once created except for the actual_* deltas, which are filled
    exactly once when an outcome confirms the touch.

    Table: ol_stimuli
    """

    __tablename__ = "ol_stimuli"

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    stimulus_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    predicted_engagement_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    predicted_conversion_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_engagement_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_conversion_delta: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("ix_ol_stimuli_entity_event", "entity_id", "event_at"),
        Index("ix_ol_stimuli_entity_channel", "entity_id", "channel"),
    )


class Outcome(OutcomeLearningModel):
    """An observed response, created once per real-world event.

    Only the attribution step mutates it, back-filling the primary cause.

    Table: ol_outcomes
    """

    __tablename__ = "ol_outcomes"

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    outcome_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    outcome_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    campaign_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    stimulus_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("ol_stimuli.id"),
        nullable=True,
        comment="Explicit stimulus on insert, primary attributed stimulus after attribution",
    )
    attribution_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="assisted",
        comment="direct | assisted",
    )
    attribution_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    touches_in_window: Mapped[int | None] = mapped_column(Integer, nullable=True)
    days_since_last_touch: Mapped[int | None] = mapped_column(Integer, nullable=True)


class AttributionConfig(OutcomeLearningModel):
    """Per-channel attribution policy override. A NULL channel is the global default.

    Table: ol_attribution_configs
    """

    __tablename__ = "ol_attribution_configs"

    channel: Mapped[str | None] = mapped_column(String(20), nullable=True)
    window_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    decay_function: Mapped[str | None] = mapped_column(String(20), nullable=True)
    multi_touch_model: Mapped[str | None] = mapped_column(String(20), nullable=True)
    first_touch_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_touch_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    middle_touch_weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    decay_half_life_days: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "channel",
            name="uq_ol_attribution_configs_channel",
            postgresql_nulls_not_distinct=True,
        ),
    )


class OutcomeAttribution(OutcomeLearningModel):
    """Credit assigned to one stimulus for one outcome.

    For a given outcome, contribution_weight sums to 1 across its rows.

    Table: ol_outcome_attributions
    """

    __tablename__ = "ol_outcome_attributions"

    outcome_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("ol_outcomes.id"),
        nullable=False,
        index=True,
    )
    stimulus_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("ol_stimuli.id"),
        nullable=False,
        index=True,
    )
    attribution_model: Mapped[str] = mapped_column(String(20), nullable=False)
    contribution_weight: Mapped[float] = mapped_column(Float, nullable=False)
    decay_factor: Mapped[float] = mapped_column(Float, nullable=False)
    days_between_touch_and_outcome: Mapped[int] = mapped_column(Integer, nullable=False)
    touch_position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1 = first, 0 = middle, -1 = last",
    )
    total_touches_in_window: Mapped[int] = mapped_column(Integer, nullable=False)
    attribution_confidence: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("outcome_id", "stimulus_id", name="uq_ol_outcome_attributions_pair"),
    )


class PredictionStaleness(OutcomeLearningModel):
    """Age and validation state of the latest prediction for (entity, type).

    Table: ol_prediction_staleness
    """

    __tablename__ = "ol_prediction_staleness"

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    prediction_type: Mapped[str] = mapped_column(String(30), nullable=False)

    last_predicted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_predicted_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    prediction_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    prediction_age_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    validation_age_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outcome_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    feature_drift_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    staleness_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    recommend_refresh: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refresh_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "prediction_type", name="uq_ol_prediction_staleness_key"),
    )


class UncertaintyMetrics(OutcomeLearningModel):
    """Latest uncertainty decomposition for (entity, channel-or-none, type).

    Upserted; the latest calculation supersedes the prior one.

    Table: ol_uncertainty_metrics
    """

    __tablename__ = "ol_uncertainty_metrics"

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel: Mapped[str | None] = mapped_column(String(20), nullable=True)
    prediction_type: Mapped[str] = mapped_column(String(30), nullable=False)

    predicted_value: Mapped[float] = mapped_column(Float, nullable=False)
    ci_lower: Mapped[float] = mapped_column(Float, nullable=False)
    ci_upper: Mapped[float] = mapped_column(Float, nullable=False)
    ci_width: Mapped[float] = mapped_column(Float, nullable=False)

    epistemic_uncertainty: Mapped[float] = mapped_column(Float, nullable=False)
    aleatoric_uncertainty: Mapped[float] = mapped_column(Float, nullable=False)
    total_uncertainty: Mapped[float] = mapped_column(Float, nullable=False)

    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    data_recency_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    feature_completeness: Mapped[float] = mapped_column(Float, nullable=False)
    prediction_age_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_validation_age_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    feature_drift_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    drift_features: Mapped[list] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=list,
    )

    exploration_value: Mapped[float] = mapped_column(Float, nullable=False)
    recommend_exploration: Mapped[bool] = mapped_column(Boolean, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "entity_id",
            "channel",
            "prediction_type",
            name="uq_ol_uncertainty_metrics_key",
            postgresql_nulls_not_distinct=True,
        ),
    )


class ExplorationConfig(OutcomeLearningModel):
    """Per-channel exploration parameters. A NULL channel is the global row.

    Table: ol_exploration_configs
    """

    __tablename__ = "ol_exploration_configs"

    channel: Mapped[str | None] = mapped_column(String(20), nullable=True)
    exploration_mode: Mapped[str] = mapped_column(String(30), nullable=False, default="epsilon_greedy")
    uncertainty_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_sample_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ucb_c: Mapped[float | None] = mapped_column(Float, nullable=True)
    epsilon: Mapped[float | None] = mapped_column(Float, nullable=True)
    epsilon_decay: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_epsilon: Mapped[float | None] = mapped_column(Float, nullable=True)
    prior_alpha: Mapped[float | None] = mapped_column(Float, nullable=True)
    prior_beta: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "channel",
            name="uq_ol_exploration_configs_channel",
            postgresql_nulls_not_distinct=True,
        ),
    )


class ExplorationHistory(OutcomeLearningModel):
    """One pick made by a decision layer, and its resolution once observed.

    Table: ol_exploration_history
    """

    __tablename__ = "ol_exploration_history"

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    stimulus_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    was_exploration: Mapped[bool] = mapped_column(Boolean, nullable=False)
    exploration_mode: Mapped[str | None] = mapped_column(String(30), nullable=True)
    exploration_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    prior_uncertainty: Mapped[float | None] = mapped_column(Float, nullable=True)
    prior_predicted_value: Mapped[float | None] = mapped_column(Float, nullable=True)

    outcome_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actual_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    prediction_error: Mapped[float | None] = mapped_column(Float, nullable=True)
    information_gain: Mapped[float | None] = mapped_column(Float, nullable=True)
    posterior_uncertainty: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("ix_ol_exploration_history_channel_created", "channel", "created_at"),
    )


__all__ = [
    "AttributionConfig",
    "Base",
    "EntityProfile",
    "ExplorationConfig",
    "ExplorationHistory",
    "Outcome",
    "OutcomeAttribution",
    "OutcomeLearningModel",
    "PredictionStaleness",
    "Stimulus",
    "UncertaintyMetrics",
]
