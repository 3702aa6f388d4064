"""Create the outcome learning tables.

Revision ID: 001_ol_initial
Revises:
Create Date: 2026-10-18

Tables:
  - ol_entity_profiles: target entity profiles (read-only for this service)
  - ol_stimuli: marketing touches
  - ol_outcomes: observed responses
  - ol_attribution_configs: per-channel attribution overrides
  - ol_outcome_attributions: credited (outcome, stimulus) pairs
  - ol_prediction_staleness: prediction age and validation state
  - ol_uncertainty_metrics: latest uncertainty per (entity, channel, type)
  - ol_exploration_configs: per-channel exploration parameters
  - ol_exploration_history: exploration decision log

Keys with a nullable channel use NULLS NOT DISTINCT (PostgreSQL 15+) so the
channel-less global row takes part in ON CONFLICT upserts.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "001_ol_initial"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    """Create all ol_ tables, constraints and indexes."""

    op.create_table(
        "ol_entity_profiles",
        *_base_columns(),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("specialty", sa.String(50), nullable=True),
        sa.Column("tier", sa.String(20), nullable=True, comment="Tier 1 | Tier 2 | Tier 3"),
        sa.Column("segment", sa.String(50), nullable=True),
        sa.Column("region", sa.String(50), nullable=True),
        sa.Column("channel_preference", sa.String(20), nullable=True),
        sa.Column("institution", sa.String(200), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(10), nullable=True),
        sa.Column("prescribing_pattern", sa.String(50), nullable=True),
        sa.Column(
            "engagement_score",
            sa.Float,
            nullable=False,
            server_default="0",
            comment="Baseline engagement score (0-100)",
        ),
    )

    op.create_table(
        "ol_stimuli",
        *_base_columns(),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("stimulus_type", sa.String(50), nullable=False),
        sa.Column("event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("predicted_engagement_delta", sa.Float, nullable=True),
        sa.Column("predicted_conversion_delta", sa.Float, nullable=True),
        sa.Column("actual_engagement_delta", sa.Float, nullable=True),
        sa.Column("actual_conversion_delta", sa.Float, nullable=True),
    )
    op.create_index("ix_ol_stimuli_entity_id", "ol_stimuli", ["entity_id"])
    op.create_index("ix_ol_stimuli_channel", "ol_stimuli", ["channel"])
    op.create_index("ix_ol_stimuli_entity_event", "ol_stimuli", ["entity_id", "event_at"])
    op.create_index("ix_ol_stimuli_entity_channel", "ol_stimuli", ["entity_id", "channel"])

    op.create_table(
        "ol_outcomes",
        *_base_columns(),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("outcome_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("outcome_value", sa.Float, nullable=True),
        sa.Column("quality_score", sa.Float, nullable=True),
        sa.Column("campaign_id", sa.String(64), nullable=True),
        sa.Column("content_id", sa.String(64), nullable=True),
        sa.Column(
            "stimulus_id",
            sa.String(64),
            sa.ForeignKey("ol_stimuli.id"),
            nullable=True,
            comment="Explicit stimulus on insert, primary attributed stimulus after attribution",
        ),
        sa.Column("attribution_type", sa.String(20), nullable=False, comment="direct | assisted"),
        sa.Column("attribution_weight", sa.Float, nullable=True),
        sa.Column("touches_in_window", sa.Integer, nullable=True),
        sa.Column("days_since_last_touch", sa.Integer, nullable=True),
    )
    op.create_index("ix_ol_outcomes_entity_id", "ol_outcomes", ["entity_id"])
    op.create_index("ix_ol_outcomes_outcome_type", "ol_outcomes", ["outcome_type"])
    op.create_index("ix_ol_outcomes_channel", "ol_outcomes", ["channel"])
    op.create_index("ix_ol_outcomes_event_at", "ol_outcomes", ["event_at"])

    op.create_table(
        "ol_attribution_configs",
        *_base_columns(),
        sa.Column("channel", sa.String(20), nullable=True),
        sa.Column("window_days", sa.Integer, nullable=True),
        sa.Column("decay_function", sa.String(20), nullable=True),
        sa.Column("multi_touch_model", sa.String(20), nullable=True),
        sa.Column("first_touch_weight", sa.Float, nullable=True),
        sa.Column("last_touch_weight", sa.Float, nullable=True),
        sa.Column("middle_touch_weight", sa.Float, nullable=True),
        sa.Column("decay_half_life_days", sa.Float, nullable=True),
        sa.UniqueConstraint(
            "channel",
            name="uq_ol_attribution_configs_channel",
            postgresql_nulls_not_distinct=True,
        ),
    )

    op.create_table(
        "ol_outcome_attributions",
        *_base_columns(),
        sa.Column("outcome_id", sa.String(64), sa.ForeignKey("ol_outcomes.id"), nullable=False),
        sa.Column("stimulus_id", sa.String(64), sa.ForeignKey("ol_stimuli.id"), nullable=False),
        sa.Column("attribution_model", sa.String(20), nullable=False),
        sa.Column("contribution_weight", sa.Float, nullable=False),
        sa.Column("decay_factor", sa.Float, nullable=False),
        sa.Column("days_between_touch_and_outcome", sa.Integer, nullable=False),
        sa.Column("touch_position", sa.Integer, nullable=False, comment="1 = first, 0 = middle, -1 = last"),
        sa.Column("total_touches_in_window", sa.Integer, nullable=False),
        sa.Column("attribution_confidence", sa.Float, nullable=False),
        sa.UniqueConstraint("outcome_id", "stimulus_id", name="uq_ol_outcome_attributions_pair"),
    )
    op.create_index("ix_ol_outcome_attributions_outcome_id", "ol_outcome_attributions", ["outcome_id"])
    op.create_index("ix_ol_outcome_attributions_stimulus_id", "ol_outcome_attributions", ["stimulus_id"])

    op.create_table(
        "ol_prediction_staleness",
        *_base_columns(),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("prediction_type", sa.String(30), nullable=False),
        sa.Column("last_predicted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_predicted_value", sa.Float, nullable=True),
        sa.Column("prediction_confidence", sa.Float, nullable=True),
        sa.Column("prediction_age_days", sa.Integer, nullable=True),
        sa.Column("last_validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_age_days", sa.Integer, nullable=True),
        sa.Column("outcome_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("feature_drift_detected", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("staleness_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("recommend_refresh", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("refresh_reason", sa.String(500), nullable=True),
        sa.UniqueConstraint("entity_id", "prediction_type", name="uq_ol_prediction_staleness_key"),
    )
    op.create_index("ix_ol_prediction_staleness_entity_id", "ol_prediction_staleness", ["entity_id"])

    op.create_table(
        "ol_uncertainty_metrics",
        *_base_columns(),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(20), nullable=True),
        sa.Column("prediction_type", sa.String(30), nullable=False),
        sa.Column("predicted_value", sa.Float, nullable=False),
        sa.Column("ci_lower", sa.Float, nullable=False),
        sa.Column("ci_upper", sa.Float, nullable=False),
        sa.Column("ci_width", sa.Float, nullable=False),
        sa.Column("epistemic_uncertainty", sa.Float, nullable=False),
        sa.Column("aleatoric_uncertainty", sa.Float, nullable=False),
        sa.Column("total_uncertainty", sa.Float, nullable=False),
        sa.Column("sample_size", sa.Integer, nullable=False),
        sa.Column("data_recency_days", sa.Integer, nullable=True),
        sa.Column("feature_completeness", sa.Float, nullable=False),
        sa.Column("prediction_age_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_validation_age_days", sa.Integer, nullable=True),
        sa.Column("feature_drift_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("drift_features", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("exploration_value", sa.Float, nullable=False),
        sa.Column("recommend_exploration", sa.Boolean, nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "entity_id",
            "channel",
            "prediction_type",
            name="uq_ol_uncertainty_metrics_key",
            postgresql_nulls_not_distinct=True,
        ),
    )
    op.create_index("ix_ol_uncertainty_metrics_entity_id", "ol_uncertainty_metrics", ["entity_id"])

    op.create_table(
        "ol_exploration_configs",
        *_base_columns(),
        sa.Column("channel", sa.String(20), nullable=True),
        sa.Column("exploration_mode", sa.String(30), nullable=False, server_default="epsilon_greedy"),
        sa.Column("uncertainty_threshold", sa.Float, nullable=True),
        sa.Column("min_sample_size", sa.Integer, nullable=True),
        sa.Column("ucb_c", sa.Float, nullable=True),
        sa.Column("epsilon", sa.Float, nullable=True),
        sa.Column("epsilon_decay", sa.Float, nullable=True),
        sa.Column("min_epsilon", sa.Float, nullable=True),
        sa.Column("prior_alpha", sa.Float, nullable=True),
        sa.Column("prior_beta", sa.Float, nullable=True),
        sa.UniqueConstraint(
            "channel",
            name="uq_ol_exploration_configs_channel",
            postgresql_nulls_not_distinct=True,
        ),
    )

    op.create_table(
        "ol_exploration_history",
        *_base_columns(),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("stimulus_id", sa.String(64), nullable=False),
        sa.Column("was_exploration", sa.Boolean, nullable=False),
        sa.Column("exploration_mode", sa.String(30), nullable=True),
        sa.Column("exploration_score", sa.Float, nullable=True),
        sa.Column("prior_uncertainty", sa.Float, nullable=True),
        sa.Column("prior_predicted_value", sa.Float, nullable=True),
        sa.Column("outcome_id", sa.String(64), nullable=True),
        sa.Column("actual_value", sa.Float, nullable=True),
        sa.Column("prediction_error", sa.Float, nullable=True),
        sa.Column("information_gain", sa.Float, nullable=True),
        sa.Column("posterior_uncertainty", sa.Float, nullable=True),
    )
    op.create_index("ix_ol_exploration_history_entity_id", "ol_exploration_history", ["entity_id"])
    op.create_index("ix_ol_exploration_history_stimulus_id", "ol_exploration_history", ["stimulus_id"])
    op.create_index(
        "ix_ol_exploration_history_channel_created",
        "ol_exploration_history",
        ["channel", "created_at"],
    )


def downgrade() -> None:
    """Drop all ol_ tables in reverse dependency order."""
    op.drop_table("ol_exploration_history")
    op.drop_table("ol_exploration_configs")
    op.drop_table("ol_uncertainty_metrics")
    op.drop_table("ol_prediction_staleness")
    op.drop_table("ol_outcome_attributions")
    op.drop_table("ol_attribution_configs")
    op.drop_table("ol_outcomes")
    op.drop_table("ol_stimuli")
    op.drop_table("ol_entity_profiles")
