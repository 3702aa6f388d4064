"""Abstract interfaces (Protocol classes) for the AumOS outcome learning core.

All services depend on these interfaces, not concrete implementations.
This enables dependency injection and test doubles without coupling the
attribution and uncertainty logic to SQLAlchemy.

Implementations never commit. The caller's unit of work decides whether a
whole attribution or uncertainty run is persisted.
"""

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from aumos_outcome_learning.core.models import (
    AttributionConfig,
    EntityProfile,
    ExplorationConfig,
    ExplorationHistory,
    Outcome,
    OutcomeAttribution,
    PredictionStaleness,
    Stimulus,
    UncertaintyMetrics,
)


@runtime_checkable
class IEntityProfileRepository(Protocol):
    """Read-only access to target entity profiles."""

    async def get_by_id(self, entity_id: str) -> EntityProfile | None:
        """Retrieve an entity profile by primary key."""
        ...


@runtime_checkable
class IStimulusRepository(Protocol):
    """Repository interface for stimulus (touchpoint) records."""

    async def get_by_id(self, stimulus_id: str) -> Stimulus | None:
        """Retrieve a stimulus by primary key."""
        ...

    async def list_for_entity(
        self,
        entity_id: str,
        channel: str | None = None,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> list[Stimulus]:
        """List an entity's stimuli, most recent first, optionally bounded by channel and time."""
        ...

    async def count_by_channel(self, channel: str) -> int:
        """Count stimuli delivered on a channel across all entities."""
        ...

    async def set_actual_deltas(
        self,
        stimulus_id: str,
        actual_engagement_delta: float,
        actual_conversion_delta: float | None,
    ) -> None:
        """Fill the observed-effect fields of a stimulus."""
        ...


@runtime_checkable
class IOutcomeRepository(Protocol):
    """Repository interface for outcome records."""

    async def create(self, outcome: Outcome) -> Outcome:
        """Persist a new outcome and return it with its id assigned."""
        ...

    async def get_by_id(self, outcome_id: str) -> Outcome | None:
        """Retrieve an outcome by primary key."""
        ...

    async def set_primary_attribution(
        self,
        outcome_id: str,
        stimulus_id: str,
        attribution_weight: float,
        touches_in_window: int,
        days_since_last_touch: int | None,
    ) -> None:
        """Back-fill the primary cause of an outcome."""
        ...

    async def list_for_entity(
        self,
        entity_id: str,
        channel: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Outcome]:
        """List an entity's outcomes, most recent first."""
        ...

    async def list_in_period(
        self,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        channel: str | None = None,
    ) -> list[Outcome]:
        """List outcomes whose event time falls within the period (inclusive, open ends allowed)."""
        ...


@runtime_checkable
class IAttributionConfigRepository(Protocol):
    """Repository interface for per-channel attribution policy overrides."""

    async def get_by_channel(self, channel: str | None) -> AttributionConfig | None:
        """Return the row for a channel, or the global row when channel is None."""
        ...

    async def upsert(
        self,
        channel: str | None,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> AttributionConfig:
        """Insert with insert_values, or apply update_values if the channel row exists."""
        ...


@runtime_checkable
class IOutcomeAttributionRepository(Protocol):
    """Repository interface for (outcome, stimulus) credit rows."""

    async def create_many(self, attributions: list[OutcomeAttribution]) -> None:
        """Persist attribution rows for a single outcome."""
        ...

    async def exists_for_outcome(self, outcome_id: str) -> bool:
        """Whether any attribution row already exists for the outcome."""
        ...

    async def list_for_outcome(self, outcome_id: str) -> list[OutcomeAttribution]:
        """List the attribution rows of one outcome."""
        ...

    async def list_created_between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        channel: str | None = None,
    ) -> list[OutcomeAttribution]:
        """List rows created in a range, optionally limited to outcomes on a channel."""
        ...


@runtime_checkable
class IStalenessRepository(Protocol):
    """Repository interface for prediction staleness rows."""

    async def get(self, entity_id: str, prediction_type: str) -> PredictionStaleness | None:
        """Retrieve the row for (entity, prediction type)."""
        ...

    async def list_all(self) -> list[PredictionStaleness]:
        """List every tracked row."""
        ...

    async def upsert(
        self,
        entity_id: str,
        prediction_type: str,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> PredictionStaleness:
        """Insert with insert_values, or apply update_values if the key exists."""
        ...

    async def update(self, entity_id: str, prediction_type: str, values: dict[str, Any]) -> None:
        """Update an existing row in place."""
        ...

    async def record_validation(
        self,
        entity_id: str,
        prediction_type: str,
        validated_at: datetime,
    ) -> bool:
        """Set last_validated_at and increment outcome_count if the row exists.

        Returns:
            True when a row was updated, False when none exists.
        """
        ...


@runtime_checkable
class IUncertaintyMetricsRepository(Protocol):
    """Repository interface for uncertainty metric rows."""

    async def get(
        self,
        entity_id: str,
        channel: str | None,
        prediction_type: str,
    ) -> UncertaintyMetrics | None:
        """Retrieve the row for (entity, channel-or-none, prediction type)."""
        ...

    async def upsert(self, values: dict[str, Any]) -> UncertaintyMetrics:
        """Atomically insert or replace the row keyed by (entity, channel, prediction type)."""
        ...

    async def list_all(self) -> list[UncertaintyMetrics]:
        """List every stored metrics row."""
        ...

    async def list_for_entity(self, entity_id: str) -> list[UncertaintyMetrics]:
        """List an entity's rows, highest exploration value first."""
        ...


@runtime_checkable
class IExplorationConfigRepository(Protocol):
    """Repository interface for exploration parameters."""

    async def get_by_channel(self, channel: str | None) -> ExplorationConfig | None:
        """Return the row for a channel, or the global row when channel is None."""
        ...

    async def upsert(
        self,
        channel: str | None,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> ExplorationConfig:
        """Insert with insert_values, or apply update_values if the channel row exists."""
        ...


@runtime_checkable
class IExplorationHistoryRepository(Protocol):
    """Repository interface for the exploration decision log."""

    async def create(self, entry: ExplorationHistory) -> ExplorationHistory:
        """Append a decision to the log."""
        ...

    async def get_by_stimulus(self, stimulus_id: str) -> ExplorationHistory | None:
        """Retrieve the decision that produced a stimulus."""
        ...

    async def update(self, entry_id: str, values: dict[str, Any]) -> None:
        """Record the resolution of a logged decision."""
        ...

    async def list_all(self) -> list[ExplorationHistory]:
        """List the whole decision log."""
        ...

    async def count_explorations_since(self, since: datetime, channel: str | None = None) -> int:
        """Count exploratory picks made since a point in time."""
        ...


@runtime_checkable
class IUncertaintySource(Protocol):
    """Calculates uncertainty on demand for exploration decisions."""

    async def calculate_uncertainty(self, entity_id: str, channel: str | None = None) -> UncertaintyMetrics:
        """Compute and store the metrics for an entity/channel."""
        ...

    async def calculate_exploration_value(self, entity_id: str, channel: str) -> float:
        """Normalized UCB exploration value of an entity/channel pair."""
        ...
