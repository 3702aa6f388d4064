"""SQLAlchemy repositories for the AumOS outcome learning core.

All repositories extend BaseRepository and implement the interfaces defined
in core/interfaces.py. They flush but never commit; the caller's
session_scope owns the transaction.

Keyed rows (attribution config, staleness, uncertainty metrics, exploration
config) are written with a single INSERT ... ON CONFLICT DO UPDATE against
their natural-key unique constraint, so concurrent recomputations of the
same key resolve as last-write-wins without a read-modify-write window.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import exists, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from aumos_outcome_learning.core.database import BaseRepository
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
from aumos_outcome_learning.observability import get_logger

logger = get_logger(__name__)

_METRICS_KEY = ("entity_id", "channel", "prediction_type")


class EntityProfileRepository(BaseRepository[EntityProfile]):
    """Read-only repository for ol_entity_profiles."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, EntityProfile)


class StimulusRepository(BaseRepository[Stimulus]):
    """Repository for ol_stimuli: marketing touches delivered to entities."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, Stimulus)

    async def list_for_entity(
        self,
        entity_id: str,
        channel: str | None = None,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> list[Stimulus]:
        """List an entity's stimuli, most recent first.

        Args:
            entity_id: Target entity.
            channel: Optional channel filter.
            window_start: Optional lower bound on event time (inclusive).
            window_end: Optional upper bound on event time (inclusive).

        Returns:
            Matching Stimulus rows ordered by event_at descending.
        """
        query = select(Stimulus).where(Stimulus.entity_id == entity_id)
        if channel is not None:
            query = query.where(Stimulus.channel == channel)
        if window_start is not None:
            query = query.where(Stimulus.event_at >= window_start)
        if window_end is not None:
            query = query.where(Stimulus.event_at <= window_end)
        query = query.order_by(Stimulus.event_at.desc(), Stimulus.id)

        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def count_by_channel(self, channel: str) -> int:
        """Count stimuli delivered on a channel across all entities."""
        result = await self._session.execute(
            select(func.count()).select_from(Stimulus).where(Stimulus.channel == channel)
        )
        return int(result.scalar() or 0)

    async def set_actual_deltas(
        self,
        stimulus_id: str,
        actual_engagement_delta: float,
        actual_conversion_delta: float | None,
    ) -> None:
        """Fill the observed-effect fields of a stimulus."""
        await self._session.execute(
            update(Stimulus)
            .where(Stimulus.id == stimulus_id)
            .values(
                actual_engagement_delta=actual_engagement_delta,
                actual_conversion_delta=actual_conversion_delta,
            )
            .execution_options(synchronize_session="fetch")
        )
        await self._session.flush()


class OutcomeRepository(BaseRepository[Outcome]):
    """Repository for ol_outcomes: observed responses."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, Outcome)

    async def set_primary_attribution(
        self,
        outcome_id: str,
        stimulus_id: str,
        attribution_weight: float,
        touches_in_window: int,
        days_since_last_touch: int | None,
    ) -> None:
        """Back-fill the primary cause of an outcome."""
        await self._session.execute(
            update(Outcome)
            .where(Outcome.id == outcome_id)
            .values(
                stimulus_id=stimulus_id,
                attribution_weight=attribution_weight,
                touches_in_window=touches_in_window,
                days_since_last_touch=days_since_last_touch,
            )
            .execution_options(synchronize_session="fetch")
        )
        await self._session.flush()

    async def list_for_entity(
        self,
        entity_id: str,
        channel: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Outcome]:
        """List an entity's outcomes, most recent first.

        Args:
            entity_id: Target entity.
            channel: Optional channel filter.
            since: Optional lower bound on event time (inclusive).
            until: Optional upper bound on event time (inclusive).
            limit: Optional maximum number of rows.

        Returns:
            Matching Outcome rows ordered by event_at descending.
        """
        query = select(Outcome).where(Outcome.entity_id == entity_id)
        if channel is not None:
            query = query.where(Outcome.channel == channel)
        if since is not None:
            query = query.where(Outcome.event_at >= since)
        if until is not None:
            query = query.where(Outcome.event_at <= until)
        query = query.order_by(Outcome.event_at.desc(), Outcome.id)
        if limit is not None:
            query = query.limit(limit)

        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_in_period(
        self,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        channel: str | None = None,
    ) -> list[Outcome]:
        """List outcomes whose event time falls within the period (inclusive)."""
        query = select(Outcome)
        if period_start is not None:
            query = query.where(Outcome.event_at >= period_start)
        if period_end is not None:
            query = query.where(Outcome.event_at <= period_end)
        if channel is not None:
            query = query.where(Outcome.channel == channel)

        result = await self._session.execute(query.order_by(Outcome.event_at))
        return list(result.scalars().all())


class AttributionConfigRepository(BaseRepository[AttributionConfig]):
    """Repository for ol_attribution_configs: per-channel policy overrides."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, AttributionConfig)

    async def get_by_channel(self, channel: str | None) -> AttributionConfig | None:
        """Return the row for a channel, or the global row when channel is None."""
        condition = AttributionConfig.channel.is_(None) if channel is None else AttributionConfig.channel == channel
        result = await self._session.execute(select(AttributionConfig).where(condition))
        return result.scalars().first()

    async def upsert(
        self,
        channel: str | None,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> AttributionConfig:
        """Insert with insert_values, or apply update_values if the channel row exists."""
        stmt = pg_insert(AttributionConfig).values(channel=channel, **insert_values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_ol_attribution_configs_channel",
            set_={**update_values, "updated_at": func.now()},
        ).returning(AttributionConfig)

        result = await self._session.execute(stmt, execution_options={"populate_existing": True})
        return result.scalar_one()


class OutcomeAttributionRepository(BaseRepository[OutcomeAttribution]):
    """Repository for ol_outcome_attributions: credited (outcome, stimulus) pairs."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, OutcomeAttribution)

    async def create_many(self, attributions: list[OutcomeAttribution]) -> None:
        """Persist attribution rows for a single outcome."""
        if not attributions:
            return
        self._session.add_all(attributions)
        await self._session.flush()
        logger.debug("outcome_attributions_created", outcome_id=attributions[0].outcome_id, count=len(attributions))

    async def exists_for_outcome(self, outcome_id: str) -> bool:
        """Whether any attribution row already exists for the outcome."""
        result = await self._session.execute(
            select(exists().where(OutcomeAttribution.outcome_id == outcome_id))
        )
        return bool(result.scalar())

    async def list_for_outcome(self, outcome_id: str) -> list[OutcomeAttribution]:
        """List the attribution rows of one outcome, most recent touch first."""
        result = await self._session.execute(
            select(OutcomeAttribution)
            .where(OutcomeAttribution.outcome_id == outcome_id)
            .order_by(OutcomeAttribution.days_between_touch_and_outcome)
        )
        return list(result.scalars().all())

    async def list_created_between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        channel: str | None = None,
    ) -> list[OutcomeAttribution]:
        """List rows created in a range, optionally limited to outcomes on a channel."""
        query = select(OutcomeAttribution)
        if start is not None:
            query = query.where(OutcomeAttribution.created_at >= start)
        if end is not None:
            query = query.where(OutcomeAttribution.created_at <= end)
        if channel is not None:
            query = query.join(Outcome, Outcome.id == OutcomeAttribution.outcome_id).where(
                Outcome.channel == channel
            )

        result = await self._session.execute(query)
        return list(result.scalars().all())


class StalenessRepository(BaseRepository[PredictionStaleness]):
    """Repository for ol_prediction_staleness: prediction age and validation state."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, PredictionStaleness)

    async def get(self, entity_id: str, prediction_type: str) -> PredictionStaleness | None:
        """Retrieve the row for (entity, prediction type)."""
        result = await self._session.execute(
            select(PredictionStaleness).where(
                PredictionStaleness.entity_id == entity_id,
                PredictionStaleness.prediction_type == prediction_type,
            )
        )
        return result.scalars().first()

    async def list_all(self) -> list[PredictionStaleness]:
        """List every tracked row."""
        result = await self._session.execute(
            select(PredictionStaleness).order_by(PredictionStaleness.entity_id, PredictionStaleness.prediction_type)
        )
        return list(result.scalars().all())

    async def upsert(
        self,
        entity_id: str,
        prediction_type: str,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> PredictionStaleness:
        """Insert with insert_values, or apply update_values if the key exists."""
        stmt = pg_insert(PredictionStaleness).values(
            entity_id=entity_id,
            prediction_type=prediction_type,
            **insert_values,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_ol_prediction_staleness_key",
            set_={**update_values, "updated_at": func.now()},
        ).returning(PredictionStaleness)

        result = await self._session.execute(stmt, execution_options={"populate_existing": True})
        return result.scalar_one()

    async def update(self, entity_id: str, prediction_type: str, values: dict[str, Any]) -> None:
        """Update an existing row in place."""
        await self._session.execute(
            update(PredictionStaleness)
            .where(
                PredictionStaleness.entity_id == entity_id,
                PredictionStaleness.prediction_type == prediction_type,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.flush()

    async def record_validation(
        self,
        entity_id: str,
        prediction_type: str,
        validated_at: datetime,
    ) -> bool:
        """Set last_validated_at and increment outcome_count if the row exists."""
        result = await self._session.execute(
            update(PredictionStaleness)
            .where(
                PredictionStaleness.entity_id == entity_id,
                PredictionStaleness.prediction_type == prediction_type,
            )
            .values(
                last_validated_at=validated_at,
                outcome_count=PredictionStaleness.outcome_count + 1,
            )
            .execution_options(synchronize_session="fetch")
        )
        await self._session.flush()
        if not result.rowcount:
            logger.debug("staleness_row_missing", entity_id=entity_id, prediction_type=prediction_type)
        return bool(result.rowcount)


class UncertaintyMetricsRepository(BaseRepository[UncertaintyMetrics]):
    """Repository for ol_uncertainty_metrics: latest uncertainty per key."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, UncertaintyMetrics)

    async def get(
        self,
        entity_id: str,
        channel: str | None,
        prediction_type: str,
    ) -> UncertaintyMetrics | None:
        """Retrieve the row for (entity, channel-or-none, prediction type)."""
        channel_condition = (
            UncertaintyMetrics.channel.is_(None) if channel is None else UncertaintyMetrics.channel == channel
        )
        result = await self._session.execute(
            select(UncertaintyMetrics).where(
                UncertaintyMetrics.entity_id == entity_id,
                channel_condition,
                UncertaintyMetrics.prediction_type == prediction_type,
            )
        )
        return result.scalars().first()

    async def upsert(self, values: dict[str, Any]) -> UncertaintyMetrics:
        """Atomically insert or replace the row keyed by (entity, channel, prediction type)."""
        stmt = pg_insert(UncertaintyMetrics).values(**values)
        replaced = {key: value for key, value in values.items() if key not in _METRICS_KEY}
        stmt = stmt.on_conflict_do_update(
            constraint="uq_ol_uncertainty_metrics_key",
            set_={**replaced, "updated_at": func.now()},
        ).returning(UncertaintyMetrics)

        result = await self._session.execute(stmt, execution_options={"populate_existing": True})
        logger.debug(
            "uncertainty_metrics_upserted",
            entity_id=values.get("entity_id"),
            channel=values.get("channel"),
            prediction_type=values.get("prediction_type"),
        )
        return result.scalar_one()

    async def list_all(self) -> list[UncertaintyMetrics]:
        """List every stored metrics row."""
        result = await self._session.execute(select(UncertaintyMetrics))
        return list(result.scalars().all())

    async def list_for_entity(self, entity_id: str) -> list[UncertaintyMetrics]:
        """List an entity's rows, highest exploration value first."""
        result = await self._session.execute(
            select(UncertaintyMetrics)
            .where(UncertaintyMetrics.entity_id == entity_id)
            .order_by(UncertaintyMetrics.exploration_value.desc())
        )
        return list(result.scalars().all())


class ExplorationConfigRepository(BaseRepository[ExplorationConfig]):
    """Repository for ol_exploration_configs: per-channel exploration parameters."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, ExplorationConfig)

    async def get_by_channel(self, channel: str | None) -> ExplorationConfig | None:
        """Return the row for a channel, or the global row when channel is None."""
        condition = ExplorationConfig.channel.is_(None) if channel is None else ExplorationConfig.channel == channel
        result = await self._session.execute(select(ExplorationConfig).where(condition))
        return result.scalars().first()

    async def upsert(
        self,
        channel: str | None,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> ExplorationConfig:
        """Insert with insert_values, or apply update_values if the channel row exists."""
        stmt = pg_insert(ExplorationConfig).values(channel=channel, **insert_values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_ol_exploration_configs_channel",
            set_={**update_values, "updated_at": func.now()},
        ).returning(ExplorationConfig)

        result = await self._session.execute(stmt, execution_options={"populate_existing": True})
        return result.scalar_one()


class ExplorationHistoryRepository(BaseRepository[ExplorationHistory]):
    """Repository for ol_exploration_history: the exploration decision log."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, ExplorationHistory)

    async def get_by_stimulus(self, stimulus_id: str) -> ExplorationHistory | None:
        """Retrieve the most recent decision that produced a stimulus."""
        result = await self._session.execute(
            select(ExplorationHistory)
            .where(ExplorationHistory.stimulus_id == stimulus_id)
            .order_by(ExplorationHistory.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def update(self, entry_id: str, values: dict[str, Any]) -> None:
        """Record the resolution of a logged decision."""
        await self._session.execute(
            update(ExplorationHistory)
            .where(ExplorationHistory.id == entry_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.flush()

    async def list_all(self) -> list[ExplorationHistory]:
        """List the whole decision log, oldest first."""
        result = await self._session.execute(select(ExplorationHistory).order_by(ExplorationHistory.created_at))
        return list(result.scalars().all())

    async def count_explorations_since(self, since: datetime, channel: str | None = None) -> int:
        """Count exploratory picks made since a point in time."""
        query = (
            select(func.count())
            .select_from(ExplorationHistory)
            .where(
                ExplorationHistory.was_exploration.is_(True),
                ExplorationHistory.created_at >= since,
            )
        )
        if channel is not None:
            query = query.where(ExplorationHistory.channel == channel)

        result = await self._session.execute(query)
        return int(result.scalar() or 0)


__all__ = [
    "AttributionConfigRepository",
    "EntityProfileRepository",
    "ExplorationConfigRepository",
    "ExplorationHistoryRepository",
    "OutcomeAttributionRepository",
    "OutcomeRepository",
    "StalenessRepository",
    "StimulusRepository",
    "UncertaintyMetricsRepository",
]
