"""UncertaintyCalculator: how far any prediction about an entity can be trusted.

For an (entity, channel-or-none, prediction type) key it decomposes predictive
uncertainty into an epistemic part (shrinks with more data) and an aleatoric
part (observed outcome noise), builds a confidence interval around a point
prediction, checks for feature drift, and scores how valuable it would be to
deliberately explore the pair. The latest calculation is upserted; it is a
pure function of stored state and the injected clock.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping

import structlog

from aumos_outcome_learning.core.clock import Clock, as_utc, utcnow, whole_days_between
from aumos_outcome_learning.core.database import ItemScope, no_item_scope
from aumos_outcome_learning.core.enums import PredictionType
from aumos_outcome_learning.core.interfaces import (
    IEntityProfileRepository,
    IExplorationConfigRepository,
    IExplorationHistoryRepository,
    IOutcomeRepository,
    IStalenessRepository,
    IStimulusRepository,
    IUncertaintyMetricsRepository,
)
from aumos_outcome_learning.core.models import EntityProfile, ExplorationHistory, Stimulus, UncertaintyMetrics
from aumos_outcome_learning.errors import NotFoundError
from aumos_outcome_learning.settings import Settings
from aumos_outcome_learning.uncertainty import statistics
from aumos_outcome_learning.uncertainty.exploration import load_exploration_parameters

logger = structlog.get_logger(__name__)

_UNASSIGNED_CHANNEL = "all"
_UNSET_MODE = "unknown"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DataQualityReport:
    """How much usable data backs predictions about an entity.

    Attributes:
        entity_id: Assessed entity.
        overall_score: Weighted blend of the four component scores (0-1).
        profile_completeness: Weighted share of populated profile fields (0-1).
        engagement_history: Number of stimuli delivered to the entity.
        outcome_history: Number of outcomes observed on the entity.
        last_engagement_days: Days since the most recent stimulus, if any.
        last_outcome_days: Days since the most recent outcome, if any.
        channel_coverage: Whether each known channel has at least one stimulus.
        missing_fields: Profile fields that are empty.
    """

    entity_id: str
    overall_score: float
    profile_completeness: float
    engagement_history: int
    outcome_history: int
    last_engagement_days: int | None
    last_outcome_days: int | None
    channel_coverage: dict[str, bool]
    missing_fields: list[str]


@dataclass(frozen=True)
class DriftedFeature:
    """One feature whose current value departs from its reference."""

    feature: str
    previous_value: float
    current_value: float
    drift_magnitude: float


@dataclass(frozen=True)
class DriftReport:
    """Result of a drift check for an entity."""

    entity_id: str
    overall_drift_score: float
    significant_drift: bool
    drifted_features: list[DriftedFeature]
    recommend_recompute: bool
    last_checked_at: datetime


@dataclass(frozen=True)
class ChannelUncertainty:
    channel: str
    avg_uncertainty: float
    entity_count: int
    exploration_recommended: int


@dataclass(frozen=True)
class PredictionTypeUncertainty:
    prediction_type: str
    avg_uncertainty: float
    entity_count: int


@dataclass(frozen=True)
class UncertaintySummary:
    """Aggregate over every stored uncertainty metrics row.

    Rows calculated without a channel are grouped under "all".
    """

    total_entities: int
    avg_epistemic_uncertainty: float
    avg_aleatoric_uncertainty: float
    avg_total_uncertainty: float
    high_uncertainty_count: int
    recommend_exploration_count: int
    by_channel: list[ChannelUncertainty] = field(default_factory=list)
    by_prediction_type: list[PredictionTypeUncertainty] = field(default_factory=list)
    recent_drift_detected: int = 0


@dataclass(frozen=True)
class ExplorationGroupStatistics:
    key: str
    count: int
    avg_information_gain: float


@dataclass(frozen=True)
class ExplorationStatistics:
    """Aggregate over the exploration decision log.

    Averages of information gain and prediction error are taken over
    exploratory picks that have been resolved with an outcome.
    """

    total_explorations: int
    successful_explorations: int
    avg_information_gain: float
    avg_prediction_error: float
    exploration_by_channel: list[ExplorationGroupStatistics]
    exploration_by_mode: list[ExplorationGroupStatistics]
    current_epsilon: float


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class UncertaintyCalculator:
    """Computes and stores uncertainty metrics per (entity, channel, prediction type).

    Args:
        profile_repo: Read-only entity profile store.
        stimulus_repo: Stimulus store.
        outcome_repo: Outcome store.
        staleness_repo: Staleness rows (prediction age, drift flag).
        metrics_repo: Store for uncertainty metrics rows.
        exploration_config_repo: Store for exploration parameter rows.
        history_repo: Exploration decision log.
        settings: Service settings (fallback parameters, drift window).
        segment_baselines: Expected engagement score per segment.
        clock: Source of "now"; injectable for deterministic tests.
        item_scope: Context each entity of a batch calculation runs in.
    """

    def __init__(
        self,
        profile_repo: IEntityProfileRepository,
        stimulus_repo: IStimulusRepository,
        outcome_repo: IOutcomeRepository,
        staleness_repo: IStalenessRepository,
        metrics_repo: IUncertaintyMetricsRepository,
        exploration_config_repo: IExplorationConfigRepository,
        history_repo: IExplorationHistoryRepository,
        settings: Settings,
        segment_baselines: Mapping[str, float] = statistics.SEGMENT_BASELINES,
        clock: Clock | None = None,
        item_scope: ItemScope | None = None,
    ) -> None:
        self._profiles = profile_repo
        self._stimuli = stimulus_repo
        self._outcomes = outcome_repo
        self._staleness = staleness_repo
        self._metrics = metrics_repo
        self._exploration_configs = exploration_config_repo
        self._history = history_repo
        self._settings = settings
        self._segment_baselines = segment_baselines
        self._clock = clock or utcnow
        self._item_scope = item_scope or no_item_scope

    async def calculate_uncertainty(
        self,
        entity_id: str,
        channel: str | None = None,
        prediction_type: str = PredictionType.ENGAGEMENT.value,
    ) -> UncertaintyMetrics:
        """Compute and upsert the uncertainty metrics for one key.

        Args:
            entity_id: Target entity.
            channel: Channel to scope the history to, or None for all channels.
            prediction_type: Prediction type the metrics describe.

        Returns:
            The stored UncertaintyMetrics row.

        Raises:
            NotFoundError: If the entity profile does not exist.
        """
        now = self._clock()
        profile = await self._require_profile(entity_id)

        all_stimuli = await self._stimuli.list_for_entity(entity_id)
        scoped_stimuli = (
            all_stimuli if channel is None else [s for s in all_stimuli if s.channel == channel]
        )
        all_outcomes = await self._outcomes.list_for_entity(entity_id)
        latest_scoped_outcome = next(
            (o for o in all_outcomes if channel is None or o.channel == channel),
            None,
        )
        drift = await self._drift_report(profile, now)
        staleness = await self._staleness.get(entity_id, prediction_type)
        params = await load_exploration_parameters(self._exploration_configs, channel, self._settings)
        exploration_value = await self._exploration_value(
            entity_id,
            channel or self._settings.default_exploration_channel,
            params.ucb_c,
        )

        sample_size = len(scoped_stimuli)
        epistemic = _epistemic(scoped_stimuli)
        aleatoric = _aleatoric(scoped_stimuli)
        total = statistics.total_uncertainty(epistemic, aleatoric)
        predicted_value = statistics.point_prediction(profile, channel)
        ci_lower, ci_upper, ci_width = statistics.confidence_interval(predicted_value, total)
        completeness, _ = statistics.profile_completeness(profile)
        recommend_exploration = total > params.uncertainty_threshold or sample_size < params.min_sample_size

        metrics = await self._metrics.upsert(
            {
                "entity_id": entity_id,
                "channel": channel,
                "prediction_type": prediction_type,
                "predicted_value": predicted_value,
                "ci_lower": ci_lower,
                "ci_upper": ci_upper,
                "ci_width": ci_width,
                "epistemic_uncertainty": epistemic,
                "aleatoric_uncertainty": aleatoric,
                "total_uncertainty": total,
                "sample_size": sample_size,
                "data_recency_days": (
                    max(0, whole_days_between(now, latest_scoped_outcome.event_at))
                    if latest_scoped_outcome is not None
                    else None
                ),
                "feature_completeness": completeness,
                "prediction_age_days": (
                    max(0, whole_days_between(now, staleness.last_predicted_at)) if staleness is not None else 0
                ),
                "last_validation_age_days": (
                    max(0, whole_days_between(now, staleness.last_validated_at))
                    if staleness is not None and staleness.last_validated_at is not None
                    else None
                ),
                "feature_drift_score": drift.overall_drift_score,
                "drift_features": [feature.feature for feature in drift.drifted_features],
                "exploration_value": exploration_value,
                "recommend_exploration": recommend_exploration,
                "calculated_at": now,
            }
        )

        if drift.significant_drift and staleness is not None and not staleness.feature_drift_detected:
            await self._staleness.update(entity_id, prediction_type, {"feature_drift_detected": True})
            logger.info("feature_drift_flagged", entity_id=entity_id, prediction_type=prediction_type)

        logger.info(
            "uncertainty_calculated",
            entity_id=entity_id,
            channel=channel,
            prediction_type=prediction_type,
            sample_size=sample_size,
            epistemic=round(epistemic, 4),
            aleatoric=round(aleatoric, 4),
            total=round(total, 4),
            recommend_exploration=recommend_exploration,
        )
        return metrics

    async def calculate_epistemic_uncertainty(self, entity_id: str, channel: str | None = None) -> float:
        """Reducible uncertainty for an entity/channel from sample size and prediction spread."""
        return _epistemic(await self._stimuli.list_for_entity(entity_id, channel=channel))

    async def calculate_aleatoric_uncertainty(self, entity_id: str, channel: str | None = None) -> float:
        """Irreducible uncertainty for an entity/channel from observed prediction errors."""
        return _aleatoric(await self._stimuli.list_for_entity(entity_id, channel=channel))

    async def assess_data_quality(self, entity_id: str) -> DataQualityReport:
        """Score how much usable data backs predictions about an entity.

        Raises:
            NotFoundError: If the entity profile does not exist.
        """
        now = self._clock()
        profile = await self._require_profile(entity_id)
        stimuli = await self._stimuli.list_for_entity(entity_id)
        outcomes = await self._outcomes.list_for_entity(entity_id)

        completeness, missing = statistics.profile_completeness(profile)
        last_engagement_days = max(0, whole_days_between(now, stimuli[0].event_at)) if stimuli else None
        last_outcome_days = max(0, whole_days_between(now, outcomes[0].event_at)) if outcomes else None
        coverage = statistics.channel_coverage(stimulus.channel for stimulus in stimuli)
        coverage_score = sum(coverage.values()) / len(coverage)

        return DataQualityReport(
            entity_id=entity_id,
            overall_score=statistics.data_quality_score(
                completeness,
                statistics.recency_score(last_engagement_days),
                statistics.history_score(len(stimuli)),
                coverage_score,
            ),
            profile_completeness=completeness,
            engagement_history=len(stimuli),
            outcome_history=len(outcomes),
            last_engagement_days=last_engagement_days,
            last_outcome_days=last_outcome_days,
            channel_coverage=coverage,
            missing_fields=missing,
        )

    async def detect_feature_drift(self, entity_id: str, since: datetime | None = None) -> DriftReport:
        """Check an entity's response rate and engagement score for drift.

        Args:
            entity_id: Entity to check.
            since: Boundary between the recent and older windows. Defaults to
                now minus the configured drift window.

        Raises:
            NotFoundError: If the entity profile does not exist.
        """
        profile = await self._require_profile(entity_id)
        return await self._drift_report(profile, self._clock(), since)

    async def calculate_exploration_value(self, entity_id: str, channel: str) -> float:
        """Normalized UCB exploration value of an entity/channel pair."""
        params = await load_exploration_parameters(self._exploration_configs, channel, self._settings)
        return await self._exploration_value(entity_id, channel, params.ucb_c)

    async def calculate_batch_uncertainty(
        self,
        entity_ids: list[str],
        channel: str | None = None,
        concurrency: int = 1,
    ) -> list[UncertaintyMetrics]:
        """Calculate uncertainty for many entities with per-entity failure isolation.

        Entities run as independent tasks bounded by ``concurrency``. A
        failing entity is logged and left out of the result; it never aborts
        the batch. Each entity runs in its own item scope, so its writes are
        rolled back alone. Repositories sharing one AsyncSession must keep
        concurrency at 1.

        Returns:
            Metrics for the entities that succeeded, in input order.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run_one(entity_id: str) -> UncertaintyMetrics | None:
            async with semaphore:
                try:
                    async with self._item_scope():
                        return await self.calculate_uncertainty(entity_id, channel)
                except Exception:
                    logger.exception("uncertainty_calculation_failed", entity_id=entity_id, channel=channel)
                    return None

        results = await asyncio.gather(*(run_one(entity_id) for entity_id in entity_ids))
        succeeded = [metrics for metrics in results if metrics is not None]

        logger.info(
            "batch_uncertainty_completed",
            requested=len(entity_ids),
            succeeded=len(succeeded),
            failed=len(entity_ids) - len(succeeded),
        )
        return succeeded

    async def get_uncertainty_summary(self) -> UncertaintySummary:
        """Aggregate every stored metrics row."""
        rows = await self._metrics.list_all()
        if not rows:
            return UncertaintySummary(
                total_entities=0,
                avg_epistemic_uncertainty=0.0,
                avg_aleatoric_uncertainty=0.0,
                avg_total_uncertainty=0.0,
                high_uncertainty_count=0,
                recommend_exploration_count=0,
            )

        by_channel: dict[str, list[UncertaintyMetrics]] = defaultdict(list)
        by_type: dict[str, list[UncertaintyMetrics]] = defaultdict(list)
        for row in rows:
            by_channel[row.channel or _UNASSIGNED_CHANNEL].append(row)
            by_type[row.prediction_type].append(row)

        threshold = self._settings.uncertainty_threshold
        return UncertaintySummary(
            total_entities=len({row.entity_id for row in rows}),
            avg_epistemic_uncertainty=_mean(row.epistemic_uncertainty for row in rows),
            avg_aleatoric_uncertainty=_mean(row.aleatoric_uncertainty for row in rows),
            avg_total_uncertainty=_mean(row.total_uncertainty for row in rows),
            high_uncertainty_count=sum(1 for row in rows if row.total_uncertainty > threshold),
            recommend_exploration_count=sum(1 for row in rows if row.recommend_exploration),
            by_channel=[
                ChannelUncertainty(
                    channel=key,
                    avg_uncertainty=_mean(row.total_uncertainty for row in group),
                    entity_count=len(group),
                    exploration_recommended=sum(1 for row in group if row.recommend_exploration),
                )
                for key, group in by_channel.items()
            ],
            by_prediction_type=[
                PredictionTypeUncertainty(
                    prediction_type=key,
                    avg_uncertainty=_mean(row.total_uncertainty for row in group),
                    entity_count=len(group),
                )
                for key, group in by_type.items()
            ],
            recent_drift_detected=sum(
                1
                for row in rows
                if (row.feature_drift_score or 0.0) > statistics.SIGNIFICANT_DRIFT_THRESHOLD
            ),
        )

    async def get_exploration_statistics(self) -> ExplorationStatistics:
        """Aggregate the exploration decision log."""
        history = await self._history.list_all()
        params = await load_exploration_parameters(self._exploration_configs, None, self._settings)

        explorations = [entry for entry in history if entry.was_exploration]
        resolved = [entry for entry in explorations if entry.outcome_id is not None]

        return ExplorationStatistics(
            total_explorations=len(explorations),
            successful_explorations=len(resolved),
            avg_information_gain=_mean(
                entry.information_gain for entry in resolved if entry.information_gain is not None
            ),
            avg_prediction_error=_mean(
                abs(entry.prediction_error) for entry in resolved if entry.prediction_error is not None
            ),
            exploration_by_channel=_group_gain(explorations, lambda entry: entry.channel),
            exploration_by_mode=_group_gain(explorations, lambda entry: entry.exploration_mode or _UNSET_MODE),
            current_epsilon=params.epsilon,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_profile(self, entity_id: str) -> EntityProfile:
        profile = await self._profiles.get_by_id(entity_id)
        if profile is None:
            raise NotFoundError("Entity profile", entity_id)
        return profile

    async def _drift_report(
        self,
        profile: EntityProfile,
        now: datetime,
        since: datetime | None = None,
    ) -> DriftReport:
        cutoff = as_utc(since) if since is not None else now - timedelta(days=self._settings.drift_window_days)
        recent = await self._outcomes.list_for_entity(profile.id, since=cutoff, until=now)
        older = await self._outcomes.list_for_entity(
            profile.id,
            until=cutoff,
            limit=statistics.OLDER_WINDOW_SAMPLE,
        )

        drifted: list[DriftedFeature] = []

        older_rate, recent_rate, rate_drift = statistics.response_rate_drift(len(recent), len(older))
        if rate_drift > statistics.RESPONSE_RATE_DRIFT_THRESHOLD:
            drifted.append(DriftedFeature("response_rate", older_rate, recent_rate, rate_drift))

        score = profile.engagement_score or 0.0
        expected, engagement_drift = statistics.engagement_drift(score, profile.segment, self._segment_baselines)
        if engagement_drift > statistics.ENGAGEMENT_DRIFT_THRESHOLD:
            drifted.append(DriftedFeature("engagement_score", expected, score, engagement_drift))

        overall = _mean(feature.drift_magnitude for feature in drifted)
        significant = overall > statistics.SIGNIFICANT_DRIFT_THRESHOLD

        if drifted:
            logger.debug(
                "feature_drift_detected",
                entity_id=profile.id,
                features=[feature.feature for feature in drifted],
                overall_drift_score=round(overall, 4),
            )

        return DriftReport(
            entity_id=profile.id,
            overall_drift_score=overall,
            significant_drift=significant,
            drifted_features=drifted,
            recommend_recompute=significant,
            last_checked_at=now,
        )

    async def _exploration_value(self, entity_id: str, channel: str, ucb_c: float) -> float:
        n = len(await self._stimuli.list_for_entity(entity_id, channel=channel))
        total = await self._stimuli.count_by_channel(channel)
        return statistics.ucb_exploration_value(ucb_c, n, total)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _epistemic(stimuli: list[Stimulus]) -> float:
    predicted = [s.predicted_engagement_delta for s in stimuli if s.predicted_engagement_delta is not None]
    return statistics.epistemic_uncertainty(len(stimuli), predicted)


def _aleatoric(stimuli: list[Stimulus]) -> float:
    pairs = [
        (s.predicted_engagement_delta, s.actual_engagement_delta)
        for s in stimuli
        if s.predicted_engagement_delta is not None and s.actual_engagement_delta is not None
    ]
    return statistics.aleatoric_uncertainty(pairs)


def _mean(values: Iterable[float]) -> float:
    materialized = list(values)
    return sum(materialized) / len(materialized) if materialized else 0.0


def _group_gain(
    entries: list[ExplorationHistory],
    key_fn: Callable[[ExplorationHistory], str],
) -> list[ExplorationGroupStatistics]:
    groups: dict[str, list[float]] = defaultdict(list)
    for entry in entries:
        groups[key_fn(entry)].append(entry.information_gain or 0.0)
    return [
        ExplorationGroupStatistics(key=key, count=len(gains), avg_information_gain=sum(gains) / len(gains))
        for key, gains in groups.items()
    ]


__all__ = [
    "ChannelUncertainty",
    "DataQualityReport",
    "DriftReport",
    "DriftedFeature",
    "ExplorationGroupStatistics",
    "ExplorationStatistics",
    "PredictionTypeUncertainty",
    "UncertaintyCalculator",
    "UncertaintySummary",
]
