"""AttributionEngine: links observed outcomes to the stimuli that caused them.

Flow for a new outcome:
    1. Find candidate stimuli inside the attribution window of the channel the
       outcome kind maps to (most recent first).
    2. Force-include an operator-declared stimulus as the most recent candidate
       when the window search missed it.
    3. Insert the outcome, split credit across candidates with the resolved
       multi-touch model, apply temporal decay and normalize.
    4. Persist one attribution row per credited candidate, back-fill the
       outcome's primary cause, then extend validation recency of the
       predictions the outcome kind validates.

All reads of a run complete before its writes. Nothing here commits: the
caller's unit of work decides whether the run is persisted as a whole.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping

import structlog

from aumos_outcome_learning.attribution.credit import (
    AttributableAction,
    apply_decay,
    attribution_confidence,
    calculate_contributions,
    normalize_weights,
    touch_position,
)
from aumos_outcome_learning.attribution.policy import (
    DEFAULT_CHANNEL_POLICIES,
    AttributionPolicy,
    ChannelDefaults,
    channel_for_outcome_type,
    resolve_policy,
    resolve_window_days,
)
from aumos_outcome_learning.attribution.staleness import StalenessTracker
from aumos_outcome_learning.core.clock import Clock, as_utc, utcnow, whole_days_between
from aumos_outcome_learning.core.enums import PredictionType
from aumos_outcome_learning.core.interfaces import (
    IAttributionConfigRepository,
    IOutcomeAttributionRepository,
    IOutcomeRepository,
    IStimulusRepository,
)
from aumos_outcome_learning.core.models import (
    AttributionConfig,
    Outcome,
    OutcomeAttribution,
    Stimulus,
)
from aumos_outcome_learning.errors import ConflictError, NotFoundError
from aumos_outcome_learning.schemas import AttributionConfigUpdate, RecordOutcomeRequest
from aumos_outcome_learning.settings import Settings

logger = structlog.get_logger(__name__)

_HOURS_PER_DAY = 24


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionAttribution:
    """Credit assigned to one candidate stimulus.

    Attributes:
        stimulus_id: Candidate stimulus.
        contribution_weight: Normalized weight (0-1).
        decay_factor: Decay multiplier applied to the base weight.
        confidence: Attribution confidence (0-1).
        touch_position: 1 = first, 0 = middle, -1 = last.
        days_since_action: Whole days between the touch and the outcome.
    """

    stimulus_id: str
    contribution_weight: float
    decay_factor: float
    confidence: float
    touch_position: int
    days_since_action: int


@dataclass(frozen=True)
class AttributionResult:
    """Result of attributing one outcome.

    Attributes:
        outcome_id: The attributed outcome.
        primary_attributed_action_id: Stimulus with the highest normalized
            weight, or None when no candidate received credit.
        primary_attribution_confidence: Normalized weight of the primary stimulus.
        total_contributing_actions: Number of candidates considered.
        attributions: One entry per candidate, in candidate order.
        attribution_model: Multi-touch model that was applied.
        window_days: Attribution window of the resolved policy.
    """

    outcome_id: str
    primary_attributed_action_id: str | None
    primary_attribution_confidence: float
    total_contributing_actions: int
    attributions: list[ActionAttribution]
    attribution_model: str
    window_days: int


@dataclass(frozen=True)
class ChannelVelocity:
    """Outcome throughput for one channel."""

    channel: str
    outcomes: int
    attribution_rate: float
    avg_latency_hours: float


@dataclass(frozen=True)
class OutcomeTypeVelocity:
    """Outcome throughput for one outcome kind."""

    outcome_type: str
    count: int
    attribution_rate: float


@dataclass(frozen=True)
class OutcomeVelocity:
    """Outcome throughput and attribution coverage over a period.

    Attributes:
        period_start: Start of the period.
        period_end: End of the period.
        total_outcomes: Outcomes whose event time falls in the period.
        outcomes_per_hour: Throughput per hour.
        outcomes_per_day: Throughput per day.
        attribution_rate: Share of outcomes with a primary stimulus.
        avg_latency_hours: Mean time from last touch to outcome.
        by_channel: Per-channel breakdown.
        by_outcome_type: Per-outcome-kind breakdown.
    """

    period_start: datetime
    period_end: datetime
    total_outcomes: int
    outcomes_per_hour: float
    outcomes_per_day: float
    attribution_rate: float
    avg_latency_hours: float
    by_channel: list[ChannelVelocity]
    by_outcome_type: list[OutcomeTypeVelocity]


@dataclass(frozen=True)
class AttributionStatistics:
    """Calibration statistics over stored attribution rows."""

    total_outcomes: int
    attributed_outcomes: int
    attribution_rate: float
    avg_contribution_weight: float
    avg_days_to_outcome: float
    model_distribution: dict[str, int]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AttributionEngine:
    """Attributes outcomes to prior stimuli and keeps staleness in step.

    Args:
        stimulus_repo: Stimulus (touchpoint) store.
        outcome_repo: Outcome store.
        attribution_repo: Store for (outcome, stimulus) credit rows.
        config_repo: Store for per-channel attribution overrides.
        staleness_tracker: Tracker updated after each attributed outcome.
        settings: Service settings providing global fallbacks.
        channel_defaults: Read-only per-channel defaults, shared by reference.
        clock: Source of "now"; injectable for deterministic tests.
    """

    def __init__(
        self,
        stimulus_repo: IStimulusRepository,
        outcome_repo: IOutcomeRepository,
        attribution_repo: IOutcomeAttributionRepository,
        config_repo: IAttributionConfigRepository,
        staleness_tracker: StalenessTracker,
        settings: Settings,
        channel_defaults: Mapping[str, ChannelDefaults] = DEFAULT_CHANNEL_POLICIES,
        clock: Clock | None = None,
    ) -> None:
        self._stimuli = stimulus_repo
        self._outcomes = outcome_repo
        self._attributions = attribution_repo
        self._configs = config_repo
        self._staleness = staleness_tracker
        self._settings = settings
        self._channel_defaults = channel_defaults
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Outcome ingestion
    # ------------------------------------------------------------------

    async def record_outcome(self, request: RecordOutcomeRequest) -> tuple[str, AttributionResult]:
        """Insert an outcome, attribute it, and update staleness.

        Args:
            request: Validated outcome payload.

        Returns:
            Tuple of (outcome id, attribution result).

        Raises:
            NotFoundError: If an explicit stimulus id is supplied but does not exist.
        """
        occurred_at = as_utc(request.occurred_at) if request.occurred_at is not None else self._clock()

        explicit: Stimulus | None = None
        if request.stimulus_id is not None:
            explicit = await self._stimuli.get_by_id(request.stimulus_id)
            if explicit is None:
                raise NotFoundError("Stimulus", request.stimulus_id)

        candidates = await self.find_attributable_actions(request.entity_id, request.outcome_type, occurred_at)

        if explicit is not None and all(c.stimulus_id != explicit.id for c in candidates):
            candidates.insert(0, _to_action(explicit, occurred_at))

        outcome = await self._outcomes.create(
            Outcome(
                entity_id=request.entity_id,
                outcome_type=request.outcome_type,
                channel=request.channel,
                event_at=occurred_at,
                outcome_value=request.outcome_value,
                quality_score=request.quality_score,
                campaign_id=request.campaign_id,
                content_id=request.content_id,
                stimulus_id=request.stimulus_id,
                attribution_type="direct" if request.stimulus_id is not None else "assisted",
                attribution_weight=1.0 if request.stimulus_id is not None else None,
            )
        )

        logger.info(
            "outcome_recorded",
            outcome_id=outcome.id,
            entity_id=request.entity_id,
            outcome_type=request.outcome_type,
            channel=request.channel,
            candidates=len(candidates),
        )

        result = await self.attribute_outcome(outcome.id, candidates, request.channel)
        await self._staleness.record_outcome_validation(request.entity_id, request.outcome_type)
        return outcome.id, result

    async def find_attributable_actions(
        self,
        entity_id: str,
        outcome_type: str,
        occurred_at: datetime,
    ) -> list[AttributableAction]:
        """Stimuli inside the attribution window preceding an outcome.

        The window belongs to the channel the outcome kind maps to; the
        stimuli themselves are searched across every channel.

        Args:
            entity_id: Entity the outcome was observed on.
            outcome_type: Outcome kind, used to pick the window's channel.
            occurred_at: Outcome event time (window end, inclusive).

        Returns:
            Candidate actions, most recent first.
        """
        occurred_at = as_utc(occurred_at)
        window_channel = channel_for_outcome_type(outcome_type)
        config, global_config = await self._load_configs(window_channel)
        window_days = resolve_window_days(
            config,
            window_channel,
            self._settings,
            self._channel_defaults,
            global_config,
        )

        stimuli = await self._stimuli.list_for_entity(
            entity_id,
            window_start=occurred_at - timedelta(days=window_days),
            window_end=occurred_at,
        )
        return [_to_action(stimulus, occurred_at) for stimulus in stimuli]

    async def attribute_outcome(
        self,
        outcome_id: str,
        candidates: list[AttributableAction],
        channel: str,
    ) -> AttributionResult:
        """Split credit for an outcome across its candidate stimuli.

        Args:
            outcome_id: Outcome being attributed.
            candidates: Candidate actions, most recent first.
            channel: Channel whose policy governs model and decay.

        Returns:
            The AttributionResult. With no candidates nothing is written and
            the result carries zero confidence and no primary stimulus.

        Raises:
            ConflictError: If attribution rows already exist for the outcome.
        """
        if await self._attributions.exists_for_outcome(outcome_id):
            raise ConflictError(f"Outcome '{outcome_id}' has already been attributed")

        config, global_config = await self._load_configs(channel)
        policy = resolve_policy(config, channel, self._settings, self._channel_defaults, global_config)

        if not candidates:
            logger.info("outcome_unattributed", outcome_id=outcome_id, channel=channel)
            return AttributionResult(
                outcome_id=outcome_id,
                primary_attributed_action_id=None,
                primary_attribution_confidence=0.0,
                total_contributing_actions=0,
                attributions=[],
                attribution_model=policy.multi_touch_model.value,
                window_days=policy.window_days,
            )

        attributions = _score_candidates(candidates, policy)
        total = len(candidates)

        primary: ActionAttribution | None = None
        for entry in attributions:
            if entry.contribution_weight > 0 and (
                primary is None or entry.contribution_weight > primary.contribution_weight
            ):
                primary = entry

        await self._attributions.create_many(
            [
                OutcomeAttribution(
                    outcome_id=outcome_id,
                    stimulus_id=entry.stimulus_id,
                    attribution_model=policy.multi_touch_model.value,
                    contribution_weight=entry.contribution_weight,
                    decay_factor=entry.decay_factor,
                    days_between_touch_and_outcome=entry.days_since_action,
                    touch_position=entry.touch_position,
                    total_touches_in_window=total,
                    attribution_confidence=entry.confidence,
                )
                for entry in attributions
                if entry.contribution_weight > 0
            ]
        )

        if primary is not None:
            await self._outcomes.set_primary_attribution(
                outcome_id,
                stimulus_id=primary.stimulus_id,
                attribution_weight=primary.contribution_weight,
                touches_in_window=total,
                days_since_last_touch=candidates[0].days_since_action,
            )

        logger.info(
            "outcome_attributed",
            outcome_id=outcome_id,
            channel=channel,
            model=policy.multi_touch_model.value,
            decay=policy.decay_function.value,
            candidates=total,
            primary_stimulus_id=primary.stimulus_id if primary else None,
        )

        return AttributionResult(
            outcome_id=outcome_id,
            primary_attributed_action_id=primary.stimulus_id if primary else None,
            primary_attribution_confidence=primary.contribution_weight if primary else 0.0,
            total_contributing_actions=total,
            attributions=attributions,
            attribution_model=policy.multi_touch_model.value,
            window_days=policy.window_days,
        )

    async def update_stimulus_with_outcome(
        self,
        stimulus_id: str,
        actual_engagement_delta: float,
        actual_conversion_delta: float | None = None,
    ) -> float:
        """Record the observed effect of a stimulus.

        A large engagement prediction error flags the entity's engagement
        prediction for refresh.

        Args:
            stimulus_id: Stimulus whose effect was observed.
            actual_engagement_delta: Observed engagement change.
            actual_conversion_delta: Observed conversion change, if measured.

        Returns:
            Absolute engagement prediction error.

        Raises:
            NotFoundError: If the stimulus does not exist.
            ConflictError: If the actual deltas were already recorded.
        """
        stimulus = await self._stimuli.get_by_id(stimulus_id)
        if stimulus is None:
            raise NotFoundError("Stimulus", stimulus_id)
        if stimulus.actual_engagement_delta is not None:
            raise ConflictError(f"Stimulus '{stimulus_id}' already has observed deltas")

        await self._stimuli.set_actual_deltas(stimulus_id, actual_engagement_delta, actual_conversion_delta)

        predicted = stimulus.predicted_engagement_delta or 0.0
        prediction_error = abs(predicted - actual_engagement_delta)
        if prediction_error > self._settings.prediction_error_refresh_threshold:
            await self._staleness.mark_refresh_needed(
                stimulus.entity_id,
                PredictionType.ENGAGEMENT.value,
                f"High prediction error: predicted {stimulus.predicted_engagement_delta}, "
                f"actual {actual_engagement_delta}",
            )

        logger.info(
            "stimulus_outcome_recorded",
            stimulus_id=stimulus_id,
            entity_id=stimulus.entity_id,
            prediction_error=round(prediction_error, 4),
        )
        return prediction_error

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_outcome_velocity(self, period_start: datetime, period_end: datetime) -> OutcomeVelocity:
        """Outcome throughput and attribution rate over a period."""
        period_start = as_utc(period_start)
        period_end = as_utc(period_end)
        outcomes = await self._outcomes.list_in_period(period_start, period_end)

        hours = max(0.0, (period_end - period_start).total_seconds() / 3600)
        days = hours / _HOURS_PER_DAY
        total = len(outcomes)

        channel_counts: dict[str, list[Outcome]] = defaultdict(list)
        type_counts: dict[str, list[Outcome]] = defaultdict(list)
        for outcome in outcomes:
            channel_counts[outcome.channel].append(outcome)
            type_counts[outcome.outcome_type].append(outcome)

        return OutcomeVelocity(
            period_start=period_start,
            period_end=period_end,
            total_outcomes=total,
            outcomes_per_hour=total / hours if hours > 0 else 0.0,
            outcomes_per_day=total / days if days > 0 else 0.0,
            attribution_rate=_attribution_rate(outcomes),
            avg_latency_hours=_avg_latency_hours(outcomes),
            by_channel=[
                ChannelVelocity(
                    channel=channel,
                    outcomes=len(group),
                    attribution_rate=_attribution_rate(group),
                    avg_latency_hours=_avg_latency_hours(group),
                )
                for channel, group in channel_counts.items()
            ],
            by_outcome_type=[
                OutcomeTypeVelocity(
                    outcome_type=outcome_type,
                    count=len(group),
                    attribution_rate=_attribution_rate(group),
                )
                for outcome_type, group in type_counts.items()
            ],
        )

    async def get_attribution_statistics(
        self,
        channel: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AttributionStatistics:
        """Aggregate stored attribution rows for model calibration."""
        attributions = await self._attributions.list_created_between(start, end, channel)
        outcomes = await self._outcomes.list_in_period(start, end, channel)

        total_outcomes = len(outcomes)
        attributed = len({row.outcome_id for row in attributions})

        model_distribution: dict[str, int] = defaultdict(int)
        for row in attributions:
            model_distribution[row.attribution_model] += 1

        return AttributionStatistics(
            total_outcomes=total_outcomes,
            attributed_outcomes=attributed,
            attribution_rate=attributed / total_outcomes if total_outcomes else 0.0,
            avg_contribution_weight=_mean([row.contribution_weight for row in attributions]),
            avg_days_to_outcome=_mean([float(row.days_between_touch_and_outcome) for row in attributions]),
            model_distribution=dict(model_distribution),
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_attribution_config(self, channel: str | None) -> AttributionConfig | None:
        """Persisted override for a channel (None = global row), if any."""
        return await self._configs.get_by_channel(channel)

    async def get_effective_policy(self, channel: str) -> AttributionPolicy:
        """Fully-resolved policy for a channel after applying every fallback."""
        config, global_config = await self._load_configs(channel)
        return resolve_policy(config, channel, self._settings, self._channel_defaults, global_config)

    async def upsert_attribution_config(
        self,
        channel: str | None,
        update: AttributionConfigUpdate,
    ) -> AttributionConfig:
        """Create or update a channel's attribution override.

        On insert, fields absent from the update are seeded from the channel
        default (window, decay function and model). The global row and rows
        for channels without a built-in default store only the fields given,
        so anything they leave unset keeps falling through.
        """
        update_values = update.model_dump(exclude_none=True, mode="json")

        defaults = self._channel_defaults.get(channel) if channel is not None else None
        insert_values = dict(update_values)
        if defaults is not None:
            insert_values = {
                "window_days": defaults.window_days,
                "decay_function": defaults.decay_function.value,
                "multi_touch_model": defaults.multi_touch_model.value,
                **update_values,
            }

        config = await self._configs.upsert(channel, insert_values, update_values)
        logger.info("attribution_config_upserted", channel=channel, fields=sorted(update_values))
        return config

    async def _load_configs(self, channel: str) -> tuple[AttributionConfig | None, AttributionConfig | None]:
        return await self._configs.get_by_channel(channel), await self._configs.get_by_channel(None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_action(stimulus: Stimulus, occurred_at: datetime) -> AttributableAction:
    return AttributableAction(
        stimulus_id=stimulus.id,
        entity_id=stimulus.entity_id,
        channel=stimulus.channel,
        stimulus_type=stimulus.stimulus_type,
        event_at=as_utc(stimulus.event_at),
        days_since_action=max(0, whole_days_between(occurred_at, stimulus.event_at)),
        predicted_engagement_delta=stimulus.predicted_engagement_delta,
        predicted_conversion_delta=stimulus.predicted_conversion_delta,
    )


def _score_candidates(
    candidates: list[AttributableAction],
    policy: AttributionPolicy,
) -> list[ActionAttribution]:
    """Base weights, decay, normalization, confidence and position for each candidate."""
    base = calculate_contributions(candidates, policy.multi_touch_model, policy.position_weights)

    decay_factors: dict[str, float] = {}
    decayed: dict[str, float] = {}
    for action in candidates:
        factor = apply_decay(action.days_since_action, policy.decay_function, policy.decay_half_life_days)
        decay_factors[action.stimulus_id] = factor
        decayed[action.stimulus_id] = base.get(action.stimulus_id, 0.0) * factor

    normalized = normalize_weights(decayed)
    total = len(candidates)

    return [
        ActionAttribution(
            stimulus_id=action.stimulus_id,
            contribution_weight=normalized[action.stimulus_id],
            decay_factor=decay_factors[action.stimulus_id],
            confidence=attribution_confidence(action, normalized[action.stimulus_id]),
            touch_position=int(touch_position(index, total)),
            days_since_action=action.days_since_action,
        )
        for index, action in enumerate(candidates)
    ]


def _attribution_rate(outcomes: list[Outcome]) -> float:
    if not outcomes:
        return 0.0
    return sum(1 for outcome in outcomes if outcome.stimulus_id is not None) / len(outcomes)


def _avg_latency_hours(outcomes: list[Outcome]) -> float:
    latencies = [
        outcome.days_since_last_touch * _HOURS_PER_DAY
        for outcome in outcomes
        if outcome.days_since_last_touch is not None
    ]
    return _mean([float(value) for value in latencies])


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


__all__ = [
    "ActionAttribution",
    "AttributionEngine",
    "AttributionResult",
    "AttributionStatistics",
    "ChannelVelocity",
    "OutcomeTypeVelocity",
    "OutcomeVelocity",
]
