"""Exploration parameters, explore-or-exploit decisions and the decision log.

Parameters come from the channel row, or the global (channel-less) row when
the channel has none; any field the row leaves unset falls back to settings.

should_explore() answers whether an entity's next touch on a channel should
be exploratory, using the configured mode (epsilon-greedy, UCB or Thompson
sampling). Callers log the pick they actually made with
record_exploration_decision() and report the observed value back with
record_exploration_outcome() so information gain can be measured.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Mapping, Protocol

import structlog

from aumos_outcome_learning.core.clock import Clock, utcnow
from aumos_outcome_learning.core.enums import ExplorationMode, PredictionType
from aumos_outcome_learning.core.interfaces import (
    IEntityProfileRepository,
    IExplorationConfigRepository,
    IExplorationHistoryRepository,
    IOutcomeRepository,
    IStimulusRepository,
    IUncertaintyMetricsRepository,
    IUncertaintySource,
)
from aumos_outcome_learning.core.models import ExplorationConfig, ExplorationHistory, UncertaintyMetrics
from aumos_outcome_learning.errors import NotFoundError
from aumos_outcome_learning.schemas import ExplorationConfigUpdate
from aumos_outcome_learning.settings import Settings
from aumos_outcome_learning.uncertainty.statistics import (
    ALEATORIC_DEFAULT,
    KNOWN_CHANNELS,
    clamp,
    ucb_decision_bonus,
)

logger = structlog.get_logger(__name__)

_ADAPTATION_LOOKBACK_DAYS = 7
_DEFAULT_PRIOR = 1.0
_UCB_EXPLOIT_SHARE = 0.5
_THOMPSON_MAX_ATTEMPTS = 10

DEFAULT_ACTION_TYPE = "email_send"

# Touch delivered when a channel is explored.
ACTION_TYPES: Mapping[str, str] = MappingProxyType(
    {
        "email": "email_send",
        "rep_visit": "rep_visit",
        "webinar": "webinar_invite",
        "conference": "conference_meeting",
        "digital_ad": "digital_ad_impression",
        "phone": "phone_call",
    }
)

# Estimated cost per action type, in currency units.
ACTION_COSTS: Mapping[str, float] = MappingProxyType(
    {
        "email_send": 0.5,
        "rep_visit": 200.0,
        "webinar_invite": 2.0,
        "conference_meeting": 500.0,
        "digital_ad_impression": 0.1,
        "phone_call": 25.0,
    }
)


class RandomSource(Protocol):
    """The slice of random.Random the decision modes draw from."""

    def random(self) -> float: ...

    def betavariate(self, alpha: float, beta: float) -> float: ...


@dataclass(frozen=True)
class ExplorationParameters:
    """Effective exploration parameters for a channel.

    Attributes:
        channel: Channel the parameters were resolved for (None = global).
        source_channel: Channel key of the stored row that supplied them, or
            None when they come from the global row or settings.
        has_stored_row: Whether any stored row contributed.
        exploration_mode: Exploration policy.
        uncertainty_threshold: Total uncertainty above which exploration is recommended.
        min_sample_size: Sample size below which exploration is recommended.
        ucb_c: UCB exploration constant.
        epsilon: Current exploration rate.
        epsilon_decay: Multiplicative decay per exploratory pick.
        min_epsilon: Floor for epsilon.
        prior_alpha: Beta prior alpha for thompson sampling.
        prior_beta: Beta prior beta for thompson sampling.
    """

    channel: str | None
    source_channel: str | None
    has_stored_row: bool
    exploration_mode: ExplorationMode
    uncertainty_threshold: float
    min_sample_size: int
    ucb_c: float
    epsilon: float
    epsilon_decay: float
    min_epsilon: float
    prior_alpha: float
    prior_beta: float


@dataclass(frozen=True)
class ExplorationAction:
    """A concrete exploratory touch suggested for an entity.

    Attributes:
        entity_id: Entity the touch is for.
        channel: Channel with the highest exploration value.
        action_type: Touch to deliver on that channel.
        reason: Human-readable explanation.
        exploration_value: Normalized UCB value of the pair (0-1).
        current_uncertainty: Total uncertainty the value was weighed against.
        expected_information_gain: current_uncertainty * exploration_value.
        estimated_cost: Cost of the touch, or None for unknown action types.
    """

    entity_id: str
    channel: str
    action_type: str
    reason: str
    exploration_value: float
    current_uncertainty: float
    expected_information_gain: float
    estimated_cost: float | None


@dataclass(frozen=True)
class ExplorationDecision:
    """Whether an entity's next touch on a channel should be exploratory."""

    entity_id: str
    channel: str
    should_explore: bool
    exploration_mode: ExplorationMode
    exploration_score: float
    exploitation_score: float
    reason: str
    suggested_action: ExplorationAction | None = None


@dataclass(frozen=True)
class _ModeVerdict:
    should_explore: bool
    score: float
    reason: str


def resolve_exploration_parameters(
    config: ExplorationConfig | None,
    channel: str | None,
    settings: Settings,
) -> ExplorationParameters:
    """Fill unset fields of a stored row from settings."""

    def pick(field: str, fallback: Any) -> Any:
        value = getattr(config, field, None) if config is not None else None
        return fallback if value is None else value

    return ExplorationParameters(
        channel=channel,
        source_channel=config.channel if config is not None else None,
        has_stored_row=config is not None,
        exploration_mode=ExplorationMode.parse(config.exploration_mode if config is not None else None),
        uncertainty_threshold=pick("uncertainty_threshold", settings.uncertainty_threshold),
        min_sample_size=pick("min_sample_size", settings.min_sample_size),
        ucb_c=pick("ucb_c", settings.ucb_c),
        epsilon=pick("epsilon", settings.epsilon),
        epsilon_decay=pick("epsilon_decay", settings.epsilon_decay),
        min_epsilon=pick("min_epsilon", settings.min_epsilon),
        prior_alpha=pick("prior_alpha", _DEFAULT_PRIOR),
        prior_beta=pick("prior_beta", _DEFAULT_PRIOR),
    )


async def load_exploration_parameters(
    config_repo: IExplorationConfigRepository,
    channel: str | None,
    settings: Settings,
) -> ExplorationParameters:
    """Look up the channel row, then the global row, and resolve parameters."""
    config: ExplorationConfig | None = None
    if channel is not None:
        config = await config_repo.get_by_channel(channel)
    if config is None:
        config = await config_repo.get_by_channel(None)
    return resolve_exploration_parameters(config, channel, settings)


class ExplorationService:
    """Decides when to explore and manages exploration parameters and the decision log.

    Args:
        config_repo: Store for exploration parameter rows.
        history_repo: Store for the decision log.
        metrics_repo: Store for uncertainty metrics (prior/posterior uncertainty).
        profile_repo: Read-only entity profile store.
        stimulus_repo: Stimulus store (attempt counts).
        outcome_repo: Outcome store (success counts).
        uncertainty: Calculates metrics when none are stored yet.
        settings: Service settings providing fallbacks.
        clock: Source of "now"; injectable for deterministic tests.
        rng: Random draws for epsilon-greedy and Thompson sampling;
            injectable for deterministic tests.
    """

    def __init__(
        self,
        config_repo: IExplorationConfigRepository,
        history_repo: IExplorationHistoryRepository,
        metrics_repo: IUncertaintyMetricsRepository,
        profile_repo: IEntityProfileRepository,
        stimulus_repo: IStimulusRepository,
        outcome_repo: IOutcomeRepository,
        uncertainty: IUncertaintySource,
        settings: Settings,
        clock: Clock | None = None,
        rng: RandomSource | None = None,
    ) -> None:
        self._configs = config_repo
        self._history = history_repo
        self._metrics = metrics_repo
        self._profiles = profile_repo
        self._stimuli = stimulus_repo
        self._outcomes = outcome_repo
        self._uncertainty = uncertainty
        self._settings = settings
        self._clock = clock or utcnow
        self._rng = rng or random.Random()

    async def get_exploration_config(self, channel: str | None = None) -> ExplorationParameters:
        """Effective parameters for a channel (or the global row when channel is None)."""
        return await load_exploration_parameters(self._configs, channel, self._settings)

    async def upsert_exploration_config(
        self,
        channel: str | None,
        update: ExplorationConfigUpdate,
    ) -> ExplorationConfig:
        """Create or update the parameter row for a channel (None = global row)."""
        update_values = update.model_dump(exclude_none=True, mode="json")
        insert_values = {"exploration_mode": ExplorationMode.default().value, **update_values}

        config = await self._configs.upsert(channel, insert_values, update_values)
        logger.info("exploration_config_upserted", channel=channel, fields=sorted(update_values))
        return config

    async def should_explore(self, entity_id: str, channel: str) -> ExplorationDecision:
        """Decide whether the entity's next touch on a channel should be exploratory.

        The stored engagement metrics for the pair are used, or calculated
        first when none exist. The exploitation score is the predicted value
        scaled to [0, 1]. When the decision is to explore, the best
        exploratory touch for the entity is attached.

        Raises:
            NotFoundError: If metrics must be calculated and the entity profile
                does not exist.
        """
        params = await self.get_exploration_config(channel)
        metrics = await self._metrics.get(entity_id, channel, PredictionType.ENGAGEMENT.value)
        if metrics is None:
            metrics = await self._uncertainty.calculate_uncertainty(entity_id, channel)
        exploitation = clamp(metrics.predicted_value / 100)

        if params.exploration_mode is ExplorationMode.UCB:
            verdict = await self._ucb(entity_id, channel, params, exploitation)
        elif params.exploration_mode is ExplorationMode.THOMPSON_SAMPLING:
            verdict = await self._thompson(entity_id, channel, params)
        else:
            verdict = self._epsilon_greedy(metrics, params)

        suggested = await self.suggest_exploration_action(entity_id) if verdict.should_explore else None

        logger.info(
            "exploration_decided",
            entity_id=entity_id,
            channel=channel,
            mode=params.exploration_mode.value,
            should_explore=verdict.should_explore,
            exploration_score=round(verdict.score, 4),
        )
        return ExplorationDecision(
            entity_id=entity_id,
            channel=channel,
            should_explore=verdict.should_explore,
            exploration_mode=params.exploration_mode,
            exploration_score=verdict.score,
            exploitation_score=exploitation,
            reason=verdict.reason,
            suggested_action=suggested,
        )

    async def suggest_exploration_action(self, entity_id: str) -> ExplorationAction | None:
        """Suggest the exploratory touch with the highest expected value for an entity.

        The stored metrics row with the highest exploration value picks the
        channel. Without stored metrics every known channel is scored and the
        strictly greatest value wins; the entity's preferred channel is kept
        when every value is zero.

        Returns:
            The suggested action, or None when the entity profile does not exist.
        """
        profile = await self._profiles.get_by_id(entity_id)
        if profile is None:
            return None

        preferred = profile.channel_preference or self._settings.default_exploration_channel
        rows = await self._metrics.list_for_entity(entity_id)
        if rows:
            best_row = rows[0]
            best_channel = best_row.channel or preferred
            best_value = best_row.exploration_value or 0.0
            uncertainty = best_row.total_uncertainty
        else:
            best_channel, best_value = preferred, 0.0
            for channel in KNOWN_CHANNELS:
                value = await self._uncertainty.calculate_exploration_value(entity_id, channel)
                if value > best_value:
                    best_channel, best_value = channel, value
            uncertainty = ALEATORIC_DEFAULT

        action_type = ACTION_TYPES.get(best_channel, DEFAULT_ACTION_TYPE)
        return ExplorationAction(
            entity_id=entity_id,
            channel=best_channel,
            action_type=action_type,
            reason=f"High exploration value ({best_value * 100:.0f}%) for {best_channel} channel",
            exploration_value=best_value,
            current_uncertainty=uncertainty,
            expected_information_gain=uncertainty * best_value,
            estimated_cost=ACTION_COSTS.get(action_type),
        )

    async def record_exploration_decision(
        self,
        entity_id: str,
        channel: str,
        stimulus_id: str,
        was_exploration: bool,
        mode: ExplorationMode | str,
        score: float,
    ) -> ExplorationHistory:
        """Log a pick together with the uncertainty and prediction it was made under.

        Prior uncertainty defaults to 0.5 when no metrics were calculated yet.
        """
        metrics = await self._metrics.get(entity_id, channel, PredictionType.ENGAGEMENT.value)
        mode_value = mode.value if isinstance(mode, ExplorationMode) else ExplorationMode.parse(mode).value

        entry = await self._history.create(
            ExplorationHistory(
                entity_id=entity_id,
                channel=channel,
                stimulus_id=stimulus_id,
                was_exploration=was_exploration,
                exploration_mode=mode_value,
                exploration_score=score,
                prior_uncertainty=metrics.total_uncertainty if metrics is not None else ALEATORIC_DEFAULT,
                prior_predicted_value=metrics.predicted_value if metrics is not None else None,
            )
        )
        logger.info(
            "exploration_decision_recorded",
            entity_id=entity_id,
            channel=channel,
            stimulus_id=stimulus_id,
            was_exploration=was_exploration,
            mode=mode_value,
        )
        return entry

    async def record_exploration_outcome(
        self,
        stimulus_id: str,
        outcome_id: str,
        actual_value: float,
    ) -> ExplorationHistory:
        """Resolve a logged pick with its observed value.

        Prediction error is actual minus the prior prediction. Information
        gain is the drop from prior to current total uncertainty.

        Raises:
            NotFoundError: If no pick was logged for the stimulus.
        """
        entry = await self._history.get_by_stimulus(stimulus_id)
        if entry is None:
            raise NotFoundError("Exploration record", stimulus_id)

        metrics = await self._metrics.get(entry.entity_id, entry.channel, PredictionType.ENGAGEMENT.value)
        current_uncertainty = metrics.total_uncertainty if metrics is not None else ALEATORIC_DEFAULT

        prediction_error = (
            actual_value - entry.prior_predicted_value if entry.prior_predicted_value is not None else None
        )
        information_gain = (
            entry.prior_uncertainty - current_uncertainty if entry.prior_uncertainty is not None else None
        )

        values = {
            "outcome_id": outcome_id,
            "actual_value": actual_value,
            "prediction_error": prediction_error,
            "information_gain": information_gain,
            "posterior_uncertainty": current_uncertainty,
        }
        await self._history.update(entry.id, values)
        for field, value in values.items():
            setattr(entry, field, value)

        logger.info(
            "exploration_outcome_recorded",
            stimulus_id=stimulus_id,
            outcome_id=outcome_id,
            prediction_error=prediction_error,
            information_gain=information_gain,
        )
        return entry

    async def adapt_exploration_rate(self, channel: str | None = None) -> float:
        """Decay epsilon once per exploratory pick made in the last 7 days.

        The new rate is floored at min_epsilon and written back to the stored
        row that supplied it. Without a stored row the settings epsilon is
        returned unchanged.
        """
        params = await self.get_exploration_config(channel)
        if not params.has_stored_row:
            return params.epsilon

        since = self._clock() - timedelta(days=_ADAPTATION_LOOKBACK_DAYS)
        recent = await self._history.count_explorations_since(since, channel)

        new_epsilon = max(params.min_epsilon, params.epsilon * params.epsilon_decay**recent)
        await self._configs.upsert(
            params.source_channel,
            insert_values={"epsilon": new_epsilon},
            update_values={"epsilon": new_epsilon},
        )

        logger.info(
            "exploration_rate_adapted",
            channel=channel,
            recent_explorations=recent,
            previous_epsilon=params.epsilon,
            epsilon=new_epsilon,
        )
        return new_epsilon

    def calculate_exploration_budget(self, total_budget: float, exploration_rate: float | None = None) -> float:
        """Share of a budget reserved for exploration (defaults to the settings epsilon)."""
        rate = self._settings.epsilon if exploration_rate is None else exploration_rate
        return max(0.0, total_budget) * clamp(rate)

    # ------------------------------------------------------------------
    # Decision modes
    # ------------------------------------------------------------------

    def _epsilon_greedy(self, metrics: UncertaintyMetrics, params: ExplorationParameters) -> _ModeVerdict:
        if metrics.sample_size < params.min_sample_size:
            return _ModeVerdict(
                True,
                1.0,
                f"Insufficient samples ({metrics.sample_size} < {params.min_sample_size})",
            )
        explore = self._rng.random() < params.epsilon
        reason = (
            f"Random exploration (epsilon={params.epsilon * 100:.1f}%)" if explore else "Exploiting best known action"
        )
        return _ModeVerdict(explore, params.epsilon, reason)

    async def _ucb(
        self,
        entity_id: str,
        channel: str,
        params: ExplorationParameters,
        exploitation: float,
    ) -> _ModeVerdict:
        stimuli = await self._stimuli.list_for_entity(entity_id)
        n = sum(1 for stimulus in stimuli if stimulus.channel == channel)
        bonus = ucb_decision_bonus(params.ucb_c, n, len(stimuli))

        explore = bonus > exploitation * _UCB_EXPLOIT_SHARE
        reason = (
            f"UCB exploration bonus ({bonus * 100:.0f}%) exceeds threshold"
            if explore
            else f"UCB favors exploitation (score={exploitation + bonus:.2f})"
        )
        return _ModeVerdict(explore, min(1.0, bonus), reason)

    async def _thompson(self, entity_id: str, channel: str, params: ExplorationParameters) -> _ModeVerdict:
        stimuli = await self._stimuli.list_for_entity(entity_id)
        outcomes = await self._outcomes.list_for_entity(entity_id)

        def draw(candidate: str) -> tuple[float, int]:
            attempts = sum(1 for stimulus in stimuli if stimulus.channel == candidate)
            successes = sum(1 for outcome in outcomes if outcome.channel == candidate)
            failures = max(0, attempts - successes)
            sample = self._rng.betavariate(params.prior_alpha + successes, params.prior_beta + failures)
            return sample, attempts

        sample, attempts = draw(channel)
        best_channel, best_sample = channel, sample
        for other in KNOWN_CHANNELS:
            if other == channel:
                continue
            other_sample, _ = draw(other)
            if other_sample > best_sample:
                best_channel, best_sample = other, other_sample

        explore = best_channel == channel and attempts < _THOMPSON_MAX_ATTEMPTS
        reason = (
            f"Thompson Sampling selected {channel} (sample={sample:.3f})"
            if explore
            else f"Thompson Sampling favors {best_channel} (sample={best_sample:.3f})"
        )
        return _ModeVerdict(explore, sample, reason)


__all__ = [
    "ACTION_COSTS",
    "ACTION_TYPES",
    "ExplorationAction",
    "ExplorationDecision",
    "ExplorationParameters",
    "ExplorationService",
    "RandomSource",
    "load_exploration_parameters",
    "resolve_exploration_parameters",
]
