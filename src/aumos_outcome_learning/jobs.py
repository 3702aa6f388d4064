"""Service wiring and the periodic maintenance entry point.

Scheduling stays external: a cron job, worker or orchestrator calls
``run_maintenance`` on its own timer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aumos_outcome_learning.adapters.repositories import (
    AttributionConfigRepository,
    EntityProfileRepository,
    ExplorationConfigRepository,
    ExplorationHistoryRepository,
    OutcomeAttributionRepository,
    OutcomeRepository,
    StalenessRepository,
    StimulusRepository,
    UncertaintyMetricsRepository,
)
from aumos_outcome_learning.attribution.engine import AttributionEngine
from aumos_outcome_learning.attribution.staleness import StalenessTracker
from aumos_outcome_learning.core.clock import Clock
from aumos_outcome_learning.core.database import savepoint_scope, session_scope
from aumos_outcome_learning.observability import get_logger
from aumos_outcome_learning.settings import Settings
from aumos_outcome_learning.uncertainty.calculator import UncertaintyCalculator
from aumos_outcome_learning.uncertainty.exploration import ExplorationService

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutcomeLearningServices:
    """Services bound to one session (one unit of work)."""

    attribution: AttributionEngine
    staleness: StalenessTracker
    uncertainty: UncertaintyCalculator
    exploration: ExplorationService


@dataclass(frozen=True)
class MaintenanceSummary:
    """Result of one maintenance pass.

    Attributes:
        staleness_updated: Staleness rows recomputed.
        staleness_errors: Staleness rows that failed.
        uncertainty_updated: Entities whose uncertainty metrics were stored.
        uncertainty_errors: Entities whose calculation failed.
    """

    staleness_updated: int
    staleness_errors: int
    uncertainty_updated: int
    uncertainty_errors: int


def build_services(
    session: AsyncSession,
    settings: Settings,
    clock: Clock | None = None,
) -> OutcomeLearningServices:
    """Wire repositories for a session into the attribution and uncertainty services.

    Batch operations run each item inside a SAVEPOINT on the session.
    """
    profiles = EntityProfileRepository(session)
    stimuli = StimulusRepository(session)
    outcomes = OutcomeRepository(session)
    staleness_repo = StalenessRepository(session)
    metrics = UncertaintyMetricsRepository(session)
    exploration_configs = ExplorationConfigRepository(session)
    history = ExplorationHistoryRepository(session)

    item_scope = savepoint_scope(session)

    tracker = StalenessTracker(staleness_repo, settings, clock=clock, item_scope=item_scope)
    calculator = UncertaintyCalculator(
        profile_repo=profiles,
        stimulus_repo=stimuli,
        outcome_repo=outcomes,
        staleness_repo=staleness_repo,
        metrics_repo=metrics,
        exploration_config_repo=exploration_configs,
        history_repo=history,
        settings=settings,
        clock=clock,
        item_scope=item_scope,
    )
    return OutcomeLearningServices(
        attribution=AttributionEngine(
            stimulus_repo=stimuli,
            outcome_repo=outcomes,
            attribution_repo=OutcomeAttributionRepository(session),
            config_repo=AttributionConfigRepository(session),
            staleness_tracker=tracker,
            settings=settings,
            clock=clock,
        ),
        staleness=tracker,
        uncertainty=calculator,
        exploration=ExplorationService(
            config_repo=exploration_configs,
            history_repo=history,
            metrics_repo=metrics,
            profile_repo=profiles,
            stimulus_repo=stimuli,
            outcome_repo=outcomes,
            uncertainty=calculator,
            settings=settings,
            clock=clock,
        ),
    )


async def run_maintenance(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    entity_ids: list[str],
    channel: str | None = None,
    clock: Clock | None = None,
) -> MaintenanceSummary:
    """Refresh every staleness score, then recalculate uncertainty per entity.

    Staleness runs in one unit of work. Each entity's uncertainty runs in its
    own unit of work, so a failing entity rolls back alone. Up to
    ``settings.batch_concurrency`` entities run at once.

    Args:
        session_factory: Factory for sessions on the configured database.
        settings: Service settings.
        entity_ids: Entities to recalculate uncertainty for.
        channel: Optional channel scope for the uncertainty pass.
        clock: Source of "now"; injectable for deterministic runs.

    Returns:
        Counts of updated and failed items for both passes.
    """
    async with session_scope(session_factory) as session:
        refresh = await build_services(session, settings, clock).staleness.refresh_all_staleness_scores()

    semaphore = asyncio.Semaphore(max(1, settings.batch_concurrency))

    async def recalculate(entity_id: str) -> bool:
        async with semaphore:
            try:
                async with session_scope(session_factory) as entity_session:
                    services = build_services(entity_session, settings, clock)
                    await services.uncertainty.calculate_uncertainty(entity_id, channel)
                return True
            except Exception:
                logger.exception("maintenance_uncertainty_failed", entity_id=entity_id, channel=channel)
                return False

    outcomes = await asyncio.gather(*(recalculate(entity_id) for entity_id in entity_ids))
    succeeded = sum(1 for ok in outcomes if ok)

    summary = MaintenanceSummary(
        staleness_updated=refresh.updated,
        staleness_errors=refresh.errors,
        uncertainty_updated=succeeded,
        uncertainty_errors=len(entity_ids) - succeeded,
    )
    logger.info(
        "maintenance_completed",
        staleness_updated=summary.staleness_updated,
        staleness_errors=summary.staleness_errors,
        uncertainty_updated=summary.uncertainty_updated,
        uncertainty_errors=summary.uncertainty_errors,
    )
    return summary


__all__ = [
    "MaintenanceSummary",
    "OutcomeLearningServices",
    "build_services",
    "run_maintenance",
]
