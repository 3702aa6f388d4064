"""Tests for service wiring, the unit of work and the maintenance pass.

Covers:
  - build_services() wires every service onto one session
  - batch items run inside a SAVEPOINT on that session
  - session_scope() commits on success, rolls back and re-raises on error
  - run_maintenance() isolates a failing entity in its own unit of work
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeStore, make_profile

from aumos_outcome_learning import jobs
from aumos_outcome_learning.attribution.engine import AttributionEngine
from aumos_outcome_learning.attribution.staleness import StalenessTracker
from aumos_outcome_learning.core.database import savepoint_scope, session_scope
from aumos_outcome_learning.core.models import PredictionStaleness
from aumos_outcome_learning.settings import Settings
from aumos_outcome_learning.uncertainty.calculator import UncertaintyCalculator
from aumos_outcome_learning.uncertainty.exploration import ExplorationService


class _SessionFactory:
    """Stands in for async_sessionmaker and remembers every session it opened."""

    def __init__(self) -> None:
        self.sessions: list[MagicMock] = []

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[MagicMock]:
        session = MagicMock()
        session.commit = AsyncMock()
        session.rollback = AsyncMock()
        self.sessions.append(session)
        yield session


class TestBuildServices:
    def test_services_share_the_session(self, settings: Settings) -> None:
        services = jobs.build_services(AsyncMock(), settings)

        assert isinstance(services.attribution, AttributionEngine)
        assert isinstance(services.staleness, StalenessTracker)
        assert isinstance(services.uncertainty, UncertaintyCalculator)
        assert isinstance(services.exploration, ExplorationService)

    @pytest.mark.asyncio
    async def test_batch_items_use_savepoints(self, settings: Settings, now: datetime) -> None:
        session = MagicMock()
        nested = MagicMock()
        nested.__aenter__ = AsyncMock(return_value=nested)
        nested.__aexit__ = AsyncMock(return_value=False)
        session.begin_nested = MagicMock(return_value=nested)
        rows = [
            PredictionStaleness(entity_id=f"entity-{index}", prediction_type="engagement", last_predicted_at=now)
            for index in range(2)
        ]
        result = MagicMock()
        result.scalars.return_value.all.return_value = rows
        result.scalars.return_value.first.return_value = rows[0]
        session.execute = AsyncMock(return_value=result)
        session.flush = AsyncMock()

        services = jobs.build_services(session, settings, clock=lambda: now)
        refresh = await services.staleness.refresh_all_staleness_scores()

        assert refresh.updated == 2
        assert session.begin_nested.call_count == 2
        assert nested.__aexit__.await_count == 2

    def test_savepoint_scope_opens_a_nested_transaction(self) -> None:
        session = MagicMock()

        scope = savepoint_scope(session)

        assert scope() is session.begin_nested.return_value


class TestSessionScope:
    @pytest.mark.asyncio
    async def test_commits_on_success(self) -> None:
        factory = _SessionFactory()

        async with session_scope(factory) as session:
            assert session is factory.sessions[0]

        factory.sessions[0].commit.assert_awaited_once()
        factory.sessions[0].rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rolls_back_and_reraises(self) -> None:
        factory = _SessionFactory()

        with pytest.raises(RuntimeError, match="boom"):
            async with session_scope(factory):
                raise RuntimeError("boom")

        factory.sessions[0].rollback.assert_awaited_once()
        factory.sessions[0].commit.assert_not_awaited()


@pytest.fixture
def in_memory_services(
    monkeypatch: pytest.MonkeyPatch,
    tracker: StalenessTracker,
    engine: AttributionEngine,
    calculator: UncertaintyCalculator,
    exploration: ExplorationService,
) -> jobs.OutcomeLearningServices:
    """Make run_maintenance build services over the in-memory store."""
    services = jobs.OutcomeLearningServices(
        attribution=engine,
        staleness=tracker,
        uncertainty=calculator,
        exploration=exploration,
    )

    def fake_build_services(session: Any, settings: Settings, clock: Any = None) -> jobs.OutcomeLearningServices:
        return services

    monkeypatch.setattr(jobs, "build_services", fake_build_services)
    return services


@pytest.mark.usefixtures("in_memory_services")
class TestRunMaintenance:
    @pytest.mark.asyncio
    async def test_failing_entity_rolls_back_alone(
        self,
        settings: Settings,
        store: FakeStore,
        now: datetime,
    ) -> None:
        store.profiles.add(make_profile("entity-001"))
        store.staleness.add(
            PredictionStaleness(
                entity_id="entity-001",
                prediction_type="engagement",
                last_predicted_at=now - timedelta(days=10),
            )
        )
        factory = _SessionFactory()

        summary = await jobs.run_maintenance(factory, settings, ["entity-001", "entity-missing"])

        assert summary == jobs.MaintenanceSummary(
            staleness_updated=1,
            staleness_errors=0,
            uncertainty_updated=1,
            uncertainty_errors=1,
        )
        assert ("entity-001", None, "engagement") in store.metrics.rows
        assert store.staleness.rows[("entity-001", "engagement")].prediction_age_days == 10
        assert len(factory.sessions) == 3
        assert sum(session.commit.await_count for session in factory.sessions) == 2
        assert sum(session.rollback.await_count for session in factory.sessions) == 1

    @pytest.mark.asyncio
    async def test_no_entities(self, settings: Settings) -> None:
        factory = _SessionFactory()

        summary = await jobs.run_maintenance(factory, settings, [])

        assert summary.uncertainty_updated == 0
        assert summary.uncertainty_errors == 0
        assert len(factory.sessions) == 1
