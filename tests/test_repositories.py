"""Repository tests for AumOS outcome learning.

Integration tests require a live PostgreSQL instance.
Unit tests here verify table layout, statement construction and repository
behavior against a mocked session.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql


def _session_returning(result: MagicMock) -> AsyncMock:
    session = AsyncMock()
    session.add_all = MagicMock()
    session.execute = AsyncMock(return_value=result)
    return session


class TestModelsImport:
    """Tests verifying ORM models import and are structurally correct."""

    def test_all_models_have_ol_prefix(self) -> None:
        """All outcome learning tables should use the ol_ prefix."""
        from aumos_outcome_learning.core.models import Base

        tables = Base.metadata.tables
        assert len(tables) == 9
        for name in tables:
            assert name.startswith("ol_"), f"table '{name}' missing ol_ prefix"

    def test_channel_keyed_constraints_treat_null_as_a_key(self) -> None:
        """The global (channel-less) row must be unique like any channel row."""
        from sqlalchemy import UniqueConstraint

        from aumos_outcome_learning.core.models import AttributionConfig, ExplorationConfig, UncertaintyMetrics

        for model in (AttributionConfig, ExplorationConfig, UncertaintyMetrics):
            constraints = [c for c in model.__table__.constraints if isinstance(c, UniqueConstraint)]
            assert len(constraints) == 1
            assert constraints[0].dialect_options["postgresql"]["nulls_not_distinct"] is True
            assert "channel" in constraints[0].columns


class TestOutcomeAttributionRepository:
    """Tests for OutcomeAttributionRepository write behavior."""

    @pytest.mark.asyncio
    async def test_create_many_with_no_rows_does_nothing(self) -> None:
        from aumos_outcome_learning.adapters.repositories import OutcomeAttributionRepository

        session = _session_returning(MagicMock())
        await OutcomeAttributionRepository(session).create_many([])

        session.add_all.assert_not_called()
        session.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_many_flushes_once(self) -> None:
        from aumos_outcome_learning.adapters.repositories import OutcomeAttributionRepository
        from aumos_outcome_learning.core.models import OutcomeAttribution

        session = _session_returning(MagicMock())
        rows = [
            OutcomeAttribution(outcome_id="o-1", stimulus_id="s-1", contribution_weight=0.5),
            OutcomeAttribution(outcome_id="o-1", stimulus_id="s-2", contribution_weight=0.5),
        ]
        await OutcomeAttributionRepository(session).create_many(rows)

        session.add_all.assert_called_once_with(rows)
        session.flush.assert_awaited_once()


class TestStalenessRepository:
    """Tests for StalenessRepository.record_validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("rowcount", "expected"), [(1, True), (0, False)])
    async def test_record_validation_reports_whether_a_row_matched(self, rowcount: int, expected: bool) -> None:
        from aumos_outcome_learning.adapters.repositories import StalenessRepository

        result = MagicMock()
        result.rowcount = rowcount
        session = _session_returning(result)

        matched = await StalenessRepository(session).record_validation(
            "entity-001",
            "engagement",
            datetime(2026, 3, 1, tzinfo=timezone.utc),
        )

        assert matched is expected
        session.flush.assert_awaited_once()


class TestUncertaintyMetricsRepository:
    """Tests for the uncertainty metrics upsert statement."""

    @pytest.mark.asyncio
    async def test_upsert_targets_the_natural_key(self) -> None:
        from aumos_outcome_learning.adapters.repositories import UncertaintyMetricsRepository

        stored = MagicMock()
        result = MagicMock()
        result.scalar_one.return_value = stored
        session = _session_returning(result)

        returned = await UncertaintyMetricsRepository(session).upsert(
            {"entity_id": "entity-001", "channel": None, "prediction_type": "engagement", "total_uncertainty": 0.4}
        )

        assert returned is stored
        statement = session.execute.await_args.args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT ON CONSTRAINT uq_ol_uncertainty_metrics_key DO UPDATE" in sql
        assert "total_uncertainty = " in sql
        assert session.execute.await_args.kwargs["execution_options"] == {"populate_existing": True}

    @pytest.mark.asyncio
    async def test_list_for_entity_orders_by_exploration_value(self) -> None:
        from aumos_outcome_learning.adapters.repositories import UncertaintyMetricsRepository

        result = MagicMock()
        result.scalars.return_value.all.return_value = []
        session = _session_returning(result)

        assert await UncertaintyMetricsRepository(session).list_for_entity("entity-001") == []

        statement = session.execute.await_args.args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        assert "ORDER BY ol_uncertainty_metrics.exploration_value DESC" in sql


class TestExplorationHistoryRepository:
    """Tests for ExplorationHistoryRepository counting."""

    @pytest.mark.asyncio
    async def test_count_defaults_to_zero(self) -> None:
        from aumos_outcome_learning.adapters.repositories import ExplorationHistoryRepository

        result = MagicMock()
        result.scalar.return_value = None
        session = _session_returning(result)

        count = await ExplorationHistoryRepository(session).count_explorations_since(
            datetime(2026, 3, 1, tzinfo=timezone.utc),
            "email",
        )

        assert count == 0


class TestMigrationEnvironment:
    """Tests for the alembic configuration shipped with the package."""

    def test_script_location_holds_the_environment(self) -> None:
        import tomllib
        from pathlib import Path

        root = Path(__file__).parent.parent
        config = tomllib.loads((root / "pyproject.toml").read_text())
        location = root / config["tool"]["alembic"]["script_location"]

        assert (location / "env.py").is_file()
        assert (location / "versions" / "001_ol_initial_schema.py").is_file()
