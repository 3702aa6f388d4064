"""Tests for StalenessTracker and the staleness score.

Covers:
  - compute_staleness_score() weights, saturation and monotonicity
  - calculate_staleness() persists ages, score and refresh recommendation
  - calculate_staleness() of an untracked prediction is 0 and writes nothing
  - register_prediction() resets staleness to fresh
  - mark_refresh_needed() creates or flags rows
  - get_staleness_report() aggregates
  - refresh_all_staleness_scores() isolates per-row failures
  - refresh_all_staleness_scores() rolls a failed row back in its item scope
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable

import pytest

from conftest import FakeStalenessRepository, FakeStore

from aumos_outcome_learning.attribution.staleness import StalenessTracker, compute_staleness_score
from aumos_outcome_learning.core.models import PredictionStaleness
from aumos_outcome_learning.settings import Settings


def _row(entity_id: str, prediction_type: str, now: datetime, **kwargs: Any) -> PredictionStaleness:
    predicted_days = kwargs.pop("predicted_days", 0)
    validated_days = kwargs.pop("validated_days", None)
    return PredictionStaleness(
        entity_id=entity_id,
        prediction_type=prediction_type,
        last_predicted_at=now - timedelta(days=predicted_days),
        last_validated_at=now - timedelta(days=validated_days) if validated_days is not None else None,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# compute_staleness_score
# ---------------------------------------------------------------------------


class TestComputeStalenessScore:
    def test_fresh_validated_prediction_is_zero(self) -> None:
        assert compute_staleness_score(0, 0, False) == 0.0

    def test_never_validated_counts_half(self) -> None:
        assert compute_staleness_score(0, None, False) == pytest.approx(0.2)

    def test_old_unvalidated_drifted_prediction(self) -> None:
        assert compute_staleness_score(30, 14, True) == pytest.approx(0.86)

    def test_components_saturate(self) -> None:
        assert compute_staleness_score(300, 300, True) == pytest.approx(0.86)

    def test_non_decreasing_in_age(self) -> None:
        scores = [compute_staleness_score(days, 3, False) for days in range(0, 60)]
        assert all(later >= earlier for earlier, later in zip(scores, scores[1:]))
        assert all(0.0 <= score <= 1.0 for score in scores)


# ---------------------------------------------------------------------------
# StalenessTracker
# ---------------------------------------------------------------------------


class TestCalculateStaleness:
    @pytest.mark.asyncio
    async def test_stale_prediction_recommends_refresh(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
        now: datetime,
    ) -> None:
        store.staleness.add(
            _row("entity-001", "engagement", now, predicted_days=30, validated_days=14, feature_drift_detected=True)
        )

        score = await tracker.calculate_staleness("entity-001", "engagement")

        assert score == pytest.approx(0.86)
        row = store.staleness.rows[("entity-001", "engagement")]
        assert row.prediction_age_days == 30
        assert row.validation_age_days == 14
        assert row.staleness_score == pytest.approx(0.86)
        assert row.recommend_refresh is True
        assert row.refresh_reason == "Staleness score 86% exceeds threshold"

    @pytest.mark.asyncio
    async def test_fresh_prediction_clears_reason(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
        now: datetime,
    ) -> None:
        store.staleness.add(
            _row("entity-001", "engagement", now, predicted_days=2, validated_days=1, refresh_reason="old")
        )

        score = await tracker.calculate_staleness("entity-001", "engagement")

        assert score < 0.7
        row = store.staleness.rows[("entity-001", "engagement")]
        assert row.recommend_refresh is False
        assert row.refresh_reason is None

    @pytest.mark.asyncio
    async def test_untracked_prediction_is_not_stale(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
    ) -> None:
        assert await tracker.calculate_staleness("entity-unknown", "engagement") == 0.0
        assert store.staleness.rows == {}


class TestStalenessWrites:
    @pytest.mark.asyncio
    async def test_register_prediction_resets_to_fresh(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
        now: datetime,
    ) -> None:
        store.staleness.add(
            _row(
                "entity-001",
                "conversion",
                now,
                predicted_days=40,
                staleness_score=0.9,
                recommend_refresh=True,
                refresh_reason="stale",
            )
        )

        await tracker.register_prediction("entity-001", "conversion", 42.0, 1.4)

        row = store.staleness.rows[("entity-001", "conversion")]
        assert row.last_predicted_at == now
        assert row.last_predicted_value == 42.0
        assert row.prediction_confidence == 1.0
        assert row.staleness_score == 0.0
        assert row.recommend_refresh is False
        assert row.refresh_reason is None

    @pytest.mark.asyncio
    async def test_mark_refresh_needed_creates_row(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
        now: datetime,
    ) -> None:
        await tracker.mark_refresh_needed("entity-002", "engagement", "manual")

        row = store.staleness.rows[("entity-002", "engagement")]
        assert row.last_predicted_at == now
        assert row.recommend_refresh is True
        assert row.refresh_reason == "manual"

    @pytest.mark.asyncio
    async def test_mark_refresh_needed_keeps_prediction_time(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
        now: datetime,
    ) -> None:
        store.staleness.add(_row("entity-001", "engagement", now, predicted_days=3))

        await tracker.mark_refresh_needed("entity-001", "engagement", "model retrained")

        row = store.staleness.rows[("entity-001", "engagement")]
        assert row.last_predicted_at == now - timedelta(days=3)
        assert row.refresh_reason == "model retrained"

    @pytest.mark.asyncio
    async def test_outcome_validation_never_creates_rows(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
    ) -> None:
        assert await tracker.record_outcome_validation("entity-001", "rx_written") == []
        assert store.staleness.rows == {}


class TestStalenessReport:
    @pytest.mark.asyncio
    async def test_report_aggregates_rows(
        self,
        tracker: StalenessTracker,
        store: FakeStore,
        now: datetime,
    ) -> None:
        store.staleness.add(
            _row("entity-001", "engagement", now, staleness_score=0.8, recommend_refresh=True, validated_days=2)
        )
        store.staleness.add(_row("entity-001", "conversion", now, staleness_score=0.2, feature_drift_detected=True))
        store.staleness.add(_row("entity-002", "engagement", now, staleness_score=0.4, validated_days=10))

        report = await tracker.get_staleness_report()

        assert report.total_entities == 2
        assert report.entities_needing_refresh == 1
        assert report.avg_staleness_score == pytest.approx(1.4 / 3)
        assert report.drift_detected == 1
        assert report.recently_validated == 1
        by_type = {entry.prediction_type: entry for entry in report.staleness_by_type}
        assert by_type["engagement"].count == 2
        assert by_type["engagement"].avg_staleness == pytest.approx(0.6)
        assert by_type["engagement"].refresh_recommended == 1

    @pytest.mark.asyncio
    async def test_empty_report(self, tracker: StalenessTracker) -> None:
        report = await tracker.get_staleness_report()
        assert report.total_entities == 0
        assert report.avg_staleness_score == 0.0
        assert report.staleness_by_type == []


class _FailingStalenessRepository(FakeStalenessRepository):
    async def update(self, entity_id: str, prediction_type: str, values: dict[str, Any]) -> None:
        if entity_id == "entity-broken":
            raise RuntimeError("store unavailable")
        await super().update(entity_id, prediction_type, values)


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_failing_row_is_counted_not_fatal(
        self,
        settings: Settings,
        clock: Callable[[], datetime],
        now: datetime,
    ) -> None:
        repo = _FailingStalenessRepository()
        repo.add(_row("entity-001", "engagement", now, predicted_days=30))
        repo.add(_row("entity-broken", "engagement", now, predicted_days=30))
        repo.add(_row("entity-002", "churn", now, predicted_days=1))

        result = await StalenessTracker(repo, settings, clock=clock).refresh_all_staleness_scores()

        assert result.updated == 2
        assert result.errors == 1
        assert repo.rows[("entity-001", "engagement")].prediction_age_days == 30


class _TransactionalStalenessRepository(FakeStalenessRepository):
    """Behaves like one database transaction: a failed write aborts it.

    Every later statement fails until a savepoint opened before the failure
    is rolled back.
    """

    def __init__(self) -> None:
        super().__init__()
        self.aborted = False
        self.savepoints = 0

    async def get(self, entity_id: str, prediction_type: str) -> PredictionStaleness | None:
        self._check_open()
        return await super().get(entity_id, prediction_type)

    async def update(self, entity_id: str, prediction_type: str, values: dict[str, Any]) -> None:
        self._check_open()
        if entity_id == "entity-broken":
            self.aborted = True
            raise RuntimeError("store unavailable")
        await super().update(entity_id, prediction_type, values)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        self.savepoints += 1
        try:
            yield
        except Exception:
            self.aborted = False
            raise

    def _check_open(self) -> None:
        if self.aborted:
            raise RuntimeError("current transaction is aborted")


class TestRefreshAllInOneTransaction:
    @staticmethod
    def _repo(now: datetime) -> _TransactionalStalenessRepository:
        repo = _TransactionalStalenessRepository()
        repo.add(_row("entity-001", "engagement", now, predicted_days=30))
        repo.add(_row("entity-broken", "engagement", now, predicted_days=30))
        repo.add(_row("entity-002", "churn", now, predicted_days=1))
        return repo

    @pytest.mark.asyncio
    async def test_rows_after_a_failure_still_persist(
        self,
        settings: Settings,
        clock: Callable[[], datetime],
        now: datetime,
    ) -> None:
        repo = self._repo(now)
        tracker = StalenessTracker(repo, settings, clock=clock, item_scope=repo.savepoint)

        result = await tracker.refresh_all_staleness_scores()

        assert result.updated == 2
        assert result.errors == 1
        assert repo.savepoints == 3
        assert repo.aborted is False
        assert repo.rows[("entity-001", "engagement")].prediction_age_days == 30
        assert repo.rows[("entity-002", "churn")].prediction_age_days == 1
        assert repo.rows[("entity-broken", "engagement")].prediction_age_days is None

    @pytest.mark.asyncio
    async def test_without_item_scope_the_failure_poisons_later_rows(
        self,
        settings: Settings,
        clock: Callable[[], datetime],
        now: datetime,
    ) -> None:
        repo = self._repo(now)

        result = await StalenessTracker(repo, settings, clock=clock).refresh_all_staleness_scores()

        assert result.updated == 1
        assert result.errors == 2
        assert repo.rows[("entity-002", "churn")].prediction_age_days is None
