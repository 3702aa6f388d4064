"""Staleness tracking for stored predictions.

A staleness row exists per (entity, prediction type) once a prediction has
been registered or a refresh has been requested. Two independent triggers
move it: registering a new prediction resets it to fresh, and an attributed
outcome extends its validation recency.

Staleness score:
    age        = min(1, prediction_age_days / 30)
    validation = min(1, validation_age_days / 14), or 0.5 if never validated
    drift      = 0.3 if drift flagged else 0
    score      = clamp(0.4 * age + 0.4 * validation + 0.2 * drift, 0, 1)
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

import structlog

from aumos_outcome_learning.attribution.policy import prediction_types_validated_by
from aumos_outcome_learning.core.clock import Clock, utcnow, whole_days_between
from aumos_outcome_learning.core.database import ItemScope, no_item_scope
from aumos_outcome_learning.core.interfaces import IStalenessRepository
from aumos_outcome_learning.settings import Settings

logger = structlog.get_logger(__name__)

_AGE_SATURATION_DAYS = 30
_VALIDATION_SATURATION_DAYS = 14
_NEVER_VALIDATED_COMPONENT = 0.5
_DRIFT_COMPONENT = 0.3
_RECENT_VALIDATION_DAYS = 7


@dataclass(frozen=True)
class PredictionTypeStaleness:
    """Staleness breakdown for one prediction type."""

    prediction_type: str
    count: int
    avg_staleness: float
    refresh_recommended: int


@dataclass(frozen=True)
class StalenessReport:
    """Aggregate staleness across every tracked (entity, prediction type) row.

    Attributes:
        total_entities: Distinct entities with at least one tracked row.
        entities_needing_refresh: Rows currently recommending a refresh.
        avg_staleness_score: Mean staleness score across rows.
        staleness_by_type: Per prediction type breakdown.
        drift_detected: Rows with the feature-drift flag set.
        recently_validated: Rows validated within the last 7 days.
    """

    total_entities: int
    entities_needing_refresh: int
    avg_staleness_score: float
    staleness_by_type: list[PredictionTypeStaleness]
    drift_detected: int
    recently_validated: int


@dataclass(frozen=True)
class BatchRefreshResult:
    """Outcome of a batch refresh: rows recomputed and rows that failed."""

    updated: int
    errors: int


def compute_staleness_score(
    prediction_age_days: int,
    validation_age_days: int | None,
    feature_drift_detected: bool,
) -> float:
    """Weighted staleness score in [0, 1].

    Args:
        prediction_age_days: Whole days since the prediction was made.
        validation_age_days: Whole days since an outcome last validated it,
            or None if it was never validated.
        feature_drift_detected: Whether drift was flagged for the entity.

    Returns:
        The staleness score.
    """
    age_component = min(1.0, max(0, prediction_age_days) / _AGE_SATURATION_DAYS)
    if validation_age_days is None:
        validation_component = _NEVER_VALIDATED_COMPONENT
    else:
        validation_component = min(1.0, max(0, validation_age_days) / _VALIDATION_SATURATION_DAYS)
    drift_component = _DRIFT_COMPONENT if feature_drift_detected else 0.0

    score = 0.4 * age_component + 0.4 * validation_component + 0.2 * drift_component
    return min(1.0, max(0.0, score))


class StalenessTracker:
    """Maintains per (entity, prediction type) staleness state.

    Args:
        staleness_repo: Repository for staleness rows.
        settings: Service settings (refresh threshold).
        clock: Source of "now"; injectable for deterministic tests.
        item_scope: Context each row of a batch refresh runs in.
    """

    def __init__(
        self,
        staleness_repo: IStalenessRepository,
        settings: Settings,
        clock: Clock | None = None,
        item_scope: ItemScope | None = None,
    ) -> None:
        self._repo = staleness_repo
        self._settings = settings
        self._clock = clock or utcnow
        self._item_scope = item_scope or no_item_scope

    async def calculate_staleness(self, entity_id: str, prediction_type: str) -> float:
        """Recompute and persist the staleness score of one prediction.

        Returns 0 when no row exists: a prediction that was never made is
        absent, not stale. Callers that need the distinction must check
        existence themselves.

        Args:
            entity_id: Target entity.
            prediction_type: Prediction type to score.

        Returns:
            The staleness score in [0, 1].
        """
        existing = await self._repo.get(entity_id, prediction_type)
        if existing is None:
            return 0.0

        now = self._clock()
        prediction_age = whole_days_between(now, existing.last_predicted_at)
        validation_age = (
            whole_days_between(now, existing.last_validated_at)
            if existing.last_validated_at is not None
            else None
        )

        score = compute_staleness_score(
            prediction_age,
            validation_age,
            bool(existing.feature_drift_detected),
        )
        recommend_refresh = score > self._settings.staleness_refresh_threshold

        await self._repo.update(
            entity_id,
            prediction_type,
            {
                "prediction_age_days": prediction_age,
                "validation_age_days": validation_age,
                "staleness_score": score,
                "recommend_refresh": recommend_refresh,
                "refresh_reason": (
                    f"Staleness score {score * 100:.0f}% exceeds threshold" if recommend_refresh else None
                ),
            },
        )

        logger.info(
            "staleness_calculated",
            entity_id=entity_id,
            prediction_type=prediction_type,
            prediction_age_days=prediction_age,
            validation_age_days=validation_age,
            staleness_score=round(score, 4),
            recommend_refresh=recommend_refresh,
        )
        return score

    async def mark_refresh_needed(self, entity_id: str, prediction_type: str, reason: str) -> None:
        """Flag a prediction for refresh, creating the row if it is absent.

        On an existing row only recommend_refresh and refresh_reason change.
        """
        await self._repo.upsert(
            entity_id,
            prediction_type,
            insert_values={
                "last_predicted_at": self._clock(),
                "recommend_refresh": True,
                "refresh_reason": reason,
            },
            update_values={
                "recommend_refresh": True,
                "refresh_reason": reason,
            },
        )
        logger.info(
            "prediction_refresh_requested",
            entity_id=entity_id,
            prediction_type=prediction_type,
            reason=reason,
        )

    async def register_prediction(
        self,
        entity_id: str,
        prediction_type: str,
        predicted_value: float,
        confidence: float,
    ) -> None:
        """Record a freshly produced prediction and reset its staleness to 0."""
        values = {
            "last_predicted_at": self._clock(),
            "last_predicted_value": predicted_value,
            "prediction_confidence": min(1.0, max(0.0, confidence)),
            "prediction_age_days": 0,
            "staleness_score": 0.0,
            "recommend_refresh": False,
            "refresh_reason": None,
        }
        await self._repo.upsert(entity_id, prediction_type, insert_values=values, update_values=values)
        logger.info(
            "prediction_registered",
            entity_id=entity_id,
            prediction_type=prediction_type,
            predicted_value=predicted_value,
        )

    async def record_outcome_validation(self, entity_id: str, outcome_type: str) -> list[str]:
        """Mark the predictions an outcome kind validates as freshly validated.

        Only existing rows are touched; this never creates rows.

        Returns:
            The prediction types whose rows were updated.
        """
        validated_at = self._clock()
        updated: list[str] = []
        for prediction_type in prediction_types_validated_by(outcome_type):
            if await self._repo.record_validation(entity_id, prediction_type.value, validated_at):
                updated.append(prediction_type.value)

        if updated:
            logger.debug(
                "predictions_validated",
                entity_id=entity_id,
                outcome_type=outcome_type,
                prediction_types=updated,
            )
        return updated

    async def get_staleness_report(self) -> StalenessReport:
        """Aggregate staleness across every tracked row."""
        rows = await self._repo.list_all()
        now = self._clock()

        by_type: dict[str, list[float]] = defaultdict(list)
        refresh_by_type: dict[str, int] = defaultdict(int)
        for row in rows:
            by_type[row.prediction_type].append(row.staleness_score or 0.0)
            if row.recommend_refresh:
                refresh_by_type[row.prediction_type] += 1

        staleness_by_type = [
            PredictionTypeStaleness(
                prediction_type=prediction_type,
                count=len(scores),
                avg_staleness=sum(scores) / len(scores),
                refresh_recommended=refresh_by_type[prediction_type],
            )
            for prediction_type, scores in by_type.items()
        ]

        recently_validated = sum(
            1
            for row in rows
            if row.last_validated_at is not None
            and whole_days_between(now, row.last_validated_at) <= _RECENT_VALIDATION_DAYS
        )

        return StalenessReport(
            total_entities=len({row.entity_id for row in rows}),
            entities_needing_refresh=sum(1 for row in rows if row.recommend_refresh),
            avg_staleness_score=(
                sum(row.staleness_score or 0.0 for row in rows) / len(rows) if rows else 0.0
            ),
            staleness_by_type=staleness_by_type,
            drift_detected=sum(1 for row in rows if row.feature_drift_detected),
            recently_validated=recently_validated,
        )

    async def refresh_all_staleness_scores(self) -> BatchRefreshResult:
        """Recompute every tracked row. A failing row is logged and counted, never fatal.

        Each row runs in its own item scope, so a failed row is rolled back
        without discarding the rows written before or after it.
        """
        rows = await self._repo.list_all()
        updated = 0
        errors = 0

        for row in rows:
            try:
                async with self._item_scope():
                    await self.calculate_staleness(row.entity_id, row.prediction_type)
            except Exception:
                logger.exception(
                    "staleness_refresh_failed",
                    entity_id=row.entity_id,
                    prediction_type=row.prediction_type,
                )
                errors += 1
            else:
                updated += 1

        logger.info("staleness_refresh_completed", updated=updated, errors=errors)
        return BatchRefreshResult(updated=updated, errors=errors)


__all__ = [
    "BatchRefreshResult",
    "PredictionTypeStaleness",
    "StalenessReport",
    "StalenessTracker",
    "compute_staleness_score",
]
