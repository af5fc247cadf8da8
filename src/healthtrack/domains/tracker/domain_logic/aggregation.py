"""Aggregation engine — recipe totals, daily folds and trend statistics.

Recipe per-serving totals are the only materialized aggregate; daily
summaries and trends are computed at read time from one store query.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from healthtrack.core.errors import InconsistentReferenceError, NotFoundError, ValidationError
from healthtrack.core.storage.models import (
    DailySummary,
    FoodItem,
    Measurement,
    NutrientTotals,
    RecipeIngredient,
)
from healthtrack.core.storage.repository import TrackerRepository
from healthtrack.domains.tracker.domain_logic.units import quantize

logger = logging.getLogger(__name__)

NUTRIENT_QUANTUM = Decimal("0.01")

# Macro components carried by nutrition logs, in grams
NUTRITION_COMPONENTS = ("protein_g", "carbs_g", "fat_g", "fiber_g")

# Relative change between half-window means below which a trend is "stable"
_TREND_STABLE_FRACTION = 0.01

# Readings in the trailing moving average reported with a trend
TREND_AVERAGE_WINDOW = 7


def _q2(value: Decimal) -> Decimal:
    return quantize(value, NUTRIENT_QUANTUM, "nutrient total")


def utc_day_bounds(day: date) -> tuple[datetime, datetime]:
    """[start, end) of a calendar day in UTC."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------

def compute_recipe_totals(
    ingredients: Iterable[tuple[RecipeIngredient, FoodItem | None]],
    servings: Decimal,
) -> NutrientTotals:
    """Per-serving totals: sum(nutrient x ingredient servings) / recipe servings.

    Sums are exact; only the final per-serving figure is rounded to 2 places.
    Zero recipe servings yields all-zero totals.

    Raises:
        InconsistentReferenceError: If an ingredient's food item is missing.
    """
    calories = protein = carbs = fat = fiber = Decimal(0)
    for ingredient, food in ingredients:
        if food is None:
            raise InconsistentReferenceError(
                f"Recipe {ingredient.recipe_id} ingredient {ingredient.id} references "
                f"missing food item {ingredient.food_item_id}"
            )
        calories += food.calories * ingredient.servings
        protein += food.protein_g * ingredient.servings
        carbs += food.carbohydrates_g * ingredient.servings
        fat += food.fat_g * ingredient.servings
        fiber += food.fiber_g * ingredient.servings

    if servings == 0:
        return NutrientTotals()
    return NutrientTotals(
        calories=_q2(calories / servings),
        protein_g=_q2(protein / servings),
        carbs_g=_q2(carbs / servings),
        fat_g=_q2(fat / servings),
        fiber_g=_q2(fiber / servings),
    )


def is_weight_anomaly(previous: Decimal, current: Decimal, threshold_percent: Decimal) -> bool:
    """A change of more than ``threshold_percent`` of the previous weight."""
    if previous <= 0:
        return False
    change = abs(current - previous) / previous * 100
    return change > threshold_percent


def moving_average(values: Sequence[Decimal], window: int) -> list[Decimal]:
    """Trailing moving average; the first ``window - 1`` points average what exists."""
    if window < 1:
        raise ValidationError(f"window must be >= 1, got {window}")
    result = []
    for i in range(len(values)):
        chunk = values[max(0, i - window + 1): i + 1]
        result.append(quantize(sum(chunk, Decimal(0)) / len(chunk)))
    return result


# ---------------------------------------------------------------------------
# AggregationEngine
# ---------------------------------------------------------------------------

class AggregationEngine:
    """Keeps recipe totals in step with their ingredients and folds raw logs.

    Usage::

        aggregation = AggregationEngine(repository)
        with db.transaction():
            totals = aggregation.recompute(recipe_id)
        summary = aggregation.daily_summary("user-1", "hydration", date.today())
    """

    def __init__(
        self,
        repository: TrackerRepository,
        *,
        anomaly_threshold_percent: float | Decimal = Decimal("2"),
    ) -> None:
        self._repo = repository
        self._anomaly_threshold = Decimal(str(anomaly_threshold_percent))

    # ---------------------------------------------------------------
    # Recipes
    # ---------------------------------------------------------------

    def recompute(self, recipe_id: str) -> NutrientTotals:
        """Recompute and persist a recipe's per-serving totals.

        Runs inside the caller's transaction when there is one. On a dangling
        ingredient reference nothing is written and the stored totals stay
        as last committed.

        Raises:
            NotFoundError: If the recipe does not exist.
            InconsistentReferenceError: If an ingredient's food item is gone.
        """
        with self._repo.database.transaction():
            recipe = self._repo.get_recipe(recipe_id)
            if recipe is None:
                raise NotFoundError(f"Recipe not found: {recipe_id}")
            try:
                totals = compute_recipe_totals(
                    self._repo.get_ingredient_nutrition(recipe_id), recipe.servings
                )
            except InconsistentReferenceError:
                logger.error("Recipe %s has a dangling ingredient reference", recipe_id)
                raise
            self._repo.update_recipe_totals(recipe_id, totals)
        logger.info("Recomputed totals for recipe %s", recipe_id)
        return totals

    # ---------------------------------------------------------------
    # Raw-log folds
    # ---------------------------------------------------------------

    def daily_summary(self, user_id: str, modality: str, day: date) -> DailySummary:
        """Total, count and first/last timestamp of one modality over a UTC day."""
        start, end = utc_day_bounds(day)
        entries = self._repo.get_measurements(user_id, modality=modality, since=start, until=end)
        return DailySummary(
            user_id=user_id,
            modality=modality,
            date=day,
            total=sum((m.value for m in entries), Decimal(0)),
            entry_count=len(entries),
            first_entry=entries[0].recorded_at if entries else None,
            last_entry=entries[-1].recorded_at if entries else None,
        )

    def daily_nutrition(self, user_id: str, day: date) -> NutrientTotals:
        """Sum calories and macro components of one UTC day's nutrition logs."""
        start, end = utc_day_bounds(day)
        entries = self._repo.get_measurements(user_id, modality="nutrition", since=start, until=end)
        sums = {name: Decimal(0) for name in NUTRITION_COMPONENTS}
        calories = Decimal(0)
        for entry in entries:
            calories += entry.value
            for name in NUTRITION_COMPONENTS:
                sums[name] += entry.components.get(name, Decimal(0))
        return NutrientTotals(
            calories=_q2(calories),
            protein_g=_q2(sums["protein_g"]),
            carbs_g=_q2(sums["carbs_g"]),
            fat_g=_q2(sums["fat_g"]),
            fiber_g=_q2(sums["fiber_g"]),
        )

    def flag_anomaly(self, measurement: Measurement) -> bool:
        """Flag a weight log that jumps too far from the previous weight log.

        Must run in the same transaction as the insert of ``measurement``.
        """
        if measurement.modality != "weight":
            return False
        previous = self._repo.get_latest_measurement(
            measurement.user_id,
            measurement.metric,
            before=measurement.recorded_at,
            exclude_id=measurement.id,
        )
        if previous is None:
            return False
        if not is_weight_anomaly(previous.value, measurement.value, self._anomaly_threshold):
            return False
        self._repo.mark_anomaly(measurement.id)
        measurement.is_anomaly = True
        logger.warning(
            "Weight log %s flagged as anomaly (change above %s%%)",
            measurement.id, self._anomaly_threshold,
        )
        return True

    # ---------------------------------------------------------------
    # Trends
    # ---------------------------------------------------------------

    def compute_trend(
        self,
        user_id: str,
        metric: str,
        *,
        days: int = 90,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Trend statistics for one metric over the last ``days`` days.

        Returns:
            Dict with: metric, current, mean, median, min, max, std_dev,
            direction, data_points and the trailing ``moving_average`` over the
            last TREND_AVERAGE_WINDOW readings.
        """
        end = now or datetime.now(timezone.utc)
        history = self._repo.get_measurements(
            user_id, metric=metric, since=end - timedelta(days=days), until=end + timedelta(microseconds=1)
        )
        if not history:
            return {"metric": metric, "data_points": 0, "status": "no_data"}

        values = [float(m.value) for m in history]  # oldest first
        current = values[-1]

        if len(values) >= 4:
            mid = len(values) // 2
            older_mean = statistics.mean(values[:mid])
            recent_mean = statistics.mean(values[mid:])
            direction = _direction(recent_mean, older_mean)
        elif len(values) >= 2:
            direction = _direction(current, values[0])
        else:
            direction = "insufficient_data"

        std_val = statistics.stdev(values) if len(values) > 1 else 0.0
        return {
            "metric": metric,
            "current": round(current, 4),
            "mean": round(statistics.mean(values), 4),
            "median": round(statistics.median(values), 4),
            "min": round(min(values), 4),
            "max": round(max(values), 4),
            "std_dev": round(std_val, 4),
            "moving_average": float(
                moving_average([m.value for m in history], TREND_AVERAGE_WINDOW)[-1]
            ),
            "direction": direction,
            "data_points": len(values),
        }


def _direction(recent: float, older: float) -> str:
    scale = abs(older) or 1.0
    diff = (recent - older) / scale
    if diff > _TREND_STABLE_FRACTION:
        return "increasing"
    if diff < -_TREND_STABLE_FRACTION:
        return "decreasing"
    return "stable"
