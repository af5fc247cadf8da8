"""Health engine facade — the single request surface of the tracker.

Every write follows the same shape: validate, take the per-entity locks the
write will touch (sorted), open one store transaction, write the raw row,
update the derived aggregates, commit. Either everything persists or
nothing does.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from healthtrack.core.concurrency import KeyedLock
from healthtrack.core.errors import ConflictError, MissingInputError, NotFoundError, ValidationError
from healthtrack.core.storage.models import (
    BiomarkerLog,
    BiomarkerRange,
    DailySummary,
    FoodItem,
    Goal,
    GoalProgress,
    HeartRateZone,
    HeartRateZoneProfile,
    Measurement,
    NutrientTotals,
    Recipe,
    RecipeIngredient,
)
from healthtrack.core.storage.repository import TrackerRepository
from healthtrack.domains.tracker.domain_logic import classification
from healthtrack.domains.tracker.domain_logic.aggregation import NUTRITION_COMPONENTS, AggregationEngine
from healthtrack.domains.tracker.domain_logic.classification import (
    ClassificationEngine,
    RecoveryScore,
    ZoneTime,
)
from healthtrack.domains.tracker.domain_logic.goals import GoalTracker
from healthtrack.domains.tracker.domain_logic.units import (
    normalize,
    normalize_nutrient_mass,
    quantize,
    to_decimal,
)
from healthtrack.domains.tracker.domain_logic.validation import (
    DEFAULT_METRICS,
    GOAL_STATUSES,
    MODALITIES,
    require_choice,
    require_non_empty,
    require_non_negative,
    validate_heart_rate_profile,
    validate_measurement_value,
    validate_servings,
    validate_session,
)

logger = logging.getLogger(__name__)

RECOVERY_BASELINE_DAYS = 7

_NUTRIENT_QUANTUM = Decimal("0.01")
_SESSION_MODALITIES = ("sleep", "exercise")


@dataclass
class LoggedMeasurement:
    """Result of a raw log write: the stored row plus the goals it moved."""

    measurement: Measurement
    updated_goals: list[Goal] = field(default_factory=list)


def _utc(moment: datetime | None) -> datetime:
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _nutrient(value: Any, name: str) -> Decimal:
    return require_non_negative(quantize(to_decimal(value, name), _NUTRIENT_QUANTUM, name), name)


class HealthEngine:
    """Composes the store, aggregation, goal and classification components.

    Usage::

        engine = HealthEngine(repository, load_reference_ranges())
        engine.sync_reference_ranges()

        engine.create_goal("user-1", "Cut", "weight", 80, start_value=90)
        engine.log_measurement("user-1", "weight", 87.5, "kg")
        engine.goal_progress(goal_id)
    """

    def __init__(
        self,
        repository: TrackerRepository,
        ranges: Mapping[str, BiomarkerRange],
        *,
        anomaly_threshold_percent: float | Decimal = 2.0,
        unique_goal_types: Sequence[str] = ("weight",),
        milestone_percentages: Sequence[int] = (25, 50, 75, 100),
        locks: KeyedLock | None = None,
    ) -> None:
        self._repo = repository
        self._db = repository.database
        self._locks = locks or KeyedLock()
        self.aggregation = AggregationEngine(
            repository, anomaly_threshold_percent=anomaly_threshold_percent
        )
        self.goals = GoalTracker(
            repository,
            unique_goal_types=unique_goal_types,
            milestone_percentages=milestone_percentages,
        )
        self.classifier = ClassificationEngine(ranges)

    @property
    def repository(self) -> TrackerRepository:
        return self._repo

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(self, user_id: str | None = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self._repo.ensure_user(require_non_empty(user_id, "user_id"))
        return user_id

    def delete_user(self, user_id: str) -> bool:
        """Delete a user and, by cascade, everything the user owns."""
        with self._locks.hold(("hr-profile", user_id)):
            with self._db.transaction():
                return self._repo.delete_user(user_id)

    # ------------------------------------------------------------------
    # Raw logs
    # ------------------------------------------------------------------

    def log_measurement(
        self,
        user_id: str,
        modality: str,
        value: Any = None,
        unit: str | None = None,
        *,
        recorded_at: datetime | None = None,
        started_at: datetime | None = None,
        metric: str | None = None,
        components: Mapping[str, Any] | None = None,
        source: str = "manual",
        notes: str | None = None,
    ) -> LoggedMeasurement:
        """Normalize, validate and store a raw log, then update derived state.

        For sleep, ``started_at`` is required and ``value`` (minutes) may be
        omitted, in which case the session length is used. Weight logs are
        checked for anomalous jumps. Every active goal on the same metric is
        re-evaluated in the same transaction.

        Raises:
            ValidationError: Out-of-range value, bad session, bad modality.
            UnsupportedUnitError: Unit not convertible for the modality.
        """
        require_non_empty(user_id, "user_id")
        require_choice(modality, MODALITIES, "modality")
        recorded = _utc(recorded_at)
        started = _utc(started_at) if started_at is not None else None

        if modality in _SESSION_MODALITIES:
            validate_session(started, recorded, required=modality == "sleep")
        if value is None:
            if started is None or modality not in _SESSION_MODALITIES:
                raise ValidationError(f"value is required for {modality}")
            value = Decimal(str((recorded - started).total_seconds())) / 60
            unit = "min"

        normalized = normalize(value, unit, modality)
        validate_measurement_value(modality, normalized.value)

        parts: dict[str, Decimal] = {}
        for name, raw in (components or {}).items():
            if modality != "nutrition" or name not in NUTRITION_COMPONENTS:
                raise ValidationError(f"Unsupported component {name!r} for {modality}")
            parts[name] = require_non_negative(normalize_nutrient_mass(raw, "g"), name)

        measurement = Measurement(
            id="",
            user_id=user_id,
            modality=modality,
            metric=metric or DEFAULT_METRICS[modality],
            recorded_at=recorded,
            started_at=started,
            value=normalized.value,
            unit=normalized.unit,
            components=parts,
            source=source,
            notes=notes,
        )

        candidates = self._repo.get_goals(user_id, status="active", metric=measurement.metric)
        with self._locks.hold(*(("goal", g.id) for g in candidates)):
            with self._db.transaction():
                self._repo.ensure_user(user_id)
                self._repo.insert_measurement(measurement)
                self.aggregation.flag_anomaly(measurement)
                updated = [
                    goal
                    for goal in self._repo.get_goals(user_id, status="active", metric=measurement.metric)
                    if self.goals.apply_measurement(goal, measurement)
                ]
        logger.info(
            "Logged %s measurement %s for user %s (%d goals updated)",
            modality, measurement.id, user_id, len(updated),
        )
        return LoggedMeasurement(measurement, updated)

    def get_measurement(self, measurement_id: str) -> Measurement:
        measurement = self._repo.get_measurement(measurement_id)
        if measurement is None:
            raise NotFoundError(f"Measurement not found: {measurement_id}")
        return measurement

    def delete_measurement(self, measurement_id: str) -> list[Goal]:
        """Delete a raw log and re-derive the active goals that tracked it.

        Returns:
            Goals whose state changed.
        """
        measurement = self.get_measurement(measurement_id)
        candidates = self._repo.get_goals(
            measurement.user_id, status="active", metric=measurement.metric
        )
        with self._locks.hold(*(("goal", g.id) for g in candidates)):
            with self._db.transaction():
                if not self._repo.delete_measurement(measurement_id):
                    raise NotFoundError(f"Measurement not found: {measurement_id}")
                updated = [
                    goal
                    for goal in self._repo.get_goals(
                        measurement.user_id, status="active", metric=measurement.metric
                    )
                    if self.goals.refresh(goal)
                ]
        logger.info("Deleted measurement %s", measurement_id)
        return updated

    def daily_summary(self, user_id: str, modality: str, day: date) -> DailySummary:
        require_choice(modality, MODALITIES, "modality")
        return self.aggregation.daily_summary(user_id, modality, day)

    def daily_nutrition(self, user_id: str, day: date) -> NutrientTotals:
        return self.aggregation.daily_nutrition(user_id, day)

    def measurement_trend(
        self, user_id: str, metric: str, *, days: int = 90, now: datetime | None = None
    ) -> dict[str, Any]:
        if days < 1:
            raise ValidationError(f"days must be >= 1, got {days}")
        return self.aggregation.compute_trend(user_id, metric, days=days, now=now)

    # ------------------------------------------------------------------
    # Food catalog
    # ------------------------------------------------------------------

    def create_food_item(
        self,
        name: str,
        serving_size: Any,
        *,
        serving_unit: str = "g",
        calories: Any = 0,
        protein_g: Any = 0,
        carbohydrates_g: Any = 0,
        fat_g: Any = 0,
        fiber_g: Any = 0,
        brand: str | None = None,
    ) -> FoodItem:
        item = FoodItem(
            id="",
            name=require_non_empty(name, "name"),
            brand=brand,
            serving_size=_nutrient(serving_size, "serving_size"),
            serving_unit=serving_unit,
            calories=_nutrient(calories, "calories"),
            protein_g=_nutrient(protein_g, "protein_g"),
            carbohydrates_g=_nutrient(carbohydrates_g, "carbohydrates_g"),
            fat_g=_nutrient(fat_g, "fat_g"),
            fiber_g=_nutrient(fiber_g, "fiber_g"),
        )
        self._repo.insert_food_item(item)
        return item

    def delete_food_item(self, food_item_id: str) -> list[str]:
        """Delete a catalog item and recompute every recipe that used it.

        Returns:
            IDs of the recomputed recipes.
        """
        if self._repo.get_food_item(food_item_id) is None:
            raise NotFoundError(f"Food item not found: {food_item_id}")
        affected = self._repo.recipes_using_food(food_item_id)
        with self._locks.hold(*(("recipe", rid) for rid in affected)):
            with self._db.transaction():
                affected = self._repo.recipes_using_food(food_item_id)
                self._repo.delete_food_item(food_item_id)
                for recipe_id in affected:
                    self.aggregation.recompute(recipe_id)
        logger.info("Deleted food item %s (%d recipes recomputed)", food_item_id, len(affected))
        return affected

    # ------------------------------------------------------------------
    # Recipes
    # ------------------------------------------------------------------

    def _require_recipe(self, recipe_id: str) -> Recipe:
        recipe = self._repo.get_recipe(recipe_id)
        if recipe is None:
            raise NotFoundError(f"Recipe not found: {recipe_id}")
        return recipe

    def get_recipe(self, recipe_id: str) -> Recipe:
        return self._require_recipe(recipe_id)

    def recipe_ingredients(self, recipe_id: str) -> list[RecipeIngredient]:
        self._require_recipe(recipe_id)
        return self._repo.get_ingredients(recipe_id)

    def create_recipe(
        self,
        user_id: str,
        name: str,
        *,
        servings: Any = 1,
        description: str | None = None,
        ingredients: Iterable[tuple[str, Any]] = (),
    ) -> Recipe:
        """Create a recipe, optionally with ``(food_item_id, servings)`` pairs."""
        recipe = Recipe(
            id=str(uuid.uuid4()),
            user_id=require_non_empty(user_id, "user_id"),
            name=require_non_empty(name, "name"),
            servings=validate_servings(to_decimal(servings, "servings")),
            description=description,
        )
        with self._locks.hold(("recipe", recipe.id)):
            with self._db.transaction():
                self._repo.ensure_user(user_id)
                self._repo.insert_recipe(recipe)
                for order, (food_item_id, amount) in enumerate(ingredients):
                    self._insert_ingredient(recipe.id, food_item_id, amount, order)
                self.aggregation.recompute(recipe.id)
        return self._require_recipe(recipe.id)

    def _insert_ingredient(
        self, recipe_id: str, food_item_id: str, servings: Any, sort_order: int
    ) -> RecipeIngredient:
        amount = validate_servings(to_decimal(servings, "servings"))
        if self._repo.get_food_item(food_item_id) is None:
            raise NotFoundError(f"Food item not found: {food_item_id}")
        if self._repo.find_ingredient(recipe_id, food_item_id) is not None:
            raise ConflictError(f"Food item {food_item_id} is already in recipe {recipe_id}")
        ingredient = RecipeIngredient(
            id="",
            recipe_id=recipe_id,
            food_item_id=food_item_id,
            servings=amount,
            sort_order=sort_order,
        )
        self._repo.insert_ingredient(ingredient)
        return ingredient

    def add_ingredient(
        self,
        recipe_id: str,
        food_item_id: str,
        servings: Any = 1,
        *,
        sort_order: int | None = None,
    ) -> RecipeIngredient:
        with self._locks.hold(("recipe", recipe_id)):
            with self._db.transaction():
                self._require_recipe(recipe_id)
                if sort_order is None:
                    sort_order = len(self._repo.get_ingredients(recipe_id))
                ingredient = self._insert_ingredient(recipe_id, food_item_id, servings, sort_order)
                self.aggregation.recompute(recipe_id)
        return ingredient

    def update_ingredient(
        self,
        ingredient_id: str,
        *,
        servings: Any = None,
        sort_order: int | None = None,
    ) -> RecipeIngredient:
        current = self._repo.get_ingredient(ingredient_id)
        if current is None:
            raise NotFoundError(f"Ingredient not found: {ingredient_id}")
        with self._locks.hold(("recipe", current.recipe_id)):
            with self._db.transaction():
                current = self._repo.get_ingredient(ingredient_id)
                if current is None:
                    raise NotFoundError(f"Ingredient not found: {ingredient_id}")
                if servings is not None:
                    current.servings = validate_servings(to_decimal(servings, "servings"))
                if sort_order is not None:
                    current.sort_order = sort_order
                self._repo.update_ingredient(ingredient_id, current.servings, current.sort_order)
                self.aggregation.recompute(current.recipe_id)
        return current

    def remove_ingredient(self, ingredient_id: str) -> NutrientTotals:
        current = self._repo.get_ingredient(ingredient_id)
        if current is None:
            raise NotFoundError(f"Ingredient not found: {ingredient_id}")
        with self._locks.hold(("recipe", current.recipe_id)):
            with self._db.transaction():
                if not self._repo.delete_ingredient(ingredient_id):
                    raise NotFoundError(f"Ingredient not found: {ingredient_id}")
                return self.aggregation.recompute(current.recipe_id)

    def set_recipe_servings(self, recipe_id: str, servings: Any) -> Recipe:
        amount = validate_servings(to_decimal(servings, "servings"))
        with self._locks.hold(("recipe", recipe_id)):
            with self._db.transaction():
                self._require_recipe(recipe_id)
                self._repo.update_recipe_servings(recipe_id, amount)
                self.aggregation.recompute(recipe_id)
        return self._require_recipe(recipe_id)

    def recompute_recipe(self, recipe_id: str) -> NutrientTotals:
        with self._locks.hold(("recipe", recipe_id)):
            return self.aggregation.recompute(recipe_id)

    def delete_recipe(self, recipe_id: str) -> bool:
        with self._locks.hold(("recipe", recipe_id)):
            with self._db.transaction():
                return self._repo.delete_recipe(recipe_id)

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    def _require_goal(self, goal_id: str) -> Goal:
        goal = self._repo.get_goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        return goal

    def get_goal(self, goal_id: str) -> Goal:
        return self._require_goal(goal_id)

    def create_goal(
        self,
        user_id: str,
        name: str,
        goal_type: str,
        target_value: Any,
        **options: Any,
    ) -> Goal:
        """Create a goal; see ``GoalTracker.create_goal`` for the options."""
        require_non_empty(user_id, "user_id")
        keys = [("goal-type", user_id, goal_type)] if self.goals.is_unique_type(goal_type) else []
        with self._locks.hold(*keys):
            with self._db.transaction():
                self._repo.ensure_user(user_id)
                return self.goals.create_goal(user_id, name, goal_type, target_value, **options)

    def apply_measurement(self, goal_id: str, measurement_id: str) -> Goal:
        """Explicitly fold a stored measurement into a goal."""
        measurement = self.get_measurement(measurement_id)
        with self._locks.hold(("goal", goal_id)):
            with self._db.transaction():
                goal = self._require_goal(goal_id)
                self.goals.apply_measurement(goal, measurement)
        return goal

    def pause_goal(self, goal_id: str) -> Goal:
        with self._locks.hold(("goal", goal_id)):
            with self._db.transaction():
                return self.goals.pause(self._require_goal(goal_id))

    def resume_goal(self, goal_id: str) -> Goal:
        goal = self._require_goal(goal_id)
        keys: list[tuple[str, ...]] = [("goal", goal_id)]
        if self.goals.is_unique_type(goal.goal_type):
            keys.append(("goal-type", goal.user_id, goal.goal_type))
        with self._locks.hold(*keys):
            with self._db.transaction():
                return self.goals.resume(self._require_goal(goal_id))

    def abandon_goal(self, goal_id: str) -> Goal:
        with self._locks.hold(("goal", goal_id)):
            with self._db.transaction():
                return self.goals.abandon(self._require_goal(goal_id))

    def goal_progress(self, goal_id: str, today: date | None = None) -> GoalProgress:
        goal = self._require_goal(goal_id)
        return self.goals.progress_report(goal, today or datetime.now(timezone.utc).date())

    def list_goals(self, user_id: str, *, status: str | None = None) -> list[Goal]:
        if status is not None:
            require_choice(status, GOAL_STATUSES, "status")
        return self._repo.get_goals(user_id, status=status)

    # ------------------------------------------------------------------
    # Biomarkers
    # ------------------------------------------------------------------

    def sync_reference_ranges(self) -> int:
        """Write the loaded reference ranges to the store.

        Logs of any range whose thresholds changed since the last sync are
        reclassified in the same transaction.

        Returns:
            Number of ranges that were new or changed.
        """
        changed = 0
        with self._db.transaction():
            for reference in self.classifier.ranges.values():
                if self._repo.upsert_biomarker_range(reference):
                    changed += 1
                    self._reclassify(reference)
        if changed:
            logger.info("Synchronized %d new or changed biomarker ranges", changed)
        return changed

    def classify(self, biomarker_name: str, value: Any, unit: str | None = None) -> str:
        return self.classifier.classify(biomarker_name, to_decimal(value), unit)

    def log_biomarker(
        self,
        user_id: str,
        biomarker_name: str,
        value: Any,
        *,
        unit: str | None = None,
        test_date: date | None = None,
        lab_name: str | None = None,
        notes: str | None = None,
        source: str = "manual",
    ) -> BiomarkerLog:
        """Store a lab result with its derived classification band."""
        amount = quantize(to_decimal(value, "value"))
        require_non_negative(amount, "value")
        band = self.classifier.classify(biomarker_name, amount, unit)
        log = BiomarkerLog(
            id="",
            user_id=require_non_empty(user_id, "user_id"),
            biomarker_name=self.classifier.get_range(biomarker_name).name,
            value=amount,
            classification=band,
            test_date=test_date or datetime.now(timezone.utc).date(),
            lab_name=lab_name,
            notes=notes,
            source=source,
        )
        with self._db.transaction():
            self._repo.ensure_user(user_id)
            self._repo.insert_biomarker_log(log)
        logger.info("Logged biomarker %s for user %s", biomarker_name, user_id)
        return log

    def biomarker_history(
        self, user_id: str, biomarker_name: str | None = None, *, limit: int = 50
    ) -> list[BiomarkerLog]:
        if biomarker_name is not None:
            biomarker_name = self.classifier.get_range(biomarker_name).name
        return self._repo.get_biomarker_logs(
            user_id=user_id, biomarker_name=biomarker_name, limit=limit
        )

    def reclassify_biomarker(self, biomarker_name: str) -> int:
        """Re-derive the stored band of every log of one biomarker.

        Returns:
            Number of logs whose band changed.
        """
        reference = self.classifier.get_range(biomarker_name)
        with self._db.transaction():
            return self._reclassify(reference)

    def _reclassify(self, reference: BiomarkerRange) -> int:
        changed = 0
        for log in self._repo.get_biomarker_logs(biomarker_name=reference.name):
            band = classification.classify(reference, log.value)
            if band != log.classification:
                self._repo.update_biomarker_classification(log.id, band)
                changed += 1
        if changed:
            logger.info("Reclassified %d %s logs", changed, reference.name)
        return changed

    # ------------------------------------------------------------------
    # Heart rate and HRV
    # ------------------------------------------------------------------

    def compute_zones(
        self,
        max_heart_rate: int,
        resting_heart_rate: int | None = None,
        method: str = "percentage",
    ) -> list[HeartRateZone]:
        validate_heart_rate_profile(max_heart_rate, resting_heart_rate)
        return classification.compute_zones(max_heart_rate, resting_heart_rate, method)

    def set_heart_rate_profile(
        self,
        user_id: str,
        *,
        max_heart_rate: int | None = None,
        resting_heart_rate: int | None = None,
        method: str = "percentage",
        age: int | None = None,
    ) -> HeartRateZoneProfile:
        """Store a user's zone profile, recomputing all five zones.

        ``max_heart_rate`` falls back to the age estimate (220 - age).

        Raises:
            MissingInputError: Neither max heart rate nor age given, or
                Karvonen without resting heart rate.
        """
        require_non_empty(user_id, "user_id")
        if max_heart_rate is None:
            if age is None:
                raise MissingInputError("max_heart_rate or age is required")
            max_heart_rate = classification.estimate_max_heart_rate(age)
        zones = self.compute_zones(max_heart_rate, resting_heart_rate, method)
        profile = HeartRateZoneProfile(
            user_id=user_id,
            max_heart_rate=max_heart_rate,
            resting_heart_rate=resting_heart_rate,
            calculation_method=method,
            zones=zones,
        )
        with self._locks.hold(("hr-profile", user_id)):
            with self._db.transaction():
                self._repo.ensure_user(user_id)
                self._repo.upsert_zone_profile(profile)
        logger.info("Updated %s heart rate zones for user %s", method, user_id)
        return profile

    def heart_rate_zones(self, user_id: str) -> HeartRateZoneProfile:
        profile = self._repo.get_zone_profile(user_id)
        if profile is None:
            raise NotFoundError(f"No heart rate zone profile for user {user_id}")
        return profile

    def zone_distribution(
        self, user_id: str, samples: Iterable[tuple[int, int]]
    ) -> list[ZoneTime]:
        """Time in each of the user's zones for ``(bpm, duration_seconds)`` samples."""
        profile = self.heart_rate_zones(user_id)
        return classification.zone_distribution(samples, profile.zones)

    def recovery_score(self, user_id: str) -> RecoveryScore:
        """Score the latest HRV reading against the mean of the prior week.

        Raises:
            NotFoundError: If the user has no HRV readings.
        """
        latest = self._repo.get_latest_measurement(user_id, DEFAULT_METRICS["hrv"])
        if latest is None:
            raise NotFoundError(f"No HRV data for user {user_id}")
        window = self._repo.get_measurements(
            user_id,
            metric=DEFAULT_METRICS["hrv"],
            since=latest.recorded_at - timedelta(days=RECOVERY_BASELINE_DAYS),
            until=latest.recorded_at,
        )
        baseline = (
            quantize(sum((m.value for m in window), Decimal(0)) / len(window)) if window else None
        )
        return classification.recovery_score(latest.value, baseline)
