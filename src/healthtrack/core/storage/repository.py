"""Tracker repository — CRUD operations for the health record store.

The repository mediates between domain objects (Measurement, Recipe, Goal,
...) and the SQLite database, using FieldEncryptor for free-text notes. It
never commits on its own: callers that need atomicity wrap calls in
``HealthDatabase.transaction()``; outside a transaction each statement
autocommits.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from healthtrack.core.storage.database import HealthDatabase
from healthtrack.core.storage.encryption import FieldEncryptor
from healthtrack.core.storage.models import (
    BiomarkerLog,
    BiomarkerRange,
    FoodItem,
    Goal,
    HeartRateZone,
    HeartRateZoneProfile,
    Measurement,
    Milestone,
    NutrientTotals,
    Recipe,
    RecipeIngredient,
)

logger = logging.getLogger(__name__)

_ZONE_NAMES = ("Recovery", "Aerobic", "Tempo", "Threshold", "VO2 Max")


class RepositoryError(Exception):
    """Raised when repository operations fail."""


def to_iso(moment: datetime) -> str:
    """Render a timestamp as fixed-width UTC ISO 8601 so text order is time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(text: str | None) -> datetime | None:
    if not text:
        return None
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dec(text: str | None) -> Decimal | None:
    return Decimal(text) if text is not None else None


def _dec_text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class TrackerRepository:
    """CRUD repository for raw logs, recipes, goals, biomarkers and zone profiles.

    Usage::

        db = HealthDatabase(":memory:")
        db.initialize()
        repo = TrackerRepository(db, FieldEncryptor(key="..."))

        repo.ensure_user("user-1")
        with db.transaction():
            mid = repo.insert_measurement(measurement)
        latest = repo.get_latest_measurement("user-1", "weight_kg")
    """

    def __init__(self, database: HealthDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @property
    def database(self) -> HealthDatabase:
        return self._db

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return to_iso(datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Users (ownership root)
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str) -> str:
        """Create the user row if it does not exist yet."""
        self._db.execute(
            "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
            (user_id, self._now_iso()),
        )
        return user_id

    def user_exists(self, user_id: str) -> bool:
        return bool(self._db.query("SELECT 1 FROM users WHERE id = ?", (user_id,)))

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; foreign keys cascade to every owned row."""
        deleted = self._db.execute("DELETE FROM users WHERE id = ?", (user_id,))
        if deleted:
            logger.info("Deleted user %s and all owned records", user_id)
        return deleted > 0

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------

    def insert_measurement(self, measurement: Measurement) -> str:
        """Persist a raw log entry.

        Args:
            measurement: The entry to save. If ``measurement.id`` is empty,
                a UUID will be generated.

        Returns:
            The measurement ID.
        """
        mid = measurement.id or self._new_id()
        components = (
            json.dumps({k: str(v) for k, v in measurement.components.items()}, separators=(",", ":"))
            if measurement.components
            else None
        )
        self._db.execute(
            """INSERT INTO measurements (
                id, user_id, modality, metric, recorded_at, started_at,
                value, unit, components_json, source, notes_enc, is_anomaly, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                mid,
                measurement.user_id,
                measurement.modality,
                measurement.metric,
                to_iso(measurement.recorded_at),
                to_iso(measurement.started_at) if measurement.started_at else None,
                str(measurement.value),
                measurement.unit,
                components,
                measurement.source,
                self._enc.encrypt(measurement.notes),
                1 if measurement.is_anomaly else 0,
                measurement.created_at or self._now_iso(),
            ),
        )
        measurement.id = mid
        return mid

    def get_measurement(self, measurement_id: str) -> Measurement | None:
        rows = self._db.query("SELECT * FROM measurements WHERE id = ?", (measurement_id,))
        return self._row_to_measurement(rows[0]) if rows else None

    def get_measurements(
        self,
        user_id: str,
        *,
        modality: str | None = None,
        metric: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Measurement]:
        """Query a user's logs with optional filters.

        Args:
            since: Lower bound on ``recorded_at`` (inclusive).
            until: Upper bound on ``recorded_at`` (exclusive).

        Returns:
            Measurements ordered by ``recorded_at`` (oldest first unless
            ``newest_first``).
        """
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]

        if modality:
            conditions.append("modality = ?")
            params.append(modality)
        if metric:
            conditions.append("metric = ?")
            params.append(metric)
        if since:
            conditions.append("recorded_at >= ?")
            params.append(to_iso(since))
        if until:
            conditions.append("recorded_at < ?")
            params.append(to_iso(until))

        order = "DESC" if newest_first else "ASC"
        query = (
            f"SELECT * FROM measurements WHERE {' AND '.join(conditions)} "
            f"ORDER BY recorded_at {order}, created_at {order}"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return [self._row_to_measurement(row) for row in self._db.query(query, params)]

    def get_latest_measurement(
        self,
        user_id: str,
        metric: str,
        *,
        before: datetime | None = None,
        exclude_id: str | None = None,
    ) -> Measurement | None:
        """Most recent log of a metric, optionally strictly before a timestamp."""
        conditions = ["user_id = ?", "metric = ?"]
        params: list[Any] = [user_id, metric]
        if before is not None:
            conditions.append("recorded_at < ?")
            params.append(to_iso(before))
        if exclude_id is not None:
            conditions.append("id != ?")
            params.append(exclude_id)
        rows = self._db.query(
            f"SELECT * FROM measurements WHERE {' AND '.join(conditions)} "
            "ORDER BY recorded_at DESC, created_at DESC LIMIT 1",
            params,
        )
        return self._row_to_measurement(rows[0]) if rows else None

    def mark_anomaly(self, measurement_id: str, is_anomaly: bool = True) -> None:
        self._db.execute(
            "UPDATE measurements SET is_anomaly = ? WHERE id = ?",
            (1 if is_anomaly else 0, measurement_id),
        )

    def delete_measurement(self, measurement_id: str) -> bool:
        return self._db.execute("DELETE FROM measurements WHERE id = ?", (measurement_id,)) > 0

    def count_measurements(self, user_id: str | None = None) -> int:
        if user_id is None:
            return self._db.query("SELECT COUNT(*) FROM measurements")[0][0]
        return self._db.query(
            "SELECT COUNT(*) FROM measurements WHERE user_id = ?", (user_id,)
        )[0][0]

    # ------------------------------------------------------------------
    # Food items
    # ------------------------------------------------------------------

    def insert_food_item(self, item: FoodItem) -> str:
        fid = item.id or self._new_id()
        self._db.execute(
            """INSERT INTO food_items
               (id, name, brand, serving_size, serving_unit, calories,
                protein_g, carbohydrates_g, fat_g, fiber_g, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                fid,
                item.name,
                item.brand,
                str(item.serving_size),
                item.serving_unit,
                str(item.calories),
                str(item.protein_g),
                str(item.carbohydrates_g),
                str(item.fat_g),
                str(item.fiber_g),
                self._now_iso(),
            ),
        )
        item.id = fid
        return fid

    def get_food_item(self, food_item_id: str) -> FoodItem | None:
        rows = self._db.query("SELECT * FROM food_items WHERE id = ?", (food_item_id,))
        return self._row_to_food_item(rows[0]) if rows else None

    def delete_food_item(self, food_item_id: str) -> bool:
        return self._db.execute("DELETE FROM food_items WHERE id = ?", (food_item_id,)) > 0

    def recipes_using_food(self, food_item_id: str) -> list[str]:
        rows = self._db.query(
            "SELECT DISTINCT recipe_id FROM recipe_ingredients WHERE food_item_id = ? ORDER BY recipe_id",
            (food_item_id,),
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Recipes and ingredients
    # ------------------------------------------------------------------

    def insert_recipe(self, recipe: Recipe) -> str:
        rid = recipe.id or self._new_id()
        now = self._now_iso()
        totals = recipe.per_serving
        self._db.execute(
            """INSERT INTO recipes
               (id, user_id, name, description, servings,
                calories_per_serving, protein_per_serving, carbs_per_serving,
                fat_per_serving, fiber_per_serving, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                rid,
                recipe.user_id,
                recipe.name,
                recipe.description,
                str(recipe.servings),
                str(totals.calories),
                str(totals.protein_g),
                str(totals.carbs_g),
                str(totals.fat_g),
                str(totals.fiber_g),
                now,
                now,
            ),
        )
        recipe.id = rid
        recipe.created_at = recipe.updated_at = now
        return rid

    def get_recipe(self, recipe_id: str) -> Recipe | None:
        rows = self._db.query("SELECT * FROM recipes WHERE id = ?", (recipe_id,))
        return self._row_to_recipe(rows[0]) if rows else None

    def get_recipes(self, user_id: str) -> list[Recipe]:
        rows = self._db.query(
            "SELECT * FROM recipes WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [self._row_to_recipe(row) for row in rows]

    def update_recipe_servings(self, recipe_id: str, servings: Decimal) -> None:
        self._db.execute(
            "UPDATE recipes SET servings = ? WHERE id = ?", (str(servings), recipe_id)
        )

    def update_recipe_totals(self, recipe_id: str, totals: NutrientTotals) -> str:
        """Write derived per-serving totals and stamp ``updated_at``."""
        now = self._now_iso()
        self._db.execute(
            """UPDATE recipes SET
                   calories_per_serving = ?, protein_per_serving = ?, carbs_per_serving = ?,
                   fat_per_serving = ?, fiber_per_serving = ?, updated_at = ?
               WHERE id = ?""",
            (
                str(totals.calories),
                str(totals.protein_g),
                str(totals.carbs_g),
                str(totals.fat_g),
                str(totals.fiber_g),
                now,
                recipe_id,
            ),
        )
        return now

    def delete_recipe(self, recipe_id: str) -> bool:
        return self._db.execute("DELETE FROM recipes WHERE id = ?", (recipe_id,)) > 0

    def insert_ingredient(self, ingredient: RecipeIngredient) -> str:
        iid = ingredient.id or self._new_id()
        self._db.execute(
            """INSERT INTO recipe_ingredients
               (id, recipe_id, food_item_id, servings, sort_order, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                iid,
                ingredient.recipe_id,
                ingredient.food_item_id,
                str(ingredient.servings),
                ingredient.sort_order,
                self._now_iso(),
            ),
        )
        ingredient.id = iid
        return iid

    def get_ingredient(self, ingredient_id: str) -> RecipeIngredient | None:
        rows = self._db.query("SELECT * FROM recipe_ingredients WHERE id = ?", (ingredient_id,))
        return self._row_to_ingredient(rows[0]) if rows else None

    def find_ingredient(self, recipe_id: str, food_item_id: str) -> RecipeIngredient | None:
        rows = self._db.query(
            "SELECT * FROM recipe_ingredients WHERE recipe_id = ? AND food_item_id = ?",
            (recipe_id, food_item_id),
        )
        return self._row_to_ingredient(rows[0]) if rows else None

    def update_ingredient(self, ingredient_id: str, servings: Decimal, sort_order: int) -> None:
        self._db.execute(
            "UPDATE recipe_ingredients SET servings = ?, sort_order = ? WHERE id = ?",
            (str(servings), sort_order, ingredient_id),
        )

    def delete_ingredient(self, ingredient_id: str) -> bool:
        return self._db.execute(
            "DELETE FROM recipe_ingredients WHERE id = ?", (ingredient_id,)
        ) > 0

    def get_ingredients(self, recipe_id: str) -> list[RecipeIngredient]:
        rows = self._db.query(
            "SELECT * FROM recipe_ingredients WHERE recipe_id = ? ORDER BY sort_order, created_at",
            (recipe_id,),
        )
        return [self._row_to_ingredient(row) for row in rows]

    def get_ingredient_nutrition(
        self, recipe_id: str
    ) -> list[tuple[RecipeIngredient, FoodItem | None]]:
        """Ingredients paired with their food item (None when the reference dangles)."""
        rows = self._db.query(
            """SELECT ri.id AS ri_id, ri.recipe_id, ri.food_item_id, ri.servings AS ri_servings,
                      ri.sort_order, fi.*
               FROM recipe_ingredients ri
               LEFT JOIN food_items fi ON fi.id = ri.food_item_id
               WHERE ri.recipe_id = ?
               ORDER BY ri.sort_order, ri.created_at""",
            (recipe_id,),
        )
        pairs = []
        for row in rows:
            ingredient = RecipeIngredient(
                id=row["ri_id"],
                recipe_id=row["recipe_id"],
                food_item_id=row["food_item_id"],
                servings=Decimal(row["ri_servings"]),
                sort_order=row["sort_order"],
            )
            food = self._row_to_food_item(row) if row["id"] is not None else None
            pairs.append((ingredient, food))
        return pairs

    # ------------------------------------------------------------------
    # Goals and milestones
    # ------------------------------------------------------------------

    def insert_goal(self, goal: Goal) -> str:
        """Persist a goal together with its milestones."""
        gid = goal.id or self._new_id()
        now = self._now_iso()
        self._db.execute(
            """INSERT INTO goals
               (id, user_id, name, description, goal_type, metric, target_value,
                start_value, current_value, direction, start_date, target_date,
                status, completed_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                gid,
                goal.user_id,
                goal.name,
                goal.description,
                goal.goal_type,
                goal.metric,
                str(goal.target_value),
                _dec_text(goal.start_value),
                _dec_text(goal.current_value),
                goal.direction,
                goal.start_date.isoformat(),
                goal.target_date.isoformat() if goal.target_date else None,
                goal.status,
                to_iso(goal.completed_at) if goal.completed_at else None,
                now,
                now,
            ),
        )
        goal.id = gid
        goal.created_at = goal.updated_at = now
        for milestone in goal.milestones:
            milestone.goal_id = gid
            milestone.id = milestone.id or self._new_id()
            self._db.execute(
                """INSERT INTO goal_milestones
                   (id, goal_id, name, target_value, percentage, achieved_at, actual_value, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    milestone.id,
                    gid,
                    milestone.name,
                    _dec_text(milestone.target_value),
                    milestone.percentage,
                    to_iso(milestone.achieved_at) if milestone.achieved_at else None,
                    _dec_text(milestone.actual_value),
                    now,
                ),
            )
        return gid

    def get_goal(self, goal_id: str) -> Goal | None:
        rows = self._db.query("SELECT * FROM goals WHERE id = ?", (goal_id,))
        if not rows:
            return None
        goal = self._row_to_goal(rows[0])
        goal.milestones = self.get_milestones(goal_id)
        return goal

    def get_goals(
        self,
        user_id: str,
        *,
        status: str | None = None,
        goal_type: str | None = None,
        metric: str | None = None,
    ) -> list[Goal]:
        conditions = ["user_id = ?"]
        params: list[Any] = [user_id]
        if status:
            conditions.append("status = ?")
            params.append(status)
        if goal_type:
            conditions.append("goal_type = ?")
            params.append(goal_type)
        if metric:
            conditions.append("metric = ?")
            params.append(metric)
        rows = self._db.query(
            f"SELECT * FROM goals WHERE {' AND '.join(conditions)} ORDER BY created_at, id",
            params,
        )
        goals = [self._row_to_goal(row) for row in rows]
        for goal in goals:
            goal.milestones = self.get_milestones(goal.id)
        return goals

    def get_milestones(self, goal_id: str) -> list[Milestone]:
        rows = self._db.query(
            "SELECT * FROM goal_milestones WHERE goal_id = ? ORDER BY percentage, created_at",
            (goal_id,),
        )
        return [
            Milestone(
                id=row["id"],
                goal_id=row["goal_id"],
                name=row["name"],
                target_value=_dec(row["target_value"]),
                percentage=row["percentage"],
                achieved_at=from_iso(row["achieved_at"]),
                actual_value=_dec(row["actual_value"]),
            )
            for row in rows
        ]

    def save_goal_state(self, goal: Goal) -> None:
        """Write the mutable parts of a goal and its milestones.

        The start value is written too, since a goal created before any
        reading takes its start from the first one.
        """
        now = self._now_iso()
        self._db.execute(
            """UPDATE goals SET start_value = ?, current_value = ?, status = ?,
                      completed_at = ?, updated_at = ?
               WHERE id = ?""",
            (
                _dec_text(goal.start_value),
                _dec_text(goal.current_value),
                goal.status,
                to_iso(goal.completed_at) if goal.completed_at else None,
                now,
                goal.id,
            ),
        )
        goal.updated_at = now
        for milestone in goal.milestones:
            self._db.execute(
                """UPDATE goal_milestones SET target_value = ?, achieved_at = ?, actual_value = ?
                   WHERE id = ?""",
                (
                    _dec_text(milestone.target_value),
                    to_iso(milestone.achieved_at) if milestone.achieved_at else None,
                    _dec_text(milestone.actual_value),
                    milestone.id,
                ),
            )

    # ------------------------------------------------------------------
    # Biomarker reference ranges
    # ------------------------------------------------------------------

    def upsert_biomarker_range(self, reference: BiomarkerRange) -> bool:
        """Insert or update a reference range.

        Returns:
            True if the stored thresholds differ from what was there before
            (a new range, or a changed definition).
        """
        previous = self.get_biomarker_range(reference.name)
        self._db.execute(
            """INSERT INTO biomarker_ranges
               (name, display_name, category, unit, low_threshold, optimal_min,
                optimal_max, high_threshold, description)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                   display_name = excluded.display_name,
                   category = excluded.category,
                   unit = excluded.unit,
                   low_threshold = excluded.low_threshold,
                   optimal_min = excluded.optimal_min,
                   optimal_max = excluded.optimal_max,
                   high_threshold = excluded.high_threshold,
                   description = excluded.description""",
            (
                reference.name,
                reference.display_name,
                reference.category,
                reference.unit,
                _dec_text(reference.low_threshold),
                _dec_text(reference.optimal_min),
                _dec_text(reference.optimal_max),
                _dec_text(reference.high_threshold),
                reference.description,
            ),
        )
        return previous is None or previous.thresholds() != reference.thresholds()

    def get_biomarker_range(self, name: str) -> BiomarkerRange | None:
        rows = self._db.query("SELECT * FROM biomarker_ranges WHERE name = ?", (name,))
        return self._row_to_range(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Biomarker logs
    # ------------------------------------------------------------------

    def insert_biomarker_log(self, log: BiomarkerLog) -> str:
        lid = log.id or self._new_id()
        self._db.execute(
            """INSERT INTO biomarker_logs
               (id, user_id, biomarker_name, value, classification, test_date,
                lab_name, notes_enc, source, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                lid,
                log.user_id,
                log.biomarker_name,
                str(log.value),
                log.classification,
                log.test_date.isoformat(),
                log.lab_name,
                self._enc.encrypt(log.notes),
                log.source,
                log.created_at or self._now_iso(),
            ),
        )
        log.id = lid
        return lid

    def get_biomarker_logs(
        self,
        *,
        user_id: str | None = None,
        biomarker_name: str | None = None,
        limit: int | None = None,
    ) -> list[BiomarkerLog]:
        """Biomarker logs, newest test first."""
        conditions: list[str] = []
        params: list[Any] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if biomarker_name:
            conditions.append("biomarker_name = ?")
            params.append(biomarker_name)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM biomarker_logs{where} ORDER BY test_date DESC, created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [self._row_to_biomarker_log(row) for row in self._db.query(query, params)]

    def update_biomarker_classification(self, log_id: str, classification: str) -> None:
        self._db.execute(
            "UPDATE biomarker_logs SET classification = ? WHERE id = ?",
            (classification, log_id),
        )

    # ------------------------------------------------------------------
    # Heart-rate zone profiles
    # ------------------------------------------------------------------

    def upsert_zone_profile(self, profile: HeartRateZoneProfile) -> None:
        """Replace a user's zone profile; all five zones are written together."""
        if len(profile.zones) != 5:
            raise RepositoryError(f"Expected 5 heart rate zones, got {len(profile.zones)}")
        now = self._now_iso()
        bounds: list[int] = []
        for zone in sorted(profile.zones, key=lambda z: z.zone):
            bounds.extend((zone.min_bpm, zone.max_bpm))
        self._db.execute(
            """INSERT INTO heart_rate_zones
               (user_id, max_heart_rate, resting_heart_rate,
                zone1_min, zone1_max, zone2_min, zone2_max, zone3_min, zone3_max,
                zone4_min, zone4_max, zone5_min, zone5_max,
                calculation_method, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
                   max_heart_rate = excluded.max_heart_rate,
                   resting_heart_rate = excluded.resting_heart_rate,
                   zone1_min = excluded.zone1_min, zone1_max = excluded.zone1_max,
                   zone2_min = excluded.zone2_min, zone2_max = excluded.zone2_max,
                   zone3_min = excluded.zone3_min, zone3_max = excluded.zone3_max,
                   zone4_min = excluded.zone4_min, zone4_max = excluded.zone4_max,
                   zone5_min = excluded.zone5_min, zone5_max = excluded.zone5_max,
                   calculation_method = excluded.calculation_method,
                   updated_at = excluded.updated_at""",
            (
                profile.user_id,
                profile.max_heart_rate,
                profile.resting_heart_rate,
                *bounds,
                profile.calculation_method,
                now,
                now,
            ),
        )
        profile.updated_at = now

    def get_zone_profile(self, user_id: str) -> HeartRateZoneProfile | None:
        rows = self._db.query("SELECT * FROM heart_rate_zones WHERE user_id = ?", (user_id,))
        if not rows:
            return None
        row = rows[0]
        zones = [
            HeartRateZone(
                zone=n,
                name=_ZONE_NAMES[n - 1],
                min_bpm=row[f"zone{n}_min"],
                max_bpm=row[f"zone{n}_max"],
            )
            for n in range(1, 6)
        ]
        return HeartRateZoneProfile(
            user_id=row["user_id"],
            max_heart_rate=row["max_heart_rate"],
            resting_heart_rate=row["resting_heart_rate"],
            calculation_method=row["calculation_method"],
            zones=zones,
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _row_to_measurement(self, row: Any) -> Measurement:
        components: dict[str, Decimal] = {}
        if row["components_json"]:
            components = {k: Decimal(v) for k, v in json.loads(row["components_json"]).items()}
        return Measurement(
            id=row["id"],
            user_id=row["user_id"],
            modality=row["modality"],
            metric=row["metric"],
            recorded_at=from_iso(row["recorded_at"]),
            started_at=from_iso(row["started_at"]),
            value=Decimal(row["value"]),
            unit=row["unit"],
            components=components,
            source=row["source"],
            notes=self._enc.decrypt(row["notes_enc"]),
            is_anomaly=bool(row["is_anomaly"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_food_item(row: Any) -> FoodItem:
        return FoodItem(
            id=row["id"],
            name=row["name"],
            brand=row["brand"],
            serving_size=Decimal(row["serving_size"]),
            serving_unit=row["serving_unit"],
            calories=Decimal(row["calories"]),
            protein_g=Decimal(row["protein_g"]),
            carbohydrates_g=Decimal(row["carbohydrates_g"]),
            fat_g=Decimal(row["fat_g"]),
            fiber_g=Decimal(row["fiber_g"]),
        )

    @staticmethod
    def _row_to_recipe(row: Any) -> Recipe:
        return Recipe(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            servings=Decimal(row["servings"]),
            per_serving=NutrientTotals(
                calories=Decimal(row["calories_per_serving"]),
                protein_g=Decimal(row["protein_per_serving"]),
                carbs_g=Decimal(row["carbs_per_serving"]),
                fat_g=Decimal(row["fat_per_serving"]),
                fiber_g=Decimal(row["fiber_per_serving"]),
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_ingredient(row: Any) -> RecipeIngredient:
        return RecipeIngredient(
            id=row["id"],
            recipe_id=row["recipe_id"],
            food_item_id=row["food_item_id"],
            servings=Decimal(row["servings"]),
            sort_order=row["sort_order"],
        )

    @staticmethod
    def _row_to_goal(row: Any) -> Goal:
        return Goal(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            goal_type=row["goal_type"],
            metric=row["metric"],
            target_value=Decimal(row["target_value"]),
            start_value=_dec(row["start_value"]),
            current_value=_dec(row["current_value"]),
            direction=row["direction"],
            start_date=date.fromisoformat(row["start_date"]),
            target_date=date.fromisoformat(row["target_date"]) if row["target_date"] else None,
            status=row["status"],
            completed_at=from_iso(row["completed_at"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_range(row: Any) -> BiomarkerRange:
        return BiomarkerRange(
            name=row["name"],
            display_name=row["display_name"],
            category=row["category"],
            unit=row["unit"],
            low_threshold=_dec(row["low_threshold"]),
            optimal_min=_dec(row["optimal_min"]),
            optimal_max=_dec(row["optimal_max"]),
            high_threshold=_dec(row["high_threshold"]),
            description=row["description"] or "",
        )

    def _row_to_biomarker_log(self, row: Any) -> BiomarkerLog:
        return BiomarkerLog(
            id=row["id"],
            user_id=row["user_id"],
            biomarker_name=row["biomarker_name"],
            value=Decimal(row["value"]),
            classification=row["classification"],
            test_date=date.fromisoformat(row["test_date"]),
            lab_name=row["lab_name"],
            notes=self._enc.decrypt(row["notes_enc"]),
            source=row["source"],
            created_at=row["created_at"],
        )
