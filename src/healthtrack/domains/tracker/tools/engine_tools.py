"""MCP tools exposing the health engine operations.

Each tool validates its string inputs, calls one ``HealthEngine`` operation
and returns a JSON document. Engine errors come back as
``{"status": "error", "error_type": ..., "message": ...}``; every call is
recorded in the PHI-free audit trail.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from healthtrack.core.errors import HealthEngineError, ValidationError
from healthtrack.domains.tracker.domain_logic.classification import range_shape

if TYPE_CHECKING:
    from healthtrack.core.audit.logger import AuditLogger
    from healthtrack.domains.tracker.domain_logic.engine import HealthEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def to_jsonable(value: Any) -> Any:
    """Convert engine results to JSON-safe values; Decimals become strings."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def parse_datetime(text: str, field_name: str) -> datetime | None:
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp, got {text!r}") from exc


def parse_date(text: str, field_name: str) -> date | None:
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO 8601 date, got {text!r}") from exc


def run_operation(
    tool_name: str,
    tool_input: dict[str, Any],
    operation: Callable[[], dict[str, Any]],
    audit_logger: AuditLogger | None,
) -> str:
    """Run one engine call, audit it and render the JSON response."""
    start_time = time.monotonic()
    try:
        payload = operation()
    except HealthEngineError as exc:
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info("%s failed: %s (%s)", tool_name, exc.code, exc)
        if audit_logger is not None:
            audit_logger.log_operation(
                tool_name, tool_input,
                duration_ms=round(elapsed_ms, 1), status="failure", error_type=exc.code,
            )
        return json.dumps({"status": "error", "error_type": exc.code, "message": str(exc)})

    elapsed_ms = (time.monotonic() - start_time) * 1000
    entity_id = payload.pop("_entity_id", None)
    if audit_logger is not None:
        audit_logger.log_operation(
            tool_name, tool_input, entity_id=entity_id, duration_ms=round(elapsed_ms, 1)
        )
    return json.dumps({"status": "ok", **to_jsonable(payload)})


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------

def register_engine_tools(
    mcp: FastMCP,
    engine: HealthEngine,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register raw-log, recipe, goal, biomarker and heart-rate tools."""

    # --- Raw logs -----------------------------------------------------------

    @mcp.tool
    async def log_measurement(
        ctx: Context,
        user_id: str,
        modality: str,
        value: float | None = None,
        unit: str = "",
        recorded_at: str = "",
        started_at: str = "",
        metric: str = "",
        protein_g: float | None = None,
        carbs_g: float | None = None,
        fat_g: float | None = None,
        fiber_g: float | None = None,
        notes: str = "",
    ) -> str:
        """Record a raw health log and update everything derived from it.

        Args:
            user_id: Owner of the log.
            modality: weight, nutrition, exercise, hydration, sleep, heart_rate or hrv.
            value: Reading in ``unit``. For sleep it may be omitted and is
                then derived from ``started_at`` and ``recorded_at``.
            unit: Input unit (e.g. 'lb', 'fl_oz', 'h'). Empty means canonical.
            recorded_at: ISO 8601 timestamp (session end for sleep). Defaults to now.
            started_at: ISO 8601 session start (sleep, exercise).
            metric: Metric name; defaults per modality (e.g. 'weight_kg').
            protein_g: Protein grams (nutrition only).
            carbs_g: Carbohydrate grams (nutrition only).
            fat_g: Fat grams (nutrition only).
            fiber_g: Fiber grams (nutrition only).
            notes: Free-text notes, encrypted at rest.
        """
        tool_input = {"user_id": user_id, "modality": modality, "unit": unit, "metric": metric}

        def operation() -> dict[str, Any]:
            components = {
                name: amount
                for name, amount in (
                    ("protein_g", protein_g), ("carbs_g", carbs_g),
                    ("fat_g", fat_g), ("fiber_g", fiber_g),
                )
                if amount is not None
            }
            result = engine.log_measurement(
                user_id,
                modality,
                value,
                unit or None,
                recorded_at=parse_datetime(recorded_at, "recorded_at"),
                started_at=parse_datetime(started_at, "started_at"),
                metric=metric or None,
                components=components,
                notes=notes or None,
            )
            m = result.measurement
            return {
                "_entity_id": m.id,
                "measurement_id": m.id,
                "metric": m.metric,
                "value": m.value,
                "unit": m.unit,
                "recorded_at": m.recorded_at,
                "is_anomaly": m.is_anomaly,
                "goals_updated": [
                    {"goal_id": g.id, "status": g.status, "current_value": g.current_value}
                    for g in result.updated_goals
                ],
            }

        return run_operation("log_measurement", tool_input, operation, audit_logger)

    @mcp.tool
    async def daily_summary(
        ctx: Context,
        user_id: str,
        modality: str,
        day: str = "",
    ) -> str:
        """Total, entry count and first/last time of one modality over a UTC day.

        Args:
            user_id: Owner of the logs.
            modality: Measurement modality.
            day: ISO 8601 date. Defaults to today (UTC).
        """
        def operation() -> dict[str, Any]:
            target = parse_date(day, "day") or datetime.now(timezone.utc).date()
            return {"summary": engine.daily_summary(user_id, modality, target)}

        return run_operation("daily_summary", {"user_id": user_id, "modality": modality}, operation, audit_logger)

    @mcp.tool
    async def daily_nutrition(ctx: Context, user_id: str, day: str = "") -> str:
        """Calories and macros summed over one UTC day of nutrition logs.

        Args:
            user_id: Owner of the logs.
            day: ISO 8601 date. Defaults to today (UTC).
        """
        def operation() -> dict[str, Any]:
            target = parse_date(day, "day") or datetime.now(timezone.utc).date()
            return {"date": target, "totals": engine.daily_nutrition(user_id, target)}

        return run_operation("daily_nutrition", {"user_id": user_id}, operation, audit_logger)

    @mcp.tool
    async def measurement_trend(ctx: Context, user_id: str, metric: str, days: int = 90) -> str:
        """Trend statistics (mean, median, spread, direction) for one metric.

        Args:
            user_id: Owner of the logs.
            metric: Metric name, e.g. 'weight_kg'.
            days: Look-back window in days (default: 90).
        """
        def operation() -> dict[str, Any]:
            return {"trend": engine.measurement_trend(user_id, metric, days=days)}

        return run_operation("measurement_trend", {"user_id": user_id, "metric": metric}, operation, audit_logger)

    # --- Food and recipes ---------------------------------------------------

    @mcp.tool
    async def create_food_item(
        ctx: Context,
        name: str,
        serving_size: float,
        serving_unit: str = "g",
        calories: float = 0,
        protein_g: float = 0,
        carbohydrates_g: float = 0,
        fat_g: float = 0,
        fiber_g: float = 0,
        brand: str = "",
    ) -> str:
        """Add a food to the catalog with its nutrients per serving."""
        def operation() -> dict[str, Any]:
            item = engine.create_food_item(
                name, serving_size,
                serving_unit=serving_unit, calories=calories, protein_g=protein_g,
                carbohydrates_g=carbohydrates_g, fat_g=fat_g, fiber_g=fiber_g,
                brand=brand or None,
            )
            return {"_entity_id": item.id, "food_item": item}

        return run_operation("create_food_item", {"name": name}, operation, audit_logger)

    @mcp.tool
    async def create_recipe(
        ctx: Context,
        user_id: str,
        name: str,
        servings: float = 1,
        description: str = "",
        ingredients: list[dict[str, Any]] | None = None,
    ) -> str:
        """Create a recipe and compute its per-serving nutrition.

        Args:
            user_id: Owner of the recipe.
            name: Recipe name.
            servings: Number of servings the recipe yields.
            description: Optional description.
            ingredients: Optional list of ``{"food_item_id": ..., "servings": ...}``.
        """
        def operation() -> dict[str, Any]:
            pairs = []
            for entry in ingredients or []:
                if "food_item_id" not in entry:
                    raise ValidationError("Each ingredient needs a food_item_id")
                pairs.append((entry["food_item_id"], entry.get("servings", 1)))
            recipe = engine.create_recipe(
                user_id, name, servings=servings, description=description or None, ingredients=pairs
            )
            return {"_entity_id": recipe.id, "recipe": recipe}

        return run_operation("create_recipe", {"user_id": user_id, "name": name}, operation, audit_logger)

    @mcp.tool
    async def get_recipe(ctx: Context, recipe_id: str) -> str:
        """Show a recipe with its ingredients and per-serving totals."""
        def operation() -> dict[str, Any]:
            return {
                "recipe": engine.get_recipe(recipe_id),
                "ingredients": engine.recipe_ingredients(recipe_id),
            }

        return run_operation("get_recipe", {"recipe_id": recipe_id}, operation, audit_logger)

    @mcp.tool
    async def add_recipe_ingredient(
        ctx: Context,
        recipe_id: str,
        food_item_id: str,
        servings: float = 1,
        sort_order: int | None = None,
    ) -> str:
        """Add a catalog food to a recipe and recompute the recipe totals."""
        def operation() -> dict[str, Any]:
            ingredient = engine.add_ingredient(recipe_id, food_item_id, servings, sort_order=sort_order)
            return {
                "_entity_id": ingredient.id,
                "ingredient": ingredient,
                "per_serving": engine.get_recipe(recipe_id).per_serving,
            }

        return run_operation(
            "add_recipe_ingredient", {"recipe_id": recipe_id, "food_item_id": food_item_id},
            operation, audit_logger,
        )

    @mcp.tool
    async def update_recipe_ingredient(
        ctx: Context,
        ingredient_id: str,
        servings: float | None = None,
        sort_order: int | None = None,
    ) -> str:
        """Change an ingredient's servings or position and recompute the recipe."""
        def operation() -> dict[str, Any]:
            ingredient = engine.update_ingredient(ingredient_id, servings=servings, sort_order=sort_order)
            return {
                "_entity_id": ingredient.id,
                "ingredient": ingredient,
                "per_serving": engine.get_recipe(ingredient.recipe_id).per_serving,
            }

        return run_operation("update_recipe_ingredient", {"ingredient_id": ingredient_id}, operation, audit_logger)

    @mcp.tool
    async def remove_recipe_ingredient(ctx: Context, ingredient_id: str) -> str:
        """Remove an ingredient from its recipe and recompute the recipe."""
        def operation() -> dict[str, Any]:
            totals = engine.remove_ingredient(ingredient_id)
            return {"_entity_id": ingredient_id, "per_serving": totals}

        return run_operation("remove_recipe_ingredient", {"ingredient_id": ingredient_id}, operation, audit_logger)

    @mcp.tool
    async def set_recipe_servings(ctx: Context, recipe_id: str, servings: float) -> str:
        """Change how many servings a recipe yields and recompute its totals."""
        def operation() -> dict[str, Any]:
            return {"_entity_id": recipe_id, "recipe": engine.set_recipe_servings(recipe_id, servings)}

        return run_operation("set_recipe_servings", {"recipe_id": recipe_id}, operation, audit_logger)

    @mcp.tool
    async def recompute_recipe(ctx: Context, recipe_id: str) -> str:
        """Recompute a recipe's per-serving totals from its current ingredients."""
        def operation() -> dict[str, Any]:
            return {"_entity_id": recipe_id, "per_serving": engine.recompute_recipe(recipe_id)}

        return run_operation("recompute_recipe", {"recipe_id": recipe_id}, operation, audit_logger)

    # --- Goals --------------------------------------------------------------

    @mcp.tool
    async def create_goal(
        ctx: Context,
        user_id: str,
        name: str,
        goal_type: str,
        target_value: float,
        metric: str = "",
        direction: str = "",
        start_value: float | None = None,
        start_date: str = "",
        target_date: str = "",
        description: str = "",
    ) -> str:
        """Create a goal with milestones at 25/50/75/100%.

        Args:
            user_id: Owner of the goal.
            name: Goal name.
            goal_type: weight, exercise, nutrition, hydration, sleep or custom.
            target_value: Target in the metric's canonical unit.
            metric: Tracked metric; defaults per goal type.
            direction: 'increasing' or 'decreasing'; weight defaults to decreasing.
            start_value: Starting value; defaults to the latest reading. Without
                one, increasing goals start at 0 and decreasing goals start
                from their first reading.
            start_date: ISO 8601 date. Defaults to today.
            target_date: Optional ISO 8601 deadline.
            description: Optional description.
        """
        def operation() -> dict[str, Any]:
            goal = engine.create_goal(
                user_id, name, goal_type, target_value,
                metric=metric or None,
                direction=direction or None,
                start_value=start_value,
                start_date=parse_date(start_date, "start_date"),
                target_date=parse_date(target_date, "target_date"),
                description=description or None,
            )
            return {"_entity_id": goal.id, "goal": goal}

        return run_operation("create_goal", {"user_id": user_id, "goal_type": goal_type}, operation, audit_logger)

    @mcp.tool
    async def apply_measurement_to_goal(ctx: Context, goal_id: str, measurement_id: str) -> str:
        """Fold a stored measurement into a goal's progress."""
        def operation() -> dict[str, Any]:
            return {"_entity_id": goal_id, "goal": engine.apply_measurement(goal_id, measurement_id)}

        return run_operation("apply_measurement_to_goal", {"goal_id": goal_id}, operation, audit_logger)

    @mcp.tool
    async def pause_goal(ctx: Context, goal_id: str) -> str:
        """Pause an active goal; measurements are ignored until it is resumed."""
        def operation() -> dict[str, Any]:
            return {"_entity_id": goal_id, "goal": engine.pause_goal(goal_id)}

        return run_operation("pause_goal", {"goal_id": goal_id}, operation, audit_logger)

    @mcp.tool
    async def resume_goal(ctx: Context, goal_id: str) -> str:
        """Resume a paused goal and apply the latest reading of its metric."""
        def operation() -> dict[str, Any]:
            return {"_entity_id": goal_id, "goal": engine.resume_goal(goal_id)}

        return run_operation("resume_goal", {"goal_id": goal_id}, operation, audit_logger)

    @mcp.tool
    async def abandon_goal(ctx: Context, goal_id: str) -> str:
        """Abandon an active or paused goal. This cannot be undone."""
        def operation() -> dict[str, Any]:
            return {"_entity_id": goal_id, "goal": engine.abandon_goal(goal_id)}

        return run_operation("abandon_goal", {"goal_id": goal_id}, operation, audit_logger)

    @mcp.tool
    async def goal_progress(ctx: Context, goal_id: str) -> str:
        """Progress percent, remaining amount, schedule status and milestones of a goal."""
        def operation() -> dict[str, Any]:
            return {"progress": engine.goal_progress(goal_id)}

        return run_operation("goal_progress", {"goal_id": goal_id}, operation, audit_logger)

    @mcp.tool
    async def list_goals(ctx: Context, user_id: str, status: str = "") -> str:
        """List a user's goals, optionally filtered by status."""
        def operation() -> dict[str, Any]:
            goals = engine.list_goals(user_id, status=status or None)
            return {"count": len(goals), "goals": goals}

        return run_operation("list_goals", {"user_id": user_id}, operation, audit_logger)

    # --- Biomarkers ---------------------------------------------------------

    @mcp.tool
    async def log_biomarker(
        ctx: Context,
        user_id: str,
        biomarker_name: str,
        value: float,
        unit: str = "",
        test_date: str = "",
        lab_name: str = "",
        notes: str = "",
    ) -> str:
        """Record a lab result; its band is derived from the reference range.

        Args:
            user_id: Owner of the result.
            biomarker_name: Reference name, e.g. 'ldl', 'vitamin_d'.
            value: Result in the reference unit.
            unit: Optional unit; must match the reference unit when given.
            test_date: ISO 8601 date. Defaults to today.
            lab_name: Optional lab name.
            notes: Free-text notes, encrypted at rest.
        """
        def operation() -> dict[str, Any]:
            log = engine.log_biomarker(
                user_id, biomarker_name, value,
                unit=unit or None,
                test_date=parse_date(test_date, "test_date"),
                lab_name=lab_name or None,
                notes=notes or None,
            )
            return {
                "_entity_id": log.id,
                "log_id": log.id,
                "biomarker_name": log.biomarker_name,
                "value": log.value,
                "classification": log.classification,
                "range_shape": range_shape(engine.classifier.get_range(log.biomarker_name)),
                "test_date": log.test_date,
            }

        return run_operation("log_biomarker", {"user_id": user_id, "biomarker_name": biomarker_name}, operation, audit_logger)

    @mcp.tool
    async def biomarker_history(
        ctx: Context,
        user_id: str,
        biomarker_name: str = "",
        limit: int = 50,
    ) -> str:
        """A user's lab results, newest first, with their bands."""
        def operation() -> dict[str, Any]:
            logs = engine.biomarker_history(user_id, biomarker_name or None, limit=limit)
            return {"count": len(logs), "results": logs}

        return run_operation("biomarker_history", {"user_id": user_id}, operation, audit_logger)

    @mcp.tool
    async def classify_biomarker(ctx: Context, biomarker_name: str, value: float, unit: str = "") -> str:
        """Classify a value against a biomarker's reference range without storing it."""
        def operation() -> dict[str, Any]:
            reference = engine.classifier.get_range(biomarker_name)
            return {
                "biomarker_name": biomarker_name,
                "classification": engine.classify(biomarker_name, value, unit or None),
                "range_shape": range_shape(reference),
                "reference": reference,
            }

        return run_operation("classify_biomarker", {"biomarker_name": biomarker_name}, operation, audit_logger)

    # --- Heart rate ---------------------------------------------------------

    @mcp.tool
    async def set_heart_rate_profile(
        ctx: Context,
        user_id: str,
        max_heart_rate: int | None = None,
        resting_heart_rate: int | None = None,
        method: str = "percentage",
        age: int | None = None,
    ) -> str:
        """Store heart-rate zones computed by percentage of max or Karvonen.

        Args:
            user_id: Owner of the profile.
            max_heart_rate: Max heart rate; estimated as 220 - age when omitted.
            resting_heart_rate: Resting heart rate (required for karvonen).
            method: 'percentage' or 'karvonen'.
            age: Used only to estimate a missing max heart rate.
        """
        def operation() -> dict[str, Any]:
            profile = engine.set_heart_rate_profile(
                user_id,
                max_heart_rate=max_heart_rate,
                resting_heart_rate=resting_heart_rate,
                method=method,
                age=age,
            )
            return {"_entity_id": user_id, "profile": profile}

        return run_operation("set_heart_rate_profile", {"user_id": user_id, "method": method}, operation, audit_logger)

    @mcp.tool
    async def heart_rate_zones(ctx: Context, user_id: str) -> str:
        """Show a user's stored heart-rate zones."""
        def operation() -> dict[str, Any]:
            return {"profile": engine.heart_rate_zones(user_id)}

        return run_operation("heart_rate_zones", {"user_id": user_id}, operation, audit_logger)

    @mcp.tool
    async def zone_distribution(ctx: Context, user_id: str, samples: list[list[int]]) -> str:
        """Time spent in each zone for a workout.

        Args:
            user_id: Owner of the zone profile.
            samples: List of ``[bpm, duration_seconds]`` pairs.
        """
        def operation() -> dict[str, Any]:
            pairs = []
            for sample in samples:
                if len(sample) != 2:
                    raise ValidationError("Each sample must be [bpm, duration_seconds]")
                pairs.append((int(sample[0]), int(sample[1])))
            return {"zones": engine.zone_distribution(user_id, pairs)}

        return run_operation("zone_distribution", {"user_id": user_id}, operation, audit_logger)

    @mcp.tool
    async def recovery_score(ctx: Context, user_id: str) -> str:
        """Recovery score from the latest HRV against the prior week's mean."""
        def operation() -> dict[str, Any]:
            return {"recovery": engine.recovery_score(user_id)}

        return run_operation("recovery_score", {"user_id": user_id}, operation, audit_logger)
