"""Tests for the HealthEngine facade: atomic writes, derived state, concurrency."""

from __future__ import annotations

import dataclasses
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from healthtrack.core.errors import (
    ConflictError,
    MissingInputError,
    NotFoundError,
    UnsupportedUnitError,
    ValidationError,
)
from healthtrack.domains.tracker.domain_logic.engine import HealthEngine


def _at(day: int, hour: int = 8) -> datetime:
    return datetime(2026, 3, day, hour, tzinfo=timezone.utc)


def _run_threads(targets) -> None:
    threads = [threading.Thread(target=target) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)


class TestLogMeasurement:
    def test_normalizes_and_stores(self, engine):
        logged = engine.log_measurement("u1", "weight", 200, "lb", recorded_at=_at(1))
        stored = engine.get_measurement(logged.measurement.id)
        assert stored.value == Decimal("90.7184")
        assert stored.unit == "kg"
        assert stored.metric == "weight_kg"

    def test_creates_user_on_first_log(self, engine):
        engine.log_measurement("new-user", "hydration", 250, "ml")
        assert engine.repository.user_exists("new-user")

    def test_out_of_range_rejected_before_persistence(self, engine):
        with pytest.raises(ValidationError):
            engine.log_measurement("u1", "heart_rate", 320)
        assert engine.repository.count_measurements() == 0

    def test_unsupported_unit(self, engine):
        with pytest.raises(UnsupportedUnitError):
            engine.log_measurement("u1", "hydration", 1, "bucket")

    def test_nutrition_components(self, engine):
        engine.log_measurement(
            "u1", "nutrition", 520, "kcal", recorded_at=_at(2),
            components={"protein_g": 30, "fat_g": "12.5"},
        )
        totals = engine.daily_nutrition("u1", date(2026, 3, 2))
        assert totals.calories == Decimal("520.00")
        assert totals.protein_g == Decimal("30.00")
        assert totals.fat_g == Decimal("12.50")

    def test_unknown_component_rejected(self, engine):
        with pytest.raises(ValidationError, match="Unsupported component"):
            engine.log_measurement("u1", "hydration", 250, components={"protein_g": 1})

    def test_notes_round_trip(self, engine):
        logged = engine.log_measurement("u1", "weight", 80, notes="after travel")
        assert engine.get_measurement(logged.measurement.id).notes == "after travel"

    def test_oversized_values_rejected(self, engine):
        with pytest.raises(ValidationError, match="out of range"):
            engine.log_measurement("u1", "hydration", "1e30", "ml")
        with pytest.raises(ValidationError, match="out of range"):
            engine.log_measurement("u1", "nutrition", 500, components={"protein_g": "1e30"})
        assert engine.repository.count_measurements() == 0


class TestSleep:
    def test_duration_derived_from_session(self, engine):
        logged = engine.log_measurement(
            "u1", "sleep", recorded_at=_at(2, 7), started_at=_at(1, 23),
        )
        assert logged.measurement.value == Decimal("480.0000")
        assert logged.measurement.unit == "min"

    def test_start_required(self, engine):
        with pytest.raises(ValidationError, match="started_at is required"):
            engine.log_measurement("u1", "sleep", 420, recorded_at=_at(2, 7))

    def test_end_before_start_rejected(self, engine):
        with pytest.raises(ValidationError, match="must be after start"):
            engine.log_measurement("u1", "sleep", recorded_at=_at(1, 22), started_at=_at(1, 23))

    def test_value_required_for_point_modalities(self, engine):
        with pytest.raises(ValidationError, match="value is required"):
            engine.log_measurement("u1", "weight")


class TestWeightAnomaly:
    def test_jump_flagged(self, engine):
        engine.log_measurement("u1", "weight", 80, recorded_at=_at(1))
        logged = engine.log_measurement("u1", "weight", 84, recorded_at=_at(2))
        assert logged.measurement.is_anomaly is True
        assert engine.get_measurement(logged.measurement.id).is_anomaly is True

    def test_small_change_not_flagged(self, engine):
        engine.log_measurement("u1", "weight", 80, recorded_at=_at(1))
        logged = engine.log_measurement("u1", "weight", 80.8, recorded_at=_at(2))
        assert logged.measurement.is_anomaly is False


class TestGoalsThroughEngine:
    def test_measurement_updates_goal(self, engine):
        goal = engine.create_goal("u1", "Cut", "weight", 80, start_value=90)
        logged = engine.log_measurement("u1", "weight", 85, recorded_at=_at(2))
        assert [g.id for g in logged.updated_goals] == [goal.id]
        progress = engine.goal_progress(goal.id, today=date(2026, 3, 2))
        assert progress.progress_percent == Decimal("50.00")

    def test_weight_goal_conflict(self, engine):
        engine.create_goal("u1", "Cut", "weight", 80, start_value=90)
        with pytest.raises(ConflictError):
            engine.create_goal("u1", "Cut more", "weight", 75, start_value=90)

    def test_delete_measurement_refreshes_goal(self, engine):
        goal = engine.create_goal("u1", "Cut", "weight", 80, start_value=90)
        engine.log_measurement("u1", "weight", 88, recorded_at=_at(2))
        latest = engine.log_measurement("u1", "weight", 86, recorded_at=_at(3))
        engine.delete_measurement(latest.measurement.id)
        assert engine.get_goal(goal.id).current_value == Decimal("88.0000")

    def test_explicit_apply(self, engine):
        logged = engine.log_measurement("u1", "hydration", 1500, recorded_at=_at(2))
        goal = engine.create_goal("u1", "Drink", "hydration", 2000, start_value=0)
        updated = engine.apply_measurement(goal.id, logged.measurement.id)
        assert updated.current_value == Decimal("1500.0000")

    def test_lifecycle(self, engine):
        goal = engine.create_goal("u1", "Cut", "weight", 80, start_value=90)
        assert engine.pause_goal(goal.id).status == "paused"
        assert engine.resume_goal(goal.id).status == "active"
        assert engine.abandon_goal(goal.id).status == "abandoned"
        assert engine.list_goals("u1", status="abandoned")[0].id == goal.id

    def test_missing_goal(self, engine):
        with pytest.raises(NotFoundError):
            engine.goal_progress("nope")

    def test_list_goals_rejects_unknown_status(self, engine):
        with pytest.raises(ValidationError):
            engine.list_goals("u1", status="done")

    def test_weight_goal_without_start_follows_first_log(self, engine):
        goal = engine.create_goal("u1", "Cut", "weight", 80)
        assert goal.start_value is None
        engine.log_measurement("u1", "weight", 85, recorded_at=_at(2))
        engine.log_measurement("u1", "weight", 80, recorded_at=_at(3))
        stored = engine.get_goal(goal.id)
        assert stored.start_value == Decimal("85.0000")
        assert stored.status == "completed"


class TestRecipes:
    @pytest.fixture
    def foods(self, engine):
        oats = engine.create_food_item("Oats", 40, calories=150, protein_g=5, fat_g=3)
        milk = engine.create_food_item("Milk", 250, serving_unit="ml", calories=100, protein_g=8, fat_g="2.5")
        return oats, milk

    def test_create_with_ingredients(self, engine, foods):
        oats, milk = foods
        recipe = engine.create_recipe("u1", "Porridge", servings=2, ingredients=[(oats.id, 2), (milk.id, 1)])
        assert recipe.per_serving.calories == Decimal("200.00")
        assert recipe.per_serving.fat_g == Decimal("4.25")

    def test_add_update_remove(self, engine, foods):
        oats, milk = foods
        recipe = engine.create_recipe("u1", "Porridge")
        engine.add_ingredient(recipe.id, oats.id, 1)
        ingredient = engine.add_ingredient(recipe.id, milk.id, 1)
        assert engine.get_recipe(recipe.id).per_serving.calories == Decimal("250.00")

        engine.update_ingredient(ingredient.id, servings=2)
        assert engine.get_recipe(recipe.id).per_serving.calories == Decimal("350.00")

        totals = engine.remove_ingredient(ingredient.id)
        assert totals.calories == Decimal("150.00")
        assert [i.food_item_id for i in engine.recipe_ingredients(recipe.id)] == [oats.id]

    def test_duplicate_ingredient_conflicts(self, engine, foods):
        oats, _ = foods
        recipe = engine.create_recipe("u1", "Porridge", ingredients=[(oats.id, 1)])
        with pytest.raises(ConflictError):
            engine.add_ingredient(recipe.id, oats.id, 1)

    def test_missing_food_item(self, engine):
        recipe = engine.create_recipe("u1", "Porridge")
        with pytest.raises(NotFoundError):
            engine.add_ingredient(recipe.id, "no-such-food", 1)

    def test_failed_create_leaves_nothing(self, engine, foods):
        oats, _ = foods
        with pytest.raises(NotFoundError):
            engine.create_recipe("u1", "Broken", ingredients=[(oats.id, 1), ("missing", 1)])
        assert engine.repository.get_recipes("u1") == []

    def test_zero_servings(self, engine, foods):
        oats, _ = foods
        recipe = engine.create_recipe("u1", "Porridge", ingredients=[(oats.id, 1)])
        updated = engine.set_recipe_servings(recipe.id, 0)
        assert updated.per_serving.calories == Decimal("0.00")

    def test_negative_servings_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_recipe("u1", "Porridge", servings=-1)

    def test_recompute_is_idempotent(self, engine, foods):
        oats, milk = foods
        recipe = engine.create_recipe("u1", "Porridge", servings=3, ingredients=[(oats.id, 1), (milk.id, 1)])
        assert engine.recompute_recipe(recipe.id) == engine.recompute_recipe(recipe.id) == recipe.per_serving

    def test_deleting_food_recomputes_recipes(self, engine, foods):
        oats, milk = foods
        recipe = engine.create_recipe("u1", "Porridge", ingredients=[(oats.id, 1), (milk.id, 1)])
        assert engine.delete_food_item(milk.id) == [recipe.id]
        assert engine.get_recipe(recipe.id).per_serving.calories == Decimal("150.00")

    def test_delete_recipe(self, engine):
        recipe = engine.create_recipe("u1", "Porridge")
        assert engine.delete_recipe(recipe.id) is True
        with pytest.raises(NotFoundError):
            engine.get_recipe(recipe.id)


class TestBiomarkers:
    def test_log_classifies(self, engine):
        log = engine.log_biomarker("u1", "ldl", 145, unit="mg/dL", test_date=date(2026, 3, 1))
        assert log.classification == "critical_high"
        assert engine.biomarker_history("u1", "ldl")[0].id == log.id

    def test_unknown_biomarker(self, engine):
        with pytest.raises(NotFoundError):
            engine.log_biomarker("u1", "unobtainium", 1)

    def test_name_lookup_ignores_case(self, engine):
        log = engine.log_biomarker("u1", " LDL ", 90)
        assert log.biomarker_name == "ldl"
        assert [h.id for h in engine.biomarker_history("u1", "Ldl")] == [log.id]

    def test_sync_reclassifies_changed_ranges(self, engine, reference_ranges):
        log = engine.log_biomarker("u1", "ldl", 120)
        assert log.classification == "high"

        revised = dict(reference_ranges)
        revised["ldl"] = dataclasses.replace(
            reference_ranges["ldl"], optimal_max=Decimal("130"), high_threshold=Decimal("160")
        )
        updated = HealthEngine(engine.repository, revised)
        assert updated.sync_reference_ranges() == 1
        assert engine.biomarker_history("u1", "ldl")[0].classification == "optimal"

    def test_sync_unchanged_is_noop(self, engine):
        assert engine.sync_reference_ranges() == 0


class TestHeartRate:
    def test_karvonen_profile(self, engine):
        profile = engine.set_heart_rate_profile("u1", max_heart_rate=190, resting_heart_rate=60, method="karvonen")
        assert (profile.zones[0].min_bpm, profile.zones[0].max_bpm) == (125, 138)
        stored = engine.heart_rate_zones("u1")
        assert stored.calculation_method == "karvonen"
        assert (stored.zones[0].min_bpm, stored.zones[0].max_bpm) == (125, 138)

    def test_max_from_age(self, engine):
        assert engine.set_heart_rate_profile("u1", age=30).max_heart_rate == 190

    def test_missing_inputs(self, engine):
        with pytest.raises(MissingInputError):
            engine.set_heart_rate_profile("u1")
        with pytest.raises(MissingInputError):
            engine.set_heart_rate_profile("u1", max_heart_rate=190, method="karvonen")

    def test_profile_required_for_distribution(self, engine):
        with pytest.raises(NotFoundError):
            engine.zone_distribution("u1", [(120, 60)])

    def test_distribution_uses_stored_zones(self, engine):
        engine.set_heart_rate_profile("u1", max_heart_rate=190)
        result = engine.zone_distribution("u1", [(100, 300), (180, 300)])
        assert result[0].percentage == Decimal("50.00")
        assert result[4].percentage == Decimal("50.00")


class TestRecovery:
    def test_score_against_prior_week(self, engine):
        for day in range(1, 8):
            engine.log_measurement("u1", "hrv", 50, recorded_at=_at(day))
        engine.log_measurement("u1", "hrv", 45, recorded_at=_at(8))
        score = engine.recovery_score("u1")
        assert score.hrv_baseline == Decimal("50.0000")
        assert score.score == Decimal("90.00")
        assert score.status == "excellent"

    def test_single_reading_is_neutral(self, engine):
        engine.log_measurement("u1", "hrv", 45, recorded_at=_at(8))
        assert engine.recovery_score("u1").score == Decimal("50.00")

    def test_old_readings_outside_window(self, engine):
        engine.log_measurement("u1", "hrv", 90, recorded_at=_at(1) - timedelta(days=20))
        engine.log_measurement("u1", "hrv", 45, recorded_at=_at(8))
        assert engine.recovery_score("u1").hrv_baseline is None

    def test_no_data(self, engine):
        with pytest.raises(NotFoundError):
            engine.recovery_score("u1")


class TestUserDeletion:
    def test_delete_user_removes_everything(self, engine):
        engine.log_measurement("u1", "weight", 80)
        engine.create_goal("u1", "Cut", "weight", 75)
        engine.log_biomarker("u1", "ldl", 90)
        assert engine.delete_user("u1") is True
        assert engine.repository.count_measurements("u1") == 0
        assert engine.list_goals("u1") == []
        assert engine.biomarker_history("u1") == []


class TestConcurrency:
    def test_concurrent_ingredient_adds_to_one_recipe(self, engine):
        foods = [engine.create_food_item(f"Food {i}", 100, calories=10 * (i + 1)) for i in range(8)]
        recipe = engine.create_recipe("u1", "Stew")
        _run_threads([
            (lambda food_id=food.id: engine.add_ingredient(recipe.id, food_id, 1)) for food in foods
        ])
        assert len(engine.recipe_ingredients(recipe.id)) == 8
        assert engine.get_recipe(recipe.id).per_serving.calories == Decimal("360.00")

    def test_different_recipes_in_parallel(self, engine):
        food = engine.create_food_item("Rice", 100, calories=130)
        recipes = [engine.create_recipe("u1", f"Bowl {i}", servings=i + 1) for i in range(6)]
        _run_threads([
            (lambda rid=recipe.id: engine.add_ingredient(rid, food.id, 2)) for recipe in recipes
        ])
        for i, recipe in enumerate(recipes):
            expected = (Decimal(260) / (i + 1)).quantize(Decimal("0.01"))
            assert engine.get_recipe(recipe.id).per_serving.calories == expected

    def test_concurrent_logs_keep_goal_on_newest_reading(self, engine):
        goal = engine.create_goal("u1", "Cut", "weight", 70, start_value=90)
        readings = [(day, Decimal(90) - day) for day in range(1, 11)]
        _run_threads([
            (lambda day=day, kg=kg: engine.log_measurement("u1", "weight", kg, recorded_at=_at(day)))
            for day, kg in readings
        ])
        stored = engine.get_goal(goal.id)
        assert engine.repository.count_measurements("u1") == 10
        assert stored.current_value == Decimal("80.0000")
        assert stored.status == "active"
        assert [m.achieved for m in stored.milestones] == [True, True, False, False]
