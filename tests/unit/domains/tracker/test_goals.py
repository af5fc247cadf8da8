"""Tests for goal progress arithmetic and the GoalTracker lifecycle."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from healthtrack.core.errors import ConflictError, InvalidTransitionError, ValidationError
from healthtrack.core.storage.models import Measurement
from healthtrack.domains.tracker.domain_logic.goals import (
    GoalTracker,
    calculate_progress,
    calculate_remaining,
    default_milestones,
)


def _at(day: int, hour: int = 8) -> datetime:
    return datetime(2026, 3, day, hour, tzinfo=timezone.utc)


def _make_measurement(**overrides) -> Measurement:
    defaults = dict(
        id="",
        user_id="u1",
        modality="weight",
        metric="weight_kg",
        recorded_at=_at(2),
        value=Decimal("85"),
        unit="kg",
    )
    defaults.update(overrides)
    return Measurement(**defaults)


@pytest.fixture
def tracker(repository):
    repository.ensure_user("u1")
    return GoalTracker(repository)


def _log(repository, tracker, goal, **overrides) -> Measurement:
    measurement = _make_measurement(**overrides)
    repository.insert_measurement(measurement)
    tracker.apply_measurement(goal, measurement)
    return measurement


class TestProgressArithmetic:
    @pytest.mark.parametrize(
        "start,current,target,direction,expected",
        [
            ("90", "85", "80", "decreasing", "50.00"),
            ("90", "95", "80", "decreasing", "0.00"),
            ("90", "70", "80", "decreasing", "100.00"),
            ("0", "1500", "2000", "increasing", "75.00"),
            ("0", "2500", "2000", "increasing", "100.00"),
            ("10", "5", "20", "increasing", "0.00"),
        ],
    )
    def test_direction_aware_and_clamped(self, start, current, target, direction, expected):
        result = calculate_progress(Decimal(start), Decimal(current), Decimal(target), direction)
        assert result == Decimal(expected)

    def test_degenerate_goal(self):
        assert calculate_progress(Decimal("80"), Decimal("80"), Decimal("80"), "decreasing") == Decimal("100.00")
        assert calculate_progress(Decimal("80"), Decimal("81"), Decimal("80"), "decreasing") == Decimal("0.00")

    def test_remaining(self):
        assert calculate_remaining(Decimal("85"), Decimal("80"), "decreasing") == Decimal("5")
        assert calculate_remaining(Decimal("79"), Decimal("80"), "decreasing") == Decimal("0")

    def test_default_milestones(self):
        milestones = default_milestones(Decimal("90"), Decimal("80"), [100, 25, 50, 75])
        assert [m.percentage for m in milestones] == [25, 50, 75, 100]
        assert [m.target_value for m in milestones] == [
            Decimal("87.5000"), Decimal("85.0000"), Decimal("82.5000"), Decimal("80.0000"),
        ]
        assert milestones[0].name == "25% Complete"

    def test_milestone_percentage_range(self):
        with pytest.raises(ValidationError):
            default_milestones(Decimal("0"), Decimal("10"), [150])


class TestCreateGoal:
    def test_weight_defaults(self, tracker):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        assert goal.direction == "decreasing"
        assert goal.metric == "weight_kg"
        assert goal.status == "active"
        assert goal.current_value == Decimal("90.0000")
        assert len(goal.milestones) == 4

    def test_start_from_latest_reading(self, tracker, repository):
        repository.insert_measurement(_make_measurement(value=Decimal("88")))
        goal = tracker.create_goal("u1", "Cut", "weight", 80)
        assert goal.start_value == Decimal("88")

    def test_start_defaults_to_zero(self, tracker):
        goal = tracker.create_goal("u1", "Drink", "hydration", 2000)
        assert goal.start_value == Decimal("0.0000")
        assert goal.direction == "increasing"
        assert goal.metric == "water_ml"

    def test_already_met_target_completes(self, tracker, repository):
        repository.insert_measurement(_make_measurement(
            modality="hydration", metric="water_ml", unit="ml", value=Decimal("2500"),
        ))
        goal = tracker.create_goal("u1", "Drink", "hydration", 2000, start_value=0)
        assert goal.status == "completed"
        assert goal.current_value == Decimal("2500")
        goal = tracker.create_goal("u1", "Hold", "custom", 2500, metric="water_ml")
        assert goal.status == "completed"

    def test_explicit_start_still_follows_latest_reading(self, tracker, repository):
        repository.insert_measurement(_make_measurement(value=Decimal("85")))
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        stored = repository.get_goal(goal.id)
        assert stored.start_value == Decimal("90.0000")
        assert stored.current_value == Decimal("85")
        assert [m.achieved for m in stored.milestones] == [True, True, False, False]

    def test_explicit_start_past_target_rejected(self, tracker):
        with pytest.raises(ValidationError, match="already past target"):
            tracker.create_goal("u1", "Cut", "weight", 80, start_value=70, direction="decreasing")
        with pytest.raises(ValidationError, match="already past target"):
            tracker.create_goal("u1", "Drink", "hydration", 2000, start_value=2500)

    def test_start_equal_to_target_allowed(self, tracker):
        goal = tracker.create_goal("u1", "Hold", "weight", 80, start_value=80)
        assert goal.status == "active"

    def test_oversized_target_rejected(self, tracker):
        with pytest.raises(ValidationError, match="out of range"):
            tracker.create_goal("u1", "Cut", "weight", "1e25")
        with pytest.raises(ValidationError, match="out of range"):
            tracker.create_goal("u1", "Cut", "weight", 80, start_value="1e30")

    def test_second_active_weight_goal_conflicts(self, tracker):
        tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        with pytest.raises(ConflictError, match="already has an active weight goal"):
            tracker.create_goal("u1", "Cut again", "weight", 75, start_value=90)

    def test_recreate_after_abandon(self, tracker):
        first = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        tracker.abandon(first)
        second = tracker.create_goal("u1", "Cut again", "weight", 75, start_value=90)
        assert second.status == "active"

    def test_non_unique_types_coexist(self, tracker):
        tracker.create_goal("u1", "A", "hydration", 2000)
        tracker.create_goal("u1", "B", "hydration", 2500)

    def test_configured_unique_types(self, repository):
        repository.ensure_user("u1")
        tracker = GoalTracker(repository, unique_goal_types=("weight", "sleep"))
        tracker.create_goal("u1", "Sleep", "sleep", 480)
        with pytest.raises(ConflictError):
            tracker.create_goal("u1", "Sleep more", "sleep", 500)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"goal_type": "steps"},
            {"direction": "sideways"},
            {"name": "  "},
            {"target_value": "lots"},
            {"start_date": date(2026, 3, 10), "target_date": date(2026, 3, 1)},
        ],
    )
    def test_invalid_input(self, tracker, kwargs):
        options = {"name": "Cut", "goal_type": "weight", "target_value": 80}
        options.update(kwargs)
        with pytest.raises(ValidationError):
            tracker.create_goal("u1", **options)


class TestWeightLossScenario:
    def test_ninety_to_eighty(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)

        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("85"))
        stored = repository.get_goal(goal.id)
        assert stored.current_value == Decimal("85")
        assert [m.achieved for m in stored.milestones] == [True, True, False, False]
        assert stored.milestones[1].achieved_at == _at(2)
        assert tracker.progress_report(stored, date(2026, 3, 2)).progress_percent == Decimal("50.00")

        _log(repository, tracker, goal, recorded_at=_at(3), value=Decimal("79"))
        stored = repository.get_goal(goal.id)
        assert stored.status == "completed"
        assert stored.completed_at is not None
        assert all(m.achieved for m in stored.milestones)

    def test_completion_never_reverts(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("79"))
        changed = tracker.apply_measurement(goal, _make_measurement(recorded_at=_at(4), value=Decimal("95")))
        assert changed is False
        assert repository.get_goal(goal.id).status == "completed"

    def test_milestones_are_monotonic(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("84"))
        _log(repository, tracker, goal, recorded_at=_at(3), value=Decimal("89"))
        stored = repository.get_goal(goal.id)
        assert stored.current_value == Decimal("89")
        assert [m.achieved for m in stored.milestones] == [True, True, False, False]
        assert stored.milestones[1].actual_value == Decimal("84")

    def test_out_of_order_measurement_keeps_newest(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        _log(repository, tracker, goal, recorded_at=_at(5), value=Decimal("86"))
        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("89"))
        assert repository.get_goal(goal.id).current_value == Decimal("86")

    def test_other_metric_ignored(self, tracker):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        assert tracker.apply_measurement(goal, _make_measurement(metric="water_ml")) is False


class TestCompletionBoundary:
    def test_increasing_goal_just_short_of_target_stays_active(self, tracker, repository):
        goal = tracker.create_goal("u1", "Drink", "hydration", 10000)
        hydration = dict(modality="hydration", metric="water_ml", unit="ml")

        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("9999.9999"), **hydration)
        stored = repository.get_goal(goal.id)
        assert stored.status == "active"
        assert stored.completed_at is None
        assert [m.achieved for m in stored.milestones] == [True, True, True, False]
        assert tracker.progress_report(stored, date(2026, 3, 2)).remaining == Decimal("0.0001")

        _log(repository, tracker, goal, recorded_at=_at(3), value=Decimal("10000"), **hydration)
        assert repository.get_goal(goal.id).status == "completed"

    def test_decreasing_goal_completes_exactly_at_target(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("80.0001"))
        assert repository.get_goal(goal.id).status == "active"
        _log(repository, tracker, goal, recorded_at=_at(3), value=Decimal("80"))
        stored = repository.get_goal(goal.id)
        assert stored.status == "completed"
        assert stored.milestones[-1].actual_value == Decimal("80")


class TestStartFromFirstReading:
    def test_weight_goal_without_readings_waits_for_first_log(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80)
        stored = repository.get_goal(goal.id)
        assert stored.start_value is None
        assert stored.current_value is None
        assert all(m.target_value is None for m in stored.milestones)

        report = tracker.progress_report(stored, date(2026, 3, 1))
        assert report.progress_percent == Decimal("0.00")
        assert report.remaining is None

    def test_first_log_sets_start_then_goal_completes(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80)

        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("85"))
        stored = repository.get_goal(goal.id)
        assert stored.start_value == Decimal("85")
        assert stored.current_value == Decimal("85")
        assert [m.target_value for m in stored.milestones] == [
            Decimal("83.7500"), Decimal("82.5000"), Decimal("81.2500"), Decimal("80.0000"),
        ]
        assert stored.status == "active"

        _log(repository, tracker, goal, recorded_at=_at(3), value=Decimal("79"))
        stored = repository.get_goal(goal.id)
        assert stored.status == "completed"
        assert all(m.achieved for m in stored.milestones)

    def test_first_log_already_below_target_completes(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80)
        _log(repository, tracker, goal, recorded_at=_at(2), value=Decimal("78"))
        assert repository.get_goal(goal.id).status == "completed"

    def test_refresh_without_readings_keeps_start_unset(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80)
        assert tracker.refresh(goal) is False


class TestLifecycle:
    def test_pause_ignores_measurements(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        tracker.pause(goal)
        _log(repository, tracker, goal, value=Decimal("85"))
        assert repository.get_goal(goal.id).current_value == Decimal("90.0000")

    def test_resume_applies_latest_reading(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        tracker.pause(goal)
        _log(repository, tracker, goal, value=Decimal("85"))
        tracker.resume(goal)
        stored = repository.get_goal(goal.id)
        assert stored.status == "active"
        assert stored.current_value == Decimal("85")

    def test_resume_conflicts_with_new_active_goal(self, tracker):
        first = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        tracker.pause(first)
        tracker.create_goal("u1", "Other", "weight", 78, start_value=90)
        with pytest.raises(ConflictError):
            tracker.resume(first)

    @pytest.mark.parametrize("action", ["pause", "resume", "abandon"])
    def test_terminal_states(self, tracker, action):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        tracker.abandon(goal)
        with pytest.raises(InvalidTransitionError):
            getattr(tracker, action)(goal)

    def test_resume_requires_paused(self, tracker):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        with pytest.raises(InvalidTransitionError):
            tracker.resume(goal)

    def test_refresh_after_delete_falls_back_to_start(self, tracker, repository):
        goal = tracker.create_goal("u1", "Cut", "weight", 80, start_value=90)
        measurement = _log(repository, tracker, goal, value=Decimal("86"))
        repository.delete_measurement(measurement.id)
        assert tracker.refresh(goal) is True
        stored = repository.get_goal(goal.id)
        assert stored.current_value == Decimal("90.0000")
        assert stored.milestones[0].achieved


class TestProgressReport:
    def test_on_track_against_schedule(self, tracker, repository):
        goal = tracker.create_goal(
            "u1", "Cut", "weight", 80, start_value=90,
            start_date=date(2026, 3, 1), target_date=date(2026, 3, 11),
        )
        _log(repository, tracker, goal, value=Decimal("85"))
        report = tracker.progress_report(goal, date(2026, 3, 5))
        assert report.on_track is True
        assert report.days_remaining == 6
        assert report.remaining == Decimal("5")
        behind = tracker.progress_report(goal, date(2026, 3, 9))
        assert behind.on_track is False

    def test_no_target_date_always_on_track(self, tracker):
        goal = tracker.create_goal("u1", "Drink", "hydration", 2000)
        report = tracker.progress_report(goal, date(2030, 1, 1))
        assert report.on_track is True
        assert report.days_remaining is None
