"""Goal tracker — progress, milestones and the goal lifecycle.

Lifecycle::

    active ──► completed            (target reached, automatic)
    active ──► paused ──► active    (user)
    active | paused ──► abandoned   (user)

``completed`` and ``abandoned`` are terminal. A paused goal ignores new
measurements until it is resumed, at which point the latest reading of its
metric is applied.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from healthtrack.core.errors import ConflictError, InvalidTransitionError, ValidationError
from healthtrack.core.storage.models import Goal, GoalProgress, Measurement, Milestone
from healthtrack.core.storage.repository import TrackerRepository
from healthtrack.domains.tracker.domain_logic.units import quantize, to_decimal
from healthtrack.domains.tracker.domain_logic.validation import (
    DEFAULT_METRICS,
    DIRECTIONS,
    GOAL_TYPES,
    require_choice,
    require_non_empty,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "abandoned"})

_TRANSITIONS: dict[str, frozenset[str]] = {
    "active": frozenset({"completed", "paused", "abandoned"}),
    "paused": frozenset({"active", "abandoned"}),
    "completed": frozenset(),
    "abandoned": frozenset(),
}

_PERCENT_QUANTUM = Decimal("0.01")


# ---------------------------------------------------------------------------
# Pure progress arithmetic
# ---------------------------------------------------------------------------

def has_reached_target(current: Decimal, target: Decimal, direction: str) -> bool:
    if direction == "decreasing":
        return current <= target
    return current >= target


def calculate_progress(start: Decimal, current: Decimal, target: Decimal, direction: str) -> Decimal:
    """Direction-aware progress in percent, clamped to [0, 100].

    Movement away from the target counts as zero progress, not negative.
    A goal whose start equals its target is 100% once the target condition
    holds and 0% otherwise.
    """
    total = abs(target - start)
    if total == 0:
        return Decimal("100.00") if has_reached_target(current, target, direction) else Decimal("0.00")
    moved = current - start if direction == "increasing" else start - current
    progress = moved / total * 100
    progress = min(max(progress, Decimal(0)), Decimal(100))
    return progress.quantize(_PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_remaining(current: Decimal, target: Decimal, direction: str) -> Decimal:
    if direction == "increasing":
        return max(target - current, Decimal(0))
    return max(current - target, Decimal(0))


def default_direction(goal_type: str) -> str:
    return "decreasing" if goal_type == "weight" else "increasing"


def milestone_value(start: Decimal, target: Decimal, pct: int) -> Decimal:
    return quantize(start + (target - start) * Decimal(pct) / 100)


def default_milestones(
    start: Decimal | None, target: Decimal, percentages: Sequence[int]
) -> list[Milestone]:
    """Evenly spaced checkpoints between start and target, ascending by percentage.

    Without a start the checkpoints carry no target value yet.
    """
    milestones = []
    for pct in sorted(set(percentages)):
        if not 0 <= pct <= 100:
            raise ValidationError(f"Milestone percentage must be in [0, 100], got {pct}")
        milestones.append(Milestone(
            id="",
            goal_id="",
            name=f"{pct}% Complete",
            target_value=milestone_value(start, target, pct) if start is not None else None,
            percentage=pct,
        ))
    return milestones


def check_transition(goal: Goal, new_status: str) -> None:
    if new_status not in _TRANSITIONS.get(goal.status, frozenset()):
        raise InvalidTransitionError(
            f"Goal {goal.id} cannot move from {goal.status!r} to {new_status!r}"
        )


# ---------------------------------------------------------------------------
# GoalTracker
# ---------------------------------------------------------------------------

class GoalTracker:
    """Creates goals and keeps their progress in step with measurements.

    All mutating methods join the caller's transaction (or open their own);
    the caller holds the per-goal lock.

    Usage::

        tracker = GoalTracker(repository)
        goal = tracker.create_goal("user-1", "Cut to 80", "weight", Decimal("80"))
        tracker.apply_measurement(goal, measurement)
        report = tracker.progress_report(goal, date.today())
    """

    def __init__(
        self,
        repository: TrackerRepository,
        *,
        unique_goal_types: Sequence[str] = ("weight",),
        milestone_percentages: Sequence[int] = (25, 50, 75, 100),
    ) -> None:
        self._repo = repository
        self._unique_types = frozenset(unique_goal_types)
        self._milestone_percentages = tuple(milestone_percentages)

    def is_unique_type(self, goal_type: str) -> bool:
        return goal_type in self._unique_types

    # ---------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------

    def create_goal(
        self,
        user_id: str,
        name: str,
        goal_type: str,
        target_value: Decimal | float | int | str,
        *,
        metric: str | None = None,
        direction: str | None = None,
        start_value: Decimal | float | int | str | None = None,
        start_date: date | None = None,
        target_date: date | None = None,
        description: str | None = None,
    ) -> Goal:
        """Create an active goal with default milestones.

        ``start_value`` defaults to the latest reading of the metric. With no
        reading, an increasing goal starts from 0 and a decreasing goal takes
        its start from the first reading applied to it. The goal is evaluated
        against the latest reading straight away, so a target that is already
        met completes on creation.

        Raises:
            ValidationError: On bad enum values or dates, or an explicit
                ``start_value`` that is already past the target.
            ConflictError: If the goal type allows one active goal per user
                and one exists.
        """
        name = require_non_empty(name, "name")
        require_choice(goal_type, GOAL_TYPES, "goal_type")
        direction = direction or default_direction(goal_type)
        require_choice(direction, DIRECTIONS, "direction")
        if metric is None:
            metric = DEFAULT_METRICS.get(goal_type, "custom")
        metric = require_non_empty(metric, "metric")
        target = quantize(to_decimal(target_value, "target_value"), field_name="target_value")
        start_date = start_date or datetime.now(timezone.utc).date()
        if target_date is not None and target_date < start_date:
            raise ValidationError("target_date must not be before start_date")
        if start_value is not None:
            start_value = quantize(to_decimal(start_value, "start_value"), field_name="start_value")
            if start_value != target and has_reached_target(start_value, target, direction):
                raise ValidationError(
                    f"start_value {start_value} is already past target {target} "
                    f"for a {direction} goal"
                )

        with self._repo.database.transaction():
            self._check_unique(user_id, goal_type)
            latest = self._repo.get_latest_measurement(user_id, metric)
            if start_value is not None:
                start = start_value
            elif latest is not None:
                start = latest.value
            elif direction == "increasing":
                start = Decimal("0.0000")
            else:
                start = None

            goal = Goal(
                id="",
                user_id=user_id,
                name=name,
                description=description,
                goal_type=goal_type,
                metric=metric,
                target_value=target,
                start_value=start,
                current_value=start,
                direction=direction,
                start_date=start_date,
                target_date=target_date,
                milestones=default_milestones(start, target, self._milestone_percentages),
            )
            self._repo.insert_goal(goal)
            if latest is not None:
                self._evaluate(goal, latest.value, latest.recorded_at)
        logger.info("Created %s goal %s for user %s", goal_type, goal.id, user_id)
        return goal

    def _check_unique(self, user_id: str, goal_type: str, *, exclude_id: str | None = None) -> None:
        if not self.is_unique_type(goal_type):
            return
        active = [
            g for g in self._repo.get_goals(user_id, status="active", goal_type=goal_type)
            if g.id != exclude_id
        ]
        if active:
            raise ConflictError(
                f"User {user_id} already has an active {goal_type} goal ({active[0].id}); "
                "pause, abandon or complete it first"
            )

    # ---------------------------------------------------------------
    # Measurement application
    # ---------------------------------------------------------------

    def apply_measurement(self, goal: Goal, measurement: Measurement) -> bool:
        """Fold a measurement into a goal's progress.

        The goal always reflects the newest reading of its metric, so an
        out-of-order (older) measurement does not move ``current_value`` back.

        Returns:
            True if the goal changed.
        """
        if measurement.metric != goal.metric or measurement.user_id != goal.user_id:
            return False
        if goal.status != "active":
            return False
        with self._repo.database.transaction():
            latest = self._repo.get_latest_measurement(goal.user_id, goal.metric)
            if latest is not None and latest.recorded_at > measurement.recorded_at:
                value, at = latest.value, latest.recorded_at
            else:
                value, at = measurement.value, measurement.recorded_at
            return self._evaluate(goal, value, at)

    def refresh(self, goal: Goal) -> bool:
        """Re-derive ``current_value`` from the newest stored reading.

        Used after a measurement is deleted. Falls back to ``start_value``
        when no reading remains. Achieved milestones stay achieved.
        """
        if goal.status != "active":
            return False
        with self._repo.database.transaction():
            latest = self._repo.get_latest_measurement(goal.user_id, goal.metric)
            if latest is None:
                if goal.current_value == goal.start_value:
                    return False
                goal.current_value = goal.start_value
                self._repo.save_goal_state(goal)
                return True
            return self._evaluate(goal, latest.value, latest.recorded_at)

    def _evaluate(self, goal: Goal, value: Decimal, at: datetime) -> bool:
        """Move a goal to ``value``; milestones and completion compare raw values.

        The rounded progress percent is for reporting only, so a value just
        short of the target never completes the goal.
        """
        changed = goal.current_value != value
        if goal.start_value is None:
            goal.start_value = value
            for milestone in goal.milestones:
                milestone.target_value = milestone_value(value, goal.target_value, milestone.percentage)
            changed = True
            logger.info("Goal %s starts from first reading %s", goal.id, value)
        goal.current_value = value

        for milestone in sorted(goal.milestones, key=lambda m: m.percentage):
            if milestone.achieved:
                continue
            if has_reached_target(value, milestone.target_value, goal.direction):
                milestone.achieved_at = at
                milestone.actual_value = value
                changed = True
                logger.info("Goal %s reached milestone %s", goal.id, milestone.name)

        if has_reached_target(value, goal.target_value, goal.direction):
            check_transition(goal, "completed")
            goal.status = "completed"
            goal.completed_at = datetime.now(timezone.utc)
            changed = True
            logger.info("Goal %s completed", goal.id)

        if changed:
            self._repo.save_goal_state(goal)
        return changed

    # ---------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------

    def pause(self, goal: Goal) -> Goal:
        check_transition(goal, "paused")
        with self._repo.database.transaction():
            goal.status = "paused"
            self._repo.save_goal_state(goal)
        return goal

    def resume(self, goal: Goal) -> Goal:
        """Reactivate a paused goal and catch it up with the newest reading.

        Raises:
            InvalidTransitionError: If the goal is not paused.
            ConflictError: If another goal of a unique type became active.
        """
        check_transition(goal, "active")
        with self._repo.database.transaction():
            self._check_unique(goal.user_id, goal.goal_type, exclude_id=goal.id)
            goal.status = "active"
            self._repo.save_goal_state(goal)
            latest = self._repo.get_latest_measurement(goal.user_id, goal.metric)
            if latest is not None:
                self._evaluate(goal, latest.value, latest.recorded_at)
        return goal

    def abandon(self, goal: Goal) -> Goal:
        check_transition(goal, "abandoned")
        with self._repo.database.transaction():
            goal.status = "abandoned"
            self._repo.save_goal_state(goal)
        logger.info("Goal %s abandoned", goal.id)
        return goal

    # ---------------------------------------------------------------
    # Reporting
    # ---------------------------------------------------------------

    @staticmethod
    def progress_report(goal: Goal, today: date) -> GoalProgress:
        """Progress percent, remaining amount and schedule status.

        ``on_track`` compares progress with the share of the schedule that
        has elapsed; a goal without a target date is always on track.
        """
        if goal.start_value is None or goal.current_value is None:
            progress = Decimal("0.00")
            remaining = None
        else:
            progress = calculate_progress(
                goal.start_value, goal.current_value, goal.target_value, goal.direction
            )
            remaining = calculate_remaining(goal.current_value, goal.target_value, goal.direction)
        days_remaining = (goal.target_date - today).days if goal.target_date else None
        if goal.target_date is None:
            on_track = True
        else:
            total_days = (goal.target_date - goal.start_date).days
            if total_days <= 0:
                on_track = progress >= 100
            else:
                elapsed = (today - goal.start_date).days
                expected = Decimal(elapsed) / Decimal(total_days) * 100
                on_track = progress >= expected
        return GoalProgress(
            goal_id=goal.id,
            status=goal.status,
            progress_percent=progress,
            remaining=remaining,
            on_track=on_track,
            days_remaining=days_remaining,
            milestones=sorted(goal.milestones, key=lambda m: m.percentage),
        )
