"""Range and enumeration checks applied before anything is persisted.

All checks operate on canonical-unit values (see ``units.normalize``) and
raise ``ValidationError`` with a message naming the offending field.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from healthtrack.core.errors import ValidationError

# ---------------------------------------------------------------------------
# Enumerations (must match stored data exactly)
# ---------------------------------------------------------------------------

MODALITIES = ("weight", "nutrition", "exercise", "hydration", "sleep", "heart_rate", "hrv")
GOAL_TYPES = ("weight", "exercise", "nutrition", "hydration", "sleep", "custom")
DIRECTIONS = ("increasing", "decreasing")
GOAL_STATUSES = ("active", "completed", "abandoned", "paused")
ZONE_METHODS = ("percentage", "karvonen")

DEFAULT_METRICS = {
    "weight": "weight_kg",
    "nutrition": "calories",
    "exercise": "exercise_minutes",
    "hydration": "water_ml",
    "sleep": "sleep_minutes",
    "heart_rate": "heart_rate_bpm",
    "hrv": "hrv_ms",
}

# (lower, upper, lower_inclusive, upper_inclusive) in canonical units
_MEASUREMENT_BOUNDS: dict[str, tuple[Decimal, Decimal, bool, bool]] = {
    "weight": (Decimal("20"), Decimal("500"), True, True),
    "heart_rate": (Decimal("0"), Decimal("300"), False, False),
    "hrv": (Decimal("0"), Decimal("500"), False, False),
    "hydration": (Decimal("0"), Decimal("10000"), False, True),
    "nutrition": (Decimal("0"), Decimal("50000"), True, True),
    "exercise": (Decimal("0"), Decimal("1440"), True, True),
    "sleep": (Decimal("0"), Decimal("1440"), True, True),
}

_MAX_HR_LIMIT = 250
_RESTING_HR_LIMIT = 150


def require_choice(value: str, choices: tuple[str, ...], field_name: str) -> str:
    if value not in choices:
        raise ValidationError(
            f"Invalid {field_name} {value!r}; expected one of {', '.join(choices)}"
        )
    return value


def require_non_empty(value: str | None, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} must not be empty")
    return str(value).strip()


def require_non_negative(value: Decimal, field_name: str) -> Decimal:
    if value < 0:
        raise ValidationError(f"{field_name} must be >= 0, got {value}")
    return value


def validate_measurement_value(modality: str, value: Decimal) -> Decimal:
    """Check a canonical value against the modality's physiological range."""
    require_choice(modality, MODALITIES, "modality")
    lower, upper, lower_inc, upper_inc = _MEASUREMENT_BOUNDS[modality]
    above = value >= lower if lower_inc else value > lower
    below = value <= upper if upper_inc else value < upper
    if not (above and below):
        left = "[" if lower_inc else "("
        right = "]" if upper_inc else ")"
        raise ValidationError(
            f"{modality} value {value} outside allowed range {left}{lower}, {upper}{right}"
        )
    return value


def validate_session(started_at: datetime | None, ended_at: datetime, *, required: bool) -> None:
    """A session (sleep, exercise) must end strictly after it starts."""
    if started_at is None:
        if required:
            raise ValidationError("started_at is required for this modality")
        return
    if ended_at <= started_at:
        raise ValidationError(
            f"Session end {ended_at.isoformat()} must be after start {started_at.isoformat()}"
        )


def validate_heart_rate_profile(max_hr: int, resting_hr: int | None) -> None:
    if not 0 < max_hr < _MAX_HR_LIMIT:
        raise ValidationError(f"max_heart_rate must be in (0, {_MAX_HR_LIMIT}), got {max_hr}")
    if resting_hr is None:
        return
    if not 0 < resting_hr < _RESTING_HR_LIMIT:
        raise ValidationError(
            f"resting_heart_rate must be in (0, {_RESTING_HR_LIMIT}), got {resting_hr}"
        )
    if resting_hr >= max_hr:
        raise ValidationError(
            f"resting_heart_rate ({resting_hr}) must be below max_heart_rate ({max_hr})"
        )


def validate_servings(value: Decimal, field_name: str = "servings") -> Decimal:
    return require_non_negative(value, field_name)
