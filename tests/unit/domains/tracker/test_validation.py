"""Tests for input validation."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from healthtrack.core.errors import ValidationError
from healthtrack.domains.tracker.domain_logic.validation import (
    GOAL_TYPES,
    require_choice,
    require_non_empty,
    validate_heart_rate_profile,
    validate_measurement_value,
    validate_servings,
    validate_session,
)


class TestMeasurementBounds:
    @pytest.mark.parametrize(
        "modality,value",
        [
            ("weight", "20"),
            ("weight", "500"),
            ("heart_rate", "299.9"),
            ("hydration", "10000"),
            ("nutrition", "0"),
            ("sleep", "1440"),
            ("exercise", "0"),
        ],
    )
    def test_accepts_boundary_values(self, modality, value):
        assert validate_measurement_value(modality, Decimal(value)) == Decimal(value)

    @pytest.mark.parametrize(
        "modality,value",
        [
            ("weight", "19.99"),
            ("weight", "500.01"),
            ("heart_rate", "0"),
            ("heart_rate", "300"),
            ("hrv", "0"),
            ("hydration", "0"),
            ("nutrition", "-1"),
            ("sleep", "1441"),
        ],
    )
    def test_rejects_out_of_range(self, modality, value):
        with pytest.raises(ValidationError, match="outside allowed range"):
            validate_measurement_value(modality, Decimal(value))

    def test_unknown_modality(self):
        with pytest.raises(ValidationError, match="Invalid modality"):
            validate_measurement_value("mood", Decimal("1"))


class TestSession:
    def _t(self, hour: int) -> datetime:
        return datetime(2026, 3, 2, hour, tzinfo=timezone.utc)

    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError, match="must be after start"):
            validate_session(self._t(7), self._t(7), required=True)

    def test_required_start_missing(self):
        with pytest.raises(ValidationError, match="started_at is required"):
            validate_session(None, self._t(7), required=True)

    def test_optional_start_missing(self):
        validate_session(None, self._t(7), required=False)

    def test_valid_session(self):
        validate_session(self._t(1), self._t(7), required=True)


class TestHeartRateProfile:
    def test_valid(self):
        validate_heart_rate_profile(190, 60)
        validate_heart_rate_profile(190, None)

    @pytest.mark.parametrize("max_hr,resting", [(0, None), (250, None), (190, 0), (190, 150), (120, 130)])
    def test_invalid(self, max_hr, resting):
        with pytest.raises(ValidationError):
            validate_heart_rate_profile(max_hr, resting)


class TestChoices:
    def test_goal_type_enum(self):
        assert require_choice("weight", GOAL_TYPES, "goal_type") == "weight"
        with pytest.raises(ValidationError, match="expected one of"):
            require_choice("steps", GOAL_TYPES, "goal_type")

    def test_non_empty(self):
        assert require_non_empty("  Oats ", "name") == "Oats"
        with pytest.raises(ValidationError, match="must not be empty"):
            require_non_empty("   ", "name")

    def test_servings_non_negative(self):
        assert validate_servings(Decimal("0")) == Decimal("0")
        with pytest.raises(ValidationError):
            validate_servings(Decimal("-0.5"))
