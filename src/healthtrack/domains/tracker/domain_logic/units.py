"""Unit normalization to canonical storage units.

Every modality has one canonical unit (kg, ml, min, kcal, bpm, ms). Inputs
arrive in whatever unit the client used and are converted here before
validation and persistence. Nutrient masses normalize to grams.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from healthtrack.core.errors import UnsupportedUnitError, ValidationError

VALUE_QUANTUM = Decimal("0.0001")

# ---------------------------------------------------------------------------
# Conversion tables: unit alias -> factor to the canonical unit
# ---------------------------------------------------------------------------

_MASS_KG: dict[str, Decimal] = {
    "kg": Decimal("1"),
    "g": Decimal("0.001"),
    "lb": Decimal("0.453592"),
    "lbs": Decimal("0.453592"),
    "st": Decimal("6.35029"),
}

_VOLUME_ML: dict[str, Decimal] = {
    "ml": Decimal("1"),
    "l": Decimal("1000"),
    "fl_oz": Decimal("29.5735"),
    "cup": Decimal("236.588"),
}

_DURATION_MIN: dict[str, Decimal] = {
    "min": Decimal("1"),
    "h": Decimal("60"),
    "s": Decimal("1") / Decimal("60"),
}

_ENERGY_KCAL: dict[str, Decimal] = {
    "kcal": Decimal("1"),
    "kj": Decimal("1") / Decimal("4.184"),
}

_RATE_BPM: dict[str, Decimal] = {
    "bpm": Decimal("1"),
}

_INTERVAL_MS: dict[str, Decimal] = {
    "ms": Decimal("1"),
    "s": Decimal("1000"),
}

NUTRIENT_MASS_G: dict[str, Decimal] = {
    "g": Decimal("1"),
    "mg": Decimal("0.001"),
    "oz": Decimal("28.3495"),
    "kg": Decimal("1000"),
}

# modality -> (canonical unit, conversion table)
CANONICAL_UNITS: dict[str, tuple[str, dict[str, Decimal]]] = {
    "weight": ("kg", _MASS_KG),
    "hydration": ("ml", _VOLUME_ML),
    "sleep": ("min", _DURATION_MIN),
    "exercise": ("min", _DURATION_MIN),
    "nutrition": ("kcal", _ENERGY_KCAL),
    "heart_rate": ("bpm", _RATE_BPM),
    "hrv": ("ms", _INTERVAL_MS),
}

_ALIASES = {
    "kilogram": "kg", "kilograms": "kg", "pound": "lb", "pounds": "lb",
    "stone": "st", "gram": "g", "grams": "g",
    "milliliter": "ml", "millilitre": "ml", "liter": "l", "litre": "l",
    "minute": "min", "minutes": "min", "mins": "min",
    "hour": "h", "hours": "h", "hr": "h", "hrs": "h",
    "second": "s", "seconds": "s", "sec": "s",
    "cal": "kcal", "calories": "kcal",
    "milligram": "mg", "milligrams": "mg", "ounce": "oz", "ounces": "oz",
}


@dataclass(frozen=True)
class NormalizedValue:
    value: Decimal
    unit: str


def to_decimal(value: object, field_name: str = "value") -> Decimal:
    """Coerce an int/float/str/Decimal to a finite Decimal.

    Floats go through ``str`` so ``0.1`` stays ``Decimal("0.1")``.

    Raises:
        ValidationError: If the value is not numeric, NaN, or infinite.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric, got bool")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"{field_name} must be numeric, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite, got {value!r}")
    return result


def quantize(value: Decimal, quantum: Decimal = VALUE_QUANTUM, field_name: str = "value") -> Decimal:
    """Round half-up to ``quantum``.

    Raises:
        ValidationError: If the value has too many digits to store at that precision.
    """
    try:
        return value.quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValidationError(f"{field_name} is out of range: {value}") from exc


def _canonical_alias(unit: str) -> str:
    key = unit.strip().lower()
    return _ALIASES.get(key, key)


def canonical_unit(modality: str) -> str:
    try:
        return CANONICAL_UNITS[modality][0]
    except KeyError:
        raise ValidationError(f"Unknown modality: {modality!r}") from None


def normalize(value: object, unit: str | None, modality: str) -> NormalizedValue:
    """Convert a value to the canonical unit of its modality.

    Args:
        value: Numeric input in ``unit``.
        unit: Input unit; ``None`` means the canonical unit.
        modality: One of the measurement modalities.

    Returns:
        The value in the canonical unit, quantized to 4 places.

    Raises:
        UnsupportedUnitError: If ``unit`` is unknown for this modality.
        ValidationError: If the modality is unknown or value non-numeric.
    """
    target, table = CANONICAL_UNITS.get(modality, (None, None))
    if target is None:
        raise ValidationError(f"Unknown modality: {modality!r}")
    amount = to_decimal(value)
    if unit is None:
        return NormalizedValue(quantize(amount), target)
    factor = table.get(_canonical_alias(unit))
    if factor is None:
        raise UnsupportedUnitError(
            f"Cannot convert {unit!r} to {target} for {modality} "
            f"(supported: {', '.join(sorted(table))})"
        )
    return NormalizedValue(quantize(amount * factor), target)


def normalize_nutrient_mass(value: object, unit: str | None = "g") -> Decimal:
    """Convert a macro-nutrient mass to grams."""
    amount = to_decimal(value)
    if unit is None:
        return quantize(amount)
    factor = NUTRIENT_MASS_G.get(_canonical_alias(unit))
    if factor is None:
        raise UnsupportedUnitError(f"Cannot convert {unit!r} to g")
    return quantize(amount * factor)
