"""Classification engine — biomarker bands and heart-rate zones.

Everything here is a pure function of its inputs plus the read-only
reference ranges, so a stored classification can always be re-derived from
the stored value and the current range definition.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from healthtrack.core.errors import MissingInputError, NotFoundError, UnsupportedUnitError, ValidationError
from healthtrack.core.storage.models import BiomarkerRange, HeartRateZone
from healthtrack.domains.tracker.domain_logic.validation import ZONE_METHODS, require_choice

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BANDS = ("critical_low", "low", "optimal", "high", "critical_high")

# (lower %, upper %) of max HR or heart-rate reserve
ZONE_PERCENT_BANDS: tuple[tuple[int, int], ...] = ((50, 60), (60, 70), (70, 80), (80, 90), (90, 100))
ZONE_NAMES: tuple[str, ...] = ("Recovery", "Aerobic", "Tempo", "Threshold", "VO2 Max")

_AGE_MAX_HR_BASE = 220


@dataclass(frozen=True)
class ZoneTime:
    """Time spent in one zone during a session."""

    zone: int
    name: str
    duration_seconds: int
    percentage: Decimal


@dataclass(frozen=True)
class RecoveryScore:
    score: Decimal
    status: str  # excellent | good | moderate | low | poor
    hrv_current: Decimal
    hrv_baseline: Decimal | None


# ---------------------------------------------------------------------------
# Biomarkers
# ---------------------------------------------------------------------------

def classify(reference: BiomarkerRange, value: Decimal) -> str:
    """Map a value to a band by ordered threshold comparison.

    A missing threshold is no boundary in that direction; a range with no
    thresholds always classifies as ``optimal``.
    """
    if reference.low_threshold is not None and value < reference.low_threshold:
        return "critical_low"
    if reference.optimal_min is not None and value < reference.optimal_min:
        return "low"
    if reference.optimal_max is not None and value > reference.optimal_max:
        if reference.high_threshold is not None and value > reference.high_threshold:
            return "critical_high"
        return "high"
    if reference.high_threshold is not None and value > reference.high_threshold:
        return "critical_high"
    return "optimal"


def range_shape(reference: BiomarkerRange) -> str:
    """Describe which sides of a range carry boundaries.

    Returns:
        ``bounded`` (both sides), ``ceiling`` (lower is better, upper side
        only), ``floor`` (higher is better, lower side only) or ``open``.
    """
    has_lower = reference.low_threshold is not None or reference.optimal_min is not None
    has_upper = reference.optimal_max is not None or reference.high_threshold is not None
    if has_lower and has_upper:
        return "bounded"
    if has_upper:
        return "ceiling"
    if has_lower:
        return "floor"
    return "open"


class ClassificationEngine:
    """Classifies biomarker values against the loaded reference ranges.

    Usage::

        engine = ClassificationEngine(load_reference_ranges())
        engine.classify("ldl", Decimal("145"))  # "critical_high"
    """

    def __init__(self, ranges: Mapping[str, BiomarkerRange]) -> None:
        self._ranges = ranges

    @property
    def ranges(self) -> Mapping[str, BiomarkerRange]:
        return self._ranges

    def get_range(self, name: str) -> BiomarkerRange:
        """Look up a range by name, ignoring case and surrounding whitespace."""
        reference = self._ranges.get(name.strip().lower())
        if reference is None:
            raise NotFoundError(f"Unknown biomarker: {name!r}")
        return reference

    def classify(self, name: str, value: Decimal, unit: str | None = None) -> str:
        """Classify a biomarker value.

        Raises:
            NotFoundError: If the biomarker has no reference range.
            UnsupportedUnitError: If ``unit`` differs from the range's unit.
        """
        reference = self.get_range(name)
        if unit is not None and unit.strip().lower() != reference.unit.lower():
            raise UnsupportedUnitError(
                f"{name} is recorded in {reference.unit}, got {unit!r}"
            )
        return classify(reference, value)


# ---------------------------------------------------------------------------
# Heart-rate zones
# ---------------------------------------------------------------------------

def estimate_max_heart_rate(age: int) -> int:
    """Age-predicted maximum heart rate (220 - age)."""
    if not 0 < age < 120:
        raise ValidationError(f"age must be in (0, 120), got {age}")
    return _AGE_MAX_HR_BASE - age


def _round_bpm(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_zones(
    max_heart_rate: int,
    resting_heart_rate: int | None = None,
    method: str = "percentage",
) -> list[HeartRateZone]:
    """Derive all five training zones.

    Args:
        max_heart_rate: Maximum heart rate in bpm.
        resting_heart_rate: Resting heart rate; required for ``karvonen``.
        method: ``percentage`` (of max) or ``karvonen`` (of reserve).

    Returns:
        Zones 1-5 with boundaries rounded half-up to whole bpm.

    Raises:
        MissingInputError: Karvonen requested without a resting heart rate.
    """
    require_choice(method, ZONE_METHODS, "calculation_method")
    if method == "karvonen":
        if resting_heart_rate is None:
            raise MissingInputError("Karvonen zones require resting_heart_rate")
        base = Decimal(resting_heart_rate)
        span = Decimal(max_heart_rate - resting_heart_rate)
    else:
        base = Decimal(0)
        span = Decimal(max_heart_rate)

    zones = []
    for index, ((low_pct, high_pct), name) in enumerate(zip(ZONE_PERCENT_BANDS, ZONE_NAMES), start=1):
        zones.append(HeartRateZone(
            zone=index,
            name=name,
            min_bpm=_round_bpm(base + span * Decimal(low_pct) / 100),
            max_bpm=_round_bpm(base + span * Decimal(high_pct) / 100),
        ))
    return zones


def zone_for_heart_rate(zones: Iterable[HeartRateZone], bpm: int) -> HeartRateZone | None:
    """The lowest zone containing ``bpm`` (shared boundaries go to the lower zone)."""
    for zone in sorted(zones, key=lambda z: z.zone):
        if zone.min_bpm <= bpm <= zone.max_bpm:
            return zone
    return None


def zone_distribution(
    samples: Iterable[tuple[int, int]],
    zones: Iterable[HeartRateZone],
) -> list[ZoneTime]:
    """Time spent per zone for a list of ``(bpm, duration_seconds)`` samples.

    Samples outside every zone count toward the total but no zone, so the
    percentages can sum to less than 100.
    """
    ordered = sorted(zones, key=lambda z: z.zone)
    times = {zone.zone: 0 for zone in ordered}
    total = 0
    for bpm, seconds in samples:
        if seconds < 0:
            raise ValidationError(f"duration_seconds must be >= 0, got {seconds}")
        total += seconds
        zone = zone_for_heart_rate(ordered, bpm)
        if zone is not None:
            times[zone.zone] += seconds

    result = []
    for zone in ordered:
        pct = (
            (Decimal(times[zone.zone]) * 100 / Decimal(total)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if total
            else Decimal("0.00")
        )
        result.append(ZoneTime(zone.zone, zone.name, times[zone.zone], pct))
    return result


# ---------------------------------------------------------------------------
# HRV recovery
# ---------------------------------------------------------------------------

def recovery_status(score: Decimal) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "moderate"
    if score >= 20:
        return "low"
    return "poor"


def recovery_score(hrv_current: Decimal, hrv_baseline: Decimal | None) -> RecoveryScore:
    """Score today's HRV against a baseline: ratio x 100 clamped to [0, 100].

    Without a positive baseline the score is the neutral 50.
    """
    if hrv_baseline is None or hrv_baseline <= 0:
        score = Decimal("50.00")
    else:
        ratio = hrv_current / hrv_baseline * 100
        score = min(max(ratio, Decimal(0)), Decimal(100)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    return RecoveryScore(
        score=score,
        status=recovery_status(score),
        hrv_current=hrv_current,
        hrv_baseline=hrv_baseline,
    )
