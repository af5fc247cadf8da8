"""Reference data loader — biomarker ranges from YAML.

Ranges are loaded once at startup and exposed as a read-only mapping. There
is no runtime mutation path: changing a range means editing the YAML file and
restarting, at which point stored logs are reclassified.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from healthtrack.core.errors import ValidationError
from healthtrack.core.storage.models import BiomarkerRange
from healthtrack.domains.tracker.domain_logic.units import to_decimal

logger = logging.getLogger(__name__)

DEFAULT_RANGES_PATH = Path(__file__).resolve().parent.parent / "reference" / "biomarker_ranges.yaml"

CATEGORIES = ("blood", "lipid", "metabolic", "vitamin", "mineral", "hormone")

_THRESHOLD_FIELDS = ("low_threshold", "optimal_min", "optimal_max", "high_threshold")


class ReferenceDataError(ValidationError):
    """Raised when the reference file is malformed."""


def _optional_decimal(entry: dict[str, Any], key: str) -> Decimal | None:
    raw = entry.get(key)
    if raw is None:
        return None
    return to_decimal(raw, f"{entry.get('name', '?')}.{key}")


def parse_range(entry: dict[str, Any]) -> BiomarkerRange:
    """Build one ``BiomarkerRange`` from a YAML mapping.

    Raises:
        ReferenceDataError: On a missing field, unknown category, or
            thresholds that are not in ascending order.
    """
    for key in ("name", "display_name", "category", "unit"):
        if not entry.get(key):
            raise ReferenceDataError(f"Biomarker entry missing {key!r}: {entry!r}")
    if entry["category"] not in CATEGORIES:
        raise ReferenceDataError(
            f"Biomarker {entry['name']!r} has unknown category {entry['category']!r}"
        )

    reference = BiomarkerRange(
        name=str(entry["name"]).strip().lower(),
        display_name=str(entry["display_name"]),
        category=str(entry["category"]),
        unit=str(entry["unit"]),
        low_threshold=_optional_decimal(entry, "low_threshold"),
        optimal_min=_optional_decimal(entry, "optimal_min"),
        optimal_max=_optional_decimal(entry, "optimal_max"),
        high_threshold=_optional_decimal(entry, "high_threshold"),
        description=str(entry.get("description") or ""),
    )
    check_threshold_order(reference)
    return reference


def check_threshold_order(reference: BiomarkerRange) -> None:
    """Present thresholds must be non-decreasing in declaration order."""
    present = [
        (name, value)
        for name, value in zip(_THRESHOLD_FIELDS, reference.thresholds())
        if value is not None
    ]
    for (prev_name, prev), (name, value) in zip(present, present[1:]):
        if value < prev:
            raise ReferenceDataError(
                f"Biomarker {reference.name!r}: {name} ({value}) is below {prev_name} ({prev})"
            )


def load_reference_ranges(path: str | Path | None = None) -> Mapping[str, BiomarkerRange]:
    """Load biomarker ranges from a YAML file.

    Args:
        path: YAML file to read. ``None`` or empty uses the packaged file.

    Returns:
        Read-only mapping of biomarker name to range.

    Raises:
        ReferenceDataError: If the file is malformed or names repeat.
    """
    source = Path(path).expanduser() if path else DEFAULT_RANGES_PATH
    with open(source, encoding="utf-8") as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    entries = data.get("biomarkers")
    if not isinstance(entries, list):
        raise ReferenceDataError(f"{source}: expected a 'biomarkers' list")

    ranges: dict[str, BiomarkerRange] = {}
    for entry in entries:
        reference = parse_range(entry)
        if reference.name in ranges:
            raise ReferenceDataError(f"{source}: duplicate biomarker {reference.name!r}")
        ranges[reference.name] = reference

    logger.info("Loaded %d biomarker reference ranges from %s", len(ranges), source)
    return MappingProxyType(ranges)
