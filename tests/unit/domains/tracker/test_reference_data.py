"""Tests for biomarker reference range loading."""

from __future__ import annotations

from decimal import Decimal

import pytest

from healthtrack.domains.tracker.domain_logic.reference_data import (
    ReferenceDataError,
    load_reference_ranges,
    parse_range,
)


def _make_entry(**overrides) -> dict:
    entry = {
        "name": "ldl",
        "display_name": "LDL Cholesterol",
        "category": "lipid",
        "unit": "mg/dL",
        "optimal_max": 100,
        "high_threshold": 130,
    }
    entry.update(overrides)
    return entry


class TestPackagedRanges:
    def test_loads_all_biomarkers(self, reference_ranges):
        assert len(reference_ranges) == 22
        assert "total_cholesterol" in reference_ranges
        assert reference_ranges["hemoglobin"].optimal_min == Decimal("13.5")

    def test_mapping_is_read_only(self, reference_ranges):
        with pytest.raises(TypeError):
            reference_ranges["ldl"] = None  # type: ignore[index]

    def test_empty_path_uses_packaged_file(self):
        assert len(load_reference_ranges("")) == 22


class TestParseRange:
    def test_missing_thresholds_are_none(self):
        reference = parse_range(_make_entry())
        assert reference.low_threshold is None
        assert reference.optimal_max == Decimal("100")

    def test_missing_field(self):
        with pytest.raises(ReferenceDataError, match="missing 'unit'"):
            parse_range(_make_entry(unit=""))

    def test_unknown_category(self):
        with pytest.raises(ReferenceDataError, match="unknown category"):
            parse_range(_make_entry(category="organ"))

    def test_thresholds_out_of_order(self):
        with pytest.raises(ReferenceDataError, match="is below"):
            parse_range(_make_entry(optimal_max=150, high_threshold=130))


class TestLoadFile:
    def test_custom_file(self, tmp_path):
        path = tmp_path / "ranges.yaml"
        path.write_text(
            "biomarkers:\n"
            "  - name: ldl\n"
            "    display_name: LDL\n"
            "    category: lipid\n"
            "    unit: mg/dL\n"
            "    optimal_max: 90\n"
        )
        ranges = load_reference_ranges(path)
        assert list(ranges) == ["ldl"]
        assert ranges["ldl"].optimal_max == Decimal("90")

    def test_duplicate_names_rejected(self, tmp_path):
        entry = "  - {name: ldl, display_name: LDL, category: lipid, unit: mg/dL}\n"
        path = tmp_path / "ranges.yaml"
        path.write_text("biomarkers:\n" + entry + entry)
        with pytest.raises(ReferenceDataError, match="duplicate"):
            load_reference_ranges(path)

    def test_missing_list_rejected(self, tmp_path):
        path = tmp_path / "ranges.yaml"
        path.write_text("version: 1\n")
        with pytest.raises(ReferenceDataError, match="expected a 'biomarkers' list"):
            load_reference_ranges(path)
