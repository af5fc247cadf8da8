"""Data models for the health tracker persistence layer.

Field names and enumerated values mirror the stored tables exactly. Decimal
quantities keep the precision of their column (nutrients 2 places, goal and
measurement values 4 places).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal


@dataclass
class Measurement:
    """A single raw log entry for one modality, in canonical units."""

    id: str
    user_id: str
    modality: str  # 'weight', 'nutrition', 'exercise', 'hydration', 'sleep', 'heart_rate', 'hrv'
    metric: str  # e.g. 'weight_kg', 'calories', 'water_ml'
    recorded_at: datetime
    value: Decimal
    unit: str
    started_at: datetime | None = None  # sleep / exercise sessions
    components: dict[str, Decimal] = field(default_factory=dict)  # e.g. macro grams
    source: str = "manual"
    notes: str | None = None  # encrypted at rest
    is_anomaly: bool = False  # set by the aggregation engine only
    created_at: str = ""


@dataclass
class FoodItem:
    """Catalog entry with nutrients per serving."""

    id: str
    name: str
    serving_size: Decimal
    serving_unit: str = "g"
    calories: Decimal = Decimal("0")
    protein_g: Decimal = Decimal("0")
    carbohydrates_g: Decimal = Decimal("0")
    fat_g: Decimal = Decimal("0")
    fiber_g: Decimal = Decimal("0")
    brand: str | None = None


@dataclass(frozen=True)
class NutrientTotals:
    """Calories and macros, either per serving of a recipe or per day."""

    calories: Decimal = Decimal("0.00")
    protein_g: Decimal = Decimal("0.00")
    carbs_g: Decimal = Decimal("0.00")
    fat_g: Decimal = Decimal("0.00")
    fiber_g: Decimal = Decimal("0.00")

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "calories": self.calories,
            "protein_g": self.protein_g,
            "carbs_g": self.carbs_g,
            "fat_g": self.fat_g,
            "fiber_g": self.fiber_g,
        }


@dataclass
class Recipe:
    """A user's recipe with its derived per-serving totals."""

    id: str
    user_id: str
    name: str
    servings: Decimal = Decimal("1")
    per_serving: NutrientTotals = field(default_factory=NutrientTotals)
    description: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class RecipeIngredient:
    """Membership of a food item in a recipe."""

    id: str
    recipe_id: str
    food_item_id: str
    servings: Decimal = Decimal("1")
    sort_order: int = 0


@dataclass
class Milestone:
    """A progress checkpoint owned by a goal."""

    id: str
    goal_id: str
    name: str
    target_value: Decimal | None  # None until the goal has a start value
    percentage: int
    achieved_at: datetime | None = None
    actual_value: Decimal | None = None

    @property
    def achieved(self) -> bool:
        return self.achieved_at is not None


@dataclass
class Goal:
    """A target for one metric, with its lifecycle status and milestones."""

    id: str
    user_id: str
    name: str
    goal_type: str  # 'weight', 'exercise', 'nutrition', 'hydration', 'sleep', 'custom'
    metric: str
    target_value: Decimal
    start_value: Decimal | None  # None until the first reading of the metric
    current_value: Decimal | None
    direction: str  # 'increasing' | 'decreasing'
    start_date: date
    status: str = "active"  # 'active' | 'completed' | 'abandoned' | 'paused'
    target_date: date | None = None
    description: str | None = None
    completed_at: datetime | None = None
    milestones: list[Milestone] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


@dataclass
class GoalProgress:
    """Read-time progress report for one goal."""

    goal_id: str
    status: str
    progress_percent: Decimal
    remaining: Decimal | None
    on_track: bool
    days_remaining: int | None
    milestones: list[Milestone] = field(default_factory=list)


@dataclass(frozen=True)
class BiomarkerRange:
    """Reference range for one biomarker. Immutable lookup data."""

    name: str
    display_name: str
    category: str  # blood, lipid, metabolic, vitamin, mineral, hormone
    unit: str
    low_threshold: Decimal | None = None
    optimal_min: Decimal | None = None
    optimal_max: Decimal | None = None
    high_threshold: Decimal | None = None
    description: str = ""

    def thresholds(self) -> tuple[Decimal | None, Decimal | None, Decimal | None, Decimal | None]:
        return (self.low_threshold, self.optimal_min, self.optimal_max, self.high_threshold)


@dataclass
class BiomarkerLog:
    """A lab result with its derived classification band."""

    id: str
    user_id: str
    biomarker_name: str
    value: Decimal
    classification: str
    test_date: date
    lab_name: str | None = None
    notes: str | None = None
    source: str = "manual"
    created_at: str = ""


@dataclass(frozen=True)
class HeartRateZone:
    """One training zone, bounds in whole beats per minute."""

    zone: int
    name: str
    min_bpm: int
    max_bpm: int


@dataclass
class HeartRateZoneProfile:
    """A user's zone configuration. Zones are always derived as a full set."""

    user_id: str
    max_heart_rate: int
    resting_heart_rate: int | None = None
    calculation_method: str = "percentage"  # 'percentage' | 'karvonen'
    zones: list[HeartRateZone] = field(default_factory=list)
    updated_at: str = ""


@dataclass(frozen=True)
class DailySummary:
    """Fold of one user's logs of one modality over one UTC day."""

    user_id: str
    modality: str
    date: date
    total: Decimal
    entry_count: int
    first_entry: datetime | None
    last_entry: datetime | None
