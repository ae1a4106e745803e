"""Input normalization for BESS sizing runs.

Load and price profiles, the free-form parameter table, and the study ranges
arrive from the UI or API as loosely typed payloads. The helpers here turn
them into validated, immutable objects so the dispatch and sweep code never
has to re-check units or lengths.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

HOURS_PER_DAY = 24

DEMAND_CHARGE_KEY = "Demand Charge"
BATTERY_COST_KEY = "Cost of Battery"
POWER_EQUIPMENT_COST_KEY = "Cost of Power Equipment"
INSTALLATION_COST_KEY = "Cost of Installation"
EFFICIENCY_KEY = "Efficiency"
DEGRADATION_KEY = "Degradation"
DEGRADATION_RATE_KEY = "Degradation Rate"
HOLDING_PERIOD_KEY = "Holding Period"
DISCOUNT_RATE_KEY = "Discount Rate"

BATTERY_CAPACITY_RANGE = "Battery Capacity"
POWER_LIMIT_RANGE = "Power Limit"

# Default building load (kW) with its morning peak at hour 7.
DEFAULT_LOAD_KW: Tuple[float, ...] = (
    12.81, 10.1, 12.1, 12.64, 15.95, 13.18, 12.7, 47.88,
    18.61, 5.37, 6.26, -5.76, -11.12, -6.31, 4.37, 15.86,
    21.27, 17.19, 17.79, 12.14, 12.63, 14.78, 23.65, 14.16,
)

# Time-of-use energy charge ($/kWh); on-peak block runs 16:00-21:00.
DEFAULT_PRICE_USD_PER_KWH: Tuple[float, ...] = tuple(
    0.59779 if 16 <= hour < 21 else 0.16056 for hour in range(HOURS_PER_DAY)
)

DEFAULT_PARAMETER_TABLE: Tuple[Dict[str, Any], ...] = (
    {"name": DEMAND_CHARGE_KEY, "value": 23.05, "unit": "$/kW"},
    {"name": BATTERY_COST_KEY, "value": 150.0, "unit": "$/kWh"},
    {"name": POWER_EQUIPMENT_COST_KEY, "value": 150.0, "unit": "$/kW"},
    {"name": INSTALLATION_COST_KEY, "value": 10000.0, "unit": "$"},
    {"name": EFFICIENCY_KEY, "value": 90.0, "unit": "%"},
    {"name": DEGRADATION_RATE_KEY, "value": 2.0, "unit": "% per year"},
    {"name": HOLDING_PERIOD_KEY, "value": 10, "unit": "year"},
    {"name": DISCOUNT_RATE_KEY, "value": 5.0, "unit": "% per year"},
)

DEFAULT_STUDY_RANGES: Tuple[Dict[str, Any], ...] = (
    {"name": BATTERY_CAPACITY_RANGE, "min": 50.0, "max": 150.0, "unit": "kWh"},
    {"name": POWER_LIMIT_RANGE, "min": 25.0, "max": 75.0, "unit": "kW"},
)


class StudyRangeError(ValueError):
    """Raised when a required study range is missing or malformed."""


def normalize_hourly_series(values: Any, label: str = "series") -> Tuple[float, ...]:
    """Return a validated 24-value hourly series.

    Accepts plain sequences, numpy arrays, pandas Series, or chart points of
    the form ``{"x": hour, "y": value}`` (ordered by ``x`` first).
    """

    if values is None:
        raise ValueError(f"{label} is required")

    raw = list(values.tolist() if hasattr(values, "tolist") else values)
    if raw and all(isinstance(item, Mapping) for item in raw):
        try:
            raw = [point["y"] for point in sorted(raw, key=lambda point: float(point["x"]))]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"{label} points must carry numeric 'x' and 'y' keys") from exc

    if len(raw) != HOURS_PER_DAY:
        raise ValueError(f"{label} must contain exactly {HOURS_PER_DAY} hourly values, got {len(raw)}")

    normalized: List[float] = []
    for hour, value in enumerate(raw):
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{label}[{hour}] is not numeric: {value!r}") from exc
        if not math.isfinite(number):
            raise ValueError(f"{label}[{hour}] must be a finite number")
        normalized.append(number)
    return tuple(normalized)


def _entries_to_mapping(entries: Any) -> Dict[str, Any]:
    if entries is None:
        return {}
    if isinstance(entries, Mapping):
        return dict(entries)

    mapping: Dict[str, Any] = {}
    for entry in entries:
        if not isinstance(entry, Mapping) or "name" not in entry:
            raise ValueError("Parameter entries must be mappings with 'name' and 'value' keys")
        # First match wins, like a find() over the table.
        mapping.setdefault(str(entry["name"]), entry.get("value"))
    return mapping


def _lookup(mapping: Mapping[str, Any], key: str, default: float, scale: float = 1.0) -> float:
    value = mapping.get(key)
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be numeric, got {value!r}") from exc
    return number / scale


@dataclass(frozen=True)
class SizingParameters:
    """Financial and technical assumptions for one sizing study.

    Units:
    - ``demand_charge``: $/kW-month applied to the daily peak import.
    - ``battery_cost``: $/kWh of capacity; ``power_equipment_cost``: $/kW.
    - ``installation_cost``: one-time $.
    - ``efficiency``, ``degradation_rate``, ``discount_rate``: fractions.
    """

    demand_charge: float = 0.0
    battery_cost: float = 0.0
    power_equipment_cost: float = 0.0
    installation_cost: float = 0.0
    efficiency: float = 1.0
    degradation_rate: float = 0.02
    holding_period_years: int = 10
    discount_rate: float = 0.05

    def __post_init__(self) -> None:
        for name in ("demand_charge", "battery_cost", "power_equipment_cost", "installation_cost"):
            value = float(getattr(self, name))
            if not math.isfinite(value):
                raise ValueError(f"{name} must be a finite number")
            if value < 0:
                raise ValueError(f"{name} must be non-negative")
        if not math.isfinite(self.efficiency) or not 0.0 < self.efficiency <= 1.0:
            raise ValueError("efficiency must be within (0, 100] percent")
        for name in ("degradation_rate", "discount_rate"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value <= -1.0:
                raise ValueError(f"{name} must be a finite rate above -100%")
        if not isinstance(self.holding_period_years, int) or self.holding_period_years < 1:
            raise ValueError("holding_period_years must be an integer of at least 1")

    @classmethod
    def from_entries(
        cls,
        entries: Optional[Iterable[Mapping[str, Any]] | Mapping[str, Any]],
        degradation_key: str = DEGRADATION_KEY,
    ) -> "SizingParameters":
        """Build parameters from ``{name, value, unit}`` rows or a name->value mapping.

        Percent inputs are converted to fractions. Names are matched exactly;
        anything missing falls back to the dataclass defaults. An explicit
        ``0`` is kept as zero rather than treated as missing, so a zero discount
        or degradation rate is honored instead of reverting to 5% or 2%.
        The degradation rate is read from ``degradation_key``, which defaults to the legacy
        ``"Degradation"`` lookup so existing studies keep their 2% default;
        pass ``DEGRADATION_RATE_KEY`` to honor the table's declared row.
        """

        mapping = _entries_to_mapping(entries)
        holding_period = _lookup(mapping, HOLDING_PERIOD_KEY, 10.0)
        if not math.isfinite(holding_period) or holding_period != int(holding_period):
            raise ValueError(f"{HOLDING_PERIOD_KEY} must be a whole number of years")

        return cls(
            demand_charge=_lookup(mapping, DEMAND_CHARGE_KEY, 0.0),
            battery_cost=_lookup(mapping, BATTERY_COST_KEY, 0.0),
            power_equipment_cost=_lookup(mapping, POWER_EQUIPMENT_COST_KEY, 0.0),
            installation_cost=_lookup(mapping, INSTALLATION_COST_KEY, 0.0),
            efficiency=_lookup(mapping, EFFICIENCY_KEY, 1.0, scale=100.0),
            degradation_rate=_lookup(mapping, degradation_key, 0.02, scale=100.0),
            holding_period_years=int(holding_period),
            discount_rate=_lookup(mapping, DISCOUNT_RATE_KEY, 0.05, scale=100.0),
        )


def coerce_parameters(params: Any, degradation_key: str = DEGRADATION_KEY) -> SizingParameters:
    """Return ``params`` as :class:`SizingParameters`, parsing raw entries if needed."""

    if isinstance(params, SizingParameters):
        return params
    return SizingParameters.from_entries(params, degradation_key=degradation_key)


@dataclass(frozen=True)
class StudyRange:
    """Inclusive ``[min_value, max_value]`` span searched for one sizing variable."""

    name: str
    min_value: float
    max_value: float
    unit: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StudyRange":
        name = str(payload.get("name", ""))
        try:
            min_value = float(payload["min"])
            max_value = float(payload["max"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StudyRangeError(f"{name or 'Study range'} needs numeric 'min' and 'max'") from exc
        return cls(name=name, min_value=min_value, max_value=max_value, unit=str(payload.get("unit", "")))


def _validate_range(study_range: StudyRange) -> StudyRange:
    if not (math.isfinite(study_range.min_value) and math.isfinite(study_range.max_value)):
        raise StudyRangeError(f"{study_range.name} range must have finite bounds")
    if study_range.min_value < 0:
        raise StudyRangeError(f"{study_range.name} range cannot start below zero")
    if study_range.min_value > study_range.max_value:
        raise StudyRangeError(f"{study_range.name} range min must not exceed max")
    return study_range


def find_study_ranges(
    ranges: Optional[Sequence[Mapping[str, Any] | StudyRange]],
) -> Tuple[StudyRange, StudyRange]:
    """Return the ``(Battery Capacity, Power Limit)`` ranges or raise StudyRangeError."""

    by_name: Dict[str, StudyRange] = {}
    for item in ranges or []:
        study_range = item if isinstance(item, StudyRange) else StudyRange.from_dict(item)
        by_name.setdefault(study_range.name, study_range)

    capacity = by_name.get(BATTERY_CAPACITY_RANGE)
    power = by_name.get(POWER_LIMIT_RANGE)
    if capacity is None or power is None:
        raise StudyRangeError(f"{BATTERY_CAPACITY_RANGE} or {POWER_LIMIT_RANGE} range not found")
    return _validate_range(capacity), _validate_range(power)


__all__ = [
    "BATTERY_CAPACITY_RANGE",
    "DEFAULT_LOAD_KW",
    "DEFAULT_PARAMETER_TABLE",
    "DEFAULT_PRICE_USD_PER_KWH",
    "DEFAULT_STUDY_RANGES",
    "DEGRADATION_KEY",
    "DEGRADATION_RATE_KEY",
    "HOURS_PER_DAY",
    "POWER_LIMIT_RANGE",
    "SizingParameters",
    "StudyRange",
    "StudyRangeError",
    "coerce_parameters",
    "find_study_ranges",
    "normalize_hourly_series",
]
