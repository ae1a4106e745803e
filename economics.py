"""Lifetime cost projection for BESS sizing candidates.

This module stays free of solver and web dependencies so it can be reused
from notebooks or other entrypoints. Provide the annualized operating cost
from a dispatch solve plus the financial assumptions to get cumulative
discounted costs with and without the battery.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

from services.sizing_inputs import SizingParameters, normalize_hourly_series

DAYS_PER_YEAR = 365
MONTHS_PER_YEAR = 12
STEP_HOURS = 1.0


def _discount_factor(discount_rate: float, year_index: int) -> float:
    """Return the discount factor for a given year index (1-indexed)."""

    return 1.0 / ((1.0 + discount_rate) ** year_index)


def _ensure_non_negative_finite(value: float, name: str) -> None:
    """Raise ValueError when a numeric value is negative or non-finite."""

    if not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")


@dataclass(frozen=True)
class NPVProjection:
    """Cumulative discounted costs by year, year 0 through the holding period."""

    with_battery: Tuple[float, ...]
    without_battery: Tuple[float, ...]

    @property
    def npv_with_battery(self) -> float:
        return self.with_battery[-1]

    @property
    def npv_without_battery(self) -> float:
        return self.without_battery[-1]

    def to_dict(self) -> Dict[str, Any]:
        return {"withBattery": list(self.with_battery), "withoutBattery": list(self.without_battery)}


def baseline_annual_cost(
    load_kw: Sequence[float],
    price_usd_per_kwh: Sequence[float],
    demand_charge: float,
) -> float:
    """Annual bill without storage: energy cost x 365 plus the monthly peak charge x 12."""

    load = normalize_hourly_series(load_kw, "load_kw")
    price = normalize_hourly_series(price_usd_per_kwh, "price_usd_per_kwh")
    _ensure_non_negative_finite(float(demand_charge), "demand_charge")

    daily_energy_cost = sum(kw * rate * STEP_HOURS for kw, rate in zip(load, price))
    return daily_energy_cost * DAYS_PER_YEAR + max(load) * MONTHS_PER_YEAR * demand_charge


def capital_cost(params: SizingParameters, capacity_kwh: float, power_kw: float) -> float:
    """Up-front cost of a candidate: energy + power equipment + fixed installation."""

    _ensure_non_negative_finite(float(capacity_kwh), "capacity_kwh")
    _ensure_non_negative_finite(float(power_kw), "power_kw")
    return (
        params.battery_cost * capacity_kwh
        + params.power_equipment_cost * power_kw
        + params.installation_cost
    )


def project_npv(
    annual_cost_with_battery: float,
    capacity_kwh: float,
    power_kw: float,
    load_kw: Sequence[float],
    price_usd_per_kwh: Sequence[float],
    params: SizingParameters,
) -> NPVProjection:
    """Project cumulative discounted costs over the holding period.

    Parameters
    ----------
    annual_cost_with_battery
        Optimal annualized operating cost from the dispatch LP ($/year).
    capacity_kwh, power_kw
        Candidate size; drives the year-0 capital cost.
    load_kw, price_usd_per_kwh
        The 24-hour profiles used to price the no-battery baseline.
    params
        Financial assumptions. Battery operating cost escalates with
        ``degradation_rate``; the baseline does not.
    """

    if not math.isfinite(annual_cost_with_battery):
        raise ValueError("annual_cost_with_battery must be a finite number")

    baseline = baseline_annual_cost(load_kw, price_usd_per_kwh, params.demand_charge)

    npv_with_battery = capital_cost(params, capacity_kwh, power_kw)
    npv_without_battery = 0.0
    with_battery = [npv_with_battery]
    without_battery = [npv_without_battery]

    for year_idx in range(1, params.holding_period_years + 1):
        factor = _discount_factor(params.discount_rate, year_idx)
        # Degradation raises the battery case's bill year over year.
        npv_with_battery += annual_cost_with_battery * (1.0 + params.degradation_rate) ** year_idx * factor
        npv_without_battery += baseline * factor
        with_battery.append(npv_with_battery)
        without_battery.append(npv_without_battery)

    return NPVProjection(with_battery=tuple(with_battery), without_battery=tuple(without_battery))


__all__ = [
    "NPVProjection",
    "baseline_annual_cost",
    "capital_cost",
    "project_npv",
]
