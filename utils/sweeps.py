"""Sweep utilities used by both the API and tests."""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from services.dispatch_optimizer import DispatchResult, DispatchSolveError, optimize_dispatch
from services.sizing_inputs import (
    DEGRADATION_KEY,
    StudyRange,
    coerce_parameters,
    find_study_ranges,
    normalize_hourly_series,
)

DispatchFn = Callable[..., DispatchResult]


@dataclass(frozen=True)
class SweepSettings:
    """Grid resolution for the capacity/power sweep.

    The default 5 x 5 grid keeps one sweep to 25 sequential LP solves.
    """

    capacity_intervals: int = 5
    power_intervals: int = 5

    def __post_init__(self) -> None:
        if self.capacity_intervals < 1 or self.power_intervals < 1:
            raise ValueError("capacity_intervals and power_intervals must be at least 1")

    @property
    def total_points(self) -> int:
        return self.capacity_intervals * self.power_intervals


@dataclass(frozen=True)
class SweepError:
    """A grid point whose dispatch solve failed and was skipped."""

    capacity_kwh: float
    power_kw: float
    message: str


@dataclass(frozen=True)
class SweepProgress:
    """Snapshot handed to ``on_progress`` after every grid point."""

    completed: int
    total: int
    percent: float
    best: Optional[DispatchResult]
    latest_error: Optional[str]


@dataclass
class SweepOutcome:
    """Terminal state of one sizing sweep."""

    total_points: int
    results: List[DispatchResult] = field(default_factory=list)
    errors: List[SweepError] = field(default_factory=list)
    best: Optional[DispatchResult] = None
    latest_error: Optional[str] = None
    progress_pct: float = 0.0
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "best": self.best.to_dict() if self.best is not None else None,
            "errors": [
                {"capacity": err.capacity_kwh, "power": err.power_kw, "message": err.message}
                for err in self.errors
            ],
            "error": self.latest_error,
            "progress": self.progress_pct,
            "total": self.total_points,
            "cancelled": self.cancelled,
        }


def generate_values(min_value: float, max_value: float, steps: int) -> List[float]:
    """Return an inclusive list of evenly spaced values.

    The caller is responsible for ensuring ``steps`` is positive. When
    ``steps`` is ``1``, the midpoint is returned to keep the sweep centered.
    """

    steps = max(1, steps)
    if steps == 1:
        return [float((min_value + max_value) / 2.0)]

    span = max_value - min_value
    if span <= 0:
        return [float(min_value)]

    step = span / float(steps - 1)
    return [float(min_value + i * step) for i in range(steps)]


def build_size_grid(
    capacity_range: StudyRange,
    power_range: StudyRange,
    settings: SweepSettings | None = None,
) -> List[Tuple[float, float]]:
    """Return ``(capacity_kwh, power_kw)`` pairs in row-major order (capacity outer)."""

    settings = settings or SweepSettings()
    capacities = generate_values(capacity_range.min_value, capacity_range.max_value, settings.capacity_intervals)
    powers = generate_values(power_range.min_value, power_range.max_value, settings.power_intervals)
    return [(capacity, power) for capacity in capacities for power in powers]


def run_sizing_sweep(
    ranges: Sequence[Mapping[str, Any] | StudyRange] | None,
    params: Any,
    load_kw: Sequence[float],
    price_usd_per_kwh: Sequence[float],
    *,
    settings: SweepSettings | None = None,
    dispatch_fn: DispatchFn = optimize_dispatch,
    on_progress: Callable[[SweepProgress], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
    degradation_key: str = DEGRADATION_KEY,
) -> SweepOutcome:
    """Evaluate every capacity/power pair and keep the lowest-NPV result.

    Points are solved one at a time in grid order so only one LP is alive at
    once. Any exception raised for a point is recorded on the outcome and the
    sweep moves on; a missing or malformed study range raises
    :class:`StudyRangeError` before any point runs.

    Parameters
    ----------
    dispatch_fn
        Called as ``dispatch_fn(capacity, power, load, price, params)``. Tests
        swap in stubs here without touching the sweep mechanics.
    on_progress
        Receives a :class:`SweepProgress` after each grid point.
    should_stop
        Polled before each grid point; returning ``True`` ends the sweep early
        with ``cancelled`` set.
    """

    capacity_range, power_range = find_study_ranges(ranges)
    settings = settings or SweepSettings()
    sizing = coerce_parameters(params, degradation_key=degradation_key)
    load = normalize_hourly_series(load_kw, "load_kw")
    price = normalize_hourly_series(price_usd_per_kwh, "price_usd_per_kwh")

    grid = build_size_grid(capacity_range, power_range, settings)
    outcome = SweepOutcome(total_points=len(grid))
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting sizing sweep over %d points (%s x %s)",
        len(grid),
        settings.capacity_intervals,
        settings.power_intervals,
    )

    for capacity_kwh, power_kw in grid:
        if should_stop is not None and should_stop():
            outcome.cancelled = True
            logger.info("Sizing sweep cancelled after %d points", len(outcome.results) + len(outcome.errors))
            break

        try:
            result = dispatch_fn(capacity_kwh, power_kw, load, price, sizing)
            if not result.is_optimal:
                raise DispatchSolveError(result.message or f"Solver returned status '{result.status}'")
        except Exception as exc:  # noqa: BLE001 - recorded per point
            message = f"Optimization failed for {capacity_kwh:.2f} kWh / {power_kw:.2f} kW: {exc}"
            logger.warning("%s", message)
            outcome.errors.append(SweepError(capacity_kwh, power_kw, str(exc)))
            outcome.latest_error = message
        else:
            outcome.results.append(result)
            if outcome.best is None or result.npv < outcome.best.npv:
                outcome.best = result
            outcome.progress_pct = len(outcome.results) / outcome.total_points * 100.0

        if on_progress is not None:
            on_progress(
                SweepProgress(
                    completed=len(outcome.results),
                    total=outcome.total_points,
                    percent=outcome.progress_pct,
                    best=outcome.best,
                    latest_error=outcome.latest_error,
                )
            )

    logger.info(
        "Sizing sweep finished: %d succeeded, %d failed",
        len(outcome.results),
        len(outcome.errors),
    )
    return outcome


def sweep_results_frame(outcome: SweepOutcome) -> pd.DataFrame:
    """Tidy one-row-per-candidate table for contour charts and downloads."""

    rows = [
        {
            "capacity_kwh": result.capacity_kwh,
            "power_kw": result.power_kw,
            "optimal_annual_cost": result.optimal_annual_cost,
            "npv": result.npv,
            "npv_without_battery": result.npv_without_battery,
            "peak_import_kw": result.peak_import_kw,
        }
        for result in outcome.results
    ]
    df = pd.DataFrame(
        rows,
        columns=[
            "capacity_kwh",
            "power_kw",
            "optimal_annual_cost",
            "npv",
            "npv_without_battery",
            "peak_import_kw",
        ],
    )
    df["is_best"] = False
    if outcome.best is not None and not df.empty:
        best_idx = next(idx for idx, result in enumerate(outcome.results) if result is outcome.best)
        df.loc[best_idx, "is_best"] = True
    return df


__all__ = [
    "SweepError",
    "SweepOutcome",
    "SweepProgress",
    "SweepSettings",
    "build_size_grid",
    "generate_values",
    "run_sizing_sweep",
    "sweep_results_frame",
]
