"""Daily LP dispatch optimizer used by the BESS sizing sweep.

For one (capacity, power) candidate the optimizer builds a 24-hour linear
program over grid import, charge, discharge, and stored energy, solves it
with HiGHS through ``scipy.optimize.linprog``, and prices the result over
the holding period.

Variable indexing
-----------------
For ``T = 24`` hourly steps the decision vector is laid out as:

===========  ======  ==============================================
Slice        Length  Variable
===========  ======  ==============================================
0  .. T-1    T       grid_import[t]  - kW, free sign
T  .. 2T-1   T       charge[t]       - kW, [0, power]
2T .. 3T-1   T       discharge[t]    - kW, [0, power]
3T .. 4T-1   T       energy[t]       - kWh, [SOC_MIN, SOC_MAX] x capacity
4T           1       peak_import     - kW, >= 0
===========  ======  ==============================================

Round-trip efficiency ``k`` is split symmetrically: charging stores
``sqrt(k)`` per kWh drawn and discharging removes ``2 - sqrt(k)`` per kWh
delivered. The energy balance wraps hour 23 back to hour 0 so the schedule
is a steady daily cycle.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import math
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import linprog

from economics import DAYS_PER_YEAR, MONTHS_PER_YEAR, NPVProjection, project_npv
from services.sizing_inputs import (
    HOURS_PER_DAY,
    SizingParameters,
    coerce_parameters,
    normalize_hourly_series,
)

logger = logging.getLogger(__name__)

SOC_MIN = 0.10
SOC_MAX = 0.95
STEP_HOURS = 1.0
LP_SOLVER_METHOD = "highs"

STATUS_OPTIMAL = "Optimal"
STATUS_ERROR = "Error"


class DispatchSolveError(RuntimeError):
    """Raised when the LP solver fails for a single dispatch candidate."""


@dataclass(frozen=True)
class VariableLayout:
    """Column indices of each decision variable family, indexed by hour."""

    grid_import: np.ndarray
    charge: np.ndarray
    discharge: np.ndarray
    energy: np.ndarray
    peak_import: int
    n_vars: int

    @classmethod
    def for_hours(cls, hours: int = HOURS_PER_DAY) -> "VariableLayout":
        return cls(
            grid_import=np.arange(0, hours),
            charge=np.arange(hours, 2 * hours),
            discharge=np.arange(2 * hours, 3 * hours),
            energy=np.arange(3 * hours, 4 * hours),
            peak_import=4 * hours,
            n_vars=4 * hours + 1,
        )


@dataclass
class DispatchModel:
    """LP instance for one candidate; owned by a single :func:`open_dispatch_model` scope."""

    layout: VariableLayout
    capacity_kwh: float
    power_kw: float
    c: Optional[np.ndarray]
    A_ub: Optional[np.ndarray]
    b_ub: Optional[np.ndarray]
    A_eq: Optional[np.ndarray]
    b_eq: Optional[np.ndarray]
    bounds: Optional[List[Tuple[Optional[float], Optional[float]]]]
    released: bool = False

    def release(self) -> None:
        """Drop the matrices so repeated sweeps never accumulate solver state."""

        self.c = None
        self.A_ub = None
        self.b_ub = None
        self.A_eq = None
        self.b_eq = None
        self.bounds = None
        self.released = True


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatch solve plus its lifetime cost projection.

    Series are hourly (length 24) for ``Optimal`` results and empty otherwise.
    ``npv`` is the cumulative discounted cost with the battery; lower is better.
    """

    status: str
    capacity_kwh: float
    power_kw: float
    optimal_annual_cost: float = float("nan")
    grid_import_kw: Tuple[float, ...] = ()
    stored_energy_kwh: Tuple[float, ...] = ()
    soc: Tuple[float, ...] = ()
    charge_kw: Tuple[float, ...] = ()
    discharge_kw: Tuple[float, ...] = ()
    peak_import_kw: float = float("nan")
    npv: float = float("nan")
    npv_by_year: Optional[NPVProjection] = None
    message: str = ""

    @property
    def is_optimal(self) -> bool:
        return self.status == STATUS_OPTIMAL

    @property
    def npv_without_battery(self) -> float:
        if self.npv_by_year is None:
            return float("nan")
        return self.npv_by_year.npv_without_battery

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the field names the charting front end expects."""

        def _maybe(values: Tuple[float, ...]) -> Optional[List[float]]:
            return list(values) if values else None

        def _number(value: float) -> Optional[float]:
            return value if math.isfinite(value) else None

        payload: Dict[str, Any] = {
            "status": self.status,
            "optimalCost": _number(self.optimal_annual_cost),
            "newLoad": _maybe(self.grid_import_kw),
            "energyProfile": _maybe(self.stored_energy_kwh),
            "SoCProfile": _maybe(self.soc),
            "chargeProfile": _maybe(self.charge_kw),
            "dischargeProfile": _maybe(self.discharge_kw),
            "peakLoad": _number(self.peak_import_kw),
            "npv": _number(self.npv),
            "npvByYear": self.npv_by_year.to_dict() if self.npv_by_year is not None else None,
            "capacity": self.capacity_kwh,
            "power": self.power_kw,
        }
        if self.message:
            payload["error"] = self.message
        return payload


def _set_row(matrix: np.ndarray, row: int, terms: Sequence[Tuple[int, float]]) -> None:
    for column, coef in terms:
        matrix[row, column] += coef


def _validate_size(capacity_kwh: float, power_kw: float) -> None:
    for name, value in (("capacity_kwh", capacity_kwh), ("power_kw", power_kw)):
        if not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number")
        if value < 0:
            raise ValueError(f"{name} must be non-negative")


def build_dispatch_model(
    capacity_kwh: float,
    power_kw: float,
    load_kw: Sequence[float],
    price_usd_per_kwh: Sequence[float],
    params: SizingParameters,
) -> DispatchModel:
    """Construct the LP matrices for one candidate size.

    Returns a :class:`DispatchModel` whose arrays are ready for
    ``scipy.optimize.linprog``. Inequalities are expressed as
    ``A_ub @ x <= b_ub``.
    """

    _validate_size(capacity_kwh, power_kw)
    load = np.asarray(normalize_hourly_series(load_kw, "load_kw"))
    price = np.asarray(normalize_hourly_series(price_usd_per_kwh, "price_usd_per_kwh"))

    T = HOURS_PER_DAY
    layout = VariableLayout.for_hours(T)
    charge_gain = STEP_HOURS * math.sqrt(params.efficiency)
    discharge_draw = STEP_HOURS * (2.0 - math.sqrt(params.efficiency))
    e_min = SOC_MIN * capacity_kwh
    e_max = SOC_MAX * capacity_kwh

    # --- Objective: 12 x monthly peak charge + 365 x daily energy cost ---
    c = np.zeros(layout.n_vars)
    c[layout.peak_import] = MONTHS_PER_YEAR * params.demand_charge
    c[layout.grid_import] = DAYS_PER_YEAR * price * STEP_HOURS

    bounds: List[Tuple[Optional[float], Optional[float]]] = [(None, None)] * layout.n_vars
    for t in range(T):
        bounds[layout.charge[t]] = (0.0, power_kw)
        bounds[layout.discharge[t]] = (0.0, power_kw)
        bounds[layout.energy[t]] = (e_min, e_max)
    bounds[layout.peak_import] = (0.0, None)

    # --- Equality rows: load balance (0..T-1), cyclic energy balance (T..2T-1) ---
    A_eq = np.zeros((2 * T, layout.n_vars))
    b_eq = np.zeros(2 * T)
    for t in range(T):
        _set_row(
            A_eq,
            t,
            [(layout.grid_import[t], 1.0), (layout.charge[t], -1.0), (layout.discharge[t], 1.0)],
        )
        b_eq[t] = load[t]

        _set_row(
            A_eq,
            T + t,
            [
                (layout.energy[(t + 1) % T], 1.0),
                (layout.energy[t], -1.0),
                (layout.charge[t], -charge_gain),
                (layout.discharge[t], discharge_draw),
            ],
        )

    # --- Inequality rows: peak tracking, SoC headroom for charge and discharge ---
    A_ub = np.zeros((3 * T, layout.n_vars))
    b_ub = np.zeros(3 * T)
    for t in range(T):
        _set_row(A_ub, t, [(layout.grid_import[t], 1.0), (layout.peak_import, -1.0)])

        _set_row(A_ub, T + t, [(layout.energy[t], 1.0), (layout.charge[t], charge_gain)])
        b_ub[T + t] = e_max

        # E_t - draw * d_t >= e_min, flipped into <= form.
        _set_row(A_ub, 2 * T + t, [(layout.energy[t], -1.0), (layout.discharge[t], discharge_draw)])
        b_ub[2 * T + t] = -e_min

    return DispatchModel(
        layout=layout,
        capacity_kwh=float(capacity_kwh),
        power_kw=float(power_kw),
        c=c,
        A_ub=A_ub,
        b_ub=b_ub,
        A_eq=A_eq,
        b_eq=b_eq,
        bounds=bounds,
    )


@contextmanager
def open_dispatch_model(
    capacity_kwh: float,
    power_kw: float,
    load_kw: Sequence[float],
    price_usd_per_kwh: Sequence[float],
    params: SizingParameters,
) -> Iterator[DispatchModel]:
    """Yield a freshly built model and release it on every exit path."""

    try:
        model = build_dispatch_model(capacity_kwh, power_kw, load_kw, price_usd_per_kwh, params)
    except MemoryError as exc:
        raise DispatchSolveError(f"Error building LP: {exc}") from exc
    logger.debug("Acquired dispatch model for %.2f kWh / %.2f kW", capacity_kwh, power_kw)
    try:
        yield model
    finally:
        model.release()
        logger.debug("Released dispatch model for %.2f kWh / %.2f kW", capacity_kwh, power_kw)


def solve_dispatch_model(model: DispatchModel) -> Any:
    """Run HiGHS on ``model`` and return the raw ``OptimizeResult``."""

    if model.released:
        raise DispatchSolveError("Dispatch model was already released")
    try:
        return linprog(
            model.c,
            A_ub=model.A_ub,
            b_ub=model.b_ub,
            A_eq=model.A_eq,
            b_eq=model.b_eq,
            bounds=model.bounds,
            method=LP_SOLVER_METHOD,
        )
    except (ValueError, RuntimeError, MemoryError) as exc:
        raise DispatchSolveError(f"Error solving LP: {exc}") from exc


def optimize_dispatch(
    capacity_kwh: float,
    power_kw: float,
    load_kw: Sequence[float],
    price_usd_per_kwh: Sequence[float],
    params: SizingParameters | Any,
) -> DispatchResult:
    """Solve the least-cost daily dispatch for one size and price it over the holding period.

    Returns an ``Optimal`` result on success and an ``Error`` result (with the
    solver message) when HiGHS finishes without an optimum. Solver exceptions
    propagate as :class:`DispatchSolveError`; callers sweeping many sizes are
    expected to catch it per candidate.
    """

    sizing = coerce_parameters(params)
    load = normalize_hourly_series(load_kw, "load_kw")
    price = normalize_hourly_series(price_usd_per_kwh, "price_usd_per_kwh")
    capacity_kwh = float(capacity_kwh)
    power_kw = float(power_kw)

    with open_dispatch_model(capacity_kwh, power_kw, load, price, sizing) as model:
        res = solve_dispatch_model(model)
        if res.status != 0:
            logger.info(
                "Dispatch LP not optimal for %.2f kWh / %.2f kW: %s", capacity_kwh, power_kw, res.message
            )
            return DispatchResult(
                status=STATUS_ERROR,
                capacity_kwh=capacity_kwh,
                power_kw=power_kw,
                message=str(res.message),
            )

        layout = model.layout
        x = np.asarray(res.x, dtype=float)
        grid_import = tuple(float(v) for v in x[layout.grid_import])
        energy = tuple(float(v) for v in x[layout.energy])
        charge = tuple(float(v) for v in x[layout.charge])
        discharge = tuple(float(v) for v in x[layout.discharge])
        peak_import = float(x[layout.peak_import])
        optimal_cost = float(res.fun)

    if capacity_kwh > 0:
        soc = tuple(e / capacity_kwh for e in energy)
    else:
        soc = tuple(0.0 for _ in energy)

    projection = project_npv(optimal_cost, capacity_kwh, power_kw, load, price, sizing)
    return DispatchResult(
        status=STATUS_OPTIMAL,
        capacity_kwh=capacity_kwh,
        power_kw=power_kw,
        optimal_annual_cost=optimal_cost,
        grid_import_kw=grid_import,
        stored_energy_kwh=energy,
        soc=soc,
        charge_kw=charge,
        discharge_kw=discharge,
        peak_import_kw=peak_import,
        npv=projection.npv_with_battery,
        npv_by_year=projection,
    )


__all__ = [
    "DispatchModel",
    "DispatchResult",
    "DispatchSolveError",
    "LP_SOLVER_METHOD",
    "SOC_MAX",
    "SOC_MIN",
    "STATUS_ERROR",
    "STATUS_OPTIMAL",
    "STEP_HOURS",
    "VariableLayout",
    "build_dispatch_model",
    "open_dispatch_model",
    "optimize_dispatch",
    "solve_dispatch_model",
]
