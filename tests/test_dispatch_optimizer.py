import math

import numpy as np
import pytest

from services import dispatch_optimizer
from services.dispatch_optimizer import (
    SOC_MAX,
    SOC_MIN,
    DispatchSolveError,
    build_dispatch_model,
    open_dispatch_model,
    optimize_dispatch,
)
from services.sizing_inputs import DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, SizingParameters

TOL = 1e-6


def _params(**overrides) -> SizingParameters:
    base = dict(
        demand_charge=23.05,
        battery_cost=150.0,
        power_equipment_cost=150.0,
        installation_cost=10_000.0,
        efficiency=0.9,
        degradation_rate=0.02,
        holding_period_years=10,
        discount_rate=0.05,
    )
    base.update(overrides)
    return SizingParameters(**base)


def test_schedule_respects_load_balance_and_energy_bounds() -> None:
    capacity = 100.0
    result = optimize_dispatch(capacity, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())

    assert result.status == "Optimal"
    assert len(result.grid_import_kw) == 24
    for t in range(24):
        balance = result.grid_import_kw[t] - result.charge_kw[t] + result.discharge_kw[t]
        assert balance == pytest.approx(DEFAULT_LOAD_KW[t], abs=TOL)
        assert SOC_MIN * capacity - TOL <= result.stored_energy_kwh[t] <= SOC_MAX * capacity + TOL
        assert result.soc[t] == pytest.approx(result.stored_energy_kwh[t] / capacity)
        assert -TOL <= result.charge_kw[t] <= 50.0 + TOL
        assert -TOL <= result.discharge_kw[t] <= 50.0 + TOL


def test_energy_balance_wraps_to_start_of_day() -> None:
    efficiency = 0.9
    result = optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params(efficiency=efficiency))

    gain = math.sqrt(efficiency)
    draw = 2.0 - math.sqrt(efficiency)
    energy = result.stored_energy_kwh
    for t in range(24):
        expected_next = energy[t] + gain * result.charge_kw[t] - draw * result.discharge_kw[t]
        assert energy[(t + 1) % 24] == pytest.approx(expected_next, abs=1e-5)


def test_flat_price_without_demand_charge_leaves_battery_idle() -> None:
    flat_price = [0.16] * 24
    result = optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, flat_price, _params(demand_charge=0.0))

    assert result.status == "Optimal"
    assert np.allclose(result.grid_import_kw, DEFAULT_LOAD_KW, atol=TOL)
    assert np.allclose(result.charge_kw, 0.0, atol=TOL)
    assert np.allclose(result.discharge_kw, 0.0, atol=TOL)
    assert result.optimal_annual_cost == pytest.approx(365 * 0.16 * sum(DEFAULT_LOAD_KW), rel=1e-6)


def test_demand_charge_shaves_the_morning_peak() -> None:
    result = optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())

    assert max(DEFAULT_LOAD_KW) == pytest.approx(47.88)
    assert max(result.grid_import_kw) < 47.88
    assert result.peak_import_kw == pytest.approx(max(result.grid_import_kw), abs=TOL)


def test_repeated_solves_are_identical() -> None:
    first = optimize_dispatch(75.0, 37.5, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())
    second = optimize_dispatch(75.0, 37.5, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())

    assert first.optimal_annual_cost == second.optimal_annual_cost
    assert first.npv == second.npv


def test_npv_is_final_with_battery_entry() -> None:
    params = _params(holding_period_years=7)
    result = optimize_dispatch(50.0, 25.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, params)

    assert result.npv_by_year is not None
    assert len(result.npv_by_year.with_battery) == 8
    assert len(result.npv_by_year.without_battery) == 8
    assert result.npv == result.npv_by_year.with_battery[-1]
    assert result.npv_by_year.with_battery[0] == pytest.approx(150 * 50 + 150 * 25 + 10_000)


def test_accepts_raw_parameter_entries() -> None:
    entries = [
        {"name": "Demand Charge", "value": 23.05, "unit": "$/kW"},
        {"name": "Efficiency", "value": 90, "unit": "%"},
    ]
    from_entries = optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, entries)
    from_dataclass = optimize_dispatch(
        100.0,
        50.0,
        DEFAULT_LOAD_KW,
        DEFAULT_PRICE_USD_PER_KWH,
        SizingParameters(demand_charge=23.05, efficiency=0.9),
    )

    assert from_entries.optimal_annual_cost == pytest.approx(from_dataclass.optimal_annual_cost)


def test_to_dict_uses_chart_field_names() -> None:
    result = optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())
    payload = result.to_dict()

    assert payload["status"] == "Optimal"
    assert payload["capacity"] == 100.0
    assert payload["power"] == 50.0
    assert len(payload["newLoad"]) == 24
    assert len(payload["SoCProfile"]) == 24
    assert payload["npvByYear"]["withBattery"][-1] == payload["npv"]


def test_rejects_wrong_length_profile() -> None:
    with pytest.raises(ValueError):
        optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW[:23], DEFAULT_PRICE_USD_PER_KWH, _params())


def test_rejects_negative_size() -> None:
    with pytest.raises(ValueError):
        build_dispatch_model(-1.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())


def test_model_layout_uses_native_bounds() -> None:
    model = build_dispatch_model(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())
    layout = model.layout

    assert model.A_eq.shape == (48, layout.n_vars)
    assert model.A_ub.shape == (72, layout.n_vars)
    assert model.bounds[layout.charge[3]] == (0.0, 50.0)
    assert model.bounds[layout.energy[0]] == pytest.approx((10.0, 95.0))
    assert model.bounds[layout.grid_import[0]] == (None, None)
    assert model.bounds[layout.peak_import] == (0.0, None)


def test_model_is_released_when_scope_raises() -> None:
    captured = []
    with pytest.raises(RuntimeError):
        with open_dispatch_model(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params()) as model:
            captured.append(model)
            raise RuntimeError("boom")

    assert captured[0].released
    assert captured[0].A_eq is None


def test_solver_exception_becomes_dispatch_error_and_releases_model(monkeypatch) -> None:
    built = []
    original_build = dispatch_optimizer.build_dispatch_model

    def _tracking_build(*args, **kwargs):
        model = original_build(*args, **kwargs)
        built.append(model)
        return model

    def _exploding_linprog(*args, **kwargs):
        raise MemoryError("out of memory")

    monkeypatch.setattr(dispatch_optimizer, "build_dispatch_model", _tracking_build)
    monkeypatch.setattr(dispatch_optimizer, "linprog", _exploding_linprog)

    with pytest.raises(DispatchSolveError, match="out of memory"):
        optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())

    assert len(built) == 1
    assert built[0].released


def test_memory_error_during_build_becomes_dispatch_error(monkeypatch) -> None:
    def _failing_build(*args, **kwargs):
        raise MemoryError("cannot allocate LP matrices")

    monkeypatch.setattr(dispatch_optimizer, "build_dispatch_model", _failing_build)

    with pytest.raises(DispatchSolveError, match="cannot allocate LP matrices"):
        optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())


def test_non_optimal_status_returns_error_result(monkeypatch) -> None:
    class _Infeasible:
        status = 2
        message = "The problem is infeasible."
        x = None
        fun = None

    monkeypatch.setattr(dispatch_optimizer, "linprog", lambda *args, **kwargs: _Infeasible())

    result = optimize_dispatch(100.0, 50.0, DEFAULT_LOAD_KW, DEFAULT_PRICE_USD_PER_KWH, _params())

    assert result.status == "Error"
    assert not result.is_optimal
    assert math.isnan(result.npv)
    assert result.grid_import_kw == ()
    assert "infeasible" in result.message
    assert result.to_dict()["npv"] is None
