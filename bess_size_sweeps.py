"""Grid search entrypoint for evaluating candidate BESS sizes.

The sweep mechanics live in :mod:`utils.sweeps`; this module re-exports them
for callers that import from the repository root and runs a demo sweep over
the bundled default building profile when executed directly.
"""

from __future__ import annotations

import logging

from services.sizing_inputs import (
    DEFAULT_LOAD_KW,
    DEFAULT_PARAMETER_TABLE,
    DEFAULT_PRICE_USD_PER_KWH,
    DEFAULT_STUDY_RANGES,
)
from utils.sweeps import SweepOutcome, SweepSettings, run_sizing_sweep, sweep_results_frame

__all__ = [
    "run_sizing_sweep",
    "sweep_results_frame",
]


def _run_default_sweep() -> SweepOutcome:
    return run_sizing_sweep(
        list(DEFAULT_STUDY_RANGES),
        list(DEFAULT_PARAMETER_TABLE),
        DEFAULT_LOAD_KW,
        DEFAULT_PRICE_USD_PER_KWH,
        settings=SweepSettings(),
    )


def _main_example() -> None:
    """Execute the default 5 x 5 sweep and print the table plus the recommended size."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    outcome = _run_default_sweep()
    df = sweep_results_frame(outcome)

    print("\nGrid-search results (default building profile):")
    print(df.to_string(index=False, float_format=lambda value: f"{value:,.2f}"))

    if outcome.latest_error:
        print(f"\n{len(outcome.errors)} point(s) failed; last error: {outcome.latest_error}")
    if outcome.best is None:
        print("\nNo candidate solved successfully.")
        return

    best = outcome.best
    print(
        f"\nRecommended: Capacity {best.capacity_kwh:.2f} kWh, Power {best.power_kw:.2f} kW "
        f"(NPV ${best.npv:,.0f} vs ${best.npv_without_battery:,.0f} without battery)"
    )


if __name__ == "__main__":
    _main_example()
