"""Utility helpers shared across the API and demo entrypoints."""

from utils.sweeps import (
    SweepError,
    SweepOutcome,
    SweepProgress,
    SweepSettings,
    build_size_grid,
    generate_values,
    run_sizing_sweep,
    sweep_results_frame,
)

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
