from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from services.dispatch_optimizer import DispatchSolveError, optimize_dispatch
from services.sizing_inputs import (
    DEFAULT_LOAD_KW,
    DEFAULT_PARAMETER_TABLE,
    DEFAULT_PRICE_USD_PER_KWH,
    DEFAULT_STUDY_RANGES,
    DEGRADATION_KEY,
    DEGRADATION_RATE_KEY,
    SizingParameters,
    StudyRangeError,
    normalize_hourly_series,
)
from utils.sweeps import SweepSettings, run_sizing_sweep


class ProfilePoint(BaseModel):
    x: float
    y: float


class ParameterEntry(BaseModel):
    name: str
    value: Optional[float] = None
    unit: str = ""


class StudyRangePayload(BaseModel):
    name: str
    min: float
    max: float
    unit: str = ""


class ProfileInputs(BaseModel):
    """Shared load/price/parameter fields; anything omitted falls back to the bundled defaults."""

    load: Optional[List[ProfilePoint]] = None
    price: Optional[List[ProfilePoint]] = None
    inputs: Optional[List[ParameterEntry]] = None
    honor_degradation_rate: bool = False

    @field_validator("load", "price")
    @classmethod
    def _validate_profile_length(cls, value: Optional[List[ProfilePoint]]) -> Optional[List[ProfilePoint]]:
        if value is not None and len(value) != 24:
            raise ValueError("Profiles must contain exactly 24 hourly points.")
        return value


class DispatchRequest(ProfileInputs):
    capacity: float = Field(ge=0)
    power: float = Field(ge=0)


class SweepRequest(ProfileInputs):
    ranges: Optional[List[StudyRangePayload]] = None
    capacity_intervals: int = Field(default=5, ge=1, le=50)
    power_intervals: int = Field(default=5, ge=1, le=50)


def _resolve_profiles(request: ProfileInputs) -> Tuple[Tuple[float, ...], Tuple[float, ...], SizingParameters, List[str]]:
    warnings: List[str] = []
    try:
        if request.load:
            load = normalize_hourly_series([point.model_dump() for point in request.load], "load")
        else:
            load = DEFAULT_LOAD_KW
            warnings.append("Using bundled default load profile.")

        if request.price:
            price = normalize_hourly_series([point.model_dump() for point in request.price], "price")
        else:
            price = DEFAULT_PRICE_USD_PER_KWH
            warnings.append("Using bundled default energy price profile.")

        if request.inputs:
            entries = [entry.model_dump() for entry in request.inputs]
        else:
            entries = list(DEFAULT_PARAMETER_TABLE)
            warnings.append("Using bundled default system parameters.")

        degradation_key = DEGRADATION_RATE_KEY if request.honor_degradation_rate else DEGRADATION_KEY
        params = SizingParameters.from_entries(entries, degradation_key=degradation_key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return load, price, params, warnings


app = FastAPI(
    title="BESS Sizer API",
    description="Grid-search battery sizing backed by a daily dispatch LP.",
    version="0.1.0",
)


_default_cors_origins = [
    # Vite dev/preview servers
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
]
_allowed_origins_env = os.getenv("BESS_SIZER_CORS_ORIGINS", "")
_allowed_origins = [
    origin.strip()
    for origin in _allowed_origins_env.split(",")
    if origin.strip()
] or _default_cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> Dict[str, str]:
    """Simple liveness probe for container orchestrators."""
    return {"status": "ok"}


@app.get("/defaults")
def defaults() -> Dict[str, Any]:
    """Return the bundled load/price profiles, parameter table, and study ranges."""

    return {
        "load": [{"x": hour, "y": value} for hour, value in enumerate(DEFAULT_LOAD_KW)],
        "price": [{"x": hour, "y": value} for hour, value in enumerate(DEFAULT_PRICE_USD_PER_KWH)],
        "inputs": [dict(entry) for entry in DEFAULT_PARAMETER_TABLE],
        "ranges": [dict(entry) for entry in DEFAULT_STUDY_RANGES],
    }


@app.post("/dispatch")
def dispatch(request: DispatchRequest) -> Dict[str, Any]:
    """Solve the daily dispatch LP for a single capacity/power pair."""

    load, price, params, warnings = _resolve_profiles(request)
    try:
        result = optimize_dispatch(request.capacity, request.power, load, price, params)
    except DispatchSolveError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"warnings": warnings, "result": result.to_dict()}


@app.post("/sweep")
def sweep(request: SweepRequest) -> Dict[str, Any]:
    """Run the capacity/power grid search and return every solved point plus the best pick."""

    load, price, params, warnings = _resolve_profiles(request)
    if request.ranges is not None:
        ranges = [entry.model_dump() for entry in request.ranges]
    else:
        ranges = [dict(entry) for entry in DEFAULT_STUDY_RANGES]
        warnings.append("Using bundled default study ranges.")

    try:
        outcome = run_sizing_sweep(
            ranges,
            params,
            load,
            price,
            settings=SweepSettings(
                capacity_intervals=request.capacity_intervals,
                power_intervals=request.power_intervals,
            ),
        )
    except StudyRangeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {"warnings": warnings, **outcome.to_dict()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=False)
