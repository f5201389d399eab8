"""Calculation options shared by the Gauss-Seidel and Newton-Raphson solvers."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from powerflow.config import settings


LinearSolverKind = Literal["dense", "sparse"]


class SolverType(str, Enum):
    GAUSS_SEIDEL = "gauss_seidel"
    NEWTON_RAPHSON = "newton_raphson"


class CalculationOptions(BaseModel):
    """Tolerances, iteration budget and post-solve checks for one solver run."""

    accuracy: float = Field(default=settings.accuracy, gt=0,
                            description="Residual (NR, MVA) or voltage step (GS, kV) tolerance")
    iterations_count: int = Field(default=settings.iterations_count, ge=1)
    voltage_ratio: float = Field(default=settings.voltage_ratio, gt=0, lt=1,
                                 description="Gauss-Seidel plausibility band width")
    voltage_convergence: float = Field(default=settings.voltage_convergence, gt=0,
                                       description="Voltage step tolerance, not used by Newton-Raphson")
    acceleration_rate: float = Field(default=settings.acceleration_rate, gt=0,
                                     description="Gauss-Seidel relaxation factor")
    use_voltage_constraint: bool = settings.use_voltage_constraint
    voltage_constraint_percentage: float = Field(
        default=settings.voltage_constraint_percentage, gt=0,
        description="Allowed deviation from nominal voltage, %",
    )
    use_breaker_impedance: bool = settings.use_breaker_impedance
    solver_internal_logging: bool = settings.solver_internal_logging
    linear_solver: LinearSolverKind = settings.linear_solver  # type: ignore[assignment]

    @classmethod
    def from_settings(cls) -> CalculationOptions:
        """Options built from the current environment settings."""
        from powerflow.config import Settings

        current = Settings()
        return cls(**{
            name: getattr(current, name)
            for name in cls.model_fields
            if hasattr(current, name)
        })
