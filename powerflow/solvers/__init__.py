"""Gauss-Seidel and Newton-Raphson solvers and their shared control logic."""

from powerflow.solvers.gauss_seidel import solve_gauss_seidel
from powerflow.solvers.newton_raphson import solve_newton_raphson
from powerflow.solvers.options import CalculationOptions, LinearSolverKind, SolverType
from powerflow.solvers.result import SolveResult

__all__ = [
    "CalculationOptions",
    "LinearSolverKind",
    "SolveResult",
    "SolverType",
    "solve_gauss_seidel",
    "solve_newton_raphson",
]
