"""Linear system solvers used by the Newton-Raphson step."""

from powerflow.linalg.dense import decompose, det, inverse, solve
from powerflow.linalg.sparse import LinearSolver, get_linear_solver, sparse_solve

__all__ = [
    "LinearSolver",
    "decompose",
    "det",
    "get_linear_solver",
    "inverse",
    "solve",
    "sparse_solve",
]
