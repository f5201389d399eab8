"""Sparse LU strategy behind the same ``solve(A, b)`` contract as the dense path.

The dense solver stays the default; large networks can select this one
through ``CalculationOptions.linear_solver``.
"""

from __future__ import annotations

from typing import Callable, Protocol

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from powerflow.core.exceptions import SingularMatrixError
from powerflow.linalg import dense


class LinearSolver(Protocol):
    def __call__(self, matrix: np.ndarray, rhs: np.ndarray) -> np.ndarray: ...


def sparse_solve(matrix: np.ndarray | sp.spmatrix, rhs: np.ndarray) -> np.ndarray:
    """Solve ``A·x = b`` with SuperLU.

    Raises:
        SingularMatrixError: SuperLU reports an exactly singular factor.
    """
    a = sp.csc_matrix(matrix)
    if a.shape[0] != a.shape[1]:
        raise ValueError(f"Expected a square matrix, got shape {a.shape}")
    try:
        factor = splu(a)
    except RuntimeError as exc:
        raise SingularMatrixError(f"Sparse factorisation failed: {exc}") from exc
    x = factor.solve(np.asarray(rhs, dtype=np.result_type(a.dtype, np.float64)))
    if not np.all(np.isfinite(x)):
        raise SingularMatrixError("Sparse solve produced non-finite values")
    return x


_SOLVERS: dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "dense": dense.solve,
    "sparse": sparse_solve,
}


def get_linear_solver(kind: str = "dense") -> LinearSolver:
    try:
        return _SOLVERS[kind]
    except KeyError:
        raise ValueError(
            f"Unknown linear solver '{kind}'. Available: {', '.join(_SOLVERS)}"
        ) from None
