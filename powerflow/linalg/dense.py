"""Dense LU decomposition with row pivoting.

Doolittle elimination on a copy of the input: the returned matrix holds
the unit lower factor below the diagonal and the upper factor on and
above it. Pivot rows are chosen by the raw magnitude of the candidates
in the current column.
"""

from __future__ import annotations

import numpy as np

from powerflow.core.exceptions import SingularMatrixError


def _as_square(matrix: np.ndarray) -> np.ndarray:
    a = np.asarray(matrix)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError(f"Expected a square matrix, got shape {a.shape}")
    dtype = np.complex128 if np.iscomplexobj(a) else np.float64
    return np.array(a, dtype=dtype, copy=True)


def _is_zero_pivot(value: complex, scale: float) -> bool:
    return abs(value) <= np.finfo(np.float64).eps * scale


def decompose(matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray, int]:
    """Factorise ``matrix`` as P·A = L·U.

    Returns:
        (lu, perm, toggle): the combined LU matrix, the row permutation
        (``perm[i]`` is the source row of row ``i``) and the permutation
        sign, +1 or -1.

    Raises:
        SingularMatrixError: a zero pivot was encountered.
    """
    lu = _as_square(matrix)
    n = lu.shape[0]
    perm = np.arange(n)
    toggle = 1
    scale = float(np.max(np.abs(lu))) if n else 0.0

    for j in range(n):
        p = j + int(np.argmax(np.abs(lu[j:, j])))
        if p != j:
            lu[[j, p]] = lu[[p, j]]
            perm[[j, p]] = perm[[p, j]]
            toggle = -toggle

        pivot = lu[j, j]
        if scale == 0.0 or _is_zero_pivot(pivot, scale):
            raise SingularMatrixError(f"Zero pivot in column {j}, matrix is singular")

        lu[j + 1:, j] /= pivot
        lu[j + 1:, j + 1:] -= np.outer(lu[j + 1:, j], lu[j, j + 1:])

    return lu, perm, toggle


def _substitute(lu: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Forward then back substitution on an already permuted right-hand side."""
    n = lu.shape[0]
    x = b.copy()
    for i in range(1, n):
        x[i] -= lu[i, :i] @ x[:i]
    for i in range(n - 1, -1, -1):
        x[i] = (x[i] - lu[i, i + 1:] @ x[i + 1:]) / lu[i, i]
    return x


def solve(matrix: np.ndarray, rhs: np.ndarray) -> np.ndarray:
    """Solve ``A·x = b`` for a one-dimensional right-hand side."""
    lu, perm, _ = decompose(matrix)
    b = np.asarray(rhs)
    if b.shape != (lu.shape[0],):
        raise ValueError(f"Right-hand side shape {b.shape} does not match matrix {lu.shape}")
    dtype = np.result_type(lu.dtype, b.dtype, np.float64)
    return _substitute(lu.astype(dtype, copy=False), b[perm].astype(dtype))


def inverse(matrix: np.ndarray) -> np.ndarray:
    lu, perm, _ = decompose(matrix)
    n = lu.shape[0]
    identity = np.eye(n, dtype=lu.dtype)
    result = np.empty((n, n), dtype=lu.dtype)
    for col in range(n):
        result[:, col] = _substitute(lu, identity[perm, col])
    return result


def det(matrix: np.ndarray) -> complex | float:
    """Determinant from the LU diagonal; 0.0 for a singular matrix."""
    try:
        lu, _, toggle = decompose(matrix)
    except SingularMatrixError:
        return 0.0
    value = toggle * np.prod(np.diag(lu))
    return complex(value) if np.iscomplexobj(lu) else float(value)
