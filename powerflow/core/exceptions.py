"""Power flow error taxonomy.

Fatal conditions are raised as exceptions and stop the current solve
attempt. Non-convergence and post-solve constraint violations are not
errors: they are reported through ``success = False`` on the result.
"""

from __future__ import annotations


class PowerFlowError(Exception):
    """Base class for fatal power flow errors."""


class TopologyError(PowerFlowError):
    """Malformed network: unknown branch endpoints, duplicate ids, bad taps."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class SingularMatrixError(PowerFlowError):
    """A zero pivot was met while factorising a matrix."""


class VoltageBandError(PowerFlowError):
    """Gauss-Seidel voltage estimate left the plausibility band (divergence)."""

    def __init__(self, message: str, node_ids: list[int]):
        super().__init__(message)
        self.node_ids = node_ids


class VoltageLackError(VoltageBandError):
    pass


class VoltageOverflowError(VoltageBandError):
    pass
