from __future__ import annotations

from dataclasses import dataclass, field

from powerflow.network.network_model import NetworkModel
from powerflow.network.voltage_checks import VoltageViolation


@dataclass
class SolveResult:
    """Outcome of one solver invocation."""
    model: NetworkModel
    success: bool
    iterations: int
    summary: str = ""
    violations: list[VoltageViolation] = field(default_factory=list)
    forced_nodes: list[int] = field(default_factory=list)
