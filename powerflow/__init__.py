"""Steady-state AC power flow for node/branch networks.

Builds an ordered network model with its admittance matrix and solves
node voltages with Gauss-Seidel or polar Newton-Raphson, switching
voltage-controlled nodes between PV and PQ on reactive power limits.
"""

from powerflow.engine import CalculationResult, calculate, calculate_many
from powerflow.network.network_model import Branch, NetworkModel, Node, NodeType
from powerflow.solvers.options import CalculationOptions, SolverType

__all__ = [
    "Branch",
    "CalculationOptions",
    "CalculationResult",
    "NetworkModel",
    "Node",
    "NodeType",
    "SolverType",
    "calculate",
    "calculate_many",
]

__version__ = "0.1.0"
