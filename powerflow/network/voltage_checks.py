"""Post-solve voltage checks.

Deviation is reported in percent of nominal voltage, measured from the
preset magnitude for PV nodes and from nominal for the rest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from powerflow.network.network_model import Branch, NetworkModel, Node, NodeType

logger = logging.getLogger(__name__)


@dataclass
class VoltageViolation:
    """A node whose voltage magnitude left the allowed band."""
    node_id: int
    deviation_pct: float
    kind: str  # "overflow" or "lack"
    voltage_kv: float

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "deviation_pct": self.deviation_pct,
            "kind": self.kind,
            "voltage_kv": self.voltage_kv,
        }


def _deviation_pct(node: Node) -> float:
    u_nom = abs(node.nominal_voltage)
    reference = node.preset_magnitude if node.type == NodeType.PV else u_nom
    return round((abs(node.voltage) - reference) * 100.0 / u_nom, 2)


def check_voltage_overflow(model: NetworkModel, percentage: float) -> list[VoltageViolation]:
    rate = percentage / 100.0
    return [
        VoltageViolation(n.id, _deviation_pct(n), "overflow", abs(n.voltage))
        for n in model.nodes
        if abs(n.voltage) - abs(n.nominal_voltage) * (1 + rate) >= 0
    ]


def check_voltage_lack(model: NetworkModel, percentage: float) -> list[VoltageViolation]:
    rate = percentage / 100.0
    return [
        VoltageViolation(n.id, _deviation_pct(n), "lack", abs(n.voltage))
        for n in model.nodes
        if abs(n.nominal_voltage) * (1 - rate) - abs(n.voltage) >= 0
    ]


def check_voltage_constraints(model: NetworkModel, percentage: float) -> list[VoltageViolation]:
    """Both band checks; every violation is logged."""
    violations = check_voltage_overflow(model, percentage) + check_voltage_lack(model, percentage)
    for v in violations:
        logger.warning(
            "Voltage %s at node %s: %.2f kV, %+.2f%% of nominal",
            v.kind, v.node_id, v.voltage_kv, v.deviation_pct,
        )
    return violations


def min_voltage_node(model: NetworkModel) -> tuple[Node, float]:
    """Node with the lowest |U|/|Unom| and that ratio."""
    ratios = np.abs(model.voltage) / np.abs([n.nominal_voltage for n in model.nodes])
    i = int(np.argmin(ratios))
    return model.nodes[i], float(ratios[i])


def max_voltage_node(model: NetworkModel) -> tuple[Node, float]:
    ratios = np.abs(model.voltage) / np.abs([n.nominal_voltage for n in model.nodes])
    i = int(np.argmax(ratios))
    return model.nodes[i], float(ratios[i])


def voltage_difference(model: NetworkModel, precision: int = 2, in_percent: bool = True) -> np.ndarray:
    """Deviation of every node from its reference magnitude, calculation order.

    The reference is the preset magnitude for PV nodes and |Unom| for the
    rest; ``in_percent`` expresses it in percent of |Unom|, otherwise kV.
    """
    nominal = np.abs([n.nominal_voltage for n in model.nodes])
    reference = np.array([
        n.preset_magnitude if n.type == NodeType.PV else abs(n.nominal_voltage)
        for n in model.nodes
    ])
    diff = np.abs(model.voltage) - reference
    if in_percent:
        diff = diff * 100.0 / nominal
    return np.round(diff, precision)


def angle_absolute_difference(model: NetworkModel, precision: int = 2) -> np.ndarray:
    """|θ_from - θ_to| across every branch in degrees, branch order."""
    angles = np.angle(model.voltage, deg=True)
    start = np.array([br.from_index for br in model.branches], dtype=int)
    end = np.array([br.to_index for br in model.branches], dtype=int)
    return np.abs(np.round(angles[start] - angles[end], precision))


def max_angle_branch(model: NetworkModel) -> tuple[Branch | None, float]:
    """Branch with the largest voltage angle difference across it, degrees."""
    if not model.branches:
        return None, 0.0
    diffs = angle_absolute_difference(model, 5)
    i = int(np.argmax(diffs))
    return model.branches[i], round(float(diffs[i]), 2)
