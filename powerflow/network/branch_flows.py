"""Branch currents, branch powers and slack generation after a solve.

Currents are phase currents (kA) and powers three-phase (MVA), from
line-to-line kV: I = Y·U / sqrt(3), S = sqrt(3)·U·conj(I). Positive
values flow from the node into the branch. Parallel branches each use
their own admittance, so every physical element gets its own share.
"""

from __future__ import annotations

import numpy as np

from powerflow.network.network_model import NetworkModel, NodeType, branch_primitive

SQRT3 = np.sqrt(3.0)


def calculate_power_flows(model: NetworkModel) -> NetworkModel:
    """Fill branch currents/powers and Slack generation in place."""
    voltage = model.voltage

    for br in model.branches:
        u_from = voltage[br.from_index]
        u_to = voltage[br.to_index]
        y_ff, y_ft, y_tf, y_tt = branch_primitive(br, model.nodes)

        br.current_from = complex((y_ff * u_from + y_ft * u_to) / SQRT3)
        br.current_to = complex((y_tf * u_from + y_tt * u_to) / SQRT3)
        br.power_from = complex(SQRT3 * u_from * np.conj(br.current_from))
        br.power_to = complex(SQRT3 * u_to * np.conj(br.current_to))

    injected = voltage * np.conj(model.admittance @ voltage)
    for i, node in enumerate(model.nodes):
        if node.type == NodeType.SLACK:
            node.generation = complex(injected[i] + node.load_calc)

    return model


def branch_losses(model: NetworkModel) -> complex:
    """Total series and shunt losses over all branches, MVA."""
    return complex(sum(br.power_from + br.power_to for br in model.branches))
