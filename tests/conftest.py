"""Shared fixtures: small reference networks at 110 kV.

Line data of the 110 kV cases: Z = 10 + j40 Ohm, B/2 charging from
Ysh = j281 µS per circuit, two parallel circuits per corridor.
"""

from __future__ import annotations

import logging

import pytest

from powerflow.network.network_model import Branch, NetworkModel, Node, NodeType

LINE_Y = 1 / complex(10, 40)
LINE_YSH = complex(0, 281e-6)


def _double_line(from_id: int, to_id: int) -> list[Branch]:
    return [
        Branch(from_id=from_id, to_id=to_id, series_admittance=LINE_Y,
               shunt_admittance=LINE_YSH, name=f"L{from_id}-{to_id}/{k}")
        for k in (1, 2)
    ]


# ======================================================================
# Reference networks
# ======================================================================


@pytest.fixture
def pq_110() -> NetworkModel:
    """Slack 115 kV feeding a 40 + j20 MVA load over a double line."""
    nodes = [
        Node(id=1, type=NodeType.SLACK, nominal_voltage=115),
        Node(id=2, type=NodeType.PQ, nominal_voltage=115, load=complex(40, 20)),
    ]
    return NetworkModel.from_topology(nodes, _double_line(1, 2))


@pytest.fixture
def pv_110() -> NetworkModel:
    """Slack, PV generator (40 MW, ±30 Mvar) and a 40 + j30 MVA load in a chain."""
    nodes = [
        Node(id=1, type=NodeType.SLACK, nominal_voltage=115),
        Node(id=2, type=NodeType.PV, nominal_voltage=115, preset_magnitude=115,
             generation=complex(40, 0), q_min=-30, q_max=30),
        Node(id=3, type=NodeType.PQ, nominal_voltage=115, load=complex(40, 30)),
    ]
    return NetworkModel.from_topology(nodes, _double_line(1, 2) + _double_line(3, 2))


@pytest.fixture
def trans_pq_110() -> NetworkModel:
    """Two parallel 115/10.5 kV transformers feeding a 40 + j20 MVA load."""
    nodes = [
        Node(id=1, type=NodeType.SLACK, nominal_voltage=115),
        Node(id=2, type=NodeType.PQ, nominal_voltage=10.5, load=complex(40, 20)),
    ]
    branches = [
        Branch(from_id=1, to_id=2, series_admittance=1 / complex(1, 55),
               shunt_admittance=complex(0, -50e-6), tap_ratio=0.0913, name=f"T{k}")
        for k in (1, 2)
    ]
    return NetworkModel.from_topology(nodes, branches)


@pytest.fixture
def pv_q_max() -> NetworkModel:
    """PV node at 115 kV that needs more than its 30 Mvar maximum."""
    nodes = [
        Node(id=1, type=NodeType.SLACK, nominal_voltage=115),
        Node(id=2, type=NodeType.PV, nominal_voltage=115, preset_magnitude=115,
             load=complex(5, 60), generation=complex(40, 0), q_min=-30, q_max=30),
    ]
    return NetworkModel.from_topology(nodes, _double_line(1, 2))


@pytest.fixture
def pv_q_min() -> NetworkModel:
    """PV node at 115 kV that would need to absorb more than 5 Mvar."""
    nodes = [
        Node(id=1, type=NodeType.SLACK, nominal_voltage=115),
        Node(id=2, type=NodeType.PV, nominal_voltage=115, preset_magnitude=115,
             load=complex(5, 3), generation=complex(40, 0), q_min=-5, q_max=30),
    ]
    return NetworkModel.from_topology(nodes, _double_line(1, 2))


@pytest.fixture
def four_node() -> NetworkModel:
    """Meshed 110 kV network: two loads, one PV generator, one slack."""
    nodes = [
        Node(id=1, type=NodeType.PQ, nominal_voltage=110, load=complex(10, 15)),
        Node(id=2, type=NodeType.PQ, nominal_voltage=110, load=complex(10, 40)),
        Node(id=3, type=NodeType.PV, nominal_voltage=110, preset_magnitude=110,
             load=complex(10, 25), generation=complex(25, 0), q_min=15, q_max=35),
        Node(id=4, type=NodeType.SLACK, nominal_voltage=115),
    ]
    branches = [
        Branch(from_id=1, to_id=2, series_admittance=1 / complex(10, 2)),
        Branch(from_id=1, to_id=3, series_admittance=1 / complex(10, 20)),
        Branch(from_id=1, to_id=4, series_admittance=1 / complex(8, 15)),
        Branch(from_id=2, to_id=4, series_admittance=1 / complex(20, 40)),
    ]
    return NetworkModel.from_topology(nodes, branches)


# ======================================================================
# Logging
# ======================================================================


@pytest.fixture
def restore_root_logger():
    """Put root logger handlers and level back after a test reconfigures them."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
