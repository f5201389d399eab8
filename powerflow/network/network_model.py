"""Network topology model and admittance matrix construction.

Nodes are kept in calculation order: the PQ block, then PV, then Slack,
each block sorted by ascending nominal voltage magnitude. The admittance
matrix and the per-type counts always match that order, so any node type
change goes through ``rebuild`` which returns a fresh model.

Units: line-to-line kV, three-phase MVA, Siemens. ``Y`` follows I = Y·U.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Mapping

import numpy as np

from powerflow.config import settings
from powerflow.core.exceptions import TopologyError

if TYPE_CHECKING:
    from powerflow.loads.load_model import CompositeLoadModel

logger = logging.getLogger(__name__)


class NodeType(str, Enum):
    PQ = "pq"
    PV = "pv"
    SLACK = "slack"


_TYPE_RANK = {NodeType.PQ: 0, NodeType.PV: 1, NodeType.SLACK: 2}


class ControlState(str, Enum):
    """Reactive control state of a node during a solve."""
    PQ = "pq"
    PV = "pv"
    PQ_FORCED = "pq_forced"  # nameplate PV pinned at a reactive bound


@dataclass
class Node:
    """Single network node (bus)."""
    id: int
    type: NodeType
    nominal_voltage: complex
    load: complex = 0j
    generation: complex = 0j
    # PV control
    preset_magnitude: float = 0.0
    q_min: float | None = None
    q_max: float | None = None
    shunt_admittance: complex = 0j
    load_model_id: int | None = None
    name: str = ""
    # Assigned on build / solve
    calc_index: int = -1
    voltage: complex = 0j
    load_calc: complex | None = None
    control_state: ControlState | None = None

    def __post_init__(self) -> None:
        self.type = NodeType(self.type)
        if self.load_calc is None:
            self.load_calc = self.load
        if self.control_state is None:
            self.control_state = (
                ControlState.PV if self.type == NodeType.PV else ControlState.PQ
            )

    @property
    def injection(self) -> complex:
        """Net injected power: generation minus effective load."""
        return self.generation - self.load_calc


@dataclass
class Branch:
    """Line, transformer or breaker between two nodes."""
    from_id: int
    to_id: int
    series_admittance: complex
    shunt_admittance: complex = 0j
    tap_ratio: complex = 1 + 0j
    name: str = ""
    # Assigned on build
    from_index: int = -1
    to_index: int = -1
    parallel_count: int = 1
    is_breaker: bool = False
    # Filled by calculate_power_flows, per physical branch
    current_from: complex = 0j
    current_to: complex = 0j
    power_from: complex = 0j
    power_to: complex = 0j

    @property
    def effective_tap(self) -> complex:
        """Tap ratio with an unset (zero) value read as a plain line."""
        return self.tap_ratio if abs(self.tap_ratio) > 0 else 1 + 0j

    @property
    def is_transformer(self) -> bool:
        return abs(abs(self.effective_tap) - 1.0) > 1e-12


@dataclass
class NetworkModel:
    """Ordered network with its admittance matrix and block counts."""
    nodes: list[Node]
    branches: list[Branch]
    admittance: np.ndarray
    initial_voltage: np.ndarray
    pq_count: int
    pv_count: int
    slack_count: int
    load_models: dict[int, CompositeLoadModel] = field(default_factory=dict)

    @classmethod
    def from_topology(
        cls,
        nodes: Iterable[Node],
        branches: Iterable[Branch],
        load_models: Mapping[int, CompositeLoadModel] | None = None,
        use_breaker_impedance: bool | None = None,
    ) -> NetworkModel:
        """Validate raw topology and build the first model.

        The caller's node and branch records are copied, never mutated.

        Args:
            nodes: nodes in any order
            branches: branches referencing node ids
            load_models: load model table keyed by ``Node.load_model_id``
            use_breaker_impedance: replace near-zero impedance branches by
                the breaker template admittance, defaults to
                ``settings.use_breaker_impedance``
        """
        from powerflow.network.breakers import apply_breaker_templates
        from powerflow.network.validation import validate_topology

        node_list = copy.deepcopy(list(nodes))
        branch_list = copy.deepcopy(list(branches))
        validate_topology(node_list, branch_list)

        for node in node_list:
            node.load_calc = node.load
        if use_breaker_impedance is None:
            use_breaker_impedance = settings.use_breaker_impedance
        if use_breaker_impedance:
            apply_breaker_templates(node_list, branch_list)

        return rebuild(node_list, branch_list, load_models)

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    @property
    def dim(self) -> int:
        """Number of nodes with an unknown angle (PQ + PV)."""
        return self.pq_count + self.pv_count

    @property
    def voltage(self) -> np.ndarray:
        return np.array([n.voltage for n in self.nodes], dtype=complex)

    def set_voltage(self, voltage: np.ndarray) -> None:
        for node, value in zip(self.nodes, voltage):
            node.voltage = complex(value)

    def injection(self) -> np.ndarray:
        return np.array([n.injection for n in self.nodes], dtype=complex)

    def node_by_id(self, node_id: int) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"Node id {node_id} not found")

    def rebuilt(self) -> NetworkModel:
        """Rebuild from the current records, carrying node voltages over."""
        return rebuild(
            self.nodes,
            self.branches,
            self.load_models,
            voltage={n.id: n.voltage for n in self.nodes},
        )

    def copy(self) -> NetworkModel:
        return copy.deepcopy(self)


def _order_key(node: Node) -> tuple[int, float]:
    return _TYPE_RANK[node.type], abs(node.nominal_voltage)


def count_parallel(branches: list[Branch]) -> None:
    """Set ``parallel_count`` on branches sharing the same endpoint pair."""
    counts: dict[frozenset[int], int] = {}
    for br in branches:
        key = frozenset((br.from_index, br.to_index))
        counts[key] = counts.get(key, 0) + 1
    for br in branches:
        br.parallel_count = counts[frozenset((br.from_index, br.to_index))]


def branch_primitive(
    branch: Branch, nodes: list[Node]
) -> tuple[complex, complex, complex, complex]:
    """Admittance terms (Y_ff, Y_ft, Y_tf, Y_tt) of one branch.

    Plain line with series y and shunt ysh: Y_ff = Y_tt = y + ysh/2,
    Y_ft = Y_tf = -y.

    Transformer with tap k: the side with the higher nominal voltage (h)
    takes the full shunt, the other side (l) is scaled by k·conj(k):
    Y_hh = y + ysh, Y_ll = y / (k·conj(k)), Y_hl = -y/k, Y_lh = -y/conj(k).
    Equal nominal voltages put h on the from side.
    """
    y = branch.series_admittance
    ysh = branch.shunt_admittance

    if not branch.is_transformer:
        return y + ysh / 2, -y, -y, y + ysh / 2

    k = branch.effective_tap
    y_hh = y + ysh
    y_ll = y / (k * np.conj(k))
    y_hl = -y / k
    y_lh = -y / np.conj(k)
    from_v = abs(nodes[branch.from_index].nominal_voltage)
    to_v = abs(nodes[branch.to_index].nominal_voltage)
    if from_v >= to_v:
        return y_hh, y_hl, y_lh, y_ll
    return y_ll, y_lh, y_hl, y_hh


def assemble_admittance(nodes: list[Node], branches: list[Branch]) -> np.ndarray:
    """Stamp the nodal admittance matrix, I = Y·U.

    Every branch, parallel ones included, adds its own terms; node shunt
    admittances are added to the diagonal.
    """
    n = len(nodes)
    y_bus = np.zeros((n, n), dtype=complex)

    for br in branches:
        s, e = br.from_index, br.to_index
        y_ff, y_ft, y_tf, y_tt = branch_primitive(br, nodes)
        y_bus[s, s] += y_ff
        y_bus[s, e] += y_ft
        y_bus[e, s] += y_tf
        y_bus[e, e] += y_tt

    for i, node in enumerate(nodes):
        y_bus[i, i] += node.shunt_admittance

    return y_bus


def rebuild(
    nodes: Iterable[Node],
    branches: Iterable[Branch],
    load_models: Mapping[int, CompositeLoadModel] | None = None,
    voltage: Mapping[int, complex] | None = None,
) -> NetworkModel:
    """Build a consistent model from node and branch records.

    Pure: inputs are copied, the returned model owns its records.

    Args:
        nodes: node records, any order
        branches: branch records referencing node ids
        load_models: load model table keyed by ``Node.load_model_id``
        voltage: node id → voltage carried over from a previous solve

    Raises:
        TopologyError: a branch references an unknown node id.
    """
    node_list = copy.deepcopy(list(nodes))
    branch_list = copy.deepcopy(list(branches))

    for node in node_list:
        if node.type == NodeType.PV and not node.preset_magnitude > 0:
            logger.warning(
                "Node %s is PV without a preset voltage magnitude, treated as PQ",
                node.id,
            )
            node.type = NodeType.PQ
            node.control_state = ControlState.PQ

    node_list.sort(key=_order_key)
    index_of: dict[int, int] = {}
    for i, node in enumerate(node_list):
        node.calc_index = i
        index_of[node.id] = i

    for br in branch_list:
        try:
            br.from_index = index_of[br.from_id]
            br.to_index = index_of[br.to_id]
        except KeyError as exc:
            raise TopologyError(
                f"Branch {br.name or (br.from_id, br.to_id)} references unknown node {exc.args[0]}"
            ) from None
    count_parallel(branch_list)

    y_bus = assemble_admittance(node_list, branch_list)

    initial = np.empty(len(node_list), dtype=complex)
    for i, node in enumerate(node_list):
        if voltage is not None and node.id in voltage:
            initial[i] = voltage[node.id]
        elif node.type == NodeType.PV:
            initial[i] = node.preset_magnitude
        else:
            initial[i] = node.nominal_voltage
        node.voltage = complex(initial[i])

    counts = {t: sum(1 for n in node_list if n.type == t) for t in NodeType}
    return NetworkModel(
        nodes=node_list,
        branches=branch_list,
        admittance=y_bus,
        initial_voltage=initial,
        pq_count=counts[NodeType.PQ],
        pv_count=counts[NodeType.PV],
        slack_count=counts[NodeType.SLACK],
        load_models=dict(load_models) if load_models else {},
    )
