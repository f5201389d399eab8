"""PV/PQ control-node state machine.

States:
- PQ: fixed P and Q, never changes
- PV: fixed P and |U|, Q follows the network within [q_min, q_max]
- PQ_FORCED: a PV node whose required Q crossed a bound; Q is pinned to
  that bound and |U| is free until the voltage drifts back past the preset
  magnitude on the side that relieves the limit

The transition functions are pure; ``inspect_control_nodes`` applies them
to a model after a Newton-Raphson pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from powerflow.network.network_model import ControlState, NetworkModel, NodeType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControlDecision:
    state: ControlState
    generation_q: float
    changed: bool


def limit_pv(q_gen: float, q_min: float | None, q_max: float | None) -> ControlDecision:
    """Transition out of PV when the required generation reaches a bound."""
    if q_min is not None and q_gen <= q_min:
        return ControlDecision(ControlState.PQ_FORCED, q_min, True)
    if q_max is not None and q_gen >= q_max:
        return ControlDecision(ControlState.PQ_FORCED, q_max, True)
    return ControlDecision(ControlState.PV, q_gen, False)


def release_forced(
    q_gen: float,
    pinned_q: float,
    q_min: float | None,
    q_max: float | None,
    magnitude: float,
    preset_magnitude: float,
) -> ControlDecision:
    """Transition back to PV once the voltage relieves the pinned bound.

    At q_min the node absorbs as much as it can; a voltage below preset
    means it would need less absorption. At q_max the reverse holds.
    """
    if q_min is not None and pinned_q == q_min and magnitude < preset_magnitude:
        return ControlDecision(ControlState.PV, q_gen, True)
    if q_max is not None and pinned_q == q_max and magnitude > preset_magnitude:
        return ControlDecision(ControlState.PV, q_gen, True)
    return ControlDecision(ControlState.PQ_FORCED, pinned_q, False)


def next_state(
    state: ControlState,
    q_gen: float,
    q_min: float | None,
    q_max: float | None,
    magnitude: float,
    preset_magnitude: float,
    pinned_q: float = 0.0,
) -> ControlDecision:
    """Single dispatch over the three control states."""
    if state == ControlState.PV:
        return limit_pv(q_gen, q_min, q_max)
    if state == ControlState.PQ_FORCED:
        return release_forced(q_gen, pinned_q, q_min, q_max, magnitude, preset_magnitude)
    return ControlDecision(ControlState.PQ, pinned_q, False)


def reactive_generation(
    admittance: np.ndarray, voltage: np.ndarray, i: int, load_q: float
) -> float:
    """Reactive generation node ``i`` needs: injected Q plus its own load Q."""
    injected = voltage[i] * np.conj(admittance[i] @ voltage)
    return float(injected.imag + load_q)


def inspect_control_nodes(
    model: NetworkModel, voltage: np.ndarray, forced: set[int]
) -> bool:
    """Apply control transitions to PV and forced nodes after a solve.

    Updates node types, generation and ``voltage`` in place; ``forced``
    tracks node ids currently pinned at a bound. The caller must rebuild
    the model when this returns True.

    Returns:
        True if any node changed state
    """
    crossed = False
    for i, node in enumerate(model.nodes):
        if node.control_state not in (ControlState.PV, ControlState.PQ_FORCED):
            continue
        if node.type == NodeType.SLACK:
            continue

        q_gen = reactive_generation(model.admittance, voltage, i, node.load_calc.imag)
        magnitude = abs(voltage[i])
        decision = next_state(
            node.control_state, q_gen, node.q_min, node.q_max,
            magnitude, node.preset_magnitude, node.generation.imag,
        )
        node.generation = complex(node.generation.real, decision.generation_q)

        if decision.state == ControlState.PV:
            voltage[i] = node.preset_magnitude * np.exp(1j * np.angle(voltage[i]))
            node.voltage = complex(voltage[i])

        if not decision.changed:
            continue

        crossed = True
        node.control_state = decision.state
        if decision.state == ControlState.PQ_FORCED:
            node.type = NodeType.PQ
            forced.add(node.id)
            logger.info(
                "Node %s: Q generation %.3f Mvar hit limit, pinned to %.3f Mvar, switched to PQ",
                node.id, q_gen, decision.generation_q,
                extra={"node_id": node.id},
            )
        else:
            node.type = NodeType.PV
            forced.discard(node.id)
            logger.info(
                "Node %s: voltage %.3f kV relieves the Q limit, switched back to PV",
                node.id, magnitude,
                extra={"node_id": node.id},
            )
    return crossed


def reset_control_states(model: NetworkModel, voltage: np.ndarray) -> None:
    """Start a solve from nameplate control.

    Every PV-typed node is back in the PV state with its voltage magnitude
    at the preset value; the angle of ``voltage`` is kept.
    """
    for i, node in enumerate(model.nodes):
        if node.type != NodeType.PV:
            continue
        node.control_state = ControlState.PV
        voltage[i] = node.preset_magnitude * np.exp(1j * np.angle(voltage[i]))
