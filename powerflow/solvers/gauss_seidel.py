"""Gauss-Seidel power flow solver.

Per sweep, in calculation order:
- PQ:    U_i = (conj(S_i)/conj(U_i) - Σ_{j≠i} Y_ij·U_j) / Y_ii, relaxed by α
- PV:    Q_i recomputed from the current estimate; inside [q_min, q_max]
         only the angle is updated and |U_i| stays at the preset magnitude,
         otherwise Q is pinned to the bound and the node takes the PQ update
- Slack: untouched

Each node's update reads neighbours already updated in the same sweep, so
the sweep is strictly sequential over one shared voltage buffer.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from powerflow.core.exceptions import SingularMatrixError, VoltageLackError, VoltageOverflowError
from powerflow.loads.load_model import apply_load_models
from powerflow.network.network_model import ControlState, NetworkModel, NodeType
from powerflow.network.voltage_checks import check_voltage_constraints
from powerflow.solvers.control import limit_pv, reactive_generation, reset_control_states
from powerflow.solvers.options import CalculationOptions
from powerflow.solvers.result import SolveResult

logger = logging.getLogger(__name__)


def check_voltage_band(
    reference: np.ndarray,
    voltage: np.ndarray,
    ratio: float,
    node_ids: Sequence[int],
) -> None:
    """Fail fast when an estimate drifts out of the plausibility band.

    Compares the previous estimate ``reference`` against the new one scaled
    by (1 ± ratio), so the accepted interval is [ref/(1+ratio), ref/(1-ratio)].
    ``node_ids`` maps calculation positions to node ids for the error.

    Raises:
        VoltageLackError: |U|·(1+ratio) < |U_ref| for some node
        VoltageOverflowError: |U|·(1-ratio) > |U_ref| for some node
    """
    u = np.abs(voltage)
    ref = np.abs(reference)

    lack = np.flatnonzero(u * (1 + ratio) - ref < 0)
    if lack.size:
        raise VoltageLackError(
            f"Voltage collapsed below the plausibility band at {lack.size} node(s)",
            [node_ids[i] for i in lack],
        )
    overflow = np.flatnonzero(u * (1 - ratio) - ref > 0)
    if overflow.size:
        raise VoltageOverflowError(
            f"Voltage rose above the plausibility band at {overflow.size} node(s)",
            [node_ids[i] for i in overflow],
        )


def _node_update(y_bus: np.ndarray, voltage: np.ndarray, i: int, s_inj: complex) -> complex:
    y_ii = y_bus[i, i]
    if y_ii == 0:
        raise SingularMatrixError(f"Zero self admittance at calculation index {i}")
    others = y_bus[i] @ voltage - y_ii * voltage[i]
    return (np.conj(s_inj) / np.conj(voltage[i]) - others) / y_ii


def sweep(
    model: NetworkModel,
    voltage: np.ndarray,
    delta: np.ndarray,
    acceleration_rate: float,
) -> list[int]:
    """One Gauss-Seidel pass over all nodes.

    Args:
        model: network; PV nodes that hit a Q bound are retyped PQ here
        voltage: working voltage buffer, updated in place node by node
        delta: receives the step of every PQ update, zero elsewhere
        acceleration_rate: relaxation factor α

    Returns:
        ids of nodes forced from PV to PQ during this pass
    """
    y_bus = model.admittance
    forced: list[int] = []
    delta[:] = 0

    for i, node in enumerate(model.nodes):
        if node.type == NodeType.SLACK:
            continue

        if node.type == NodeType.PV:
            q_gen = reactive_generation(y_bus, voltage, i, node.load_calc.imag)
            decision = limit_pv(q_gen, node.q_min, node.q_max)
            node.generation = complex(node.generation.real, decision.generation_q)
            if not decision.changed:
                v_new = _node_update(y_bus, voltage, i, node.injection)
                voltage[i] = node.preset_magnitude * np.exp(1j * np.angle(v_new))
                continue
            node.type = NodeType.PQ
            node.control_state = ControlState.PQ_FORCED
            forced.append(node.id)
            logger.info(
                "Node %s: Q generation %.3f Mvar pinned to %.3f Mvar, switched to PQ",
                node.id, q_gen, decision.generation_q,
                extra={"node_id": node.id},
            )

        old = voltage[i]
        v_new = _node_update(y_bus, voltage, i, node.injection)
        voltage[i] = old + acceleration_rate * (v_new - old)
        delta[i] = voltage[i] - old

    return forced


def _iterate(
    model: NetworkModel,
    voltage: np.ndarray,
    options: CalculationOptions,
    iteration: int,
) -> tuple[bool, int, float, list[int]]:
    node_ids = [node.id for node in model.nodes]
    delta = np.zeros_like(voltage)
    forced: list[int] = []
    max_step = float("inf")

    while iteration < options.iterations_count:
        reference = voltage.copy()
        forced += sweep(model, voltage, delta, options.acceleration_rate)
        max_step = float(np.max(np.abs(delta))) if delta.size else 0.0
        iteration += 1

        model.set_voltage(voltage)
        apply_load_models(model)
        check_voltage_band(reference, voltage, options.voltage_ratio, node_ids)

        if options.solver_internal_logging:
            logger.debug(
                "G-S iteration %d: max |dU| = %.3e kV", iteration, max_step,
                extra={"solver": "gauss_seidel", "iteration": iteration, "max_residual": max_step},
            )
        if max_step <= options.accuracy:
            return True, iteration, max_step, forced

    return False, iteration, max_step, forced


def solve_gauss_seidel(
    model: NetworkModel,
    initial_voltage: np.ndarray | None = None,
    options: CalculationOptions | None = None,
) -> SolveResult:
    """Solve node voltages with Gauss-Seidel.

    When PV nodes are forced to PQ, the model is rebuilt and the solve
    restarts from the last estimate within the same iteration budget.
    Forced nodes are returned typed PV (nameplate) with ``control_state``
    PQ_FORCED and reactive generation pinned at the bound.

    Args:
        model: network model, its nodes receive the final voltages
        initial_voltage: starting estimate in calculation order, defaults
            to ``model.initial_voltage``
        options: calculation options

    Raises:
        VoltageBandError: the estimate diverged out of the plausibility band
        SingularMatrixError: a node has zero self admittance
    """
    options = options or CalculationOptions()
    start = model.initial_voltage if initial_voltage is None else initial_voltage
    voltage = np.array(start, dtype=complex)
    reset_control_states(model, voltage)
    forced: list[int] = []
    iteration = 0

    while True:
        success, iteration, max_step, newly_forced = _iterate(model, voltage, options, iteration)
        if not newly_forced:
            break
        forced += newly_forced
        model = model.rebuilt()
        voltage = model.voltage
        if iteration >= options.iterations_count:
            success = False
            break

    if forced:
        for node in model.nodes:
            if node.id in forced:
                node.type = NodeType.PV
        model = model.rebuilt()

    if success:
        summary = (
            f"G-S converged in {iteration} of {options.iterations_count} iterations "
            f"(max voltage step {max_step:.3e} kV)"
        )
        logger.info(summary, extra={"solver": "gauss_seidel", "iteration": iteration})
    else:
        summary = (
            f"G-S did not converge in {options.iterations_count} iterations "
            f"(max voltage step {max_step:.3e} kV)"
        )
        logger.warning(summary, extra={"solver": "gauss_seidel", "iteration": iteration})

    violations = []
    if options.use_voltage_constraint:
        violations = check_voltage_constraints(model, options.voltage_constraint_percentage)
        success = success and not violations

    return SolveResult(
        model=model,
        success=success,
        iterations=iteration,
        summary=summary,
        violations=violations,
        forced_nodes=sorted(set(forced)),
    )
