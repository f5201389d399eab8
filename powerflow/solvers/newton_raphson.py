"""Newton-Raphson power flow solver in polar form.

Unknowns are the angles of PQ and PV nodes and the magnitudes of PQ
nodes; nodes are in calculation order so the first ``dim = pq + pv``
rows carry P equations and the first ``pq`` rows carry Q equations.

With φ_ij = ∠Y_ij + θ_j - θ_i:
    P_i = Σ_j |U_i||U_j||Y_ij| cos φ_ij
    Q_i = -Σ_j |U_i||U_j||Y_ij| sin φ_ij
Sums run over all nodes, Slack included. Mismatch and Jacobian are
evaluated as whole-array numpy expressions, row by row independent.

The outer loop re-inspects PV and forced nodes after each converged pass
(see ``powerflow.solvers.control``) and resumes from the last voltages on
a rebuilt model until no node changes state.
"""

from __future__ import annotations

import logging

import numpy as np

from powerflow.linalg.sparse import LinearSolver, get_linear_solver
from powerflow.loads.load_model import apply_load_models
from powerflow.network.network_model import NetworkModel, NodeType
from powerflow.network.voltage_checks import (
    check_voltage_constraints,
    max_angle_branch,
    max_voltage_node,
    min_voltage_node,
)
from powerflow.solvers.control import inspect_control_nodes, reset_control_states
from powerflow.solvers.options import CalculationOptions
from powerflow.solvers.result import SolveResult

logger = logging.getLogger(__name__)


def _polar_terms(
    voltage: np.ndarray, y_mag: np.ndarray, y_ang: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Per-cell |Y_ij|·cos φ_ij and |Y_ij|·sin φ_ij, plus |U| and θ."""
    magnitude = np.abs(voltage)
    theta = np.angle(voltage)
    phi = y_ang + theta[np.newaxis, :] - theta[:, np.newaxis]
    return y_mag * np.cos(phi), y_mag * np.sin(phi), magnitude, theta


def power_mismatch(
    voltage: np.ndarray,
    admittance: np.ndarray,
    s_spec: np.ndarray,
    pq_count: int,
    pv_count: int,
) -> np.ndarray:
    """Mismatch vector [ΔP(0..dim), ΔQ(0..pq)], specified minus computed."""
    dim = pq_count + pv_count
    y_cos, y_sin, u, _ = _polar_terms(voltage, np.abs(admittance), np.angle(admittance))
    p_calc = u * (y_cos @ u)
    q_calc = -u * (y_sin @ u)
    return np.concatenate([
        s_spec.real[:dim] - p_calc[:dim],
        s_spec.imag[:pq_count] - q_calc[:pq_count],
    ])


def jacobian(
    voltage: np.ndarray,
    admittance: np.ndarray,
    pq_count: int,
    pv_count: int,
) -> np.ndarray:
    """Polar Jacobian [[P_Δ, P_V], [Q_Δ, Q_V]] of the computed injections.

    Off-diagonal:
        P_Δ = -|U_i||U_j||Y_ij| sin φ_ij    P_V = |U_i||Y_ij| cos φ_ij
        Q_Δ = -|U_i||U_j||Y_ij| cos φ_ij    Q_V = -|U_i||Y_ij| sin φ_ij
    Diagonal: the self term of the off-diagonal formula plus the sum over
    all nodes, e.g. P_Δ_ii = -|U_i|²|Y_ii| sin ∠Y_ii + Σ_k |U_i||U_k||Y_ik| sin φ_ik.
    """
    dim = pq_count + pv_count
    y_cos, y_sin, u, _ = _polar_terms(voltage, np.abs(admittance), np.angle(admittance))

    # |U_i||U_j||Y_ij| trig φ_ij and |U_i||Y_ij| trig φ_ij
    uu_cos = u[:, np.newaxis] * y_cos * u[np.newaxis, :]
    uu_sin = u[:, np.newaxis] * y_sin * u[np.newaxis, :]
    ui_cos = u[:, np.newaxis] * y_cos
    ui_sin = u[:, np.newaxis] * y_sin

    # Σ_k over every node, Slack included
    sum_uu_cos = uu_cos.sum(axis=1)
    sum_uu_sin = uu_sin.sum(axis=1)
    sum_uk_cos = y_cos @ u
    sum_uk_sin = y_sin @ u

    p_d = -uu_sin[:dim, :dim]
    p_d[np.diag_indices(dim)] += sum_uu_sin[:dim]

    p_v = ui_cos[:dim, :pq_count].copy()
    p_v[np.arange(pq_count), np.arange(pq_count)] += sum_uk_cos[:pq_count]

    q_d = -uu_cos[:pq_count, :dim]
    q_d[np.arange(pq_count), np.arange(pq_count)] += sum_uu_cos[:pq_count]

    q_v = -ui_sin[:pq_count, :pq_count]
    q_v[np.diag_indices(pq_count)] -= sum_uk_sin[:pq_count]

    return np.block([[p_d, p_v], [q_d, q_v]])


def _log_iteration(model: NetworkModel, iteration: int, residual: float) -> None:
    low, low_ratio = min_voltage_node(model)
    high, high_ratio = max_voltage_node(model)
    branch, angle = max_angle_branch(model)
    logger.debug(
        "N-R iteration %d: max residual %.3e MVA, min U node %s (%.4f Unom), "
        "max U node %s (%.4f Unom), max angle %.2f deg on %s",
        iteration, residual, low.id, low_ratio, high.id, high_ratio, angle,
        branch.name or f"{branch.from_id}-{branch.to_id}" if branch else "-",
        extra={"solver": "newton_raphson", "iteration": iteration, "max_residual": residual},
    )


def _iterate(
    model: NetworkModel,
    voltage: np.ndarray,
    options: CalculationOptions,
    iteration: int,
    linear_solve: LinearSolver,
) -> tuple[bool, int, float]:
    """Inner Newton loop on a fixed node classification.

    ``iteration`` is shared with the outer loop so the whole solve stays
    within ``options.iterations_count``.
    """
    pq, pv, dim = model.pq_count, model.pv_count, model.dim
    if dim == 0:
        model.set_voltage(voltage)
        return True, iteration, 0.0

    residual = float("inf")
    while iteration < options.iterations_count:
        mismatch = power_mismatch(voltage, model.admittance, model.injection(), pq, pv)
        jac = jacobian(voltage, model.admittance, pq, pv)
        residual = float(np.max(np.abs(mismatch)))

        dx = linear_solve(jac, -mismatch)

        magnitude = np.abs(voltage)
        theta = np.angle(voltage)
        theta[:dim] -= dx[:dim]
        magnitude[:pq] -= dx[dim:]
        voltage[:] = magnitude * np.exp(1j * theta)

        model.set_voltage(voltage)
        apply_load_models(model)
        iteration += 1

        if options.solver_internal_logging and logger.isEnabledFor(logging.DEBUG):
            _log_iteration(model, iteration, residual)
        if residual <= options.accuracy:
            return True, iteration, residual

    return False, iteration, residual


def solve_newton_raphson(
    model: NetworkModel,
    initial_voltage: np.ndarray | None = None,
    options: CalculationOptions | None = None,
) -> SolveResult:
    """Solve node voltages with polar Newton-Raphson and PV/PQ control.

    Args:
        model: network model, its nodes receive the final voltages
        initial_voltage: starting estimate in calculation order, defaults
            to ``model.initial_voltage``
        options: calculation options

    Returns:
        SolveResult; non-convergence is ``success=False``, not an error

    Raises:
        SingularMatrixError: the Jacobian could not be factorised
    """
    options = options or CalculationOptions()
    linear_solve = get_linear_solver(options.linear_solver)
    start = model.initial_voltage if initial_voltage is None else initial_voltage
    voltage = np.array(start, dtype=complex)
    reset_control_states(model, voltage)

    forced: set[int] = set()
    ever_forced: set[int] = set()
    iteration = 0
    residual = float("inf")

    while True:
        success, iteration, residual = _iterate(model, voltage, options, iteration, linear_solve)
        if not success:
            break
        crossed = inspect_control_nodes(model, voltage, forced)
        ever_forced |= forced
        if not crossed:
            break
        model = model.rebuilt()
        voltage = model.voltage

    # Back to nameplate classification; Q stays pinned for forced nodes
    if forced:
        for node in model.nodes:
            if node.id in forced:
                node.type = NodeType.PV
        model = model.rebuilt()

    if success:
        summary = (
            f"N-R converged in {iteration} of {options.iterations_count} iterations "
            f"(max power residual {residual:.3e} MVA <= {options.accuracy:g})"
        )
        logger.info(summary, extra={"solver": "newton_raphson", "iteration": iteration})
    else:
        summary = (
            f"N-R did not converge in {options.iterations_count} iterations "
            f"(max power residual {residual:.3e} MVA)"
        )
        logger.warning(summary, extra={"solver": "newton_raphson", "iteration": iteration})

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
        forced_nodes=sorted(ever_forced),
    )
