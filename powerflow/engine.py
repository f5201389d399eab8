"""Calculation engine: solver chaining over one or many networks.

A calculation runs an ordered chain of solvers on a private copy of the
model, e.g. a few Gauss-Seidel sweeps to get close followed by
Newton-Raphson. The first solver that succeeds ends the chain; each
solver starts from the voltages the previous one left behind. Only the
last solver applies the post-solve voltage constraint check.

Breaker templates are applied to the copy when ``use_breaker_impedance``
is set. A fatal solver error is logged and the next solver of the chain
restarts from the voltages the failed one began with; if none is left,
the error is folded into ``success = False`` so a batch keeps going over
the other, independent networks.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence, Union

import numpy as np

from powerflow.config import settings
from powerflow.core.exceptions import PowerFlowError, TopologyError
from powerflow.core.logging import grid_id_var
from powerflow.network.branch_flows import calculate_power_flows
from powerflow.network.breakers import apply_breaker_templates
from powerflow.network.network_model import NetworkModel
from powerflow.network.validation import find_islands, find_orphan_nodes
from powerflow.network.voltage_checks import VoltageViolation
from powerflow.solvers.gauss_seidel import solve_gauss_seidel
from powerflow.solvers.newton_raphson import solve_newton_raphson
from powerflow.solvers.options import CalculationOptions, SolverType
from powerflow.solvers.result import SolveResult

logger = logging.getLogger(__name__)

SolverStep = Union[SolverType, tuple[SolverType, CalculationOptions]]

_SOLVERS: dict[SolverType, Callable[..., SolveResult]] = {
    SolverType.GAUSS_SEIDEL: solve_gauss_seidel,
    SolverType.NEWTON_RAPHSON: solve_newton_raphson,
}


@dataclass
class CalculationResult:
    """Outcome of a full calculation over one network."""
    model: NetworkModel
    success: bool
    solver: SolverType | None = None
    iterations: int = 0
    summary: str = ""
    violations: list[VoltageViolation] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "solver": self.solver.value if self.solver else None,
            "iterations": self.iterations,
            "summary": self.summary,
            "error": self.error,
            "violations": [v.to_dict() for v in self.violations],
            "nodes": [
                {
                    "id": n.id,
                    "type": n.type.value,
                    "voltage_kv": abs(n.voltage),
                    "angle_deg": _angle_deg(n.voltage),
                    "generation": [n.generation.real, n.generation.imag],
                    "load": [n.load_calc.real, n.load_calc.imag],
                }
                for n in self.model.nodes
            ],
            "branches": [
                {
                    "from_id": b.from_id,
                    "to_id": b.to_id,
                    "current_from_ka": abs(b.current_from),
                    "power_from": [b.power_from.real, b.power_from.imag],
                    "power_to": [b.power_to.real, b.power_to.imag],
                }
                for b in self.model.branches
            ],
        }


def _angle_deg(value: complex) -> float:
    return float(np.angle(value, deg=True))


def _normalise_chain(
    solvers: Sequence[SolverStep] | None, options: CalculationOptions | None
) -> list[tuple[SolverType, CalculationOptions]]:
    default = options or CalculationOptions()
    if not solvers:
        return [(SolverType.NEWTON_RAPHSON, default)]
    chain = []
    for step in solvers:
        if isinstance(step, tuple):
            chain.append((SolverType(step[0]), step[1]))
        else:
            chain.append((SolverType(step), default))
    return chain


def calculate(
    model: NetworkModel,
    solvers: Sequence[SolverStep] | None = None,
    options: CalculationOptions | None = None,
    initial_voltage: np.ndarray | None = None,
    grid_id: str | None = None,
) -> CalculationResult:
    """Run a solver chain on a copy of ``model``.

    Args:
        model: network model, left untouched
        solvers: chain of solver types or (type, options) pairs, default
            Newton-Raphson alone
        options: options for chain steps given without their own; its
            ``use_breaker_impedance`` applies to the whole calculation
        initial_voltage: starting estimate for the first solver
        grid_id: label bound to log records of this calculation
    """
    token = grid_id_var.set(grid_id or grid_id_var.get(""))
    try:
        use_breakers = (options or CalculationOptions()).use_breaker_impedance
        return _calculate(model, _normalise_chain(solvers, options), initial_voltage, use_breakers)
    finally:
        grid_id_var.reset(token)


def _calculate(
    model: NetworkModel,
    chain: list[tuple[SolverType, CalculationOptions]],
    initial_voltage: np.ndarray | None,
    use_breakers: bool,
) -> CalculationResult:
    orphans = find_orphan_nodes(model.nodes, model.branches)
    if orphans:
        logger.warning("Nodes without branches: %s", orphans)
    islands = find_islands(model.nodes, model.branches)
    if len(islands) > 1:
        for island in islands[1:]:
            logger.error("Isolated island of %d node(s): %s", len(island), sorted(island))
        return CalculationResult(
            model=model,
            success=False,
            error=f"Network is split into {len(islands)} islands",
        )

    work = model.copy()
    if use_breakers:
        try:
            if apply_breaker_templates(work.nodes, work.branches):
                work = work.rebuilt()
        except TopologyError as exc:
            logger.critical("Breaker templates could not be applied: %s", exc)
            return CalculationResult(model=model, success=False, error=str(exc))

    voltage = initial_voltage
    outcome: SolveResult | None = None
    error: str | None = None
    kind = chain[0][0]
    iterations = 0

    for step, (kind, step_options) in enumerate(chain):
        if step < len(chain) - 1 and step_options.use_voltage_constraint:
            step_options = step_options.model_copy(update={"use_voltage_constraint": False})
        try:
            outcome = _SOLVERS[kind](work.copy(), voltage, step_options)
        except PowerFlowError as exc:
            # Next solver restarts from the voltages this one started from
            logger.critical("%s solve failed: %s", kind.value, exc)
            outcome, error = None, str(exc)
            continue
        error = None
        work = outcome.model
        voltage = work.voltage
        iterations += outcome.iterations
        if outcome.success:
            break

    if outcome is None:
        return CalculationResult(
            model=work, success=False, solver=kind,
            iterations=iterations, error=error,
        )

    if outcome.success:
        calculate_power_flows(work)

    return CalculationResult(
        model=work,
        success=outcome.success,
        solver=kind,
        iterations=iterations,
        summary=outcome.summary,
        violations=outcome.violations,
    )


def calculate_many(
    models: Sequence[NetworkModel],
    solvers: Sequence[SolverStep] | None = None,
    options: CalculationOptions | None = None,
    max_workers: int | None = None,
    progress_callback: Callable[[float], None] | None = None,
) -> list[CalculationResult]:
    """Calculate independent networks concurrently.

    Args:
        models: networks to calculate; results keep this order
        solvers: solver chain applied to every network
        options: options for chain steps given without their own
        max_workers: thread pool size, defaults to settings.max_workers
        progress_callback: called with progress 0.0~1.0
    """
    chain = _normalise_chain(solvers, options)
    results: list[CalculationResult | None] = [None] * len(models)
    workers = max_workers or settings.max_workers

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(calculate, m, chain, options, None, f"grid-{i}"): i
            for i, m in enumerate(models)
        }
        for done, future in enumerate(as_completed(futures), start=1):
            results[futures[future]] = future.result()
            if progress_callback:
                progress_callback(done / len(models))

    succeeded = sum(1 for r in results if r is not None and r.success)
    logger.info("Batch finished: %d of %d networks solved", succeeded, len(models))
    return [r for r in results if r is not None]
