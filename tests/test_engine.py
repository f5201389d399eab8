"""Tests for powerflow.engine: solver chains and batch calculation."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from powerflow.engine import calculate, calculate_many
from powerflow.network.branch_flows import branch_losses
from powerflow.network.network_model import Branch, NetworkModel, Node, NodeType
from powerflow.solvers.options import CalculationOptions, SolverType

GS_OPTIONS = CalculationOptions(accuracy=1e-9, iterations_count=2000)
NO_BREAKERS = CalculationOptions(use_breaker_impedance=False)


def _zero_impedance_feeder() -> NetworkModel:
    """Slack and a load tied by a closed breaker, built without templates."""
    nodes = [
        Node(id=1, type=NodeType.SLACK, nominal_voltage=110),
        Node(id=2, type=NodeType.PQ, nominal_voltage=110, load=complex(10, 5)),
    ]
    return NetworkModel.from_topology(
        nodes, [Branch(from_id=1, to_id=2, series_admittance=0j)],
        use_breaker_impedance=False,
    )


# ======================================================================
# Single calculation
# ======================================================================


class TestCalculate:
    """One network through the default and chained solvers."""

    def test_default_is_newton_raphson(self, pq_110):
        result = calculate(pq_110)
        assert result.success
        assert result.solver == SolverType.NEWTON_RAPHSON
        assert result.error is None
        assert abs(result.model.node_by_id(2).voltage) == pytest.approx(109.9779508833, abs=1e-6)

    def test_caller_model_untouched(self, pq_110):
        before = pq_110.voltage.copy()
        result = calculate(pq_110)
        assert result.model is not pq_110
        np.testing.assert_array_equal(pq_110.voltage, before)
        assert all(b.power_from == 0 for b in pq_110.branches)

    def test_parallel_lines_share_equally(self, pq_110):
        result = calculate(pq_110)
        first, second = result.model.branches
        assert first.power_from == pytest.approx(second.power_from)
        assert first.current_from == pytest.approx(second.current_from)

    def test_slack_covers_load_and_losses(self, pq_110):
        result = calculate(pq_110)
        slack = result.model.node_by_id(1)
        losses = branch_losses(result.model)
        assert slack.generation.real > 40
        assert slack.generation.real == pytest.approx(40 + losses.real, abs=1e-5)

    def test_injections_balance_branch_losses(self, four_node):
        result = calculate(four_node)
        model = result.model
        voltage = model.voltage
        injected = voltage * np.conj(model.admittance @ voltage)
        assert result.success
        assert complex(injected.sum()) == pytest.approx(branch_losses(model), abs=1e-6)

    def test_branch_power_sign(self, pq_110):
        result = calculate(pq_110)
        for branch in result.model.branches:
            sending = branch.power_from if branch.from_id == 1 else branch.power_to
            assert sending.real > 0

    def test_gauss_seidel_then_newton_raphson(self, pq_110):
        chain = [
            (SolverType.GAUSS_SEIDEL, CalculationOptions(iterations_count=3)),
            SolverType.NEWTON_RAPHSON,
        ]
        result = calculate(pq_110, solvers=chain)
        assert result.success
        assert result.solver == SolverType.NEWTON_RAPHSON
        assert result.iterations > 3
        assert result.summary.startswith("N-R converged")

    def test_first_success_ends_chain(self, pq_110):
        result = calculate(pq_110, solvers=[SolverType.NEWTON_RAPHSON, SolverType.GAUSS_SEIDEL])
        assert result.solver == SolverType.NEWTON_RAPHSON

    def test_voltage_constraint_only_on_last_solver(self, pq_110):
        strict = CalculationOptions(
            accuracy=1e-9, iterations_count=2000,
            use_voltage_constraint=True, voltage_constraint_percentage=0.1,
        )
        chained = calculate(pq_110, solvers=[(SolverType.GAUSS_SEIDEL, strict), SolverType.NEWTON_RAPHSON])
        assert chained.success
        assert chained.solver == SolverType.GAUSS_SEIDEL
        assert chained.violations == []

        alone = calculate(pq_110, solvers=[(SolverType.GAUSS_SEIDEL, strict)])
        assert not alone.success
        assert [v.node_id for v in alone.violations] == [2]

    def test_options_applied_to_bare_steps(self, pq_110):
        result = calculate(pq_110, solvers=[SolverType.GAUSS_SEIDEL], options=GS_OPTIONS)
        assert result.success
        assert result.solver == SolverType.GAUSS_SEIDEL

    def test_to_dict(self, pq_110):
        data = calculate(pq_110).to_dict()
        assert data["success"] is True
        assert data["solver"] == "newton_raphson"
        assert len(data["nodes"]) == 2
        assert len(data["branches"]) == 2
        load_node = next(n for n in data["nodes"] if n["id"] == 2)
        assert load_node["angle_deg"] == pytest.approx(-3.2496304386, abs=1e-6)


# ======================================================================
# Failures
# ======================================================================


class TestFailures:
    """Soft failures and fatal errors folded into the result."""

    def test_disconnected_network(self, caplog):
        nodes = [
            Node(id=1, type=NodeType.SLACK, nominal_voltage=110),
            Node(id=2, type=NodeType.PQ, nominal_voltage=110, load=complex(5, 2)),
            Node(id=3, type=NodeType.PQ, nominal_voltage=110, load=complex(5, 2)),
            Node(id=4, type=NodeType.PQ, nominal_voltage=110, load=complex(5, 2)),
        ]
        branches = [
            Branch(from_id=1, to_id=2, series_admittance=1 / complex(5, 20)),
            Branch(from_id=3, to_id=4, series_admittance=1 / complex(5, 20)),
        ]
        model = NetworkModel.from_topology(nodes, branches)
        with caplog.at_level(logging.ERROR):
            result = calculate(model)
        assert not result.success
        assert result.error == "Network is split into 2 islands"
        assert "Isolated island of 2 node(s)" in caplog.text

    def test_solver_error_folded_in(self, caplog):
        nodes = [
            Node(id=1, type=NodeType.PQ, nominal_voltage=110, load=complex(10, 5)),
            Node(id=2, type=NodeType.PQ, nominal_voltage=110, load=complex(5, 2)),
        ]
        model = NetworkModel.from_topology(
            nodes, [Branch(from_id=1, to_id=2, series_admittance=0j)],
            use_breaker_impedance=False,
        )
        with caplog.at_level(logging.CRITICAL):
            result = calculate(model, options=NO_BREAKERS)
        assert not result.success
        assert result.solver == SolverType.NEWTON_RAPHSON
        assert "singular" in result.error
        assert "newton_raphson solve failed" in caplog.text

    def test_failed_solver_handed_to_next(self, pq_110, caplog):
        collapsing = CalculationOptions(voltage_ratio=0.01)
        chain = [(SolverType.GAUSS_SEIDEL, collapsing), SolverType.NEWTON_RAPHSON]
        with caplog.at_level(logging.CRITICAL):
            result = calculate(pq_110, solvers=chain)
        assert result.success
        assert result.solver == SolverType.NEWTON_RAPHSON
        assert result.error is None
        assert "gauss_seidel solve failed" in caplog.text
        assert abs(result.model.node_by_id(2).voltage) == pytest.approx(109.9779508833, abs=1e-6)

    def test_last_error_kept_when_chain_fails(self, pq_110):
        collapsing = CalculationOptions(voltage_ratio=0.01)
        result = calculate(pq_110, solvers=[(SolverType.GAUSS_SEIDEL, collapsing)])
        assert not result.success
        assert result.solver == SolverType.GAUSS_SEIDEL
        assert "plausibility band" in result.error

    def test_non_convergence_is_soft(self, pq_110):
        result = calculate(pq_110, options=CalculationOptions(iterations_count=1))
        assert not result.success
        assert result.error is None
        assert all(b.power_from == 0 for b in result.model.branches)


# ======================================================================
# Batch
# ======================================================================


class TestCalculateMany:
    """Independent networks on a thread pool."""

    def test_results_keep_input_order(self, pq_110, pv_110, trans_pq_110):
        models = [pv_110, pq_110, trans_pq_110]
        results = calculate_many(models, max_workers=3)
        assert [len(r.model.nodes) for r in results] == [3, 2, 2]
        assert all(r.success for r in results)
        assert abs(results[2].model.node_by_id(2).voltage) == pytest.approx(9.984097951438, abs=1e-6)

    def test_progress_callback(self, pq_110):
        seen: list[float] = []
        calculate_many([pq_110, pq_110.copy(), pq_110.copy(), pq_110.copy()], progress_callback=seen.append)
        assert sorted(seen) == [0.25, 0.5, 0.75, 1.0]

    def test_one_failure_does_not_stop_batch(self, pq_110):
        nodes = [
            Node(id=1, type=NodeType.PQ, nominal_voltage=110, load=complex(10, 5)),
            Node(id=2, type=NodeType.PQ, nominal_voltage=110, load=complex(5, 2)),
        ]
        broken = NetworkModel.from_topology(
            nodes, [Branch(from_id=1, to_id=2, series_admittance=0j)],
            use_breaker_impedance=False,
        )
        results = calculate_many([broken, pq_110], options=NO_BREAKERS)
        assert [r.success for r in results] == [False, True]


# ======================================================================
# Breaker templates
# ======================================================================


class TestBreakerOption:
    """``use_breaker_impedance`` decides whether breakers get a template."""

    def test_applied_by_default(self):
        model = _zero_impedance_feeder()
        result = calculate(model)
        assert result.success
        assert result.model.branches[0].is_breaker
        assert not model.branches[0].is_breaker
        v = result.model.voltage
        assert abs(v[0] - v[1]) < 0.01

    def test_disabled_leaves_zero_admittance(self):
        result = calculate(_zero_impedance_feeder(), options=NO_BREAKERS)
        assert not result.success
        assert "singular" in result.error

    def test_transformer_breaker_is_rejected(self):
        nodes = [
            Node(id=1, type=NodeType.SLACK, nominal_voltage=110),
            Node(id=2, type=NodeType.PQ, nominal_voltage=10, load=complex(1, 1)),
        ]
        model = NetworkModel.from_topology(
            nodes, [Branch(from_id=1, to_id=2, series_admittance=0j, tap_ratio=0.091)],
            use_breaker_impedance=False,
        )
        result = calculate(model)
        assert not result.success
        assert "near-zero impedance" in result.error
