"""Breaker template admittance.

A closed breaker has (near) zero impedance, which would put an infinite
or zero entry into the admittance matrix. Such branches are replaced by a
small reactive impedance scaled by the nominal voltage of the from-node,
so they act as strong ties.
"""

from __future__ import annotations

import logging

from powerflow.core.exceptions import TopologyError
from powerflow.network.network_model import Branch, Node

logger = logging.getLogger(__name__)

# Series impedance below this (Ohm) marks a breaker
BREAKER_IMPEDANCE_THRESHOLD = 0.01
# Template reactance per kV of nominal voltage (Ohm/kV)
BREAKER_REACTANCE_PER_KV = 0.00044


def is_breaker_impedance(series_admittance: complex) -> bool:
    if series_admittance == 0:
        return True
    return 1.0 / abs(series_admittance) < BREAKER_IMPEDANCE_THRESHOLD


def breaker_admittance(nominal_voltage: complex) -> complex:
    """Template admittance 1 / (j·0.00044·|Unom|)."""
    return 1.0 / complex(0.0, BREAKER_REACTANCE_PER_KV * abs(nominal_voltage))


def apply_breaker_templates(nodes: list[Node], branches: list[Branch]) -> int:
    """Replace breaker branches' admittance in place.

    Returns:
        number of branches replaced

    Raises:
        TopologyError: a transformer has breaker-like impedance, or a
            branch endpoint is missing.
    """
    by_id = {n.id: n for n in nodes}
    replaced = 0
    for br in branches:
        if br.is_breaker or not is_breaker_impedance(br.series_admittance):
            continue
        start = by_id.get(br.from_id)
        if start is None or br.to_id not in by_id:
            raise TopologyError(
                f"Breaker {br.name or (br.from_id, br.to_id)} has a missing endpoint node"
            )
        if br.is_transformer:
            raise TopologyError(
                f"Transformer {br.name or (br.from_id, br.to_id)} has near-zero impedance"
            )
        if abs(start.nominal_voltage) == 0:
            raise TopologyError(f"Node {start.id} has zero nominal voltage")
        br.series_admittance = breaker_admittance(start.nominal_voltage)
        br.is_breaker = True
        replaced += 1

    if replaced:
        logger.info("Applied breaker template to %d branches", replaced)
    return replaced
