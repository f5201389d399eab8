"""Static load models.

Each model scales a nameplate power component by a function of the
relative voltage u = |U| / |Unom|:

- ZIP:         value · (a0 + a1·u + a2·u²), with a0 + a1 + a2 = 1
- Linear:      value · (a + b·u)
- Exponential: value · u^p

A model only applies inside its optional (umin, umax) relative voltage
range. ``CompositeLoadModel`` pairs a P and a Q model and can hold
sub-models covering other voltage ranges.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from powerflow.network.network_model import NetworkModel, Node

logger = logging.getLogger(__name__)


class StaticLoadModel(Protocol):
    name: str
    umin: float | None
    umax: float | None
    is_valid: bool

    def apply(self, value: float, u: float, u_nom: float) -> float | None: ...


def _range_is_valid(name: str, umin: float | None, umax: float | None) -> bool:
    if umin is not None and umax is not None and umin >= umax:
        logger.warning("Load model '%s': umin %.4f is not below umax %.4f", name, umin, umax)
        return False
    return True


@dataclass
class ZIPModel:
    a0: float
    a1: float
    a2: float
    name: str = "ZIP"
    umin: float | None = None
    umax: float | None = None
    is_valid: bool = field(default=True, init=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> bool:
        ok = _range_is_valid(self.name, self.umin, self.umax)
        if not math.isclose(self.a0 + self.a1 + self.a2, 1.0, abs_tol=1e-9):
            logger.warning(
                "Load model '%s': ZIP coefficients sum to %.6f, expected 1",
                self.name, self.a0 + self.a1 + self.a2,
            )
            ok = False
        self.is_valid = ok
        return ok

    def apply(self, value: float, u: float, u_nom: float) -> float | None:
        if not self.is_valid:
            return None
        r = u / u_nom
        return value * (self.a0 + self.a1 * r + self.a2 * r ** 2)


@dataclass
class LinearModel:
    a: float
    b: float
    name: str = "Linear"
    umin: float | None = None
    umax: float | None = None
    is_valid: bool = field(default=True, init=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> bool:
        ok = _range_is_valid(self.name, self.umin, self.umax)
        if self.a == 0 and self.b == 0:
            logger.warning("Load model '%s': both linear coefficients are zero", self.name)
            ok = False
        self.is_valid = ok
        return ok

    def apply(self, value: float, u: float, u_nom: float) -> float | None:
        if not self.is_valid:
            return None
        return value * (self.a + self.b * (u / u_nom))


@dataclass
class ExponentialModel:
    p: float
    name: str = "Exponential"
    umin: float | None = None
    umax: float | None = None
    is_valid: bool = field(default=True, init=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> bool:
        self.is_valid = _range_is_valid(self.name, self.umin, self.umax)
        return self.is_valid

    def apply(self, value: float, u: float, u_nom: float) -> float | None:
        if not self.is_valid:
            return None
        return value * (u / u_nom) ** self.p


def _covers(model: StaticLoadModel, u_rel: float) -> bool:
    if model.umin is not None and model.umin >= u_rel:
        return False
    if model.umax is not None and model.umax <= u_rel:
        return False
    return True


@dataclass
class CompositeLoadModel:
    """P and Q load models sharing one voltage range, plus sub-models."""
    p: StaticLoadModel | None = None
    q: StaticLoadModel | None = None
    umin: float | None = None
    umax: float | None = None
    name: str = ""
    sub_models: list[CompositeLoadModel] = field(default_factory=list)

    def __post_init__(self) -> None:
        # Component models inherit the composite's range
        for model in (self.p, self.q):
            if model is not None:
                model.umin = self.umin
                model.umax = self.umax
                model.validate()

    @property
    def is_valid(self) -> bool:
        models = [m for m in (self.p, self.q) if m is not None]
        return bool(models) and any(m.is_valid for m in models)

    def add_model(self, model: CompositeLoadModel) -> CompositeLoadModel:
        """Attach a sub-model covering another voltage range. Chainable."""
        self.sub_models.append(model)
        return self

    def _collect(self) -> tuple[list[StaticLoadModel], list[StaticLoadModel]]:
        p_models: list[StaticLoadModel] = []
        q_models: list[StaticLoadModel] = []
        if self.p is not None and self.p.is_valid:
            p_models.append(self.p)
        if self.q is not None and self.q.is_valid:
            q_models.append(self.q)
        for sub in self.sub_models:
            sub_p, sub_q = sub._collect()
            p_models.extend(sub_p)
            q_models.extend(sub_q)
        return p_models, q_models

    def apply_model(self, node: Node) -> None:
        """Recompute ``node.load_calc`` from the node's present voltage.

        Components with no model covering the voltage keep the nameplate
        value.
        """
        if node.load == 0 or node.voltage == 0:
            return

        u = abs(node.voltage)
        u_nom = abs(node.nominal_voltage)
        u_rel = u / u_nom
        p_models, q_models = self._collect()

        p = next((m.apply(node.load.real, u, u_nom) for m in p_models if _covers(m, u_rel)), None)
        q = next((m.apply(node.load.imag, u, u_nom) for m in q_models if _covers(m, u_rel)), None)

        node.load_calc = complex(
            node.load.real if p is None else p,
            node.load.imag if q is None else q,
        )


def apply_load_models(model: NetworkModel) -> int:
    """Apply every referenced load model to its node.

    Returns:
        number of nodes updated
    """
    if not model.load_models:
        return 0
    updated = 0
    for node in model.nodes:
        if node.load_model_id is None:
            continue
        load_model = model.load_models.get(node.load_model_id)
        if load_model is None:
            logger.warning(
                "Node %s references unknown load model %s", node.id, node.load_model_id
            )
            continue
        load_model.apply_model(node)
        updated += 1
    return updated


# ======================================================================
# Templates: industrial/residential complex load nodes
# ======================================================================


def complex_load_node_110kv() -> CompositeLoadModel:
    """Complex load node at 110 kV, three voltage ranges split at 0.815 and 1.2 Unom."""
    return (
        CompositeLoadModel(
            p=ZIPModel(0.83, -0.3, 0.47, name="ComplexLoad_110kV P (below 0.815 Unom)"),
            q=LinearModel(0.721, 0.158, name="ComplexLoad_110kV Q (below 0.815 Unom)"),
            umax=0.81499,
            name="ComplexLoadNode_110kV",
        )
        .add_model(CompositeLoadModel(
            p=ZIPModel(0.83, -0.3, 0.47, name="ComplexLoad_110kV P (0.815 to 1.2 Unom)"),
            q=ZIPModel(3.7, -7.0, 4.3, name="ComplexLoad_110kV Q (0.815 to 1.2 Unom)"),
            umin=0.815,
            umax=1.19999,
        ))
        .add_model(CompositeLoadModel(
            p=ZIPModel(0.83, -0.3, 0.47, name="ComplexLoad_110kV P (above 1.2 Unom)"),
            q=LinearModel(1.49, 0.0, name="ComplexLoad_110kV Q (above 1.2 Unom)"),
            umin=1.2,
        ))
    )


def complex_load_node_35kv() -> CompositeLoadModel:
    """Complex load node at 35 kV, same ranges as the 110 kV template."""
    return (
        CompositeLoadModel(
            p=ZIPModel(0.83, -0.3, 0.47, name="ComplexLoad_35kV P (below 0.815 Unom)"),
            q=LinearModel(0.657, 0.158, name="ComplexLoad_35kV Q (below 0.815 Unom)"),
            umax=0.81499,
            name="ComplexLoadNode_35kV",
        )
        .add_model(CompositeLoadModel(
            p=ZIPModel(0.83, -0.3, 0.47, name="ComplexLoad_35kV P (0.815 to 1.2 Unom)"),
            q=ZIPModel(4.9, -10.1, 6.2, name="ComplexLoad_35kV Q (0.815 to 1.2 Unom)"),
            umin=0.815,
            umax=1.19999,
        ))
        .add_model(CompositeLoadModel(
            p=ZIPModel(0.83, -0.3, 0.47, name="ComplexLoad_35kV P (above 1.2 Unom)"),
            q=LinearModel(1.708, 0.0, name="ComplexLoad_35kV Q (above 1.2 Unom)"),
            umin=1.2,
        ))
    )
