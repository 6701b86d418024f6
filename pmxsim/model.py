from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError, ModelError
from .hazard import CountingProcess, HazardProcess, MultistateProcess
from .parameters import Parameter, ParameterSet
from .random_effects import Frailty, Omega, RandomEffectSampler
from .solver import as_real

Attribute = Union[None, float, str, Callable[[ParameterSet], float]]
RHS = Callable[[float, np.ndarray, ParameterSet], Sequence[float]]
Capture = Union[str, Callable[..., float]]


def resolve_attribute(value: Attribute, params: ParameterSet, default: float) -> float:
    """Compartment attributes are a constant, a parameter name or a callable of the parameters."""
    if value is None:
        return default
    if isinstance(value, str):
        return params.require(value)
    if callable(value):
        try:
            return float(value(params))
        except KeyError as exc:
            raise ModelError(f"Compartment attribute references undeclared parameter {exc}") from exc
    return float(value)


@dataclass(frozen=True)
class Compartment:
    """Named slot of the state vector.

    init: initial amount; bioavailability / lag / duration modify doses
    into this compartment (duration applies to doses with rate -2).
    """

    name: str
    init: Attribute = 0.0
    bioavailability: Attribute = None
    lag: Attribute = None
    duration: Attribute = None


@dataclass(frozen=True)
class Model:
    """Declared model: compartments, parameters, derivative and stochastic processes.

    ``rhs(t, a, p)`` returns derivatives for the compartments in declared
    order. Captures are names (compartment, parameter, random effect or
    covariate) or ``name -> callable(t, amounts, params, ctx)``.
    """

    name: str
    compartments: Tuple[Compartment, ...] = ()
    parameters: Tuple[Parameter, ...] = ()
    rhs: Optional[RHS] = None
    omega: Optional[Omega] = None
    frailties: Tuple[Frailty, ...] = ()
    derive: Optional[Callable[[Mapping[str, float]], Mapping[str, float]]] = None
    captures: Mapping[str, Capture] = field(default_factory=dict)
    hazards: Tuple[HazardProcess, ...] = ()
    counting: Tuple[CountingProcess, ...] = ()
    multistate: Optional[MultistateProcess] = None
    covariates: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for attr in ("compartments", "parameters", "frailties", "hazards", "counting", "covariates"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))
        captures = self.captures
        if not isinstance(captures, Mapping):
            captures = {name: name for name in captures}
        object.__setattr__(self, "captures", dict(captures))

        names = [c.name for c in self.compartments] + [h.state_name for h in self.hazards]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate compartment names in model {self.name}: {names}")
        pnames = [p.name for p in self.parameters]
        if len(set(pnames)) != len(pnames):
            raise ConfigurationError(f"Duplicate parameter names in model {self.name}: {pnames}")
        if self.compartments and self.rhs is None:
            raise ConfigurationError(f"Model {self.name} declares compartments but no derivative function")
        declared_effects = set(self.sampler().names)
        for p in self.parameters:
            if p.eta is not None and p.eta not in declared_effects:
                raise ConfigurationError(f"Parameter {p.name} uses undeclared random effect {p.eta!r}")

        referable = set(names) | set(pnames) | declared_effects | set(self.covariates)
        for cap_name, cap in self.captures.items():
            if isinstance(cap, str) and cap not in referable and not self._derived_name(cap):
                raise ModelError(f"Capture {cap_name!r} references undeclared name {cap!r}")
        object.__setattr__(self, "_index", {n: i for i, n in enumerate(names)})

    def _derived_name(self, name: str) -> bool:
        # derived quantities exist only once an individual is built; accept
        # them when the typical values produce them
        if self.derive is None:
            return False
        try:
            return name in self.derive({p.name: float(p.value) for p in self.parameters})
        except (KeyError, ZeroDivisionError, ValueError):
            return False

    @property
    def state_names(self) -> List[str]:
        return [c.name for c in self.compartments] + [h.state_name for h in self.hazards]

    @property
    def n_compartments(self) -> int:
        return len(self.compartments)

    def index(self, cmt: Union[str, int]) -> int:
        """Position of a compartment, by name or 1-based number."""
        if isinstance(cmt, (int, np.integer)) and not isinstance(cmt, bool):
            if 1 <= cmt <= self.n_compartments:
                return int(cmt) - 1
            raise ModelError(f"Compartment number {cmt} is not declared in model {self.name}")
        try:
            return self._index[cmt]  # type: ignore[attr-defined]
        except KeyError:
            raise ModelError(f"Compartment {cmt!r} is not declared in model {self.name}") from None

    def compartment(self, cmt: Union[str, int]) -> Compartment:
        idx = self.index(cmt)
        if idx >= self.n_compartments:
            raise ModelError(f"{cmt!r} is a hazard state, not a dosing compartment")
        return self.compartments[idx]

    def sampler(self, zeroed: bool = False) -> RandomEffectSampler:
        return RandomEffectSampler(self.omega, self.frailties, zeroed=zeroed)

    def initial_state(self, params: ParameterSet) -> np.ndarray:
        y = np.zeros(len(self.state_names))
        for i, c in enumerate(self.compartments):
            y[i] = resolve_attribute(c.init, params, 0.0)
        return y

    def capture(self, t: float, amounts: Dict[str, float], params: ParameterSet, ctx: Any) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for cap_name, cap in self.captures.items():
            if isinstance(cap, str):
                out[cap_name] = _lookup(cap, amounts, params, ctx)
                continue
            try:
                out[cap_name] = float(as_real(cap(t, amounts, params, ctx), f"Capture {cap_name!r}", t))
            except KeyError as exc:
                raise ModelError(f"Capture {cap_name!r} references undeclared name {exc}") from exc
        return out


def _lookup(name: str, amounts: Mapping[str, float], params: ParameterSet, ctx: Any) -> float:
    if name in amounts:
        return float(amounts[name])
    if name in params:
        return float(params[name])
    if name in ctx.etas:
        return float(ctx.etas[name])
    if name in ctx.covariates:
        return float(ctx.covariates[name])
    raise ModelError(f"Capture references undeclared name {name!r}")
