from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterator, Mapping, Optional, Sequence
import math

from .errors import ConfigurationError, ModelError, SimulationError

RELATIONSHIPS = ("additive", "exponential", "proportional", "logit", "multiplicative")

CovariateEffect = Callable[[Mapping[str, float]], float]


def _logit(p: float) -> float:
    return math.log(p / (1.0 - p))


def _expit(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


def _real(value, what: str) -> float:
    if isinstance(value, complex):
        raise SimulationError(f"{what} is complex ({value})")
    return float(value)


@dataclass(frozen=True)
class Parameter:
    """Population (typical) value of one structural parameter.

    The individual value combines the typical value, an optional covariate
    effect and an optional random effect:

      additive:     theta * cov + eta
      exponential:  theta * cov * exp(eta)
      proportional: theta * cov * (1 + eta)
      logit:        expit(logit(theta * cov) + eta)
      multiplicative: theta * cov * eta (frailties)
    """

    name: str
    value: float
    eta: Optional[str] = None
    relationship: str = "exponential"
    covariate_effect: Optional[CovariateEffect] = None

    def __post_init__(self) -> None:
        if self.relationship not in RELATIONSHIPS:
            raise ConfigurationError(
                f"Parameter {self.name}: unknown relationship {self.relationship!r}, expected one of {RELATIONSHIPS}"
            )
        if self.relationship == "logit" and not (0.0 < self.value < 1.0):
            raise ConfigurationError(f"Parameter {self.name}: logit relationship needs 0 < value < 1")

    def individual(self, etas: Mapping[str, float], covariates: Mapping[str, float]) -> float:
        typical = float(self.value)
        if self.covariate_effect is not None:
            try:
                typical *= _real(self.covariate_effect(covariates), f"Covariate effect on {self.name}")
            except KeyError as exc:
                raise ModelError(f"Parameter {self.name}: covariate {exc} not provided") from exc
        eta = 0.0
        if self.eta is not None:
            if self.eta not in etas:
                raise ModelError(f"Parameter {self.name}: random effect {self.eta!r} is not declared")
            eta = float(etas[self.eta])
        if self.relationship == "additive":
            return typical + eta
        if self.relationship == "exponential":
            return typical * math.exp(eta)
        if self.relationship == "proportional":
            return typical * (1.0 + eta)
        if self.relationship == "multiplicative":
            return typical * (eta if self.eta is not None else 1.0)
        return _expit(_logit(typical) + eta)


class ParameterSet(Mapping[str, float]):
    """Immutable per-individual parameter values."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, float]):
        self._values = MappingProxyType({k: float(v) for k, v in values.items()})

    def __getitem__(self, name: str) -> float:
        try:
            return self._values[name]
        except KeyError:
            raise KeyError(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ParameterSet({dict(self._values)!r})"

    def require(self, name: str) -> float:
        if name not in self._values:
            raise ModelError(f"Parameter {name!r} is not declared")
        return self._values[name]

    def updated(self, values: Mapping[str, float]) -> "ParameterSet":
        unknown = [k for k in values if k not in self._values]
        if unknown:
            raise ModelError(f"Cannot update undeclared parameters: {unknown}")
        merged = dict(self._values)
        merged.update(values)
        return ParameterSet(merged)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._values)


def derive_parameters(
    parameters: Sequence[Parameter],
    etas: Mapping[str, float],
    covariates: Mapping[str, float],
    derive: Optional[Callable[[Mapping[str, float]], Mapping[str, float]]] = None,
) -> ParameterSet:
    """Build one individual's ParameterSet.

    ``derive`` receives the individual structural values and returns extra
    quantities (micro-constants and the like) that are merged in.
    """
    values: Dict[str, float] = {}
    for par in parameters:
        values[par.name] = par.individual(etas, covariates)
    if derive is not None:
        try:
            extra = derive(dict(values))
        except KeyError as exc:
            raise ModelError(f"Derived parameters reference undeclared name {exc}") from exc
        values.update({k: _real(v, f"Derived parameter {k}") for k, v in (extra or {}).items()})
    return ParameterSet(values)
