from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import math

import numpy as np

from .errors import ConfigurationError, ModelError, SimulationError
from .parameters import ParameterSet

HazardFunction = Callable[[float, np.ndarray, ParameterSet], float]
Rate = Union[float, str, HazardFunction]

COUNTING_POLICIES = ("interval", "thinning")


@dataclass(frozen=True)
class HazardProcess:
    """Time-to-event process with hazard ``hazard(t, a, p)``.

    The cumulative hazard is integrated as an extra state named
    ``CHZ_<name>``; survival is ``exp(-CHZ)``. A non-recurrent process draws
    one uniform per individual and fires the first time the draw is at or
    above survival. When ``terminal`` the individual stops there; otherwise
    only this hazard stops accumulating. A recurrent process resets its
    cumulative hazard and redraws the uniform after every event.
    """

    name: str
    hazard: HazardFunction
    recurrent: bool = False
    terminal: bool = True

    def __post_init__(self) -> None:
        if self.recurrent and self.terminal:
            object.__setattr__(self, "terminal", False)

    @property
    def state_name(self) -> str:
        return f"CHZ_{self.name}"

    @staticmethod
    def survival(cumulative_hazard: float) -> float:
        return math.exp(-max(cumulative_hazard, 0.0))

    @staticmethod
    def fires(draw: float, cumulative_hazard: float) -> bool:
        return draw >= HazardProcess.survival(cumulative_hazard)


def _rate_value(rate: Rate, t: float, a: np.ndarray, p: ParameterSet) -> float:
    if callable(rate):
        try:
            return float(rate(t, a, p))
        except KeyError as exc:
            raise ModelError(f"Rate references undeclared name {exc}") from exc
    if isinstance(rate, str):
        return p.require(rate)
    return float(rate)


def exponential_hazard(name: str, rate: Rate = "LAMBDA", effect: Optional[HazardFunction] = None, **kwargs) -> HazardProcess:
    """h(t) = lambda * effect(t, a, p)."""

    def hazard(t: float, a: np.ndarray, p: ParameterSet) -> float:
        h = _rate_value(rate, t, a, p)
        return h * effect(t, a, p) if effect is not None else h

    return HazardProcess(name=name, hazard=hazard, **kwargs)


def weibull_hazard(name: str, scale: Rate = "LAMBDA", shape: Rate = "GAMMA", effect: Optional[HazardFunction] = None, **kwargs) -> HazardProcess:
    """h(t) = lambda * gamma * t^(gamma - 1) * effect(t, a, p).

    Evaluated off t=0 by the engine's time epsilon when gamma < 1.
    """

    def hazard(t: float, a: np.ndarray, p: ParameterSet) -> float:
        lam = _rate_value(scale, t, a, p)
        gam = _rate_value(shape, t, a, p)
        h = lam * gam * t ** (gam - 1.0)
        return h * effect(t, a, p) if effect is not None else h

    return HazardProcess(name=name, hazard=hazard, **kwargs)


def gompertz_hazard(name: str, scale: Rate = "LAMBDA", shape: Rate = "GAMMA", effect: Optional[HazardFunction] = None, **kwargs) -> HazardProcess:
    """h(t) = lambda * exp(gamma * t) * effect(t, a, p)."""

    def hazard(t: float, a: np.ndarray, p: ParameterSet) -> float:
        h = _rate_value(scale, t, a, p) * math.exp(_rate_value(shape, t, a, p) * t)
        return h * effect(t, a, p) if effect is not None else h

    return HazardProcess(name=name, hazard=hazard, **kwargs)


# ---------------------------------------------------------------------------
#  Counting process
# ---------------------------------------------------------------------------

Magnitude = Callable[[np.random.Generator, ParameterSet], float]


def poisson_magnitude(mean: Union[float, str]) -> Magnitude:
    """Event size drawn from Poisson(mean); ``mean`` may name a parameter."""

    def draw(rng: np.random.Generator, p: ParameterSet) -> float:
        mu = p.require(mean) if isinstance(mean, str) else float(mean)
        return float(rng.poisson(mu))

    return draw


@dataclass(frozen=True)
class CountingProcess:
    """Recurrent events with intensity ``intensity(t, a, p)``.

    policy="interval" (default): each observation interval draws, in this
    order, an exponential candidate wait at the intensity, a uniform
    compared against the exponential CDF over the interval, and the
    magnitude when accepted. At most one event per interval.

    policy="thinning": Lewis-Shedler thinning at ``max_intensity``; within
    an interval each candidate draws its exponential wait, then a uniform
    accept/reject against ``intensity / max_intensity``, then the magnitude
    when accepted.

    The intensity sees the state at the end of the interval.
    """

    name: str
    intensity: Rate
    max_intensity: Union[None, float, str] = None
    magnitude: Optional[Magnitude] = None
    policy: str = "interval"

    def __post_init__(self) -> None:
        if self.policy not in COUNTING_POLICIES:
            raise ConfigurationError(
                f"Counting process {self.name}: unknown policy {self.policy!r}, expected one of {COUNTING_POLICIES}"
            )
        if self.policy == "thinning" and self.max_intensity is None:
            raise ConfigurationError(f"Counting process {self.name}: thinning needs max_intensity")

    def bound(self, p: ParameterSet) -> float:
        value = p.require(self.max_intensity) if isinstance(self.max_intensity, str) else float(self.max_intensity)
        if value <= 0:
            raise ModelError(f"Counting process {self.name}: max_intensity must be positive")
        return value

    def _intensity(self, t: float, a: np.ndarray, p: ParameterSet) -> float:
        lam = _rate_value(self.intensity, t, a, p)
        if lam < 0 or not math.isfinite(lam):
            raise SimulationError(f"Counting process {self.name}: invalid intensity {lam}", time=t)
        return lam

    def _draw_magnitude(self, rng: np.random.Generator, p: ParameterSet) -> float:
        return self.magnitude(rng, p) if self.magnitude is not None else 1.0

    def step(self, t0: float, t1: float, a: np.ndarray, p: ParameterSet, rng: np.random.Generator) -> Tuple[int, float]:
        """Simulate events in (t0, t1]; return (count, total magnitude)."""
        if t1 <= t0:
            return 0, 0.0
        if self.policy == "interval":
            return self._interval_step(t0, t1, a, p, rng)
        return self._thinning_step(t0, t1, a, p, rng)

    def _interval_step(self, t0: float, t1: float, a: np.ndarray, p: ParameterSet, rng: np.random.Generator) -> Tuple[int, float]:
        lam = self._intensity(t1, a, p)
        # the candidate wait is drawn even at zero intensity so every
        # interval consumes the same stream positions
        rng.standard_exponential()
        u = rng.random()
        if lam == 0.0:
            return 0, 0.0
        if u > -math.expm1(-lam * (t1 - t0)):
            return 0, 0.0
        return 1, self._draw_magnitude(rng, p)

    def _thinning_step(self, t0: float, t1: float, a: np.ndarray, p: ParameterSet, rng: np.random.Generator) -> Tuple[int, float]:
        lam_max = self.bound(p)
        count = 0
        total = 0.0
        t = t0
        while True:
            t += rng.exponential(1.0 / lam_max)
            if t > t1:
                break
            u = rng.random()
            lam = self._intensity(t, a, p)
            if lam > lam_max * (1.0 + 1e-12):
                raise ModelError(f"Counting process {self.name}: intensity {lam:g} exceeds max_intensity {lam_max:g}")
            if u <= lam / lam_max:
                count += 1
                total += self._draw_magnitude(rng, p)
        return count, total


# ---------------------------------------------------------------------------
#  Multistate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transition:
    source: str
    target: str
    rate: Rate


@dataclass(frozen=True)
class MultistateProcess:
    """Discrete occupancy model.

    Attributes
    ----------
    states: Tuple[str, ...]
        All states, in declared order
    transitions: Tuple[Transition, ...]
        Intensities; evaluation order out of a state follows this order
    initial: str
        State at time zero
    terminal: Tuple[str, ...]
        States that end the individual's simulation when entered
    requires: Mapping[str, Tuple[str, ...]]
        Target -> states of which at least one must have been occupied
        earlier; otherwise a drawn transition is rejected and the state held
    """

    states: Tuple[str, ...]
    transitions: Tuple[Transition, ...]
    initial: str
    terminal: Tuple[str, ...] = ()
    requires: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        known = set(self.states)
        if len(known) != len(self.states):
            raise ConfigurationError(f"Duplicate multistate states: {list(self.states)}")
        if self.initial not in known:
            raise ConfigurationError(f"Initial state {self.initial!r} is not declared")
        for tr in self.transitions:
            if tr.source not in known or tr.target not in known:
                raise ConfigurationError(f"Transition {tr.source}->{tr.target} uses an undeclared state")
            if tr.source == tr.target:
                raise ConfigurationError(f"Transition {tr.source}->{tr.target} does not change state")
        for s in tuple(self.terminal) + tuple(self.requires):
            if s not in known:
                raise ConfigurationError(f"State {s!r} is not declared")

    def outgoing(self, state: str) -> List[Transition]:
        return [tr for tr in self.transitions if tr.source == state]

    def boundaries(self, state: str, t: float, dt: float, a: np.ndarray, p: ParameterSet) -> Tuple[List[str], np.ndarray]:
        """Cumulative probability boundaries over ``[stay, targets...]``.

        With constant intensities over ``dt``, stay has probability
        ``exp(-q dt)`` and target ``j`` has ``q_j / q * (1 - exp(-q dt))``.
        The last boundary is 1.
        """
        out = self.outgoing(state)
        labels = [state] + [tr.target for tr in out]
        rates = np.array([_rate_value(tr.rate, t, a, p) for tr in out], dtype=float)
        if np.any(rates < 0) or not np.all(np.isfinite(rates)):
            raise SimulationError(f"Invalid transition intensity out of state {state}: {rates.tolist()}", time=t)
        total = float(rates.sum())
        if total == 0.0 or dt <= 0.0:
            probs = np.zeros(len(labels))
            probs[0] = 1.0
        else:
            stay = math.exp(-total * dt)
            probs = np.concatenate([[stay], rates / total * (1.0 - stay)])
        cum = np.cumsum(probs)
        cum[-1] = 1.0
        return labels, cum

    def allowed(self, target: str, visited: Sequence[str]) -> bool:
        needed = self.requires.get(target)
        if not needed:
            return True
        return any(s in visited for s in needed)

    def step(self, state: str, visited: Sequence[str], t: float, dt: float, a: np.ndarray, p: ParameterSet, rng: np.random.Generator) -> str:
        """One draw from the current state; returns the new (or held) state."""
        labels, cum = self.boundaries(state, t, dt, a, p)
        u = rng.random()
        idx = int(np.searchsorted(cum, u, side="right"))
        target = labels[min(idx, len(labels) - 1)]
        if target != state and not self.allowed(target, visited):
            return state
        return target


def competing_risks_process(k12: Rate = "K12", k13: Rate = "K13", terminal: Tuple[str, ...] = ()) -> MultistateProcess:
    """Three states, exits from state 1 only: 1 -> 2 at k12, 1 -> 3 at k13."""
    return MultistateProcess(
        states=("1", "2", "3"),
        transitions=(Transition("1", "2", k12), Transition("1", "3", k13)),
        initial="1",
        terminal=terminal,
    )


def draw_thresholds(hazards: Sequence[HazardProcess], rng: np.random.Generator) -> Dict[str, float]:
    """One uniform per hazard process, in declared order."""
    return {h.name: float(rng.random()) for h in hazards}
