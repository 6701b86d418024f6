from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple
import logging
import math

import numpy as np
import pandas as pd

from .config import SimulationSettings
from .errors import ConfigurationError, ModelError, SimulationError
from .events import EventApplier, EventQueue
from .hazard import HazardProcess, draw_thresholds
from .model import Model
from .parameters import ParameterSet, derive_parameters
from .regimen import Observation, Regimen
from .solver import NUMERIC_FAULTS, as_real, guard_time, integrate_with

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Individual:
    id: Any
    covariates: Mapping[str, float] = field(default_factory=dict)


@dataclass
class IndividualContext:
    """Scratch state owned by one individual's run.

    Built once before the first event; nothing here is shared between
    individuals.
    """

    id: Any
    covariates: Dict[str, float]
    etas: Dict[str, float]
    params: ParameterSet
    rng: np.random.Generator
    state_names: List[str]
    thresholds: Dict[str, float] = field(default_factory=dict)
    active: Dict[str, bool] = field(default_factory=dict)
    event_counts: Dict[str, int] = field(default_factory=dict)
    counts: Dict[str, float] = field(default_factory=dict)
    infusions: Dict[int, Tuple[int, float]] = field(default_factory=dict)
    state: Optional[str] = None
    previous_state: Optional[str] = None
    visited: Set[str] = field(default_factory=set)
    cumulative_dose: float = 0.0
    scratch: Dict[str, float] = field(default_factory=dict)
    terminal: bool = False

    def amounts(self, y: np.ndarray) -> Dict[str, float]:
        return {name: float(v) for name, v in zip(self.state_names, y)}

    def infusion_rates(self, n: int) -> np.ndarray:
        rates = np.zeros(n)
        for idx, rate in self.infusions.values():
            rates[idx] += rate
        return rates


@dataclass(frozen=True)
class IndividualResult:
    id: Any
    records: List[Dict[str, Any]]
    status: str = "success"
    error: Optional[str] = None
    failed_time: Optional[float] = None
    etas: Mapping[str, float] = field(default_factory=dict)
    params: Mapping[str, float] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.status == "success"

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame.from_records(self.records)
        if not df.empty:
            df["complete"] = self.complete
        return df


def observation_times(end: float, delta: Optional[float] = None, add: Sequence[float] = (), regimen: Optional[Regimen] = None) -> List[float]:
    """Fixed-interval grid on [0, end] plus extra and regimen-declared times."""
    if end < 0:
        raise ConfigurationError(f"end must be non-negative, got {end}")
    times: Set[float] = set()
    if delta is not None:
        if delta <= 0:
            raise ConfigurationError(f"delta must be positive, got {delta}")
        n = int(math.floor(end / delta + 1e-9))
        times.update(i * delta for i in range(n + 1))
    times.update(float(t) for t in add if 0 <= t <= end)
    if regimen is not None:
        times.update(t for t in regimen.observation_times if t <= end)
    return sorted(times)


class IndividualSimulator:
    """Advances one individual from time zero to ``end``.

    Between consecutive queue entries the ODE system (compartments plus one
    cumulative-hazard state per hazard) is integrated; events due at a time
    are applied in priority order; at observation times the stochastic
    processes are evaluated and a record is captured. The run stops at
    ``end`` or as soon as a terminal event fires.
    """

    def __init__(self, model: Model, settings: Optional[SimulationSettings] = None):
        self.model = model
        self.settings = settings or SimulationSettings()

    def build_context(self, individual: Individual, rng: np.random.Generator, zero_re: bool = False) -> IndividualContext:
        model = self.model
        # stream order: random effects, then one threshold per hazard
        etas = model.sampler(zeroed=zero_re).sample(rng)
        covariates = {k: float(v) for k, v in individual.covariates.items()}
        try:
            with np.errstate(divide="raise", invalid="raise", over="raise"):
                params = derive_parameters(model.parameters, etas, covariates, model.derive)
        except NUMERIC_FAULTS as exc:
            raise SimulationError(f"Parameter derivation failed: {exc}", individual.id, 0.0) from exc
        except SimulationError as exc:
            raise exc.tagged(individual.id, 0.0) from exc
        ctx = IndividualContext(
            id=individual.id,
            covariates=covariates,
            etas=etas,
            params=params,
            rng=rng,
            state_names=model.state_names,
        )
        ctx.thresholds = draw_thresholds(model.hazards, rng)
        ctx.active = {h.name: True for h in model.hazards}
        ctx.event_counts = {h.name: 0 for h in model.hazards}
        ctx.counts = {c.name: 0.0 for c in model.counting}
        if model.multistate is not None:
            ctx.state = model.multistate.initial
            ctx.visited = {ctx.state}
        return ctx

    def _derivative(self, ctx: IndividualContext):
        model = self.model
        n = model.n_compartments
        eps = self.settings.time_epsilon

        def rhs(t: float, y: np.ndarray) -> np.ndarray:
            dy = np.zeros_like(y)
            a = y[:n]
            params = ctx.params
            if n:
                da = as_real(model.rhs(t, a, params), f"Derivative of model {model.name}", t)
                if da.shape != (n,):
                    raise ModelError(f"Derivative of model {model.name} returned {da.size} values for {n} compartments")
                dy[:n] = da
                if ctx.infusions:
                    dy[:n] += ctx.infusion_rates(n)
            for k, h in enumerate(model.hazards):
                if ctx.active[h.name]:
                    value = float(as_real(h.hazard(guard_time(t, eps), a, params), f"Hazard {h.name}", t))
                    if value < 0:
                        raise SimulationError(f"Hazard {h.name} is negative ({value:g})", time=t)
                    dy[n + k] = value
            return dy

        return rhs

    def run(
        self,
        individual: Individual,
        regimen: Optional[Regimen],
        end: float,
        delta: Optional[float] = None,
        add: Sequence[float] = (),
        rng: Optional[np.random.Generator] = None,
        zero_re: bool = False,
    ) -> IndividualResult:
        rng = rng if rng is not None else np.random.default_rng()
        regimen = regimen or Regimen()
        records: List[Dict[str, Any]] = []
        ctx = None
        try:
            ctx = self.build_context(individual, rng, zero_re=zero_re)
            self._advance(ctx, regimen, end, delta, add, records)
        except SimulationError as exc:
            err = exc.tagged(individual.id)
            logger.debug("ID=%s failed: %s", individual.id, err)
            return IndividualResult(
                id=individual.id,
                records=records,
                status="failed",
                error=str(err),
                failed_time=err.time,
                etas=dict(ctx.etas) if ctx is not None else {},
                params=ctx.params.as_dict() if ctx is not None else {},
            )
        return IndividualResult(id=individual.id, records=records, etas=dict(ctx.etas), params=ctx.params.as_dict())

    def _advance(
        self,
        ctx: IndividualContext,
        regimen: Regimen,
        end: float,
        delta: Optional[float],
        add: Sequence[float],
        records: List[Dict[str, Any]],
    ) -> None:
        model = self.model
        applier = EventApplier(model)
        queue = EventQueue()
        t = 0.0
        try:
            for ev in regimen.events:
                if not isinstance(ev, Observation):
                    applier.schedule(ev, queue, ctx)
            for obs_time in observation_times(end, delta, add, regimen):
                queue.schedule(Observation(time=obs_time))

            rhs = self._derivative(ctx)
            y = model.initial_state(ctx.params)
            last_check = 0.0
            while queue:
                t_next = queue.peek_time()
                if t_next > end:
                    break
                if t_next > t:
                    try:
                        y = integrate_with(self.settings, rhs, y, (t, t_next))
                    except SimulationError as exc:
                        raise exc.tagged(ctx.id, t) from exc
                    t = t_next
                event = queue.next_event()
                if not isinstance(event, Observation):
                    applier.apply(event, t, y, ctx, queue)
                    continue
                fired = self._stochastic(ctx, y, last_check, t)
                last_check = t
                records.append(self._record(ctx, t, y, fired))
                if ctx.terminal:
                    logger.debug("ID=%s terminal event at t=%g", ctx.id, t)
                    break
        except NUMERIC_FAULTS as exc:
            raise SimulationError(f"Evaluation failed: {exc}", time=t) from exc

    def _stochastic(self, ctx: IndividualContext, y: np.ndarray, t_prev: float, t: float) -> Dict[str, int]:
        """Evaluate hazards, counting processes and multistate at an
        observation time. Draw order: hazards, counting, multistate."""
        model = self.model
        n = model.n_compartments
        a = y[:n]
        fired: Dict[str, int] = {}
        for k, h in enumerate(model.hazards):
            fired[h.name] = 0
            if not ctx.active[h.name]:
                continue
            chz = float(y[n + k])
            if not HazardProcess.fires(ctx.thresholds[h.name], chz):
                continue
            fired[h.name] = 1
            ctx.event_counts[h.name] += 1
            logger.debug("ID=%s hazard %s fired at t=%g (CHZ=%g)", ctx.id, h.name, t, chz)
            if h.recurrent:
                y[n + k] = 0.0
                ctx.thresholds[h.name] = float(ctx.rng.random())
            else:
                ctx.active[h.name] = False
                if h.terminal:
                    ctx.terminal = True
        for c in model.counting:
            count, total = c.step(t_prev, t, a, ctx.params, ctx.rng)
            fired[c.name] = count
            ctx.counts[c.name] += count
            ctx.scratch[f"DV_{c.name}"] = total
        ms = model.multistate
        if ms is not None and not ctx.terminal:
            new_state = ms.step(ctx.state, sorted(ctx.visited), t, t - t_prev, a, ctx.params, ctx.rng)
            if new_state != ctx.state:
                logger.debug("ID=%s t=%g state %s -> %s", ctx.id, t, ctx.state, new_state)
                ctx.previous_state = ctx.state
                ctx.state = new_state
                ctx.visited.add(new_state)
            if ctx.state in ms.terminal:
                ctx.terminal = True
        return fired

    def _record(self, ctx: IndividualContext, t: float, y: np.ndarray, fired: Dict[str, int]) -> Dict[str, Any]:
        model = self.model
        amounts = ctx.amounts(y)
        row: Dict[str, Any] = {"ID": ctx.id, "time": t}
        row.update(amounts)
        for h in model.hazards:
            row[f"SURV_{h.name}"] = HazardProcess.survival(amounts[h.state_name])
            row[f"EV_{h.name}"] = fired.get(h.name, 0)
            if h.recurrent:
                row[f"N_{h.name}"] = ctx.event_counts[h.name]
        for c in model.counting:
            row[c.name] = ctx.scratch.get(f"DV_{c.name}", 0.0)
            row[f"N_{c.name}"] = ctx.counts[c.name]
        if model.multistate is not None:
            row["STATE"] = ctx.state
            row["PREV_STATE"] = ctx.previous_state
        row.update(model.capture(t, amounts, ctx.params, ctx))
        return row


def simulate_individual(
    model: Model,
    individual: Individual,
    regimen: Optional[Regimen] = None,
    end: float = 24.0,
    delta: Optional[float] = 1.0,
    add: Sequence[float] = (),
    settings: Optional[SimulationSettings] = None,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    zero_re: bool = False,
) -> IndividualResult:
    """Simulate one individual.

    - model: declared model
    - individual: id and covariates
    - regimen: doses, resets and other events
    - end, delta, add: observation grid on [0, end]
    - seed / rng: random stream for random effects and stochastic events
    - zero_re: force all random effects to their typical values
    """
    if rng is None:
        rng = np.random.default_rng(seed)
    return IndividualSimulator(model, settings).run(individual, regimen, end, delta, add, rng=rng, zero_re=zero_re)
