from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, ClassVar, Iterable, List, Optional, Tuple
import heapq
import itertools
import logging

import numpy as np

from .errors import ConfigurationError, ModelError
from .model import Model, resolve_attribute
from .regimen import CustomTrigger, Dose, Observation, ParameterUpdate, Reset, event_priority

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InfusionStart:
    time: float
    cmt_index: int
    rate: float
    infusion_id: int
    amount: float
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 2


@dataclass(frozen=True)
class InfusionStop:
    time: float
    infusion_id: int
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 2


class EventQueue:
    """Time-ordered pending events for one individual.

    Ordering key is (time, priority, insertion sequence), so ties at equal
    time resolve Reset < ParameterUpdate < Dose/infusion < CustomTrigger <
    Observation unless an event declares its own priority.
    """

    def __init__(self, events: Iterable[Any] = ()):
        self._heap: List[Tuple[float, int, int, Any]] = []
        self._seq = itertools.count()
        for ev in events:
            self.schedule(ev)

    def schedule(self, event: Any) -> None:
        if event.time < 0:
            raise ConfigurationError(f"Cannot schedule event at negative time: {event!r}")
        heapq.heappush(self._heap, (float(event.time), event_priority(event), next(self._seq), event))

    def next_event(self) -> Optional[Any]:
        """Pop the earliest event, or None when nothing is pending."""
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[3]

    def peek_time(self) -> Optional[float]:
        return self._heap[0][0] if self._heap else None

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)


class EventApplier:
    """Turns regimen events into queue entries and applies them to the state.

    Lag, bioavailability and infusion duration are resolved from the
    individual's parameters when a dose is scheduled.
    """

    def __init__(self, model: Model):
        self.model = model
        self._infusion_ids = itertools.count(1)

    def schedule(self, event: Any, queue: EventQueue, ctx: Any) -> None:
        if not isinstance(event, Dose):
            queue.schedule(event)
            return
        comp = self.model.compartment(event.cmt)
        idx = self.model.index(event.cmt)
        params = ctx.params
        lag = event.lag if event.lag > 0 else resolve_attribute(comp.lag, params, 0.0)
        f = event.bioavailability if event.bioavailability is not None else resolve_attribute(comp.bioavailability, params, 1.0)
        if lag < 0 or f < 0:
            raise ModelError(f"Negative lag or bioavailability for compartment {comp.name}")
        start = event.time + lag
        amount = event.amount * f
        if not event.is_infusion:
            queue.schedule(replace(event, time=start, lag=0.0, bioavailability=f))
            return
        if event.duration > 0:
            duration = event.duration
            rate = amount / duration
        elif event.rate == -2:
            duration = resolve_attribute(comp.duration, params, 0.0)
            if duration <= 0:
                raise ModelError(f"Dose with rate -2 needs a positive duration on compartment {comp.name}")
            rate = amount / duration
        else:
            rate = event.rate
            duration = amount / rate
        infusion_id = next(self._infusion_ids)
        queue.schedule(InfusionStart(time=start, cmt_index=idx, rate=rate, infusion_id=infusion_id, amount=amount, priority=event.priority))
        queue.schedule(InfusionStop(time=start + duration, infusion_id=infusion_id, priority=event.priority))

    def apply(self, event: Any, t: float, y: np.ndarray, ctx: Any, queue: EventQueue) -> None:
        """Mutate ``y`` (and the individual context) for an event due at ``t``."""
        if isinstance(event, Dose):
            idx = self.model.index(event.cmt)
            f = event.bioavailability if event.bioavailability is not None else 1.0
            y[idx] += event.amount * f
            ctx.cumulative_dose += event.amount * f
            logger.debug("ID=%s t=%g bolus %g into %s", ctx.id, t, event.amount * f, self.model.state_names[idx])
        elif isinstance(event, InfusionStart):
            ctx.infusions[event.infusion_id] = (event.cmt_index, event.rate)
            ctx.cumulative_dose += event.amount
            logger.debug("ID=%s t=%g infusion %d start rate %g", ctx.id, t, event.infusion_id, event.rate)
        elif isinstance(event, InfusionStop):
            # a reset may already have cancelled it
            if ctx.infusions.pop(event.infusion_id, None) is not None:
                logger.debug("ID=%s t=%g infusion %d stop", ctx.id, t, event.infusion_id)
        elif isinstance(event, Reset):
            self._reset(event, y, ctx)
        elif isinstance(event, ParameterUpdate):
            ctx.params = ctx.params.updated(event.values)
            logger.debug("ID=%s t=%g parameters updated %s", ctx.id, t, dict(event.values))
        elif isinstance(event, CustomTrigger):
            amounts = ctx.amounts(y)
            if event.predicate(t, amounts, ctx.params, ctx):
                for new in event.action(t, amounts, ctx.params, ctx) or ():
                    if new.time < t:
                        raise ModelError(f"Trigger at t={t:g} scheduled an event in the past: {new!r}")
                    self.schedule(new, queue, ctx)
        elif isinstance(event, Observation):
            raise TypeError("Observations are recorded by the driver, not applied")
        else:
            raise ModelError(f"Unknown event type {type(event).__name__}")

    def _reset(self, event: Reset, y: np.ndarray, ctx: Any) -> None:
        if event.cmts is None:
            y[: self.model.n_compartments] = 0.0
            ctx.infusions.clear()
            return
        targets = {self.model.index(c) for c in event.cmts}
        for i in targets:
            y[i] = 0.0
        for inf_id, (idx, _) in list(ctx.infusions.items()):
            if idx in targets:
                del ctx.infusions[inf_id]
