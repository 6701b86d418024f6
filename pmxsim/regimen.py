from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

from .errors import ConfigurationError

Compartment = Union[str, int]  # name, or 1-based index as in event datasets


@dataclass(frozen=True)
class Reset:
    """Zero the named compartments (all compartments and infusions when ``cmts`` is None)."""

    time: float
    cmts: Optional[Tuple[Compartment, ...]] = None
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 0


@dataclass(frozen=True)
class ParameterUpdate:
    """Replace individual parameter values from ``time`` onward (dose adjustment)."""

    time: float
    values: Mapping[str, float] = field(default_factory=dict)
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 1


@dataclass(frozen=True)
class Dose:
    """Dose administration.

    rate == 0: bolus; rate > 0: infusion at ``rate``; rate == -2: infusion
    over the target compartment's declared duration. ``duration`` > 0 is an
    infusion over that many time units. ``addl``/``ii`` repeat the dose.
    """

    time: float  # hours
    amount: float  # mg
    cmt: Compartment = 1
    rate: float = 0.0
    duration: float = 0.0
    lag: float = 0.0
    addl: int = 0
    ii: float = 0.0
    bioavailability: Optional[float] = None
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 2

    @property
    def is_infusion(self) -> bool:
        return self.rate != 0 or self.duration > 0


@dataclass(frozen=True)
class CustomTrigger:
    """Evaluate ``predicate(t, amounts, params, ctx)`` at ``time``; when true
    call ``action`` with the same arguments. The action may return new
    events to schedule."""

    time: float
    predicate: Callable[..., bool]
    action: Callable[..., Optional[Iterable[Any]]]
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 3


@dataclass(frozen=True)
class Observation:
    time: float
    priority: Optional[int] = None
    default_priority: ClassVar[int] = 4


Event = Union[Reset, ParameterUpdate, Dose, CustomTrigger, Observation]


def event_priority(event: Any) -> int:
    explicit = getattr(event, "priority", None)
    return int(explicit) if explicit is not None else int(event.default_priority)


def _check_time(event: Any) -> None:
    if event.time is None or event.time < 0:
        raise ConfigurationError(f"Event scheduled at negative time: {event!r}")


def expand_dose(dose: Dose) -> List[Dose]:
    """Expand ``addl``/``ii`` into explicit doses."""
    if dose.addl < 0:
        raise ConfigurationError(f"addl must be non-negative: {dose!r}")
    if dose.addl > 0 and dose.ii <= 0:
        raise ConfigurationError(f"addl requires a positive ii: {dose!r}")
    if dose.amount < 0:
        raise ConfigurationError(f"Dose amount must be non-negative: {dose!r}")
    if dose.rate < 0 and dose.rate != -2:
        raise ConfigurationError(f"Unsupported dose rate {dose.rate}; use > 0, 0 or -2")
    if dose.duration < 0 or dose.lag < 0:
        raise ConfigurationError(f"Dose duration and lag must be non-negative: {dose!r}")
    return [replace(dose, time=dose.time + i * dose.ii, addl=0, ii=0.0) for i in range(dose.addl + 1)]


@dataclass(frozen=True)
class Regimen:
    """Event schedule for one individual, expanded and validated at construction."""

    events: Tuple[Event, ...] = ()

    def __post_init__(self) -> None:
        expanded: List[Event] = []
        for ev in self.events:
            _check_time(ev)
            if isinstance(ev, Dose):
                expanded.extend(expand_dose(ev))
            else:
                expanded.append(ev)
        ordered = sorted(enumerate(expanded), key=lambda p: (p[1].time, event_priority(p[1]), p[0]))
        object.__setattr__(self, "events", tuple(ev for _, ev in ordered))

    @property
    def doses(self) -> List[Dose]:
        return [ev for ev in self.events if isinstance(ev, Dose)]

    @property
    def observation_times(self) -> List[float]:
        return [ev.time for ev in self.events if isinstance(ev, Observation)]

    def __add__(self, other: "Regimen") -> "Regimen":
        return Regimen(events=self.events + other.events)

    @staticmethod
    def repeated(start: float, every: float, n: int, amount: float, *, cmt: Compartment = 1, rate: float = 0.0, duration: float = 0.0, lag: float = 0.0) -> "Regimen":
        """Create a repeated dosing regimen.
        - start: first dose time (h)
        - every: interval (h)
        - n: number of doses
        - amount: dose amount (mg)
        - cmt: target compartment
        - rate / duration: infusion rate or duration, 0 for bolus
        """
        if n < 1:
            raise ConfigurationError("n must be at least 1")
        return Regimen(events=(Dose(time=start, amount=amount, cmt=cmt, rate=rate, duration=duration, lag=lag, addl=n - 1, ii=every if n > 1 else 0.0),))

    @staticmethod
    def from_dataframe(df: pd.DataFrame) -> "Regimen":
        """Read a NONMEM-style event table for one individual.

        Columns (case-insensitive): TIME, plus optional AMT, CMT, RATE, DUR,
        ADDL, II, EVID, LAGT. EVID 0/2 observation, 1 dose, 3 reset,
        4 reset then dose.
        """
        data = df.rename(columns={c: str(c).upper() for c in df.columns})
        if "TIME" not in data.columns:
            raise ConfigurationError("Event dataset needs a TIME column")
        if "EVID" not in data.columns:
            data = data.assign(EVID=(data["AMT"].fillna(0) > 0).astype(int) if "AMT" in data.columns else 0)
        events: List[Event] = []
        for _, row in data.iterrows():
            evid = int(row["EVID"])
            time = float(row["TIME"])
            if evid in (0, 2):
                events.append(Observation(time=time))
            elif evid in (1, 4):
                if evid == 4:
                    events.append(Reset(time=time))
                events.append(Dose(
                    time=time,
                    amount=float(_value(row, "AMT", 0.0)),
                    cmt=_cmt(_value(row, "CMT", 1)),
                    rate=float(_value(row, "RATE", 0.0)),
                    duration=float(_value(row, "DUR", 0.0)),
                    lag=float(_value(row, "LAGT", 0.0)),
                    addl=int(_value(row, "ADDL", 0)),
                    ii=float(_value(row, "II", 0.0)),
                ))
            elif evid == 3:
                events.append(Reset(time=time))
            else:
                raise ConfigurationError(f"Unsupported EVID {evid} at TIME {time}")
        return Regimen(events=tuple(events))


def _value(row: pd.Series, column: str, default: Any) -> Any:
    if column not in row.index or pd.isna(row[column]):
        return default
    return row[column]


def _cmt(value: Any) -> Compartment:
    if isinstance(value, str) and not value.strip().isdigit():
        return value.strip()
    return int(float(value))


def regimens_from_dataframe(df: pd.DataFrame) -> Dict[Any, Regimen]:
    """Split an event dataset by ID into one Regimen per individual."""
    data = df.rename(columns={c: str(c).upper() for c in df.columns})
    if "ID" not in data.columns:
        raise ConfigurationError("Event dataset needs an ID column")
    return {ident: Regimen.from_dataframe(group) for ident, group in data.groupby("ID", sort=False)}
