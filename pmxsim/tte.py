from typing import Mapping, Optional

from .hazard import (
    CountingProcess,
    competing_risks_process,
    exponential_hazard,
    poisson_magnitude,
    weibull_hazard,
)
from .model import Model
from .parameters import Parameter
from .random_effects import Frailty, Omega


def exponential_tte(lam: float, frailty_variance: Optional[float] = None, name: str = "EVENT") -> Model:
    """Constant hazard ``lam``; S(t) = exp(-lam * t). Terminal.

    With ``frailty_variance`` the hazard is multiplied by a gamma frailty
    with mean 1.
    """
    frailties = ()
    lam_param = Parameter("LAMBDA", lam)
    if frailty_variance is not None:
        frailties = (Frailty("FRAIL", frailty_variance),)
        lam_param = Parameter("LAMBDA", lam, eta="FRAIL", relationship="multiplicative")
    return Model(
        name="tte_exponential",
        parameters=(lam_param,),
        frailties=frailties,
        hazards=(exponential_hazard(name, "LAMBDA"),),
    )


def weibull_tte(lam: float, gamma: float, name: str = "EVENT", recurrent: bool = False) -> Model:
    """h(t) = lam * gamma * t^(gamma - 1)."""
    return Model(
        name="tte_weibull",
        parameters=(Parameter("LAMBDA", lam), Parameter("GAMMA", gamma)),
        hazards=(weibull_hazard(name, "LAMBDA", "GAMMA", recurrent=recurrent),),
    )


def recurrent_counts(rate: float, mean_size: float, name: str = "LESION", policy: str = "interval") -> Model:
    """Homogeneous recurrent events at ``rate`` with Poisson(mean_size) magnitudes.

    With the default per-interval policy at most one event falls in each
    observation interval; ``policy="thinning"`` gives a full Poisson count.
    """
    process = CountingProcess(
        name,
        intensity="RATE",
        max_intensity="RATE",
        magnitude=poisson_magnitude("SIZE"),
        policy=policy,
    )
    return Model(
        name="counting_poisson",
        parameters=(Parameter("RATE", rate), Parameter("SIZE", mean_size)),
        counting=(process,),
    )


def competing_risks(k12: float, k13: float, terminal: bool = False, omega: Optional[Mapping[str, float]] = None) -> Model:
    """Three-state model leaving state 1 only; P(state 1 at t) = exp(-(k12 + k13) t)."""
    block = Omega.diagonal({f"ETA_{k}": v for k, v in (omega or {}).items()}) if omega else None
    params = tuple(
        Parameter(n, v, eta=f"ETA_{n}" if omega and n in omega else None)
        for n, v in (("K12", k12), ("K13", k13))
    )
    return Model(
        name="multistate_competing_risks",
        parameters=params,
        omega=block,
        multistate=competing_risks_process("K12", "K13", terminal=("2", "3") if terminal else ()),
    )
