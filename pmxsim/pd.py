from dataclasses import dataclass, replace
from typing import Callable, List, Mapping, Optional

import numpy as np

from .errors import ConfigurationError
from .model import Compartment, Model
from .parameters import Parameter, ParameterSet

INDIRECT_RESPONSE_TYPES = ("inhibit_kin", "inhibit_kout", "stimulate_kin", "stimulate_kout")


@dataclass(frozen=True)
class EmaxModel:
    """Simple Emax PD model with baseline.

    Effect = baseline + (Emax * C^n) / (EC50^n + C^n)
    """
    emax: float
    ec50: float
    baseline: float = 0.0
    hill: float = 1.0

    def effect(self, concentration: float) -> float:
        if concentration <= 0:
            return self.baseline
        c = concentration ** self.hill
        return self.baseline + (self.emax * c) / (self.ec50 ** self.hill + c)

    def capture(self, cmt: str = "CENT", volume: str = "V"):
        """Capture function recording the effect of ``amounts[cmt] / p[volume]``."""
        def effect(t: float, amounts: Mapping[str, float], p: ParameterSet, ctx) -> float:
            return self.effect(amounts[cmt] / p[volume])
        return effect


def central_concentration(model: Model) -> Callable[[np.ndarray, ParameterSet], float]:
    """Concentration in CENT for the library PK models (volume V or V1)."""
    idx = model.index("CENT")
    names = {p.name for p in model.parameters}
    volume = "V" if "V" in names else "V1"
    if volume not in names:
        raise ConfigurationError(f"Model {model.name} declares no central volume")

    def conc(a: np.ndarray, p: ParameterSet) -> float:
        return a[idx] / p[volume]

    return conc


def indirect_response(
    pk: Model,
    kin: float,
    kout: float,
    ic50: float,
    imax: float = 1.0,
    kind: str = "inhibit_kin",
    omega_names: Optional[Mapping[str, str]] = None,
) -> Model:
    """Attach a turnover (indirect response) compartment RESP to a PK model.

    dRESP/dt = kin * (1 - I(C) or 1 + S(C)) - kout * (...) * RESP
    with I(C) = imax * C / (ic50 + C) for inhibition, S(C) = imax * C / (ic50 + C)
    for stimulation. RESP starts at kin / kout.
    """
    if kind not in INDIRECT_RESPONSE_TYPES:
        raise ConfigurationError(f"Unknown indirect response type {kind!r}, expected one of {INDIRECT_RESPONSE_TYPES}")
    conc = central_concentration(pk)
    n_pk = pk.n_compartments
    pk_rhs = pk.rhs
    etas = dict(omega_names or {})
    extra = [
        Parameter("KIN", kin, eta=etas.get("KIN")),
        Parameter("KOUT", kout, eta=etas.get("KOUT")),
        Parameter("IC50", ic50, eta=etas.get("IC50")),
        Parameter("IMAX", imax, relationship="additive"),
    ]

    def rhs(t: float, a: np.ndarray, p: ParameterSet) -> List[float]:
        d_pk = list(pk_rhs(t, a[:n_pk], p))
        c = max(conc(a, p), 0.0)
        drug = p["IMAX"] * c / (p["IC50"] + c)
        resp = a[n_pk]
        production = p["KIN"]
        loss = p["KOUT"] * resp
        if kind == "inhibit_kin":
            production *= 1.0 - drug
        elif kind == "stimulate_kin":
            production *= 1.0 + drug
        elif kind == "inhibit_kout":
            loss *= 1.0 - drug
        else:
            loss *= 1.0 + drug
        return d_pk + [production - loss]

    captures = dict(pk.captures)
    captures["RESP"] = "RESP"
    return replace(
        pk,
        name=f"{pk.name}_idr_{kind}",
        compartments=pk.compartments + (Compartment("RESP", init=lambda p: p["KIN"] / p["KOUT"]),),
        parameters=pk.parameters + tuple(extra),
        rhs=rhs,
        captures=captures,
    )
