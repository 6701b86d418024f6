from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from .errors import ConfigurationError
from .model import Compartment, Model
from .parameters import Parameter, ParameterSet
from .random_effects import Omega


def _parameters(values: Dict[str, Optional[float]], omega: Optional[Mapping[str, float]]) -> Tuple[List[Parameter], Optional[Omega]]:
    omega = dict(omega or {})
    unknown = [name for name in omega if name not in values or values[name] is None]
    if unknown:
        raise ConfigurationError(f"Random effects declared on unknown parameters: {unknown}")
    params = [
        Parameter(name=name, value=value, eta=f"ETA_{name}" if name in omega else None)
        for name, value in values.items()
        if value is not None
    ]
    block = Omega.diagonal({f"ETA_{name}": var for name, var in omega.items()}) if omega else None
    return params, block


def _concentration(cmt: str, volume: str):
    def cp(t: float, amounts: Mapping[str, float], p: ParameterSet, ctx) -> float:
        return amounts[cmt] / p[volume]
    return cp


def one_compartment(
    cl: float,
    v: float,
    ka: Optional[float] = None,
    f: float = 1.0,
    alag: Optional[float] = None,
    omega: Optional[Mapping[str, float]] = None,
) -> Model:
    """One-compartment model; first-order absorption from DEPOT when ``ka`` is given.

    dDEPOT/dt = -ka * DEPOT
    dCENT/dt  = ka * DEPOT - (CL / V) * CENT
    CP = CENT / V

    Bioavailability F and lag ALAG act on doses into DEPOT.
    """
    oral = ka is not None
    params, block = _parameters({"CL": cl, "V": v, "KA": ka, "F": f if oral else None, "ALAG": alag if oral else None}, omega)

    def rhs(t: float, a: np.ndarray, p: ParameterSet) -> List[float]:
        k10 = p["CL"] / p["V"]
        if oral:
            depot, cent = a
            return [-p["KA"] * depot, p["KA"] * depot - k10 * cent]
        return [-k10 * a[0]]

    compartments = [Compartment("CENT")]
    if oral:
        compartments.insert(0, Compartment("DEPOT", bioavailability="F", lag="ALAG" if alag is not None else None))
    return Model(
        name="pk1cmt_oral" if oral else "pk1cmt_iv",
        compartments=tuple(compartments),
        parameters=tuple(params),
        rhs=rhs,
        omega=block,
        derive=lambda p: {"K10": p["CL"] / p["V"]},
        captures={"CP": _concentration("CENT", "V")},
    )


def two_compartment(
    cl: float,
    v1: float,
    q: float,
    v2: float,
    ka: Optional[float] = None,
    f: float = 1.0,
    omega: Optional[Mapping[str, float]] = None,
) -> Model:
    """Two-compartment model with optional first-order absorption.

    dCENT/dt   = ka*DEPOT - (CL/V1)*CENT - (Q/V1)*CENT + (Q/V2)*PERIPH
    dPERIPH/dt = (Q/V1)*CENT - (Q/V2)*PERIPH
    """
    oral = ka is not None
    params, block = _parameters({"CL": cl, "V1": v1, "Q": q, "V2": v2, "KA": ka, "F": f if oral else None}, omega)

    def rhs(t: float, a: np.ndarray, p: ParameterSet) -> List[float]:
        if oral:
            depot, cent, periph = a
        else:
            depot = 0.0
            cent, periph = a
        k10 = p["CL"] / p["V1"]
        k12 = p["Q"] / p["V1"]
        k21 = p["Q"] / p["V2"]
        absorbed = p["KA"] * depot if oral else 0.0
        d_cent = absorbed - k10 * cent - k12 * cent + k21 * periph
        d_periph = k12 * cent - k21 * periph
        if oral:
            return [-absorbed, d_cent, d_periph]
        return [d_cent, d_periph]

    compartments = [Compartment("CENT"), Compartment("PERIPH")]
    if oral:
        compartments.insert(0, Compartment("DEPOT", bioavailability="F"))
    return Model(
        name="pk2cmt_oral" if oral else "pk2cmt_iv",
        compartments=tuple(compartments),
        parameters=tuple(params),
        rhs=rhs,
        omega=block,
        captures={"CP": _concentration("CENT", "V1")},
    )


def three_compartment(
    cl: float,
    v1: float,
    q2: float,
    v2: float,
    q3: float,
    v3: float,
    ka: Optional[float] = None,
    f: float = 1.0,
    omega: Optional[Mapping[str, float]] = None,
) -> Model:
    """Three-compartment model (central, shallow and deep peripheral)."""
    oral = ka is not None
    params, block = _parameters(
        {"CL": cl, "V1": v1, "Q2": q2, "V2": v2, "Q3": q3, "V3": v3, "KA": ka, "F": f if oral else None},
        omega,
    )

    def rhs(t: float, a: np.ndarray, p: ParameterSet) -> List[float]:
        if oral:
            depot, cent, p1, p2 = a
        else:
            depot = 0.0
            cent, p1, p2 = a
        c1 = cent / p["V1"]
        to_p1 = p["Q2"] * (c1 - p1 / p["V2"])
        to_p2 = p["Q3"] * (c1 - p2 / p["V3"])
        absorbed = p["KA"] * depot if oral else 0.0
        d = [absorbed - p["CL"] * c1 - to_p1 - to_p2, to_p1, to_p2]
        return [-absorbed] + d if oral else d

    compartments = [Compartment("CENT"), Compartment("PERIPH1"), Compartment("PERIPH2")]
    if oral:
        compartments.insert(0, Compartment("DEPOT", bioavailability="F"))
    return Model(
        name="pk3cmt_oral" if oral else "pk3cmt_iv",
        compartments=tuple(compartments),
        parameters=tuple(params),
        rhs=rhs,
        omega=block,
        captures={"CP": _concentration("CENT", "V1")},
    )


def tmax_first_order(ka: float, k10: float) -> float:
    """Analytical time of peak for first-order absorption and elimination."""
    return float(np.log(ka / k10) / (ka - k10))
