from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple
import math

import numpy as np
from scipy.integrate import solve_ivp

from .config import SimulationSettings
from .errors import ModelError, SimulationError

RHSFunction = Callable[[float, np.ndarray], Sequence[float]]

NUMERIC_FAULTS = (ZeroDivisionError, OverflowError, FloatingPointError, ValueError)


@dataclass(frozen=True)
class SolveResult:
    t: List[float]
    y: np.ndarray  # shape (n_states, n_times)
    status: int
    message: str

    @property
    def final(self) -> np.ndarray:
        return self.y[:, -1].copy()


def guard_time(t: float, epsilon: float) -> float:
    """Shift ``t`` off zero so terms like ``t ** (gamma - 1)`` stay finite."""
    return t + epsilon


def as_real(values: Any, what: str, time: Optional[float] = None) -> np.ndarray:
    """Float array of ``values``; a complex result (fractional power of a
    negative number) is a SimulationError."""
    arr = np.asarray(values)
    if np.iscomplexobj(arr):
        raise SimulationError(f"{what} produced a complex value", time=time)
    try:
        return arr.astype(float)
    except TypeError as exc:
        raise SimulationError(f"{what} produced a non-numeric value: {exc}", time=time) from exc


def checked_rhs(rhs: RHSFunction) -> Callable[[float, np.ndarray], np.ndarray]:
    """Wrap a derivative function so numeric faults surface as SimulationError."""

    def wrapped(t: float, y: np.ndarray) -> np.ndarray:
        try:
            with np.errstate(divide="raise", invalid="raise", over="raise"):
                dy = as_real(rhs(t, y), "Derivative", t)
        except KeyError as exc:
            raise ModelError(f"Derivative references undeclared name {exc}") from exc
        except NUMERIC_FAULTS as exc:
            raise SimulationError(f"Derivative evaluation failed: {exc}", time=t) from exc
        if dy.shape != y.shape:
            raise ModelError(f"Derivative returned {dy.shape[0] if dy.ndim else 0} values for {y.shape[0]} states")
        if not np.all(np.isfinite(dy)):
            raise SimulationError("Derivative produced a non-finite value", time=t)
        return dy

    return wrapped


def rk4_step(rhs: Callable[[float, np.ndarray], np.ndarray], t: float, state: np.ndarray, h: float) -> np.ndarray:
    k1 = rhs(t, state)
    k2 = rhs(t + h / 2.0, state + h * k1 / 2.0)
    k3 = rhs(t + h / 2.0, state + h * k2 / 2.0)
    k4 = rhs(t + h, state + h * k3)
    return state + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)


def _integrate_rk4(
    rhs: Callable[[float, np.ndarray], np.ndarray],
    y0: np.ndarray,
    t_span: Tuple[float, float],
    t_eval: Optional[Sequence[float]],
    dt: float,
) -> SolveResult:
    a, b = t_span
    requested = [float(t) for t in t_eval] if t_eval is not None else []
    stops = sorted(set([a, b] + [t for t in requested if a <= t <= b]))
    wanted = set(stops) if t_eval is None else set(requested)
    times: List[float] = []
    states: List[np.ndarray] = []
    y = np.asarray(y0, dtype=float)
    if a in wanted or t_eval is None:
        times.append(a)
        states.append(y.copy())
    for left, right in zip(stops[:-1], stops[1:]):
        # align the fixed step to every requested output time
        n = max(1, int(math.ceil((right - left) / dt - 1e-9)))
        h = (right - left) / n
        for k in range(n):
            y = rk4_step(rhs, left + k * h, y, h)
        if right in wanted or t_eval is None:
            times.append(right)
            states.append(y.copy())
    return SolveResult(t=times, y=np.column_stack(states), status=0, message="RK4 completed")


def integrate_ode(
    rhs: RHSFunction,
    y0: Sequence[float],
    t_span: Tuple[float, float],
    t_eval: Optional[Sequence[float]] = None,
    method: str = "LSODA",
    rtol: float = 1e-8,
    atol: float = 1e-10,
    max_step: float = math.inf,
    rk4_dt: float = 0.01,
) -> SolveResult:
    """Advance ``y0`` over ``t_span``.

    Returns the state at ``t_eval`` (dense output) or at the end points when
    ``t_eval`` is omitted. Solver failure or a non-finite state raises
    SimulationError tagged with the time the failure was detected.
    """
    fun = checked_rhs(rhs)
    y0 = np.asarray(y0, dtype=float)
    a, b = float(t_span[0]), float(t_span[1])
    if b < a:
        raise ValueError("t_span must be increasing")
    if y0.size == 0:
        return SolveResult(t=[a, b], y=np.zeros((0, 2)), status=0, message="no states")
    if b == a:
        return SolveResult(t=[a], y=y0.reshape(-1, 1).copy(), status=0, message="empty interval")

    if method.upper() == "RK4":
        result = _integrate_rk4(fun, y0, (a, b), t_eval, rk4_dt)
    else:
        sol = solve_ivp(
            fun=fun,
            t_span=(a, b),
            y0=y0,
            t_eval=np.asarray(t_eval, dtype=float) if t_eval is not None else [a, b],
            method=method,
            rtol=rtol,
            atol=atol,
            max_step=max_step,
        )
        if sol.status < 0:
            failed_at = float(sol.t[-1]) if len(sol.t) else a
            raise SimulationError(f"Integrator failed: {sol.message}", time=failed_at)
        result = SolveResult(t=sol.t.tolist(), y=sol.y, status=sol.status, message=sol.message)

    if not np.all(np.isfinite(result.y)):
        bad = int(np.argmax(~np.all(np.isfinite(result.y), axis=0)))
        raise SimulationError("Non-finite state after integration", time=result.t[bad])
    return result


def integrate_with(settings: SimulationSettings, rhs: RHSFunction, y0: Sequence[float], t_span: Tuple[float, float]) -> np.ndarray:
    """Integrate one segment using the run settings and return the end state."""
    result = integrate_ode(
        rhs,
        y0,
        t_span,
        method=settings.method,
        rtol=settings.rtol,
        atol=settings.atol,
        max_step=settings.max_step,
        rk4_dt=settings.rk4_step,
    )
    return result.final
