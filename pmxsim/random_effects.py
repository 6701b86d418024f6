from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError

FRAILTY_DISTRIBUTIONS = ("gamma", "lognormal")


@dataclass(frozen=True, eq=False)
class Omega:
    """Random-effect covariance: block-diagonal over named etas.

    Attributes
    ----------
    names: Tuple[str, ...]
        Eta names in draw order
    matrix: np.ndarray
        Covariance matrix, shape (n, n)
    """

    names: Tuple[str, ...]
    matrix: np.ndarray
    _chol: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        mat = np.atleast_2d(np.asarray(self.matrix, dtype=float))
        n = len(self.names)
        if len(set(self.names)) != n:
            raise ConfigurationError(f"Duplicate eta names in omega: {list(self.names)}")
        if mat.shape != (n, n):
            raise ConfigurationError(f"Omega matrix shape {mat.shape} does not match {n} etas")
        if not np.allclose(mat, mat.T):
            raise ConfigurationError("Omega matrix must be symmetric")
        chol = np.zeros((0, 0))
        if n:
            try:
                chol = np.linalg.cholesky(mat)
            except np.linalg.LinAlgError as exc:
                raise ConfigurationError("Omega matrix is not positive definite") from exc
        object.__setattr__(self, "matrix", mat)
        object.__setattr__(self, "_chol", chol)

    @property
    def size(self) -> int:
        return len(self.names)

    @property
    def cholesky(self) -> np.ndarray:
        return self._chol

    @staticmethod
    def empty() -> "Omega":
        return Omega(names=(), matrix=np.zeros((0, 0)))

    @staticmethod
    def diagonal(variances: Mapping[str, float]) -> "Omega":
        names = tuple(variances)
        return Omega(names=names, matrix=np.diag([float(variances[n]) for n in names]))

    @staticmethod
    def block(names: Sequence[str], matrix: Sequence[Sequence[float]]) -> "Omega":
        """Full covariance block; ``matrix`` may also be the lower triangle
        given row by row (``[[v1], [c21, v2], ...]``)."""
        rows = [list(r) for r in matrix]
        n = len(names)
        if all(len(r) == i + 1 for i, r in enumerate(rows)) and len(rows) == n:
            full = np.zeros((n, n))
            for i, r in enumerate(rows):
                for j, v in enumerate(r):
                    full[i, j] = full[j, i] = float(v)
            return Omega(names=tuple(names), matrix=full)
        return Omega(names=tuple(names), matrix=np.asarray(rows, dtype=float))

    @staticmethod
    def combine(*blocks: "Omega") -> "Omega":
        names: List[str] = []
        for b in blocks:
            names.extend(b.names)
        full = np.zeros((len(names), len(names)))
        i = 0
        for b in blocks:
            full[i:i + b.size, i:i + b.size] = b.matrix
            i += b.size
        return Omega(names=tuple(names), matrix=full)


@dataclass(frozen=True)
class Frailty:
    """Multiplicative non-normal random effect with mean 1.

    gamma:     Gamma(shape=1/variance, scale=variance)
    lognormal: exp(N(-s2/2, s2)) with s2 = log(1 + variance)
    """

    name: str
    variance: float
    distribution: str = "gamma"

    def __post_init__(self) -> None:
        if self.distribution not in FRAILTY_DISTRIBUTIONS:
            raise ConfigurationError(f"Frailty {self.name}: unknown distribution {self.distribution!r}")
        if self.variance <= 0:
            raise ConfigurationError(f"Frailty {self.name}: variance must be positive")

    def draw(self, rng: np.random.Generator) -> float:
        if self.distribution == "gamma":
            return float(rng.gamma(shape=1.0 / self.variance, scale=self.variance))
        s2 = np.log1p(self.variance)
        return float(np.exp(rng.normal(-s2 / 2.0, np.sqrt(s2))))


class RandomEffectSampler:
    """Draws one random-effect realisation per individual.

    Each call to ``sample`` consumes ``omega.size`` standard normals followed
    by one variate per frailty, in declared order. With ``zeroed=True`` the
    same variates are consumed but discarded, so everything drawn later from
    the individual's stream is unchanged.
    """

    def __init__(self, omega: Optional[Omega] = None, frailties: Sequence[Frailty] = (), zeroed: bool = False):
        self.omega = omega if omega is not None else Omega.empty()
        self.frailties = tuple(frailties)
        self.zeroed = zeroed
        clash = set(self.omega.names) & {f.name for f in self.frailties}
        if clash:
            raise ConfigurationError(f"Random effect names used twice: {sorted(clash)}")

    @property
    def names(self) -> Tuple[str, ...]:
        return self.omega.names + tuple(f.name for f in self.frailties)

    def typical(self) -> Dict[str, float]:
        values = {n: 0.0 for n in self.omega.names}
        values.update({f.name: 1.0 for f in self.frailties})
        return values

    def sample(self, rng: np.random.Generator) -> Dict[str, float]:
        z = rng.standard_normal(self.omega.size)
        etas = self.omega.cholesky @ z if self.omega.size else z
        frail = [f.draw(rng) for f in self.frailties]
        if self.zeroed:
            return self.typical()
        values = {n: float(v) for n, v in zip(self.omega.names, etas)}
        values.update({f.name: v for f, v in zip(self.frailties, frail)})
        return values
