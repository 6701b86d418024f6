from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .config import SimulationSettings
from .engine import Individual, IndividualResult, IndividualSimulator, observation_times
from .errors import ConfigurationError
from .model import Model
from .regimen import Regimen

logger = logging.getLogger(__name__)

STATUS_COLUMNS = ["ID", "status", "complete", "failed_time", "error", "n_records"]


@dataclass(frozen=True)
class PopulationResult:
    records: pd.DataFrame
    status: pd.DataFrame
    seed: Optional[int]

    @property
    def n_failed(self) -> int:
        return int((self.status["status"] != "success").sum()) if not self.status.empty else 0

    @property
    def failed_ids(self) -> List[Any]:
        return self.status.loc[self.status["status"] != "success", "ID"].tolist()


def individual_stream(seed: Optional[int], position: int) -> np.random.Generator:
    """Random stream for the individual at ``position`` in the declared order.

    Derived from the run seed and the position alone, so it does not depend
    on how many individuals precede it or which worker runs it.
    """
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(position,)))


def _simulate_one(
    model: Model,
    individual: Individual,
    regimen: Optional[Regimen],
    position: int,
    seed: Optional[int],
    end: float,
    delta: Optional[float],
    add: Sequence[float],
    settings: SimulationSettings,
    zero_re: bool,
) -> IndividualResult:
    rng = individual_stream(seed, position)
    return IndividualSimulator(model, settings).run(individual, regimen, end, delta, add, rng=rng, zero_re=zero_re)


def _regimen_for(regimens: Union[None, Regimen, Mapping[Any, Regimen]], ident: Any) -> Optional[Regimen]:
    if regimens is None or isinstance(regimens, Regimen):
        return regimens
    return regimens.get(ident)


def simulate_population(
    model: Model,
    individuals: Union[int, Iterable[Individual]],
    regimen: Union[None, Regimen, Mapping[Any, Regimen]] = None,
    end: float = 24.0,
    delta: Optional[float] = 1.0,
    add: Sequence[float] = (),
    seed: Optional[int] = None,
    settings: Optional[SimulationSettings] = None,
    zero_re: bool = False,
) -> PopulationResult:
    """Simulate every individual and stack the records.

    ``individuals`` is a sequence of Individual or a count (IDs 1..n).
    ``regimen`` is shared, or a mapping from ID to that individual's regimen.
    ConfigurationError and ModelError abort the run; a SimulationError only
    marks its individual as failed.
    """
    settings = settings or SimulationSettings()
    if isinstance(individuals, int):
        people = [Individual(id=i + 1) for i in range(individuals)]
    else:
        people = list(individuals)
    ids = [p.id for p in people]
    if len(set(ids)) != len(ids):
        raise ConfigurationError("Individual IDs must be unique")
    # reject a malformed observation grid before any worker starts
    observation_times(end, delta, add)
    if seed is None:
        seed = int(np.random.SeedSequence().entropy % (2 ** 63))

    logger.info("Simulating %d individuals of model %s (seed=%s, n_jobs=%s)", len(people), model.name, seed, settings.n_jobs)
    results: List[IndividualResult] = Parallel(n_jobs=settings.n_jobs)(
        delayed(_simulate_one)(
            model,
            person,
            _regimen_for(regimen, person.id),
            position,
            seed,
            end,
            delta,
            add,
            settings,
            zero_re,
        )
        for position, person in enumerate(people)
    )

    frames: List[pd.DataFrame] = []
    status_rows: List[Dict[str, Any]] = []
    for res in results:
        if res.status != "success":
            logger.warning("Individual %s failed: %s", res.id, res.error)
        if res.records and (res.complete or settings.keep_partial):
            frames.append(res.to_frame())
        status_rows.append({
            "ID": res.id,
            "status": res.status,
            "complete": res.complete,
            "failed_time": res.failed_time,
            "error": res.error,
            "n_records": len(res.records),
        })
    records = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
    status = pd.DataFrame(status_rows, columns=STATUS_COLUMNS)
    result = PopulationResult(records=records, status=status, seed=seed)
    logger.info("Finished %d individuals, %d failed", len(people), result.n_failed)
    return result


def population_from_dataframe(df: pd.DataFrame, covariates: Optional[Sequence[str]] = None) -> List[Individual]:
    """One Individual per ID, covariates taken from the first row of each ID."""
    data = df.rename(columns={c: str(c) for c in df.columns})
    id_col = next((c for c in data.columns if c.upper() == "ID"), None)
    if id_col is None:
        raise ConfigurationError("Population table needs an ID column")
    names = list(covariates) if covariates is not None else [c for c in data.columns if c != id_col]
    missing = [c for c in names if c not in data.columns]
    if missing:
        raise ConfigurationError(f"Missing covariate columns: {missing}")
    people: List[Individual] = []
    for ident, group in data.groupby(id_col, sort=False):
        first = group.iloc[0]
        people.append(Individual(id=ident, covariates={c: float(first[c]) for c in names}))
    return people
