import argparse
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from .config import SimulationSettings
from .errors import PmxSimError
from .model import Model
from .pd import indirect_response
from .pk import one_compartment, two_compartment
from .population import simulate_population
from .regimen import Regimen
from .tte import competing_risks, exponential_tte


def _omega(args: argparse.Namespace, names: List[str]) -> Optional[Dict[str, float]]:
    if args.omega is None:
        return None
    return {name: args.omega for name in names}


def build_model(args: argparse.Namespace) -> Model:
    if args.model == "iv1c":
        return one_compartment(cl=args.cl, v=args.v, omega=_omega(args, ["CL", "V"]))
    if args.model == "oral1c":
        return one_compartment(cl=args.cl, v=args.v, ka=args.ka, f=args.f, omega=_omega(args, ["CL", "V", "KA"]))
    if args.model == "iv2c":
        return two_compartment(cl=args.cl, v1=args.v, q=args.q, v2=args.v2, omega=_omega(args, ["CL", "V1"]))
    if args.model == "idr":
        pk = one_compartment(cl=args.cl, v=args.v, omega=_omega(args, ["CL", "V"]))
        return indirect_response(pk, kin=args.kin, kout=args.kout, ic50=args.ic50, imax=args.imax)
    if args.model == "tte":
        return exponential_tte(lam=args.lam)
    return competing_risks(k12=args.k12, k13=args.k13)


def build_regimen(args: argparse.Namespace, model: Model) -> Optional[Regimen]:
    if args.dose is None:
        return None
    cmt = "DEPOT" if "DEPOT" in model.state_names else "CENT"
    return Regimen.repeated(
        start=args.start,
        every=args.every,
        n=args.n,
        amount=args.dose,
        cmt=cmt,
        duration=args.infusion,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PmxSim - population PK/PD and time-to-event simulation")
    parser.add_argument("model", choices=["iv1c", "oral1c", "iv2c", "idr", "tte", "multistate"], help="Model")
    parser.add_argument("--cl", type=float, default=6.0, help="Clearance (L/h)")
    parser.add_argument("--v", type=float, default=15.0, help="Central volume (L)")
    parser.add_argument("--ka", type=float, default=0.6, help="Absorption rate (1/h) for oral model")
    parser.add_argument("--f", type=float, default=1.0, help="Bioavailability for oral model")
    parser.add_argument("--q", type=float, default=2.0, help="Intercompartmental clearance (L/h)")
    parser.add_argument("--v2", type=float, default=30.0, help="Peripheral volume (L)")
    parser.add_argument("--kin", type=float, default=10.0, help="Response production rate")
    parser.add_argument("--kout", type=float, default=0.5, help="Response loss rate (1/h)")
    parser.add_argument("--ic50", type=float, default=1.0, help="Concentration at half-maximal inhibition")
    parser.add_argument("--imax", type=float, default=1.0, help="Maximal inhibition")
    parser.add_argument("--lam", type=float, default=0.0206, help="Hazard rate for the TTE model")
    parser.add_argument("--k12", type=float, default=0.05, help="Transition rate 1->2")
    parser.add_argument("--k13", type=float, default=0.01, help="Transition rate 1->3")
    parser.add_argument("--omega", type=float, default=None, help="Variance of exponential random effects on PK parameters")
    parser.add_argument("--dose", type=float, default=None, help="Dose amount (mg)")
    parser.add_argument("--start", type=float, default=0.0, help="First dose time (h)")
    parser.add_argument("--every", type=float, default=24.0, help="Dosing interval (h)")
    parser.add_argument("--n", type=int, default=1, help="Number of doses")
    parser.add_argument("--infusion", type=float, default=0.0, help="Infusion duration (h), 0 for bolus")
    parser.add_argument("--end", type=float, default=24.0, help="End time")
    parser.add_argument("--delta", type=float, default=0.5, help="Observation interval")
    parser.add_argument("--nid", type=int, default=1, help="Number of individuals")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--zero-re", action="store_true", help="Force random effects to zero")
    parser.add_argument("--n-jobs", type=int, default=None, help="Parallel workers (joblib)")
    parser.add_argument("--method", type=str, default=None, help="Integration method (LSODA, BDF, RK45, RK4, ...)")
    parser.add_argument("--csv", type=str, default="output.csv", help="Output CSV path")
    parser.add_argument("--status-csv", type=str, default=None, help="Per-individual status CSV path")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-v info, -vv debug)")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    overrides = {}
    if args.n_jobs is not None:
        overrides["n_jobs"] = args.n_jobs
    if args.method is not None:
        overrides["method"] = args.method

    try:
        settings = SimulationSettings(**overrides)
        model = build_model(args)
        regimen = build_regimen(args, model)
        result = simulate_population(
            model,
            args.nid,
            regimen,
            end=args.end,
            delta=args.delta,
            seed=args.seed,
            settings=settings,
            zero_re=args.zero_re,
        )
    except (PmxSimError, ValidationError) as exc:
        logging.getLogger("pmxsim").error("%s", exc)
        return 2

    result.records.to_csv(args.csv, index=False)
    if args.status_csv:
        result.status.to_csv(args.status_csv, index=False)
    return 1 if result.n_failed else 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
