"""PmxSim: hybrid ODE / discrete-event simulation for pharmacometric models.

This package provides a generic engine that advances compartmental ODE
systems between dosing and observation events, with per-individual random
effects and hazard-driven stochastic events (time-to-event, counting and
multistate processes), plus a small library of PK/PD and TTE models.

Run the CLI with: python -m pmxsim.cli
"""

from .config import SimulationSettings
from .engine import Individual, IndividualResult, simulate_individual
from .errors import ConfigurationError, ModelError, PmxSimError, SimulationError
from .hazard import CountingProcess, HazardProcess, MultistateProcess, Transition
from .model import Compartment, Model
from .parameters import Parameter, ParameterSet
from .population import PopulationResult, simulate_population
from .random_effects import Frailty, Omega, RandomEffectSampler
from .regimen import CustomTrigger, Dose, Observation, ParameterUpdate, Regimen, Reset

__all__ = [
    "Compartment",
    "ConfigurationError",
    "CountingProcess",
    "CustomTrigger",
    "Dose",
    "Frailty",
    "HazardProcess",
    "Individual",
    "IndividualResult",
    "Model",
    "ModelError",
    "MultistateProcess",
    "Observation",
    "Omega",
    "Parameter",
    "ParameterSet",
    "ParameterUpdate",
    "PmxSimError",
    "PopulationResult",
    "RandomEffectSampler",
    "Regimen",
    "Reset",
    "SimulationError",
    "SimulationSettings",
    "Transition",
    "simulate_individual",
    "simulate_population",
]

__version__ = "0.1.0"
