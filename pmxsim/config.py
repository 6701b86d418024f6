import math

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

FIXED_STEP_METHODS = ("RK4",)
SOLVE_IVP_METHODS = ("RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA")


class SimulationSettings(BaseSettings):
    """Solver and run settings.

    Every field can be overridden from the environment, e.g.
    ``PMXSIM_METHOD=BDF`` or ``PMXSIM_N_JOBS=4``.
    """

    method: str = "LSODA"
    rtol: float = Field(1e-8, gt=0)
    atol: float = Field(1e-10, gt=0)
    max_step: float = Field(math.inf, gt=0)
    rk4_step: float = Field(0.01, gt=0)  # step for the fixed-step method
    time_epsilon: float = Field(1e-8, ge=0)  # offset for hazards evaluated at t=0
    n_jobs: int = 1
    keep_partial: bool = True

    model_config = SettingsConfigDict(env_prefix="PMXSIM_")

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        for name in FIXED_STEP_METHODS + SOLVE_IVP_METHODS:
            if value.upper() == name.upper():
                return name
        raise ValueError(f"Unsupported integration method: {value}")

    @field_validator("n_jobs")
    @classmethod
    def _nonzero_jobs(cls, value: int) -> int:
        if value == 0:
            raise ValueError("n_jobs must be a positive count or negative (joblib convention)")
        return value

    @property
    def fixed_step(self) -> bool:
        return self.method in FIXED_STEP_METHODS
