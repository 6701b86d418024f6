import math

import numpy as np
import pytest
from pydantic import ValidationError

from pmxsim.config import SimulationSettings
from pmxsim.errors import ModelError, SimulationError
from pmxsim.solver import integrate_ode, integrate_with


def decay(t, y):
    return -0.5 * y


@pytest.mark.parametrize("method", ["LSODA", "BDF", "RK45", "RK4"])
def test_decay_matches_exponential(method):
    res = integrate_ode(decay, [2.0], (0.0, 4.0), t_eval=[0.0, 1.0, 4.0], method=method)
    assert res.t == [0.0, 1.0, 4.0]
    expected = 2.0 * np.exp(-0.5 * np.array(res.t))
    assert np.allclose(res.y[0], expected, rtol=1e-6)


def test_rk4_without_output_times_returns_end_points():
    res = integrate_ode(decay, [1.0, 2.0], (1.0, 3.0), method="RK4", rk4_dt=0.1)
    assert res.t == [1.0, 3.0]
    assert np.allclose(res.final, np.array([1.0, 2.0]) * math.exp(-1.0), rtol=1e-6)


def test_empty_interval_and_empty_state():
    res = integrate_ode(decay, [3.0], (2.0, 2.0))
    assert res.final.tolist() == [3.0]
    assert integrate_ode(decay, [], (0.0, 1.0)).y.shape == (0, 2)
    with pytest.raises(ValueError):
        integrate_ode(decay, [1.0], (2.0, 1.0))


def test_non_finite_derivative_is_simulation_error():
    def rhs(t, y):
        return [np.nan if t > 1.0 else -y[0]]

    with pytest.raises(SimulationError) as info:
        integrate_ode(rhs, [1.0], (0.0, 2.0), method="RK4", rk4_dt=0.5)
    assert info.value.time is not None and info.value.time > 1.0


def test_division_by_zero_is_simulation_error():
    def rhs(t, y):
        return [y[0] / (1.0 - t)]

    with pytest.raises(SimulationError):
        integrate_ode(rhs, [1.0], (0.0, 2.0), method="RK4", rk4_dt=0.5)


def test_undeclared_name_is_model_error():
    params = {"K": 0.1}

    def rhs(t, y):
        return [-params["KE"] * y[0]]

    with pytest.raises(ModelError):
        integrate_ode(rhs, [1.0], (0.0, 1.0))


def test_wrong_derivative_length_is_model_error():
    with pytest.raises(ModelError):
        integrate_ode(lambda t, y: [0.0, 0.0], [1.0], (0.0, 1.0))


def test_tagged_error_message():
    err = SimulationError("Derivative evaluation failed", time=2.5).tagged(7)
    assert err.individual_id == 7
    assert err.time == 2.5
    assert str(err) == "Derivative evaluation failed (ID=7, time=2.5)"
    assert SimulationError("boom").tagged("a", 1.0).time == 1.0


def test_integrate_with_uses_settings():
    settings = SimulationSettings(method="rk4", rk4_step=0.05)
    assert settings.method == "RK4"
    assert settings.fixed_step
    final = integrate_with(settings, decay, np.array([1.0]), (0.0, 2.0))
    assert final[0] == pytest.approx(math.exp(-1.0), rel=1e-6)


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("PMXSIM_METHOD", "bdf")
    monkeypatch.setenv("PMXSIM_N_JOBS", "3")
    settings = SimulationSettings()
    assert settings.method == "BDF"
    assert settings.n_jobs == 3
    assert not settings.fixed_step


def test_settings_validation():
    with pytest.raises(ValidationError):
        SimulationSettings(method="euler")
    with pytest.raises(ValidationError):
        SimulationSettings(n_jobs=0)
    with pytest.raises(ValidationError):
        SimulationSettings(rtol=0.0)
