import math

import numpy as np
import pytest

from pmxsim.engine import Individual, simulate_individual
from pmxsim.errors import ConfigurationError, ModelError
from pmxsim.parameters import Parameter, ParameterSet, derive_parameters
from pmxsim.pk import one_compartment
from pmxsim.random_effects import Frailty, Omega, RandomEffectSampler
from pmxsim.regimen import Dose, Regimen


def test_omega_must_be_positive_definite():
    with pytest.raises(ConfigurationError):
        Omega.block(["ETA_CL", "ETA_V"], [[0.1, 0.2], [0.2, 0.1]])


def test_omega_must_be_symmetric():
    with pytest.raises(ConfigurationError):
        Omega(names=("A", "B"), matrix=np.array([[0.1, 0.05], [0.0, 0.1]]))


def test_omega_lower_triangle_block():
    block = Omega.block(["ETA_CL", "ETA_V"], [[0.09], [0.03, 0.04]])
    assert np.allclose(block.matrix, [[0.09, 0.03], [0.03, 0.04]])
    assert np.allclose(block.cholesky @ block.cholesky.T, block.matrix)


def test_omega_combine_is_block_diagonal():
    combined = Omega.combine(Omega.diagonal({"A": 0.1}), Omega.block(["B", "C"], [[0.2], [0.05, 0.3]]))
    assert combined.names == ("A", "B", "C")
    assert combined.matrix[0, 1] == 0.0
    assert combined.matrix[1, 2] == 0.05


def test_sampled_covariance_matches_omega():
    block = Omega.block(["ETA_CL", "ETA_V"], [[0.09], [0.03, 0.04]])
    sampler = RandomEffectSampler(block)
    rng = np.random.default_rng(11)
    draws = np.array([[s["ETA_CL"], s["ETA_V"]] for s in (sampler.sample(rng) for _ in range(20000))])
    assert np.allclose(draws.mean(axis=0), 0.0, atol=0.01)
    assert np.allclose(np.cov(draws, rowvar=False), block.matrix, atol=0.005)


def test_zeroed_sampler_consumes_same_draws():
    block = Omega.diagonal({"ETA_CL": 0.1, "ETA_V": 0.2})
    frail = (Frailty("Z", 0.5),)
    rng_a = np.random.default_rng(5)
    rng_b = np.random.default_rng(5)
    values = RandomEffectSampler(block, frail, zeroed=True).sample(rng_a)
    RandomEffectSampler(block, frail).sample(rng_b)
    assert values == {"ETA_CL": 0.0, "ETA_V": 0.0, "Z": 1.0}
    assert rng_a.random() == rng_b.random()


@pytest.mark.parametrize("distribution", ["gamma", "lognormal"])
def test_frailty_has_unit_mean(distribution):
    frailty = Frailty("Z", 0.5, distribution=distribution)
    rng = np.random.default_rng(2)
    draws = np.array([frailty.draw(rng) for _ in range(40000)])
    assert abs(draws.mean() - 1.0) < 0.02
    assert abs(draws.var() - 0.5) < 0.05
    assert (draws > 0).all()


def test_frailty_rejects_bad_declaration():
    with pytest.raises(ConfigurationError):
        Frailty("Z", 0.0)
    with pytest.raises(ConfigurationError):
        Frailty("Z", 0.5, distribution="weibull")


def test_parameter_relationships():
    etas = {"E": 0.2}
    assert Parameter("A", 2.0, eta="E", relationship="additive").individual(etas, {}) == pytest.approx(2.2)
    assert Parameter("A", 2.0, eta="E").individual(etas, {}) == pytest.approx(2.0 * math.exp(0.2))
    assert Parameter("A", 2.0, eta="E", relationship="proportional").individual(etas, {}) == pytest.approx(2.4)
    logit = Parameter("A", 0.5, eta="E", relationship="logit").individual(etas, {})
    assert logit == pytest.approx(1.0 / (1.0 + math.exp(-0.2)))
    assert Parameter("A", 2.0, eta="E", relationship="multiplicative").individual({"E": 1.5}, {}) == pytest.approx(3.0)
    with pytest.raises(ConfigurationError):
        Parameter("A", 2.0, relationship="power")


def test_covariate_effect_and_missing_covariate():
    cl = Parameter("CL", 5.0, covariate_effect=lambda c: (c["WT"] / 70.0) ** 0.75)
    assert cl.individual({}, {"WT": 70.0}) == pytest.approx(5.0)
    assert cl.individual({}, {"WT": 140.0}) == pytest.approx(5.0 * 2.0 ** 0.75)
    with pytest.raises(ModelError):
        cl.individual({}, {})


def test_parameter_set_is_immutable():
    params = derive_parameters([Parameter("CL", 1.0), Parameter("V", 10.0)], {}, {}, lambda p: {"K10": p["CL"] / p["V"]})
    assert params["K10"] == pytest.approx(0.1)
    with pytest.raises(TypeError):
        params["CL"] = 2.0  # type: ignore[index]
    newer = params.updated({"CL": 2.0})
    assert params["CL"] == 1.0
    assert newer["CL"] == 2.0
    with pytest.raises(ModelError):
        params.updated({"KM": 1.0})
    with pytest.raises(ModelError):
        ParameterSet({"CL": 1.0}).require("V")


def test_zero_random_effects_reproduce_typical_trajectory():
    regimen = Regimen(events=(Dose(time=0.0, amount=100.0, cmt="DEPOT"),))
    variable = one_compartment(cl=6.0, v=15.0, ka=0.6, omega={"CL": 0.09, "V": 0.04})
    typical = one_compartment(cl=6.0, v=15.0, ka=0.6)
    zeroed = simulate_individual(variable, Individual(1), regimen, end=24.0, delta=1.0, seed=99, zero_re=True)
    plain = simulate_individual(typical, Individual(1), regimen, end=24.0, delta=1.0, seed=99)
    assert zeroed.etas == {"ETA_CL": 0.0, "ETA_V": 0.0}
    assert np.array_equal(zeroed.to_frame()["CP"].to_numpy(), plain.to_frame()["CP"].to_numpy())


def test_random_effects_change_individual_parameters():
    model = one_compartment(cl=6.0, v=15.0, omega={"CL": 0.09})
    res = simulate_individual(model, Individual(1), None, end=1.0, seed=4)
    assert res.params["CL"] == pytest.approx(6.0 * math.exp(res.etas["ETA_CL"]))
    assert res.etas["ETA_CL"] != 0.0
