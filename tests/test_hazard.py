import math

import numpy as np
import pytest

from pmxsim.config import SimulationSettings
from pmxsim.engine import Individual, simulate_individual
from pmxsim.errors import ConfigurationError, ModelError
from pmxsim.hazard import (
    CountingProcess,
    HazardProcess,
    MultistateProcess,
    Transition,
    exponential_hazard,
    gompertz_hazard,
    poisson_magnitude,
)
from pmxsim.model import Model
from pmxsim.parameters import Parameter, ParameterSet
from pmxsim.population import simulate_population
from pmxsim.tte import competing_risks, exponential_tte, recurrent_counts, weibull_tte


def _alive_fraction(records, t, n, event="EVENT"):
    at_t = records[records["time"] == t]
    return float((at_t[f"EV_{event}"] == 0).sum()) / n


def test_exponential_survival_matches_analytic():
    lam, n = 0.0206, 2000
    res = simulate_population(exponential_tte(lam), n, end=100.0, delta=25.0, seed=2024)
    assert res.n_failed == 0
    for t in (25.0, 50.0, 75.0, 100.0):
        assert abs(_alive_fraction(res.records, t, n) - math.exp(-lam * t)) < 0.04


def test_survival_column_is_analytic_and_monotone():
    lam = 0.0206
    res = simulate_population(exponential_tte(lam), 20, end=50.0, delta=5.0, seed=1)
    df = res.records
    assert np.allclose(df["SURV_EVENT"], np.exp(-lam * df["time"]), rtol=1e-6)
    for _, group in df.groupby("ID"):
        assert (np.diff(group["SURV_EVENT"].to_numpy()) <= 0).all()
        assert (np.diff(group["CHZ_EVENT"].to_numpy()) >= 0).all()


def test_terminal_event_stops_individual():
    res = simulate_population(exponential_tte(0.5), 50, end=20.0, delta=1.0, seed=8)
    df = res.records
    for _, group in df.groupby("ID"):
        events = group["EV_EVENT"].to_numpy()
        assert events.sum() <= 1
        if events.sum():
            # nothing recorded after the event
            assert events[-1] == 1
    stopped = df.groupby("ID")["time"].max()
    assert (stopped < 20.0).sum() > 40


def test_gamma_frailty_marginal_survival():
    lam, theta, n = 0.05, 0.5, 2000
    res = simulate_population(exponential_tte(lam, frailty_variance=theta), n, end=20.0, delta=10.0, seed=12)
    for t in (10.0, 20.0):
        expected = (1.0 + theta * lam * t) ** (-1.0 / theta)
        assert abs(_alive_fraction(res.records, t, n) - expected) < 0.04


def test_weibull_decreasing_hazard_from_time_zero():
    # S(4) = exp(-lam * 4 ** gamma) with lam * 2 = 0.1
    res = simulate_population(weibull_tte(0.05, 0.5), 20, end=4.0, delta=1.0, seed=5)
    assert res.n_failed == 0
    at4 = res.records[res.records["time"] == 4.0]
    assert len(at4) > 0
    assert np.allclose(at4["SURV_EVENT"], math.exp(-0.1), atol=5e-3)


def test_zero_time_epsilon_fails_singular_hazard():
    settings = SimulationSettings(time_epsilon=0.0)
    res = simulate_population(weibull_tte(0.05, 0.5), 3, end=4.0, delta=1.0, seed=5, settings=settings)
    assert res.n_failed == 3
    assert (res.status["failed_time"] == 0.0).all()
    assert not res.status["complete"].any()
    assert res.status["error"].str.contains("ID=").all()


def test_recurrent_hazard_resets_after_event():
    model = Model(
        name="recurrent",
        parameters=(Parameter("LAMBDA", 0.3),),
        hazards=(exponential_hazard("EV", "LAMBDA", recurrent=True),),
    )
    res = simulate_individual(model, Individual(1), None, end=60.0, delta=1.0, seed=21)
    df = res.to_frame()
    assert df["time"].iloc[-1] == 60.0
    fired = df[df["EV_EV"] == 1]
    assert len(fired) > 3
    assert (fired["CHZ_EV"] == 0.0).all()
    assert (fired["SURV_EV"] == 1.0).all()
    assert df["N_EV"].iloc[-1] == len(fired)
    assert (np.diff(df["N_EV"].to_numpy()) >= 0).all()


def test_negative_hazard_fails_individual():
    model = Model(
        name="bad_hazard",
        parameters=(Parameter("LAMBDA", -1.0, relationship="additive"),),
        hazards=(exponential_hazard("EV", "LAMBDA"),),
    )
    res = simulate_individual(model, Individual("x"), None, end=2.0, seed=1)
    assert res.status == "failed"
    assert "negative" in res.error


def test_counting_process_interval_rate():
    rate, size, n, end = 0.5, 2.0, 500, 20.0
    res = simulate_population(recurrent_counts(rate, size), n, end=end, delta=1.0, seed=77)
    df = res.records
    final = df[df["time"] == end]
    assert len(final) == n
    accept = 1.0 - math.exp(-rate * 1.0)
    assert abs(final["N_LESION"].mean() - end * accept) < 0.4
    per_interval = df[df["time"] > 0.0]["LESION"]
    assert abs(per_interval.mean() - accept * size) < 0.06
    assert (df[df["time"] == 0.0]["N_LESION"] == 0).all()


def test_counting_interval_policy_at_most_one_event_per_interval():
    res = simulate_population(recurrent_counts(50.0, 1.0), 20, end=10.0, delta=1.0, seed=6)
    for _, group in res.records.groupby("ID"):
        steps = np.diff(group["N_LESION"].to_numpy())
        assert set(steps) <= {0.0, 1.0}
        # the acceptance probability is 1 - exp(-50)
        assert group["N_LESION"].iloc[-1] == 10


def test_counting_process_thinning_rate():
    rate, size, n, end = 0.5, 2.0, 500, 20.0
    res = simulate_population(recurrent_counts(rate, size, policy="thinning"), n, end=end, delta=1.0, seed=77)
    df = res.records
    final = df[df["time"] == end]
    assert abs(final["N_LESION"].mean() - rate * end) < 0.5
    per_interval = df[df["time"] > 0.0]["LESION"]
    assert abs(per_interval.mean() - rate * size) < 0.1


def test_counting_intensity_above_bound_is_model_error():
    model = Model(name="unbounded", counting=(CountingProcess("C", intensity=2.0, max_intensity=1.0, policy="thinning"),))
    with pytest.raises(ModelError):
        simulate_individual(model, Individual(1), None, end=50.0, delta=10.0, seed=1)


def test_counting_policy_is_validated():
    with pytest.raises(ConfigurationError):
        CountingProcess("C", intensity=1.0, policy="gillespie")
    with pytest.raises(ConfigurationError):
        CountingProcess("C", intensity=1.0, policy="thinning")


def test_counting_interval_draw_order():
    proc = CountingProcess("C", intensity=0.4, magnitude=poisson_magnitude(3.0))
    p = ParameterSet({})
    for seed in range(20):
        rng = np.random.default_rng(seed)
        count, total = proc.step(0.0, 2.0, np.zeros(0), p, rng)
        manual = np.random.default_rng(seed)
        manual.standard_exponential()
        u = manual.random()
        if u <= 1.0 - math.exp(-0.4 * 2.0):
            assert (count, total) == (1, float(manual.poisson(3.0)))
        else:
            assert (count, total) == (0, 0.0)
        # both streams consumed the same draws
        assert rng.random() == manual.random()


def test_counting_zero_intensity_still_consumes_two_draws():
    proc = CountingProcess("C", intensity=0.0)
    rng = np.random.default_rng(11)
    assert proc.step(0.0, 1.0, np.zeros(0), ParameterSet({}), rng) == (0, 0.0)
    manual = np.random.default_rng(11)
    manual.standard_exponential()
    manual.random()
    assert rng.random() == manual.random()


def test_counting_step_draw_order_is_reproducible():
    p = ParameterSet({})
    for proc in (CountingProcess("C", intensity=0.4), CountingProcess("C", intensity=0.4, max_intensity=1.0, policy="thinning")):
        first = proc.step(0.0, 10.0, np.zeros(0), p, np.random.default_rng(3))
        second = proc.step(0.0, 10.0, np.zeros(0), p, np.random.default_rng(3))
        assert first == second
        assert proc.step(5.0, 5.0, np.zeros(0), p, np.random.default_rng(3)) == (0, 0.0)


def test_competing_risks_occupancy():
    k12, k13, n = 0.05, 0.01, 2000
    res = simulate_population(competing_risks(k12, k13), n, end=40.0, delta=10.0, seed=31)
    df = res.records
    for t in (10.0, 20.0, 30.0, 40.0):
        at_t = df[df["time"] == t]
        assert len(at_t) == n
        assert abs((at_t["STATE"] == "1").mean() - math.exp(-(k12 + k13) * t)) < 0.04
    final = df[df["time"] == 40.0]
    left = final[final["STATE"] != "1"]
    assert abs((left["STATE"] == "2").mean() - k12 / (k12 + k13)) < 0.05
    # states 2 and 3 have no exits
    for _, group in df.groupby("ID"):
        states = group["STATE"].tolist()
        if "2" in states:
            assert states[states.index("2"):] == ["2"] * (len(states) - states.index("2"))


def test_transition_boundaries():
    process = competing_risks(0.05, 0.01).multistate
    p = ParameterSet({"K12": 0.05, "K13": 0.01})
    labels, cum = process.boundaries("1", 0.0, 10.0, np.zeros(0), p)
    assert labels == ["1", "2", "3"]
    assert cum[-1] == 1.0
    assert (np.diff(cum) >= 0).all()
    assert cum[0] == pytest.approx(math.exp(-0.6))
    assert cum[1] - cum[0] == pytest.approx(5.0 / 6.0 * (1.0 - math.exp(-0.6)))
    labels, cum = process.boundaries("2", 0.0, 10.0, np.zeros(0), p)
    assert labels == ["2"]
    assert cum.tolist() == [1.0]


def _gated(requires):
    process = MultistateProcess(
        states=("A", "B", "C"),
        transitions=(Transition("A", "C", 50.0), Transition("A", "B", 1e-9), Transition("B", "C", 50.0)),
        initial="A",
        requires=requires,
    )
    return Model(name="gated", multistate=process)


def test_transition_requires_prior_state():
    blocked = simulate_individual(_gated({"C": ("B",)}), Individual(1), None, end=5.0, delta=1.0, seed=2).to_frame()
    assert (blocked["STATE"] == "A").all()
    open_ = simulate_individual(_gated({}), Individual(1), None, end=5.0, delta=1.0, seed=2).to_frame()
    assert open_["STATE"].iloc[-1] == "C"
    assert open_["PREV_STATE"].iloc[-1] == "A"


def test_terminal_state_stops_individual():
    res = simulate_population(competing_risks(2.0, 1.0, terminal=True), 10, end=10.0, delta=1.0, seed=4)
    for _, group in res.records.groupby("ID"):
        assert group["STATE"].iloc[-1] in ("2", "3")
        assert group["time"].iloc[-1] < 10.0


def test_hazard_fires_at_threshold():
    assert HazardProcess.fires(0.6, math.log(2.0))
    assert not HazardProcess.fires(0.4, math.log(2.0))
    assert HazardProcess.fires(1.0, 0.0)
    assert HazardProcess.survival(0.0) == 1.0


def test_gompertz_cumulative_hazard_until_event():
    lam, gam = 0.01, 0.1
    model = Model(
        name="gompertz",
        parameters=(Parameter("LAMBDA", lam), Parameter("GAMMA", gam)),
        hazards=(gompertz_hazard("DEATH", terminal=False),),
    )
    df = simulate_individual(model, Individual(1), None, end=10.0, delta=2.0, seed=3).to_frame()
    # non-terminal: the individual runs to the end, accumulation stops after the event
    assert df["time"].iloc[-1] == 10.0
    assert df["EV_DEATH"].sum() <= 1
    fired = df.index[df["EV_DEATH"] == 1]
    last = fired[0] if len(fired) else df.index[-1]
    t = df.loc[:last, "time"].to_numpy()
    expected = lam / gam * (np.exp(gam * t) - 1.0)
    assert np.allclose(df.loc[:last, "CHZ_DEATH"], expected, rtol=1e-5, atol=1e-9)
    assert (df.loc[last:, "CHZ_DEATH"] == df.loc[last, "CHZ_DEATH"]).all()
