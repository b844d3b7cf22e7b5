"""Tests for the multi-start weighted least-squares fit."""

import numpy as np
import pytest
from scipy.optimize import OptimizeResult

import epigls.iden_parmest as iden_parmest
from epigls.iden_parmest import _initialise_starts, _objective, _objective_function, parmest
from epigls.iden_utils import (
    AllTrialsFailed,
    IntegrationFailure,
    ParameterVector,
    WeightVector,
    _initialize_options,
)
from epigls.krnl_simula import simula


def _fake_result(x0, fun, success=True):
    return OptimizeResult(x=np.asarray(x0, dtype=float), fun=fun, success=success,
                          nit=1, message='ok' if success else 'failed')


class TestStarts:

    def test_first_round_range(self):
        starts = _initialise_starts(np.random.default_rng(0), 200)
        gamma = np.array([s.gamma for s in starts])
        r0m1 = np.array([s.R0 - 1.0 for s in starts])
        assert np.all((gamma >= 0.1) & (gamma <= 1.0))
        assert np.all((r0m1 >= 0.1 - 1e-12) & (r0m1 <= 1.0 + 1e-12))

    def test_perturbation_range(self):
        prev = ParameterVector(1.7, 0.45)
        starts = _initialise_starts(np.random.default_rng(0), 200, previous=prev)
        g_ratio = np.array([s.gamma for s in starts]) / prev.gamma
        r_ratio = np.array([s.R0 - 1.0 for s in starts]) / (prev.R0 - 1.0)
        assert np.all((g_ratio >= 0.9 - 1e-12) & (g_ratio <= 1.1 + 1e-12))
        assert np.all((r_ratio >= 0.9 - 1e-12) & (r_ratio <= 1.1 + 1e-12))
        # factors are drawn independently for the two components
        assert not np.allclose(g_ratio, r_ratio)

    def test_same_seed_same_starts(self):
        a = _initialise_starts(np.random.default_rng(5), 10)
        b = _initialise_starts(np.random.default_rng(5), 10)
        assert a == b


def test_objective_is_inf_on_integration_failure(flu_obs, constants):
    opts = _initialize_options()
    w = WeightVector.ones(flu_obs.n)
    assert _objective_function(np.array([800.0, 0.0]), flu_obs, constants, w, opts) == np.inf


def test_transform_overflow_reports_beta_gamma(flu_obs, constants):
    opts = _initialize_options()
    w = WeightVector.ones(flu_obs.n)
    with pytest.raises(IntegrationFailure) as exc:
        _objective(np.array([800.0, np.log(0.5)]), flu_obs, constants, w, opts)
    assert np.isinf(exc.value.theta[0])
    assert exc.value.theta[1] == pytest.approx(0.5)


def test_objective_uses_natural_parameters(flu_obs, constants):
    p = ParameterVector(1.7, 0.45)
    opts = _initialize_options()
    w = WeightVector.ones(flu_obs.n)
    predicted, metrics = _objective(p.to_unconstrained(), flu_obs, constants, w, opts)
    expected = simula(flu_obs.t, constants.y0, constants.phi, p.as_array())['I']
    np.testing.assert_allclose(predicted, expected, rtol=1e-7)
    assert metrics['WLS'] == pytest.approx(np.sum((expected - flu_obs.y) ** 2), rel=1e-6)


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_recovers_noiseless_parameters(clean_obs, constants, true_theta, seed):
    fit = parmest(clean_obs, constants, iden_opt={'ms': 5, 'seed': seed})
    assert fit.theta.beta == pytest.approx(true_theta.beta, rel=1e-4)
    assert fit.theta.gamma == pytest.approx(true_theta.gamma, rel=1e-4)
    assert fit.fun < 1e-3
    assert fit.nconverged >= 1
    assert len(fit.trials) == 5


def test_same_seed_same_fit(flu_obs, constants):
    opts = {'ms': 3, 'seed': 7}
    a = parmest(flu_obs, constants, iden_opt=opts)
    b = parmest(flu_obs, constants, iden_opt=opts)
    assert a.theta == b.theta
    assert a.fun == b.fun


def test_first_round_uses_unit_weights(flu_obs, constants):
    w = WeightVector(np.full(flu_obs.n, 3.0))
    fit = parmest(flu_obs, constants, weights=w, iden_opt={'ms': 2, 'seed': 0})
    np.testing.assert_allclose(fit.weights.w, np.ones(flu_obs.n))


def test_all_trials_failed(monkeypatch, flu_obs, constants):
    monkeypatch.setattr(iden_parmest, 'minimize',
                        lambda fun, x0, **kw: _fake_result(x0, np.inf, success=False))
    with pytest.raises(AllTrialsFailed) as exc:
        parmest(flu_obs, constants, iden_opt={'ms': 4, 'seed': 0}, iteration=2)
    assert exc.value.iteration == 2
    assert exc.value.ntrials == 4


def test_failed_trials_are_excluded(monkeypatch, flu_obs, constants):
    calls = []

    def fake(fun, x0, **kw):
        k = len(calls)
        calls.append(k)
        # failed trials report a lower objective that must not be selected
        if k % 2 == 0:
            return _fake_result(x0, 0.0, success=False)
        return _fake_result(x0, 10.0 - k)

    monkeypatch.setattr(iden_parmest, 'minimize', fake)
    fit = parmest(flu_obs, constants, iden_opt={'ms': 6, 'seed': 0})

    assert fit.fun == 5.0
    assert fit.nconverged == 3
    failed = [tr for tr in fit.trials if not tr.success]
    assert all(tr.theta is None and np.isnan(tr.fun) for tr in failed)
    assert fit.theta == fit.trials[5].theta


def test_ties_go_to_first_trial(monkeypatch, flu_obs, constants):
    monkeypatch.setattr(iden_parmest, 'minimize', lambda fun, x0, **kw: _fake_result(x0, 1.0))
    fit = parmest(flu_obs, constants, iden_opt={'ms': 4, 'seed': 0})
    assert fit.theta == fit.trials[0].theta
    assert fit.theta.gamma == pytest.approx(fit.trials[0].start.gamma)


def test_later_rounds_need_previous_and_weights(flu_obs, constants):
    prev = ParameterVector(1.7, 0.45)
    with pytest.raises(ValueError):
        parmest(flu_obs, constants, weights=WeightVector.ones(flu_obs.n), first=False)
    with pytest.raises(ValueError):
        parmest(flu_obs, constants, first=False, previous=prev)
    with pytest.raises(ValueError):
        parmest(flu_obs, constants, weights=WeightVector.ones(3), first=False, previous=prev)


def test_lbfgsb_method(clean_obs, constants, true_theta):
    fit = parmest(clean_obs, constants, iden_opt={'ms': 5, 'seed': 0, 'meth': 'LMBFGS', 'tol': 1e-6})
    assert fit.nconverged >= 1
    assert fit.theta.R0 == pytest.approx(true_theta.R0, rel=5e-2)


@pytest.mark.slow
def test_parallel_matches_serial(flu_obs, constants):
    serial = parmest(flu_obs, constants, iden_opt={'ms': 4, 'seed': 3, 'workers': 1})
    parallel = parmest(flu_obs, constants, iden_opt={'ms': 4, 'seed': 3, 'workers': 2})
    assert parallel.theta == serial.theta
    assert parallel.fun == serial.fun
    assert [tr.index for tr in parallel.trials] == list(range(4))
