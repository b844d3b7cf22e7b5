"""Tests for the iteratively reweighted (GLS) outer loop."""

import logging

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.optimize import OptimizeResult, minimize

import epigls.iden_parmest as iden_parmest
import epigls.iden_reweight as iden_reweight
from epigls.iden_parmest import parmest
from epigls.iden_reweight import reweight
from epigls.iden_utils import AllTrialsFailed, WeightingFailure, _initialize_options


def test_rho_zero_stops_after_one_fit(flu_obs, constants):
    opts = {'rho': 0, 'ms': 3, 'seed': 4}
    res = reweight(flu_obs, constants, opts)

    assert res.status == 'ols'
    assert res.converged
    assert res.iterations == 1
    assert len(res.history) == 1
    assert_allclose(res.weights.w, np.ones(flu_obs.n))

    fit = parmest(flu_obs, constants, iden_opt=opts)
    assert res.theta == fit.theta
    assert res.fit.fun == fit.fun


def test_iteration_cap(caplog, noisy_obs, constants):
    with caplog.at_level(logging.WARNING, logger='epigls'):
        res = reweight(noisy_obs, constants, {'ms': 2, 'seed': 0, 'maxit_o': 2, 'tol_o': 1e-300})

    assert res.status == 'maxit'
    assert not res.converged
    assert res.iterations == 2
    assert [h['iteration'] for h in res.history] == [0, 1]
    assert "did not converge" in caplog.text


def test_weights_follow_final_estimate(noisy_obs, constants):
    res = reweight(noisy_obs, constants, {'ms': 2, 'seed': 0, 'maxit_o': 2})
    pred = iden_reweight.predict(res.theta, noisy_obs, constants, _initialize_options())
    assert_allclose(res.weights.w, pred ** -2.0)


def test_all_trials_failed_reports_iteration(monkeypatch, flu_obs, constants):
    calls = []

    def first_round_only(fun, x0, **kw):
        calls.append(1)
        if len(calls) <= 2:
            return minimize(fun, x0, **kw)
        return OptimizeResult(x=np.asarray(x0), fun=np.inf, success=False, nit=0, message='failed')

    monkeypatch.setattr(iden_parmest, 'minimize', first_round_only)
    with pytest.raises(AllTrialsFailed) as exc:
        reweight(flu_obs, constants, {'ms': 2, 'seed': 0})
    assert exc.value.iteration == 1


def test_zero_prediction_raises_weighting_failure(monkeypatch, flu_obs, constants):
    monkeypatch.setattr(iden_reweight, 'predict', lambda theta, obs, c, opts: np.zeros(obs.n))
    with pytest.raises(WeightingFailure) as exc:
        reweight(flu_obs, constants, {'ms': 2, 'seed': 0})
    assert exc.value.iteration == 0
    assert exc.value.indices.size == flu_obs.n


@pytest.mark.slow
def test_converges_on_relative_noise(noisy_obs, constants, true_theta):
    res = reweight(noisy_obs, constants, {'rho': 1.0, 'ms': 5, 'seed': 0})

    assert res.status == 'converged'
    assert res.converged
    assert 2 <= res.iterations <= 20
    assert res.history[-1]['dtheta2'] <= 1e-8
    assert res.history[0]['dtheta2'] > 1e-8
    assert res.theta.beta == pytest.approx(true_theta.beta, rel=0.15)
    assert res.theta.gamma == pytest.approx(true_theta.gamma, rel=0.15)
