#iden_parmest.py

import logging
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor
from operator import attrgetter

import numpy as np
from scipy.optimize import minimize

from epigls.krnl_simula import simula
from epigls.iden_utils import (
    AllTrialsFailed,
    IntegrationFailure,
    ParameterVector,
    TrialResult,
    FitResult,
    WeightVector,
    _initialize_options,
)

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Multiprocessing context (important on Windows / Jupyter)
# ------------------------------------------------------------------
CTX = mp.get_context("spawn")

# starting-point policy
_FIRST_RANGE = (0.1, 1.0)      # gamma and R0 - 1 on the first outer iteration
_PERTURB_RANGE = (0.9, 1.1)    # multiplicative jitter around the previous estimate


# ============================================================
# Objective
# ============================================================

def _objective(u, obs, constants, weights, opts):
    r"""
    Simulate at transformed parameters and compute fit metrics.

    Parameters
    ----------
    u : array_like
        Unconstrained parameters (log(R0 - 1), log(gamma)).
    obs : ObservationSeries
        Observed infectious counts.
    constants : FixedConstants
        S0, I0 and N.
    weights : WeightVector
        One weight per observation.
    opts : dict
        Initialised identification options (integrator settings are read).

    Returns
    -------
    predicted : np.ndarray
        Predicted infectious counts at the observation times.
    metrics : dict
        - 'WLS' : float
            \( \sum_i w_i (\hat{I}_i - y_i)^2 \), the quantity minimised.
        - 'LS' : float
            Unweighted sum of squares.
        - 'R2' : float
            Coefficient of determination of the infectious trajectory.

    Raises
    ------
    IntegrationFailure
        If the parameters overflow or the integrator fails.
    """
    try:
        theta = ParameterVector.from_unconstrained(u)
    except ValueError as e:
        raise IntegrationFailure(ParameterVector.natural(u), f"parameter transform: {e}") from e

    out = simula(obs.t, constants.y0, constants.phi, theta.as_array(),
                 rtol=opts['rtol'], atol=opts['atol'], method=opts['ode'])
    predicted = out['I']
    r = predicted - obs.y

    ss_tot = np.sum((obs.y - obs.y.mean()) ** 2)
    metrics = {
        'WLS': float(np.sum(weights.w * r ** 2)),
        'LS': float(np.sum(r ** 2)),
        'R2': float(1 - np.sum(r ** 2) / ss_tot) if ss_tot > 0 else np.nan,
    }
    return predicted, metrics


def _objective_function(u, obs, constants, weights, opts):
    """
    Scalar weighted sum of squares for scipy minimisers.

    Integration failures are reported as ``inf`` so the minimiser rejects the point
    instead of aborting the trial.
    """
    try:
        _, m = _objective(u, obs, constants, weights, opts)
    except IntegrationFailure:
        return np.inf
    val = m['WLS']
    return val if np.isfinite(val) else np.inf


# ============================================================
# Multi-start machinery
# ============================================================

def _initialise_starts(rng, ntrials, previous=None):
    """
    Draw starting points for a multi-start round.

    Without ``previous``, gamma and R0 - 1 are drawn independently from U[0.1, 1.0]
    for each trial. With ``previous``, its gamma and R0 - 1 are each scaled by an
    independent U[0.9, 1.1] factor.

    Parameters
    ----------
    rng : numpy.random.Generator
        Random stream; draws happen in trial order (gamma first, then R0 - 1).
    ntrials : int
        Number of starting points.
    previous : ParameterVector, optional
        Estimate accepted at the previous outer iteration.

    Returns
    -------
    list[ParameterVector]
    """
    starts = []
    for _ in range(ntrials):
        if previous is None:
            gamma = rng.uniform(*_FIRST_RANGE)
            r0m1 = rng.uniform(*_FIRST_RANGE)
        else:
            gamma = previous.gamma * rng.uniform(*_PERTURB_RANGE)
            r0m1 = (previous.R0 - 1.0) * rng.uniform(*_PERTURB_RANGE)
        starts.append(ParameterVector(gamma * (1.0 + r0m1), gamma))
    return starts


def _run_single_start(index, start, obs, constants, weights, opts):
    """
    Run one local minimisation from ``start`` (multi-start worker function).

    Parameters
    ----------
    index : int
        Trial position, kept for tie-breaking and reporting.
    start : ParameterVector
        Starting point in (beta, gamma).
    obs, constants, weights, opts
        As for ``_objective``.

    Returns
    -------
    TrialResult
        ``success`` is False, ``theta`` None and ``fun`` NaN (missing) when the
        minimiser does not converge or ends on a non-finite objective.

    Notes
    -----
    Executed in a separate process when ``opts['workers'] > 1``; everything it touches
    is passed in, so trials share no state.
    """
    x0 = start.to_unconstrained()
    args = (obs, constants, weights, opts)
    method, maxit, tol = opts['meth'], opts['maxit'], opts['tol']

    try:
        if method == 'NMS':
            res = minimize(_objective_function, x0, args=args, method='Nelder-Mead',
                           options={'maxiter': maxit, 'xatol': tol, 'fatol': tol, 'disp': False})
        elif method == 'BFGS':
            res = minimize(_objective_function, x0, args=args, method='BFGS',
                           options={'maxiter': maxit, 'gtol': tol, 'disp': False})
        elif method == 'LMBFGS':
            res = minimize(_objective_function, x0, args=args, method='L-BFGS-B',
                           options={'maxiter': maxit, 'ftol': tol})
        else:
            raise ValueError(f"Unknown method '{method}'")
    except (ArithmeticError, np.linalg.LinAlgError) as e:
        logger.debug(f"[trial {index}] optimize error: {e}")
        return TrialResult(index, start, None, np.nan, False, 0, str(e))

    try:
        theta = ParameterVector.from_unconstrained(res.x)
    except ValueError:
        theta = None
    success = bool(res.success) and np.isfinite(res.fun) and theta is not None
    message = str(getattr(res, 'message', ''))
    nit = int(getattr(res, 'nit', 0))
    if not success:
        logger.debug(f"[trial {index}] not converged after {nit} iterations: {message}")
        return TrialResult(index, start, None, np.nan, False, nit, message)

    logger.debug(f"[trial {index}] beta={theta.beta:.6g}, gamma={theta.gamma:.6g}, WLS={res.fun:.6g}")
    return TrialResult(index, start, theta, float(res.fun), True, nit, message)


def _run_trials(starts, obs, constants, weights, opts):
    """Fan the trials out (serially or over a process pool); results come back in trial order."""
    tasks = [(i, s, obs, constants, weights, opts) for i, s in enumerate(starts)]
    nwork = min(opts['workers'], len(tasks))
    if nwork <= 1:
        return [_run_single_start(*task) for task in tasks]

    with ProcessPoolExecutor(max_workers=nwork, mp_context=CTX) as exe:
        futures = [exe.submit(_run_single_start, *task) for task in tasks]
        return [fut.result() for fut in futures]


# ============================================================
# Public entry point
# ============================================================

def parmest(obs, constants, weights=None, iden_opt=None, first=True, previous=None,
            rng=None, iteration=0):
    r"""
    Multi-start weighted least-squares fit of (beta, gamma).

    Runs ``iden_opt['ms']`` independent local minimisations of the weighted sum of
    squares and returns the best converged one.

    Parameters
    ----------
    obs : ObservationSeries
        Observed infectious counts.
    constants : FixedConstants
        S0, I0 and N.
    weights : WeightVector, optional
        Weights for this round. Ignored (unit weights are used) when ``first`` is True.
    iden_opt : dict, optional
        Identification options (see ``_initialize_options``); reads 'ms', 'meth',
        'maxit', 'tol', 'workers', 'seed', integrator settings and 'log'.
    first : bool, optional
        First outer iteration: draw starts uniformly and fit by ordinary least squares
        (default: True).
    previous : ParameterVector, optional
        Estimate of the previous outer iteration; required when ``first`` is False.
    rng : numpy.random.Generator, optional
        Random stream for the starting points. Defaults to a generator seeded with
        ``iden_opt['seed']``.
    iteration : int, optional
        Outer iteration index, reported in ``AllTrialsFailed`` (default: 0).

    Returns
    -------
    FitResult
        Best converged trial, the weights it was fitted with and all trial outcomes.

    Raises
    ------
    AllTrialsFailed
        If no trial converges.
    ValueError
        If ``first`` is False without ``previous`` or ``weights``, or the weight count
        does not match the observations.

    Notes
    -----
    **Reparameterisation**:
    The minimiser works on \( u = (\log(R_0 - 1), \log\gamma) \), so
    \( \gamma = e^{u_2} \) and \( \beta = \gamma (1 + e^{u_1}) \) are positive with
    \( R_0 > 1 \) for every real \( u \).

    **Selection**:
    Trials that fail to converge are treated as missing and excluded. Among converged
    trials the lowest objective wins; ties go to the earliest trial. Starting points are
    drawn before fan-out, so serial and parallel runs select the same trial.

    See Also
    --------
    epigls.iden_reweight.reweight : Outer loop calling this once per iteration.

    Examples
    --------
    >>> fit = parmest(obs, constants, iden_opt={'ms': 10, 'seed': 1})
    >>> fit.theta.beta, fit.theta.gamma
    """
    opts = _initialize_options(iden_opt)
    rng = np.random.default_rng(opts['seed']) if rng is None else rng

    if first:
        weights = WeightVector.ones(obs.n)
        previous = None
    else:
        if previous is None or weights is None:
            raise ValueError("subsequent iterations need the previous estimate and weights")
    if len(weights) != obs.n:
        raise ValueError(f"{len(weights)} weights for {obs.n} observations")

    starts = _initialise_starts(rng, opts['ms'], previous)
    trials = _run_trials(starts, obs, constants, weights, opts)

    converged = [tr for tr in trials if tr.success]
    if not converged:
        raise AllTrialsFailed(iteration, len(trials))
    best = min(converged, key=attrgetter('fun'))

    if opts['log']:
        logger.info(
            f"[iteration {iteration}] {len(converged)}/{len(trials)} trials converged; "
            f"best trial {best.index}: beta={best.theta.beta:.6g}, gamma={best.theta.gamma:.6g}, "
            f"WLS={best.fun:.6g}"
        )
    return FitResult(best.theta, weights, best.fun, tuple(trials))
